"""Microchip SA3x miniature atomic clock over its serial telemetry port."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from .oscillator import (
    DevicesPath,
    Oscillator,
    OscillatorAttributes,
    OscillatorCtrl,
    register_oscillator,
)

log = logging.getLogger(__name__)

BAUDRATE = 57600
TELEMETRY_COMMAND = b"^"
TELEMETRY_MAX_LEN = 128
RESPONSE_TIMEOUT = 0.1
SETTLING_TIME = 3
UNKNOWN_TEMPERATURE = -400.0
MIN_FIELDS = 9

_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class Sa3xTelemetry:
    """One telemetry line of an SA3x."""

    bite: str
    version: str
    serial: str
    tec_control: int
    rf_control: int
    dds_current: int
    cell_current: int
    dc_signal: int
    temperature: int
    digital_tuning: Optional[int] = None
    analog_tuning_on: Optional[str] = None
    analog_tuning: Optional[int] = None


def _parse_fields(line: str) -> list:
    """Parse fields left to right, stopping at the first one that does not match."""
    values: list = []
    tokens = line.split(",")
    kinds = ("char", "str", "str") + ("int",) * 7 + ("char", "int")
    for position, kind in enumerate(kinds):
        if position >= len(tokens):
            break
        token = tokens[position]
        last = position == len(kinds) - 1
        if kind == "char":
            if not token:
                break
            values.append(token[0])
            if len(token) != 1:
                break
        elif kind == "str":
            if not token:
                break
            values.append(token)
        else:
            match = _INT.match(token)
            if match is None:
                break
            values.append(int(match.group(1)))
            if not last and token[match.end():]:
                break
    return values


def parse_telemetry(line: str) -> Sa3xTelemetry:
    """Parse a comma separated telemetry line; at least nine fields are required."""
    values = _parse_fields(line)
    if len(values) < MIN_FIELDS:
        raise ValueError(f"parse telemetry error: only {len(values)} attributes read")
    return Sa3xTelemetry(*values)


@register_oscillator
class Sa3xOscillator(Oscillator):
    """SA3x oscillator; telemetry is cached for a few seconds."""

    model = "sa3x"

    def __init__(self, devices: Optional[DevicesPath] = None, port=None) -> None:
        super().__init__(devices)
        if port is None:
            port = self._open_port()
        self._port = port
        self._telemetry: Optional[Sa3xTelemetry] = None
        self._telemetry_time: Optional[float] = None
        log.debug("instantiated %s oscillator", self.model)

    def _open_port(self):
        import serial

        if not self.devices.mac_path:
            raise OSError("Could not open sa3x device: no serial path")
        return serial.Serial(
            self.devices.mac_path,
            BAUDRATE,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            xonxoff=False,
            rtscts=False,
            timeout=RESPONSE_TIMEOUT,
        )

    def read_telemetry(self) -> Sa3xTelemetry:
        """Return the telemetry, querying the device when the cached one is stale."""
        now = time.monotonic()
        if (
            self._telemetry is not None
            and self._telemetry_time is not None
            and abs(now - self._telemetry_time) < SETTLING_TIME
        ):
            return self._telemetry
        if self._port.write(TELEMETRY_COMMAND) != len(TELEMETRY_COMMAND):
            raise OSError("oscillator_get_attributes send command error")
        data = self._port.read(TELEMETRY_MAX_LEN)
        if not data:
            raise TimeoutError("oscillator_get_attributes timed out")
        telemetry = parse_telemetry(data.decode("ascii", errors="replace"))
        self._telemetry = telemetry
        self._telemetry_time = time.monotonic()
        return telemetry

    def get_ctrl(self) -> OscillatorCtrl:
        return OscillatorCtrl(fine_ctrl=0, coarse_ctrl=0)

    def parse_attributes(self) -> OscillatorAttributes:
        try:
            telemetry = self.read_telemetry()
        except (OSError, ValueError) as exc:
            log.error("oscillator_get_attributes: %s", exc)
            return OscillatorAttributes(temperature=UNKNOWN_TEMPERATURE, locked=False)
        return OscillatorAttributes(
            temperature=telemetry.temperature / 1000.0,
            locked=telemetry.bite == "\x00",
        )

    def close(self) -> None:
        if self._port is not None:
            self._port.close()
            self._port = None
            log.info("Closed oscillator's serial port")