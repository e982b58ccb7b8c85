"""mRO50 rubidium oscillator driven over its serial command port."""

from __future__ import annotations

import logging
import math
import re
import struct
import time
from typing import Optional

from .oscillator import (
    Action,
    DevicesPath,
    OdOutput,
    Oscillator,
    OscillatorAttributes,
    OscillatorCtrl,
    register_oscillator,
)

log = logging.getLogger(__name__)

BAUDRATE = 9600
POLL_TIMEOUT = 0.05
ANSWER_MAX_LEN = 128
RESET_TIMEOUT = 300

CMD_READ_COARSE = "FD\r"
CMD_READ_FINE = "MON_tpcb PIL_cfield C\r"
CMD_READ_STATUS = "MONITOR1\r"
CMD_READ_TEMP_PARAM_A = "MON_tpcb PIL_cfield A\r"
CMD_READ_TEMP_PARAM_B = "MON_tpcb PIL_cfield B\r"
CMD_RESET = "reset\r"
RESET_DONE = "Start done>"

STATUS_ANSWER_SIZE = 62
STATUS_EP_TEMPERATURE_INDEX = 52
STATUS_ANSWER_FIELD_SIZE = 4
STATUS_CLOCK_LOCKED_INDEX = 56
STATUS_CLOCK_LOCKED_BIT = 2

# Thermistor on a 12-bit ADC behind a 47 kOhm resistor, Steinhart-Hart coefficients.
_ADC_FULL_SCALE = 4095.0
_BRIDGE_RESISTANCE = 47000.0
_C1 = 0.00072382
_C2 = 0.000237648
_C3 = 0.000000166

_HEX = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")
_LEADING_HEX = re.compile(r"[0-9a-fA-F]*")


class Mro50Error(Exception):
    """A command to the mRO50 failed or its answer could not be understood."""


def parse_hex_answer(answer: str) -> int:
    """Read the hexadecimal value at the start of an answer, as a 32-bit unsigned."""
    match = _HEX.match(answer)
    if match is None:
        raise ValueError(f"no hexadecimal value in answer {answer!r}")
    value = int(match.group(2), 16)
    if match.group(1) == "-":
        value = -value
    return value & 0xFFFFFFFF


def compute_temperature(value: int) -> float:
    """Convert a raw thermistor ADC reading into degrees Celsius."""
    x = value / _ADC_FULL_SCALE
    if x <= 0.0 or x >= 1.0:
        raise ValueError(f"Cannot compute temperature from ADC value {value}")
    resistance = _BRIDGE_RESISTANCE * x / (1.0 - x)
    ln_r = math.log(resistance)
    return 1.0 / (_C1 + _C2 * ln_r + _C3 * ln_r**3) - 273.15


def parse_status(answer: str) -> OscillatorAttributes:
    """Decode the temperature and lock flag from a MONITOR1 answer."""
    if len(answer) != STATUS_ANSWER_SIZE:
        raise Mro50Error(
            f"status answer has {len(answer)} characters, expected {STATUS_ANSWER_SIZE}"
        )
    log.debug("MONITOR1 from mro50 gives %s", answer[:-2])
    field = answer[
        STATUS_EP_TEMPERATURE_INDEX : STATUS_EP_TEMPERATURE_INDEX + STATUS_ANSWER_FIELD_SIZE
    ]
    digits = _LEADING_HEX.match(field).group(0)
    raw = int(digits, 16) if digits else 0
    try:
        temperature = compute_temperature(raw)
    except ValueError as exc:
        raise Mro50Error(str(exc)) from exc
    flag = ord(answer[STATUS_CLOCK_LOCKED_INDEX])
    locked = bool((flag >> STATUS_CLOCK_LOCKED_BIT) & 1)
    return OscillatorAttributes(temperature=temperature, locked=locked)


def _as_float32(bits: int) -> float:
    return struct.unpack("<f", struct.pack("<I", bits & 0xFFFFFFFF))[0]


@register_oscillator
class Mro50Oscillator(Oscillator):
    """mRO50 oscillator; its fine and coarse controls are set through text commands."""

    model = "mRO50"
    dac_min = 0
    dac_max = 1000000

    def __init__(self, devices: Optional[DevicesPath] = None, port=None) -> None:
        super().__init__(devices)
        self._owns_port = port is None
        self._port = port if port is not None else self._open_port()
        try:
            if not self.reset():
                raise Mro50Error("Could not reset mRO50")
        except BaseException:
            self.close()
            raise
        log.debug("instantiated %s oscillator", self.model)
        try:
            self.read_temperature_compensation()
        except Mro50Error as exc:
            log.error("Could not read temperature compensation parameters: %s", exc)

    def _open_port(self):
        import serial

        if not self.devices.mac_path:
            raise Mro50Error("Could not open mRo50 device: no serial path")
        try:
            return serial.Serial(
                self.devices.mac_path,
                BAUDRATE,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                timeout=POLL_TIMEOUT,
            )
        except (OSError, ValueError) as exc:
            raise Mro50Error(f"Could not open mRo50 device: {self.devices.mac_path}: {exc}") from exc

    def _send(self, cmd: str) -> None:
        if self._port is None:
            raise Mro50Error("serial port is closed")
        data = cmd.encode("ascii")
        try:
            written = self._port.write(data)
        except OSError as exc:
            raise Mro50Error(f"send command error: {exc}") from exc
        if written != len(data):
            raise Mro50Error(f"send command error: wrote {written} of {len(data)} bytes")

    def command(self, cmd: str) -> str:
        """Send a command and return its answer, which must end with two line feeds."""
        self._send(cmd)
        answer = bytearray()
        while len(answer) < ANSWER_MAX_LEN:
            try:
                chunk = self._port.read(ANSWER_MAX_LEN - len(answer))
            except OSError as exc:
                raise Mro50Error(f"read error: {exc}") from exc
            if not chunk:
                break
            answer += chunk
        if not answer:
            raise Mro50Error("didn't get answer, zero length")
        text = answer.decode("ascii", errors="replace")
        if text.startswith("?"):
            raise Mro50Error(f"answer protocol error: {text!r}")
        if not text.endswith("\n\n"):
            raise Mro50Error(f"answer does not contain LFLF: {text!r}")
        return text

    def reset(self, timeout: float = RESET_TIMEOUT) -> bool:
        """Reset the oscillator and wait for its start banner; False on timeout."""
        log.info("Resetting mRO50...")
        start = time.monotonic()
        self._send(CMD_RESET)
        buffer = ""
        while True:
            if time.monotonic() - start >= timeout:
                log.error("Reset Timeout !")
                return False
            try:
                chunk = self._port.read(ANSWER_MAX_LEN - len(buffer))
            except OSError as exc:
                log.error("read error during reset: %s", exc)
                buffer = ""
                continue
            if not chunk:
                continue
            buffer += chunk.decode("ascii", errors="replace")
            if RESET_DONE in buffer:
                log.debug("%s", buffer.rstrip("\n"))
                log.info("mRO successfully reset !")
                return True
            if buffer.endswith("\n") or buffer[-2:-1] == "\n":
                if len(buffer) > 1:
                    log.debug("%s", buffer.rstrip("\n"))
                    if buffer.startswith("?"):
                        log.warning("Reset command not understood by mRO50, retrying...")
                        self._send(CMD_RESET)
                buffer = ""
            if len(buffer) >= ANSWER_MAX_LEN:
                log.error("Buffer full !")
                buffer = ""

    def clean_serial(self) -> None:
        """Reopen or flush the serial link and send an empty line."""
        log.info("Resetting mRo50 serial")
        if self._owns_port:
            if self._port is not None:
                self._port.close()
                self._port = None
            self._port = self._open_port()
        elif self._port is not None:
            self._port.reset_input_buffer()
        try:
            self.command("\r\n")
        except Mro50Error:
            pass
        log.info("mRo50 serial reset")

    def _recover(self) -> None:
        try:
            self.clean_serial()
        except Mro50Error as exc:
            log.error("Could not reset mRo50 serial: %s", exc)

    def _read_hex(self, cmd: str, what: str) -> int:
        try:
            answer = self.command(cmd)
        except Mro50Error as exc:
            log.error("Fail reading %s: %s", what, exc)
            self._recover()
            raise
        try:
            return parse_hex_answer(answer)
        except ValueError as exc:
            raise Mro50Error(f"Could not parse {what}") from exc

    def read_temperature_compensation(self) -> tuple[float, float]:
        """Return the internal temperature compensation parameters A and B."""
        log.info("Reading A & B parameters")
        a = _as_float32(self._read_hex(CMD_READ_TEMP_PARAM_A, "temperature compensation parameter A"))
        b = _as_float32(self._read_hex(CMD_READ_TEMP_PARAM_B, "temperature compensation parameter B"))
        log.info("Internal temperature compensation: A = %f, B = %f", a, b)
        return a, b

    def get_ctrl(self) -> OscillatorCtrl:
        coarse = self._read_hex(CMD_READ_COARSE, "coarse parameter")
        fine = self._read_hex(CMD_READ_FINE, "fine parameter")
        return OscillatorCtrl(fine_ctrl=fine, coarse_ctrl=coarse)

    def parse_attributes(self) -> OscillatorAttributes:
        try:
            answer = self.command(CMD_READ_STATUS)
            if len(answer) != STATUS_ANSWER_SIZE:
                raise Mro50Error(
                    f"status answer has {len(answer)} characters, expected {STATUS_ANSWER_SIZE}"
                )
        except Mro50Error as exc:
            log.warning("Fail reading attributes: %s", exc)
            self._recover()
            raise
        return parse_status(answer)

    def apply_output(self, output: OdOutput) -> None:
        setpoint = output.setpoint & 0xFFFFFFFF
        if output.action is Action.ADJUST_FINE:
            log.debug("Fine adjustment to value %d requested", setpoint)
            cmd = f"MON_tpcb PIL_cfield C {setpoint:04X}\r"
        elif output.action is Action.ADJUST_COARSE:
            log.debug("Coarse adjustment to value %d requested", setpoint)
            cmd = f"FD {setpoint:08X}\r"
        else:
            log.error("apply_output called with action %s, expected ADJUST_COARSE or ADJUST_FINE", output.action)
            return
        answer = self.command(cmd)
        if len(answer) != 2:
            raise Mro50Error(f"Could not apply {output.action.name}: unexpected answer {answer!r}")

    def close(self) -> None:
        if self._port is not None:
            self._port.close()
            self._port = None
            log.info("Closed oscillator's serial port")