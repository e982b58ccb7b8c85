"""Microchip SA5x atomic clock with its own disciplining, driven over serial."""

from __future__ import annotations

import dataclasses
import enum
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .oscillator import (
    DevicesPath,
    Oscillator,
    OscillatorAttributes,
    OscillatorCtrl,
    register_oscillator,
)

log = logging.getLogger(__name__)

BAUDRATE = 57600
ANSWER_MAX_LEN = 4101
FIRST_READ_TIMEOUT = 3.0
NEXT_READ_TIMEOUT = 0.01
MIN_ANSWER_LEN = 5

DIGITAL_TUNING_MAX = 20_000_000
DEFAULT_PHASELIMIT = 100_000
NO_GNSS_FIX_TIMEOUT = 9
HOLDOVER_LIMIT = 24 * 3600
UNKNOWN_TEMPERATURE = -400.0
LATCH_RETRIES = 3

ALARM_PPS_LOST = 1 << 17
ALARM_TUNING_OUT_OF_RANGE = 1 << 18

# Query commands go out with their terminating NUL byte.
CMD_SWVER = "\\{swrev?}\x00"
CMD_SERIAL = "{serial?}\x00"
CMD_LATCH = "{latch}\x00"
CMD_GET_ALARMS = "{get,Alarms}\x00"
CMD_GET_LOCKED = "{get,Locked}\x00"
CMD_GET_DISCIPLINE_LOCKED = "{get,DisciplineLocked}\x00"
CMD_GET_GNSS_PPS = "{get,PpsInDetected}\x00"
CMD_GET_PHASE = "{get,Phase}\x00"
CMD_GET_LASTCORRECTION = "{get,LastCorrection}\x00"
CMD_GET_TEMPERATURE = "{get,Temperature}\x00"
CMD_GET_DIGITAL_TUNING = "{get,DigitalTuning}\x00"
CMD_GET_TAU = "{get,TauPps0}\x00"
CMD_GET_DISCIPLINING = "{get,Disciplining}\x00"
CMD_GET_PHASELIMIT = "{get,PhaseLimit}\x00"
CMD_SET_TAU = "{{set,TauPps0,{}}}"
CMD_SET_DISCIPLINING = "{{set,Disciplining,{}}}"
CMD_SET_PHASELIMIT = "{{set,PhaseLimit,{}}}"

TAU_VALUES = (50, 500, 10000)
TAU_INTERVALS = (600, 7200, 86400)
DISCIPLINING_PHASES = len(TAU_VALUES)

_INT_ANSWER = re.compile(r"\[=\s*([+-]?\d+)")
_FLOAT_ANSWER = re.compile(r"\[=\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_VERSION_ANSWER = re.compile(r"\[=([^,]{1,19})")
_FIRMWARE = re.compile(r"V\s*([+-]?\d+)\.\s*([+-]?\d+)")
SERIAL_LEN = 11


class Sa5xClockClass(enum.IntEnum):
    UNCALIBRATED = 0
    CALIBRATING = 1
    HOLDOVER = 2
    LOCK = 3


class Sa5xState(enum.IntEnum):
    INIT = 0
    TRACKING = 1
    HOLDOVER = 2
    CALIBRATION = 3


class AttributeSet(enum.IntFlag):
    """Groups of values to query from the device."""

    FW_SERIAL = 1 << 0
    CTRL = 1 << 1
    STATUS = 1 << 2
    PHASE = 1 << 3
    STATUS_PPS = 1 << 4
    STATUS_TEMPERATURE = 1 << 5
    PHASELIMIT = 1 << 6


@dataclass
class Sa5xStatus:
    """Disciplining status as reported to monitoring."""

    status: Sa5xState = Sa5xState.INIT
    clock_class: Sa5xClockClass = Sa5xClockClass.CALIBRATING
    current_phase_convergence_count: int = -1
    valid_phase_convergence_threshold: int = -1
    convergence_progress: float = 0.0
    holdover_ready: bool = False


@dataclass
class Sa5xAttributes:
    """Values read from the device; those not queried keep their defaults."""

    alarms: int = 0
    phase_offset: int = 0
    last_correction: int = 0
    temperature: int = 0
    digital_tuning: int = 0
    tau: int = 0
    pps_in_detected: bool = False
    locked: bool = False
    discipline_locked: bool = False
    disciplining: bool = False


class Sa5xError(Exception):
    """A command to the SA5x failed or returned an error."""


def parse_int_answer(answer: str) -> int:
    """Read the integer of an answer of the form "[=value]"."""
    match = _INT_ANSWER.match(answer)
    if match is None:
        raise ValueError(f"no integer in answer {answer!r}")
    return int(match.group(1))


def parse_phase_answer(answer: str) -> int:
    """Read the phase of an answer and round it to the nearest integer, halves away from zero."""
    match = _FLOAT_ANSWER.match(answer)
    if match is None:
        raise ValueError(f"no phase in answer {answer!r}")
    phase = float(match.group(1))
    return int(phase + (0.5 if phase >= 0 else -0.5))


@register_oscillator
class Sa5xOscillator(Oscillator):
    """SA5x oscillator; it disciplines itself, this class tunes and monitors it."""

    model = "sa5x"

    def __init__(
        self,
        devices: Optional[DevicesPath] = None,
        port=None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        super().__init__(devices)
        self._clock = clock if clock is not None else time.monotonic
        self._port = port if port is not None else self._open_port()
        self.version = ""
        self.serial = ""
        self.latch_fixed = False
        self.disciplining_phase = 0
        self.gnss_fix_status = False
        self.gnss_last_fix = 0
        self.gnss_last_fix_utc = None
        self.mac_last_latch = 0
        log.debug("instantiated %s oscillator", self.model)

        self.read_firmware_info()
        log.debug("connected to MAC with serial %s, fw: %s", self.serial, self.version)

        self.status = Sa5xStatus(status=Sa5xState.INIT, clock_class=Sa5xClockClass.CALIBRATING)
        self.disciplining_start = self._now()
        if not self._send_set(CMD_SET_TAU.format(TAU_VALUES[0])):
            log.debug("couldn't reset TAU for oscillator")

    def _open_port(self):
        import serial

        if not self.devices.mac_path:
            raise Sa5xError("Could not open sa5x device: no serial path")
        try:
            return serial.Serial(
                self.devices.mac_path,
                BAUDRATE,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                xonxoff=False,
                rtscts=False,
                timeout=FIRST_READ_TIMEOUT,
            )
        except (OSError, ValueError) as exc:
            raise Sa5xError(f"Could not open sa5x device: {exc}") from exc

    def _now(self) -> int:
        return int(self._clock())

    def _set_timeout(self, value) -> None:
        if hasattr(self._port, "timeout"):
            self._port.timeout = value

    def command(self, cmd: str) -> str:
        """Send a command and return the answer, which must start with "[="."""
        if self._port is None:
            raise Sa5xError("serial port is closed")
        data = cmd.encode("ascii")
        try:
            written = self._port.write(data)
        except OSError as exc:
            raise Sa5xError(f"send command error: {exc}") from exc
        if written != len(data):
            raise Sa5xError(f"send command error: wrote {written} of {len(data)} bytes")

        answer = bytearray()
        original_timeout = getattr(self._port, "timeout", None)
        self._set_timeout(FIRST_READ_TIMEOUT)
        try:
            while len(answer) < ANSWER_MAX_LEN:
                try:
                    chunk = self._port.read(ANSWER_MAX_LEN - len(answer))
                except OSError as exc:
                    raise Sa5xError(f"read error: {exc}") from exc
                if not chunk:
                    break
                answer += chunk
                self._set_timeout(NEXT_READ_TIMEOUT)
        finally:
            self._set_timeout(original_timeout)

        if not answer:
            raise Sa5xError("didn't get answer, zero length")
        text = answer.decode("ascii", errors="replace")
        if len(answer) < MIN_ANSWER_LEN or text[0] != "[":
            raise Sa5xError(f"answer protocol error: {text!r}")
        if text[1] != "=":
            raise Sa5xError(f"answer is error: {text!r}")
        return text

    def _send_set(self, cmd: str) -> bool:
        try:
            self.command(cmd)
        except Sa5xError as exc:
            log.debug("command %r failed: %s", cmd, exc)
            return False
        return True

    def _query_int(self, cmd: str) -> Optional[int]:
        try:
            return parse_int_answer(self.command(cmd))
        except (Sa5xError, ValueError) as exc:
            log.debug("query %r failed: %s", cmd.rstrip("\x00"), exc)
            return None

    def _query_phase(self) -> Optional[int]:
        try:
            return parse_phase_answer(self.command(CMD_GET_PHASE))
        except (Sa5xError, ValueError) as exc:
            log.debug("phase query failed: %s", exc)
            return None

    def read_firmware_info(self) -> tuple[str, str]:
        """Read firmware version and serial number, and restore the default phase limit."""
        try:
            match = _VERSION_ANSWER.match(self.command(CMD_SWVER))
            if match is not None:
                self.version = match.group(1)
        except Sa5xError as exc:
            log.debug("could not read firmware version: %s", exc)
        try:
            answer = self.command(CMD_SERIAL)
            if len(answer) >= 2 + SERIAL_LEN:
                self.serial = answer[2 : 2 + SERIAL_LEN]
        except Sa5xError as exc:
            log.debug("could not read serial number: %s", exc)

        match = _FIRMWARE.match(self.version)
        if match is not None:
            major, minor = int(match.group(1)), int(match.group(2))
            if major * 0x100 + minor >= 0x101:
                self.latch_fixed = True
                log.debug("SA5x firmware has latching issue fixes")
            else:
                log.warning("SA5x firmware is affected to latching issue, upgrade is needed")

        limit = self._query_int(CMD_GET_PHASELIMIT)
        if limit is None:
            log.warning("SA5x: cannot get phase limit value")
        elif limit != DEFAULT_PHASELIMIT:
            log.info("SA5x reports non-default phase limit value: %d, updating...", limit)
            if not self._send_set(CMD_SET_PHASELIMIT.format(DEFAULT_PHASELIMIT)):
                log.warning("SA5x: couldn't setup phase limit")
        return self.version, self.serial

    def get_attributes(self, mask: AttributeSet) -> Sa5xAttributes:
        """Query the groups of values named by mask."""
        mask = AttributeSet(mask)
        attrs = Sa5xAttributes()
        if mask & AttributeSet.FW_SERIAL:
            self.read_firmware_info()
            return attrs

        if mask & (AttributeSet.STATUS_PPS | AttributeSet.STATUS):
            value = self._query_int(CMD_GET_DISCIPLINE_LOCKED)
            if value is not None:
                attrs.discipline_locked = bool(value & 1)
            value = self._query_int(CMD_GET_GNSS_PPS)
            if value is None:
                log.warning("SA5x doesn't return status of PPS signal")
                raise Sa5xError("SA5x doesn't return status of PPS signal")
            attrs.pps_in_detected = bool(value & 1)
            if not attrs.pps_in_detected:
                log.debug("SA5x reports no PPS-in")

        if mask & AttributeSet.CTRL:
            value = self._query_int(CMD_GET_DIGITAL_TUNING)
            if value is not None:
                attrs.digital_tuning = value
            value = self._query_int(CMD_GET_LOCKED)
            if value is not None:
                attrs.locked = bool(value & 1)
            value = self._query_int(CMD_GET_TAU)
            if value is not None:
                attrs.tau = value
            value = self._query_int(CMD_GET_LASTCORRECTION)
            if value is not None:
                attrs.last_correction = value

        if mask & AttributeSet.STATUS:
            value = self._query_int(CMD_GET_ALARMS)
            if value is not None:
                attrs.alarms = value & 0xFFFFFFFF
            value = self._query_int(CMD_GET_DISCIPLINING)
            if value is not None:
                attrs.disciplining = bool(value & 1)
                if not attrs.disciplining:
                    mask |= AttributeSet.PHASE

        if mask & AttributeSet.PHASE:
            phase = self._query_phase()
            if phase is not None:
                attrs.phase_offset = phase
            if mask & AttributeSet.STATUS and not attrs.disciplining:
                log.warning(
                    "SA5x reports disciplining off, phase offset = %d, %s",
                    attrs.phase_offset,
                    "skip switching while Phase is not 0" if attrs.phase_offset else "trying to switch it on",
                )
                if not attrs.phase_offset and not self._send_set(CMD_SET_DISCIPLINING.format(1)):
                    log.warning("SA5x: couldn't enable disciplining after latch command")

        if mask & AttributeSet.STATUS_TEMPERATURE:
            value = self._query_int(CMD_GET_TEMPERATURE)
            if value is None:
                raise Sa5xError("SA5x doesn't return its temperature")
            attrs.temperature = value

        return attrs

    def latch(self, attributes: Sa5xAttributes) -> bool:
        """Issue the latch sequence that recovers from out-of-range tuning; True on success."""
        retries = LATCH_RETRIES
        while retries and attributes.disciplining:
            if not self._send_set(CMD_SET_DISCIPLINING.format(0)):
                log.warning("SA5x: couldn't disable disciplining for latch command")
                return False
            value = self._query_int(CMD_GET_DISCIPLINING)
            if value is None:
                log.warning("SA5x: couldn't read disciplining status while in latch procedure")
                return False
            attributes.disciplining = bool(value & 1)
            retries -= 1

        if not retries:
            log.warning("SA5x: couldn't disable disciplining for latch command %d times", LATCH_RETRIES)
            return False

        try:
            answer = self.command(CMD_LATCH)
        except Sa5xError:
            log.warning("SA5x: error with latch command")
            return False
        try:
            result = parse_int_answer(answer)
        except ValueError:
            result = 0
        if not result:
            log.warning("SA5x: latch command returned 0, aborting latch procedure")
            return False

        # Disciplining is re-enabled later, once a new second starts and Phase reads 0.
        self.mac_last_latch = self._now()
        return True

    def get_ctrl(self) -> OscillatorCtrl:
        """Return last correction and TAU, and advance the disciplining state machine."""
        try:
            attrs = self.get_attributes(AttributeSet.CTRL | AttributeSet.STATUS | AttributeSet.PHASE)
        except Sa5xError:
            return OscillatorCtrl(fine_ctrl=-1, coarse_ctrl=0)
        ctrl = OscillatorCtrl(fine_ctrl=attrs.last_correction, coarse_ctrl=attrs.tau)

        log.debug(
            "SA53 stats: Alarms 0x%08x, LastCorrection=%d, DigitalTuning=%d, "
            "DisciplingLocked=%d, Phase=%d, Tau=%d",
            attrs.alarms, attrs.last_correction, attrs.digital_tuning,
            attrs.discipline_locked, attrs.phase_offset, attrs.tau,
        )
        now = self._now()
        latch = adjust_tau = False
        if attrs.alarms:
            if attrs.alarms & ALARM_TUNING_OUT_OF_RANGE and not attrs.last_correction and not self.latch_fixed:
                log.warning("SA5x: Digital tuning is out of range, adjust base frequency initiated")
                latch = adjust_tau = True
            else:
                log.warning("SA5x: Alarms are raised, 0x%8X", attrs.alarms)
        elif (
            not attrs.last_correction
            and not attrs.discipline_locked
            and abs(attrs.digital_tuning) == DIGITAL_TUNING_MAX
            and now - self.mac_last_latch > TAU_INTERVALS[0]
        ):
            if not self.latch_fixed:
                latch = adjust_tau = True
            log.warning("SA5x: no Alarms, but latch is needed, digital tuning is %d", attrs.digital_tuning)

        if latch and not self.latch(attrs):
            log.error("SA5x: Couldn't make latch command")

        pps_lost = not attrs.pps_in_detected or bool(attrs.alarms & ALARM_PPS_LOST)
        if pps_lost and self.gnss_fix_status:
            log.debug("SA5x reports loss of PPS while GNSS fix is OK")
        if attrs.pps_in_detected and not self.gnss_fix_status:
            log.debug("SA5x has PPS while no GNSS fix read")

        since_fix = now - self.gnss_last_fix
        holdover = (not self.gnss_fix_status and since_fix >= NO_GNSS_FIX_TIMEOUT) or pps_lost
        if holdover or latch or not attrs.discipline_locked:
            adjust_tau = self.disciplining_phase != 0 or since_fix > HOLDOVER_LIMIT
            self.disciplining_phase = 0
            self.disciplining_start = now
        elif self.status.clock_class in (Sa5xClockClass.HOLDOVER, Sa5xClockClass.UNCALIBRATED):
            self.status.clock_class = Sa5xClockClass.CALIBRATING
            self.status.status = Sa5xState.TRACKING

        if (
            self.disciplining_phase < DISCIPLINING_PHASES - 1
            and now - self.disciplining_start > TAU_INTERVALS[self.disciplining_phase]
        ):
            adjust_tau = True
            self.disciplining_phase += 1

        if adjust_tau:
            tau = TAU_VALUES[self.disciplining_phase]
            if not self._send_set(CMD_SET_TAU.format(tau)):
                log.debug("couldn't set TAU to %d", tau)
            if not self.gnss_fix_status:
                if self.status.clock_class == Sa5xClockClass.CALIBRATING or since_fix > HOLDOVER_LIMIT:
                    self.status.clock_class = Sa5xClockClass.UNCALIBRATED
                else:
                    self.status.clock_class = Sa5xClockClass.HOLDOVER
                self.status.status = Sa5xState.HOLDOVER
            elif not attrs.discipline_locked:
                self.status.clock_class = Sa5xClockClass.UNCALIBRATED
                self.status.status = Sa5xState.HOLDOVER
            elif self.disciplining_phase == 0:
                self.status.clock_class = Sa5xClockClass.CALIBRATING
                self.status.status = Sa5xState.TRACKING
            else:
                self.status.clock_class = Sa5xClockClass.LOCK
                self.status.status = Sa5xState.CALIBRATION
            self.status.holdover_ready = self.disciplining_phase == DISCIPLINING_PHASES - 1

        return ctrl

    def parse_attributes(self) -> OscillatorAttributes:
        try:
            attrs = self.get_attributes(AttributeSet.STATUS_TEMPERATURE | AttributeSet.STATUS_PPS)
        except Sa5xError:
            return OscillatorAttributes(temperature=UNKNOWN_TEMPERATURE, locked=False)
        return OscillatorAttributes(
            temperature=attrs.temperature / 1000.0,
            locked=attrs.pps_in_detected and attrs.discipline_locked,
        )

    def get_phase_error(self) -> int:
        """Return the phase offset measured by the device, in ns."""
        phase = self._query_phase()
        if phase is None:
            raise Sa5xError("could not read phase error")
        return phase

    def get_disciplining_status(self) -> Sa5xStatus:
        return dataclasses.replace(self.status)

    def push_gnss_info(self, fix_ok: bool, last_fix) -> None:
        self.gnss_fix_status = bool(fix_ok)
        if fix_ok and last_fix is not None:
            self.gnss_last_fix_utc = last_fix
            self.gnss_last_fix = self._now()

    def close(self) -> None:
        if self._port is not None:
            self._port.close()
            self._port = None
            log.info("Closed oscillator's serial port")