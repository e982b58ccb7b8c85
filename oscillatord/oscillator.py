"""Oscillator models, their control values and the registry that creates them."""

from __future__ import annotations

import enum
import itertools
import logging
import random
from dataclasses import dataclass
from typing import ClassVar, Optional

log = logging.getLogger(__name__)


class Action(enum.Enum):
    """Decision of the disciplining algorithm."""

    NO_OP = enum.auto()
    PHASE_JUMP = enum.auto()
    ADJUST_COARSE = enum.auto()
    ADJUST_FINE = enum.auto()
    CALIBRATE = enum.auto()
    SAVE_DISCIPLINING_PARAMETERS = enum.auto()


@dataclass
class OscillatorCtrl:
    """Control values of an oscillator."""

    fine_ctrl: int = 0
    coarse_ctrl: int = 0
    dac: int = 0


@dataclass
class OscillatorAttributes:
    """Measured state of an oscillator."""

    temperature: float = 0.0
    locked: bool = False
    phase_error: int = 0


@dataclass
class OdOutput:
    """Output of the disciplining algorithm to apply on an oscillator."""

    action: Action = Action.NO_OP
    setpoint: int = 0
    value_phase_ctrl: int = 0


@dataclass
class DevicesPath:
    """Device and sysfs paths discovered for one time card."""

    mro_path: str = ""
    ptp_path: str = ""
    pps_path: str = ""
    gnss_path: str = ""
    mac_path: str = ""
    disciplining_config_path: str = ""
    temperature_table_path: str = ""


class UnsupportedOperation(Exception):
    """The oscillator model does not implement the requested operation."""


class Oscillator:
    """Base class of all oscillator models."""

    model: ClassVar[str] = ""
    dac_min: ClassVar[Optional[int]] = None
    dac_max: ClassVar[Optional[int]] = None
    _instances: ClassVar[itertools.count] = itertools.count()

    def __init_subclass__(cls, **kwargs) -> None:
        super().__init_subclass__(**kwargs)
        cls._instances = itertools.count()

    def __init__(self, devices: Optional[DevicesPath] = None) -> None:
        self.devices = devices if devices is not None else DevicesPath()
        self.name = f"{self.model}-{next(type(self)._instances)}"

    def _unsupported(self, operation: str) -> UnsupportedOperation:
        return UnsupportedOperation(f"{self.model or type(self).__name__} does not support {operation}")

    def get_ctrl(self) -> OscillatorCtrl:
        raise self._unsupported("get_ctrl")

    def parse_attributes(self) -> OscillatorAttributes:
        raise self._unsupported("parse_attributes")

    def apply_output(self, output: OdOutput) -> None:
        raise self._unsupported("apply_output")

    def get_phase_error(self) -> int:
        raise self._unsupported("get_phase_error")

    def get_disciplining_status(self):
        raise self._unsupported("get_disciplining_status")

    def push_gnss_info(self, fix_ok: bool, last_fix) -> None:
        raise self._unsupported("push_gnss_info")

    def close(self) -> None:
        """Release the resources held by the oscillator."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


_REGISTRY: dict[str, type[Oscillator]] = {}


def register_oscillator(cls: type[Oscillator]) -> type[Oscillator]:
    """Register an oscillator class under its model name; usable as a decorator."""
    if not getattr(cls, "model", ""):
        raise TypeError(f"{cls.__name__} has no model name")
    _REGISTRY[cls.model] = cls
    return cls


def create_oscillator(name: str, devices: Optional[DevicesPath] = None) -> Oscillator:
    """Create an oscillator of a registered model."""
    try:
        cls = _REGISTRY[name]
    except KeyError:
        raise ValueError(f"unknown oscillator model {name!r}") from None
    return cls(devices)


@register_oscillator
class DummyOscillator(Oscillator):
    """Oscillator returning random values, for testing without hardware."""

    model = "dummy"
    dac_min = 31500
    dac_max = 1016052

    def get_ctrl(self) -> OscillatorCtrl:
        value = random.randrange(self.dac_min, self.dac_max)
        log.info("%s get_dac: %d", self.name, value)
        return OscillatorCtrl(dac=value)

    def parse_attributes(self) -> OscillatorAttributes:
        temperature = float(random.randrange(10, 55))
        log.info("%s temperature: %g", self.name, temperature)
        return OscillatorAttributes(temperature=temperature, locked=False)

    def apply_output(self, output: OdOutput) -> None:
        log.info("%s set_dac: %d", self.name, output.setpoint)

    def save(self) -> None:
        log.info("%s save", self.name)