"""Oscillator driven by an external simulator process."""

from __future__ import annotations

import errno
import logging
import os
import random
import struct
import subprocess
import time
from typing import Optional

from .oscillator import (
    DevicesPath,
    OdOutput,
    Oscillator,
    OscillatorAttributes,
    OscillatorCtrl,
    UnsupportedOperation,
    register_oscillator,
)

log = logging.getLogger(__name__)

CONTROL_FIFO_PATH = "oscillator_sim.control"
SIMULATOR_COMMAND = "oscillator_sim"

_VALUE = struct.Struct("=I")


@register_oscillator
class SimOscillator(Oscillator):
    """Launches the simulator and sends it DAC values through a control FIFO."""

    model = "sim"
    dac_min = 0
    dac_max = 1000000

    def __init__(
        self,
        devices: Optional[DevicesPath] = None,
        command: str = SIMULATOR_COMMAND,
        fifo_path: str = CONTROL_FIFO_PATH,
    ) -> None:
        super().__init__(devices)
        self.value = 0
        self.pps_pts = ""
        self._fifo_path = fifo_path
        self._fifo: Optional[int] = None
        self._process: Optional[subprocess.Popen] = None
        try:
            self._start(command)
        except BaseException:
            self.close()
            raise
        log.info("instantiated %s oscillator", self.model)

    def _start(self, command: str) -> None:
        log.info("launching the simulator process")
        try:
            os.unlink(self._fifo_path)
        except FileNotFoundError:
            pass
        self._process = subprocess.Popen(command, shell=True, stdout=subprocess.PIPE, text=True)
        log.info("opening fifo")
        self._fifo = self._open_fifo()
        log.debug("reading pts name")
        line = self._process.stdout.readline()
        if not line:
            raise OSError(errno.EIO, "simulator did not report its pts name")
        self.pps_pts = line.rstrip("\n")
        log.debug("pts name is %s", self.pps_pts)

    def _open_fifo(self) -> int:
        while True:
            try:
                return os.open(self._fifo_path, os.O_WRONLY)
            except FileNotFoundError:
                if self._process.poll() is not None:
                    raise OSError(
                        errno.ENOENT, "simulator exited before creating its control fifo", self._fifo_path
                    ) from None
                time.sleep(0.01)

    def set_dac(self, value: int) -> None:
        """Send a DAC value to the simulator."""
        log.debug("%s set_dac(%d)", self.name, value)
        if self._fifo is None:
            raise OSError(errno.EBADF, "simulator control fifo is closed")
        os.write(self._fifo, _VALUE.pack(value))
        self.value = value

    def get_ctrl(self) -> OscillatorCtrl:
        log.debug("%s get_dac = %d", self.name, self.value)
        return OscillatorCtrl(dac=self.value)

    def parse_attributes(self) -> OscillatorAttributes:
        temperature = float(random.randrange(10, 55))
        log.info("%s temperature: %g", self.name, temperature)
        return OscillatorAttributes(temperature=temperature, locked=False)

    def apply_output(self, output: OdOutput) -> None:
        self.set_dac(output.setpoint)

    def save(self) -> None:
        raise UnsupportedOperation(f"{self.model} does not support save")

    def close(self) -> None:
        if self._fifo is not None:
            os.close(self._fifo)
            self._fifo = None
        if self._process is not None:
            if self._process.stdout is not None:
                self._process.stdout.close()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
            self._process = None