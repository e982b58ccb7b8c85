"""Phase error between the card's internal PPS and the GNSS receiver PPS."""

from __future__ import annotations

import enum
import logging
import threading
from functools import partial
from typing import Callable, Optional

from .extts import (
    ExttsError,
    ExttsEvent,
    ExttsIndex,
    disable_extts,
    enable_extts,
    read_extts,
)

log = logging.getLogger(__name__)

MAX_PHASE_ERROR_NS = 500_000_000

_WATCHED = (ExttsIndex.TS_INTERNAL, ExttsIndex.TS_GNSS)


class PhasemeterStatus(enum.Enum):
    INIT = "init"
    BOTH_TIMESTAMPS = "both_timestamps"
    NO_GNSS_TIMESTAMPS = "no_gnss_timestamps"
    NO_ART_INTERNAL_TIMESTAMPS = "no_art_internal_timestamps"


def compare_timestamps(
    first: ExttsEvent, second: ExttsEvent
) -> Optional[tuple[PhasemeterStatus, Optional[int]]]:
    """Compare two consecutive timestamps.

    Returns the resulting status and phase error (ns, only when both PPS were
    seen), or None when the two timestamps are more than 500 ms apart.
    """
    if first.index == ExttsIndex.TS_INTERNAL and second.index == first.index:
        return PhasemeterStatus.NO_GNSS_TIMESTAMPS, None
    if first.index == ExttsIndex.TS_GNSS and second.index == first.index:
        return PhasemeterStatus.NO_ART_INTERNAL_TIMESTAMPS, None
    diff = second.timestamp_ns - first.timestamp_ns
    if first.index == ExttsIndex.TS_GNSS:
        diff = -diff
    if diff > MAX_PHASE_ERROR_NS or diff < -MAX_PHASE_ERROR_NS:
        return None
    return PhasemeterStatus.BOTH_TIMESTAMPS, diff


class Phasemeter:
    """Background thread measuring phase error from PHC external timestamps."""

    def __init__(
        self,
        fd: Optional[int] = None,
        read_event: Optional[Callable[[], ExttsEvent]] = None,
    ) -> None:
        if fd is None and read_event is None:
            raise ValueError("a clock descriptor or an event reader is required")
        self._fd = fd
        self._read_event = read_event if read_event is not None else partial(read_extts, fd)
        self._cond = threading.Condition()
        self._status = PhasemeterStatus.INIT
        self._phase_error = 0
        self._generation = 0
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> PhasemeterStatus:
        with self._cond:
            return self._status

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("phasemeter already started")
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="phasemeter", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stopping.set()
        self._thread.join()
        self._thread = None

    def __enter__(self) -> "Phasemeter":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def get_phase_error(self, timeout: Optional[float] = None) -> tuple[PhasemeterStatus, int]:
        """Wait for the next measurement and return (status, phase error in ns)."""
        with self._cond:
            generation = self._generation
            if not self._cond.wait_for(lambda: self._generation != generation, timeout):
                raise TimeoutError("no phasemeter measurement received")
            return self._status, self._phase_error

    def _next_event(self) -> ExttsEvent:
        while True:
            try:
                event = self._read_event()
            except ExttsError as exc:
                log.warning("Could not read ptp clock external timestamp for phasemeter: %s", exc)
                continue
            if event.index in _WATCHED:
                return event

    def _publish(self, status: PhasemeterStatus, phase_error: Optional[int]) -> None:
        with self._cond:
            self._status = status
            if phase_error is not None:
                self._phase_error = phase_error
            self._generation += 1
            self._cond.notify_all()

    def _set_channels(self, enable: bool) -> bool:
        if self._fd is None:
            return True
        action = enable_extts if enable else disable_extts
        ok = True
        for index, name in ((ExttsIndex.TS_INTERNAL, "ART internal"), (ExttsIndex.TS_GNSS, "GNSS")):
            try:
                action(self._fd, index)
            except ExttsError:
                log.error("Could not %s %s pps external events", "enable" if enable else "disable", name)
                ok = False
                if enable:
                    break
        return ok

    def _run(self) -> None:
        if not self._set_channels(True):
            return
        try:
            first = self._next_event()
            while not self._stopping.is_set():
                second = self._next_event()
                result = compare_timestamps(first, second)
                if result is None:
                    first = second
                    continue
                status, phase_error = result
                if status is PhasemeterStatus.NO_GNSS_TIMESTAMPS:
                    log.warning("Phasemeter: Did not receive GNSS pps event")
                elif status is PhasemeterStatus.NO_ART_INTERNAL_TIMESTAMPS:
                    log.warning("Phasemeter: Did not receive ART internal pps event")
                else:
                    log.debug("Phasemeter: phase_error: %dns", phase_error)
                self._publish(status, phase_error)
                if status is PhasemeterStatus.BOTH_TIMESTAMPS:
                    first = self._next_event()
                else:
                    first = second
        finally:
            log.info("Closing phasemeter thread")
            self._set_channels(False)