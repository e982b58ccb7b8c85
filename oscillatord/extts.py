"""External timestamp (EXTTS) events of a PTP hardware clock."""

from __future__ import annotations

import enum
import fcntl
import logging
import os
import struct
from dataclasses import dataclass

log = logging.getLogger(__name__)

NS_IN_SECOND = 1_000_000_000


class ExttsIndex(enum.IntEnum):
    """Channels on which the time card raises external timestamps."""

    TS_GNSS = 0
    TS_1 = 1
    TS_2 = 2
    TS_3 = 3
    TS_4 = 4
    TS_INTERNAL = 5


NUM_EXTTS = len(ExttsIndex)

# struct ptp_extts_event: {s64 sec; u32 nsec; u32 reserved} t; u32 index; u32 flags; u32 rsv[2]
_EVENT = struct.Struct("=qIIII2I")
EVENT_SIZE = _EVENT.size

# struct ptp_extts_request: u32 index; u32 flags; u32 rsv[2]
_REQUEST = struct.Struct("=4I")

PTP_ENABLE_FEATURE = 1 << 0
PTP_RISING_EDGE = 1 << 1


def _iow(kind: str, number: int, size: int) -> int:
    return (1 << 30) | (size << 16) | (ord(kind) << 8) | number


PTP_EXTTS_REQUEST = _iow("=", 2, _REQUEST.size)


class ExttsError(Exception):
    """An external timestamp could not be read, enabled or disabled."""


@dataclass(frozen=True)
class ExttsEvent:
    """One external timestamp event."""

    index: int
    seconds: int
    nanoseconds: int

    @property
    def timestamp_ns(self) -> int:
        return self.seconds * NS_IN_SECOND + self.nanoseconds

    @property
    def label(self) -> str:
        names = {
            ExttsIndex.TS_GNSS: "GNSS",
            ExttsIndex.TS_1: "TS1",
            ExttsIndex.TS_2: "TS2",
            ExttsIndex.TS_3: "TS3",
            ExttsIndex.TS_4: "TS4",
            ExttsIndex.TS_INTERNAL: "Internal PPS",
        }
        return names.get(self.index, "Unknown")


def parse_extts_event(data: bytes) -> ExttsEvent:
    """Decode the raw bytes of a kernel external timestamp event."""
    if len(data) != EVENT_SIZE:
        raise ExttsError(f"failed to read extts event: got {len(data)} bytes, expected {EVENT_SIZE}")
    sec, nsec, _reserved, index, _flags, _rsv0, _rsv1 = _EVENT.unpack(data)
    if sec < 0:
        raise ExttsError("EXTTS second field is supposed to be positive")
    event = ExttsEvent(index=index, seconds=sec, nanoseconds=nsec)
    log.debug("%s timestamp: %d", event.label, event.timestamp_ns)
    return event


def read_extts(fd: int) -> ExttsEvent:
    """Read the next external timestamp event from a PTP clock descriptor."""
    try:
        data = os.read(fd, EVENT_SIZE)
    except OSError as exc:
        raise ExttsError(f"failed to read extts event: {exc}") from exc
    return parse_extts_event(data)


def _request(fd: int, index: int, flags: int, what: str) -> None:
    try:
        fcntl.ioctl(fd, PTP_EXTTS_REQUEST, _REQUEST.pack(int(index), flags, 0, 0))
    except OSError as exc:
        raise ExttsError(f"PTP_EXTTS_REQUEST {what} failed for index {int(index)}: {exc}") from exc


def enable_extts(fd: int, index: int) -> None:
    """Enable rising-edge external timestamps on one channel."""
    _request(fd, index, PTP_RISING_EDGE | PTP_ENABLE_FEATURE, "enable")


def disable_extts(fd: int, index: int) -> None:
    """Disable external timestamps on one channel."""
    _request(fd, index, 0, "disable")