"""Production test of the time card's configurable SMA inputs and outputs."""

from __future__ import annotations

import enum
import itertools
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from .extts import (
    ExttsError,
    ExttsEvent,
    ExttsIndex,
    disable_extts,
    enable_extts,
    read_extts,
)

log = logging.getLogger(__name__)

TIMECARD_ROOT = Path("/sys/class/timecard")
MAX_EVENTS = 100
IO_COUNT = 4

_SMA_CHANNELS = (ExttsIndex.TS_1, ExttsIndex.TS_2, ExttsIndex.TS_3, ExttsIndex.TS_4)


class IoMode(str, enum.Enum):
    PHC_OUT = "OUT: MAC"
    GNSS_OUT = "OUT: GNSS"
    PPS_IN = "IN: PPS1"


def configure_io(ocp_path, io: int, mode) -> None:
    """Write the mode of one SMA connector (1 to 4) into the card's sysfs directory."""
    if not 1 <= io <= IO_COUNT:
        raise ValueError(f"Only IO 1-{IO_COUNT} exists ! wanted {io}")
    mode = IoMode(mode)
    Path(ocp_path, f"sma{io}").write_text(mode.value)


def configure_ios(ocp_path, modes: Sequence) -> None:
    """Set the modes of all four SMA connectors, in order."""
    if len(modes) != IO_COUNT:
        raise ValueError(f"expected {IO_COUNT} modes, got {len(modes)}")
    for io, mode in enumerate(modes, start=1):
        configure_io(ocp_path, io, mode)


def expect_timestamps(events: Iterable[ExttsEvent], expected) -> bool:
    """Read at most 100 events and check that exactly the expected SMA channels fire."""
    expected = set(expected)
    seen: set[int] = set()
    for event in itertools.islice(events, MAX_EVENTS):
        if event.index in _SMA_CHANNELS:
            if event.index not in expected:
                log.error("Unexpected timestamps %d", event.index)
                return False
            seen.add(event.index)
        if seen == expected:
            break
    return seen == expected


def _events(fd: int) -> Iterator[ExttsEvent]:
    while True:
        yield read_extts(fd)


def _set_all_channels(fd: int, enable: bool) -> None:
    for index in ExttsIndex:
        try:
            (enable_extts if enable else disable_extts)(fd, index)
        except ExttsError:
            log.error("Could not %s external events for index %d", "enable" if enable else "disable", index)
            if enable:
                break


def _check_pair(ocp_path, fd: int, modes, expected, label: str) -> bool:
    try:
        configure_ios(ocp_path, modes)
    except (OSError, ValueError) as exc:
        log.error("Error configuring IOs: %s", exc)
        return False
    try:
        ok = expect_timestamps(_events(fd), expected)
    except ExttsError as exc:
        log.error("%s", exc)
        ok = False
    if not ok:
        log.error("Did not read EXTTS on %s", label)
        return False
    log.info("Passed test on SMA %s", label)
    return True


def run_configurable_io_test(ocp_path, ptp_path) -> bool:
    """Loop PHC outputs back into inputs and check each SMA channel timestamps."""
    log.info("Starting Configurable IO test")
    try:
        fd = os.open(ptp_path, os.O_RDWR)
    except OSError as exc:
        log.error("Could not open %s: %s", ptp_path, exc)
        return False
    try:
        _set_all_channels(fd, True)
        pin, out = IoMode.PPS_IN, IoMode.PHC_OUT
        passed = _check_pair(
            ocp_path, fd, (pin, out, pin, out), {ExttsIndex.TS_1, ExttsIndex.TS_3}, "1 and 3"
        ) and _check_pair(
            ocp_path, fd, (out, pin, out, pin), {ExttsIndex.TS_2, ExttsIndex.TS_4}, "2 and 4"
        )
    finally:
        try:
            configure_ios(ocp_path, [IoMode.PPS_IN] * IO_COUNT)
        except OSError as exc:
            log.error("Could not restore IOs: %s", exc)
        _set_all_channels(fd, False)
        os.close(fd)
    return passed


def _find_device(ocp_path: Path, name: str) -> Optional[Path]:
    entry = ocp_path / name
    if not os.path.lexists(entry):
        return None
    return Path("/dev") / entry.resolve().name


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("usage: io_test <timecard name>", file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.INFO)
    ocp_path = TIMECARD_ROOT / args[0]
    log.info('-ocp path is: "%s", checking...', ocp_path)
    if not ocp_path.exists():
        log.info("ocp path doesn't exists !")
        log.warning("IO Test Aborted")
        return 1
    ptp_path = _find_device(ocp_path, "ptp")
    if ptp_path is None:
        log.warning("IO Test Aborted")
        return 1
    log.info("-ptp clock device detected: %s", ptp_path)
    if run_configurable_io_test(ocp_path, ptp_path):
        log.info("IO Test Passed")
        return 0
    log.info("IO Test Failed")
    return 1


if __name__ == "__main__":
    sys.exit(main())