"""Production step writing manufacturing data into a time card's EEPROM."""

from __future__ import annotations

import logging
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

log = logging.getLogger(__name__)

TIMECARD_ROOT = Path("/sys/class/timecard")
SERIAL_LEN = 9
SERIAL_PREFIX = "F"

EEPROM_FORMAT_TOOL = "art_eeprom_format"
DISCIPLINING_TOOL = "art_disciplining_manager"
TEMPERATURE_TABLE_TOOL = "art_temperature_table_manager"

_ATOI = re.compile(r"\s*([+-]?\d+)")

Runner = Callable[[Sequence[str]], int]


@dataclass
class EepromPaths:
    """Files of a time card that hold its EEPROM data."""

    ocp_path: Path
    eeprom: Optional[Path] = None
    disciplining_config: Optional[Path] = None
    temperature_table: Optional[Path] = None


def _find_file(root: Path, name: str) -> Optional[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        if name in filenames:
            return Path(dirpath) / name
    return None


def scan_ocp_dir(ocp_path) -> EepromPaths:
    """Locate the EEPROM, disciplining config and temperature table of a card."""
    ocp_path = Path(ocp_path)
    if not ocp_path.exists():
        raise FileNotFoundError(f"ocp path doesn't exist: {ocp_path}")
    paths = EepromPaths(ocp_path=ocp_path)
    for entry in sorted(ocp_path.iterdir()):
        if entry.name == "i2c":
            log.info("I2C device detected")
            found = _find_file(entry.resolve(), "eeprom")
            if found is not None:
                paths.eeprom = found
                log.info("Found EEPROM file: %s", found)
            else:
                log.warning("Could not find EEPROM file")
        elif entry.name == "disciplining_config":
            paths.disciplining_config = entry
            log.info("disciplining_config detected: %s", entry)
        elif entry.name == "temperature_table":
            paths.temperature_table = entry
            log.info("temperature_table detected: %s", entry)
    return paths


def valid_serial(serial: str) -> bool:
    """A serial number has nine characters and starts with 'F'."""
    return len(serial) == SERIAL_LEN and serial.startswith(SERIAL_PREFIX)


def build_commands(paths: EepromPaths, serial: str, coarse: int) -> dict[str, Optional[list[str]]]:
    """Commands writing each part of the EEPROM; None where the target file is missing."""
    def command(target: Optional[Path], *args: str) -> Optional[list[str]]:
        return None if target is None else [args[0], "-p", str(target), *args[1:]]

    return {
        "eeprom": command(paths.eeprom, EEPROM_FORMAT_TOOL, "-s", serial),
        "disciplining_config": command(
            paths.disciplining_config, DISCIPLINING_TOOL, "-f", "-c", str(coarse & 0xFFFFFFFF)
        ),
        "temperature_table": command(paths.temperature_table, TEMPERATURE_TABLE_TOOL, "-f"),
    }


def _run(args: Sequence[str]) -> int:
    try:
        return subprocess.run(list(args), check=False).returncode
    except OSError as exc:
        log.error("Could not run %s: %s", args[0], exc)
        return 127


def write_eeprom(
    paths: EepromPaths, serial: str, coarse: int, runner: Optional[Runner] = None
) -> bool:
    """Write manufacturing data, disciplining config and temperature table; True on success."""
    runner = runner if runner is not None else _run
    commands = build_commands(paths, serial, coarse)
    if commands["eeprom"] is None:
        log.warning("EEPROM file not found, nothing written")
        return True

    log.info("Writing EEPROM manufacturing data")
    if runner(commands["eeprom"]) != 0:
        log.warning("Could not write EEPROM data in %s", paths.eeprom)
        return False

    passed = True
    if commands["disciplining_config"] is None:
        log.warning("Disciplining config file not found!")
        passed = False
    else:
        log.info("Writing Disciplining config in EEPROM")
        if runner(commands["disciplining_config"]) != 0:
            log.warning("Could not write factory disciplining parameters in %s", paths.disciplining_config)
            passed = False

    if commands["temperature_table"] is None:
        log.warning("Temperature table file not found!")
        passed = False
    else:
        log.info("Writing temperature table in EEPROM")
        if runner(commands["temperature_table"]) != 0:
            log.warning("Could not write factory temperature table in %s", paths.temperature_table)
            passed = False
    return passed


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def main(argv=None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        print("usage: write_eeprom <timecard name> <coarse value> <serial>", file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.INFO)

    ocp_path = TIMECARD_ROOT / args[0]
    log.info('-ocp path is: "%s", checking...', ocp_path)
    paths: Optional[EepromPaths]
    try:
        paths = scan_ocp_dir(ocp_path)
    except FileNotFoundError:
        log.info("ocp path doesn't exists !")
        paths = None

    coarse: Optional[int] = _atoi(args[1]) if len(args) > 1 else None
    if coarse is None:
        log.info("no coarse value provided")
    serial: Optional[str] = args[2] if len(args) > 2 and valid_serial(args[2]) else None
    if serial is None:
        log.info("no serial value provided")

    if paths is None or coarse is None or serial is None:
        log.warning("EEPROM writting Aborted")
        passed = False
    else:
        passed = write_eeprom(paths, serial, coarse)

    if passed:
        log.info("EEPROM writting succeeded")
        return 0
    log.info("EEPROM writting failed")
    return 1


if __name__ == "__main__":
    sys.exit(main())