[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "oscillatord"
version = "0.1.0"
description = "Oscillator drivers, PPS phasemeter and production checks for time cards"
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = [
    "oscillator",
    "ptp",
    "pps",
    "phc",
    "timecard",
    "atomic clock",
    "extts",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
    "Topic :: System :: Networking :: Time Synchronization",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
oscillatord-io-test = "oscillatord.io_test:main"
oscillatord-write-eeprom = "oscillatord.write_eeprom:main"

[tool.hatch.build.targets.wheel]
packages = ["oscillatord"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
