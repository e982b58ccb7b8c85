# oscillatord

Building blocks for working with the oscillator on a PCIe time card:
oscillator drivers, a phasemeter that measures the offset between two PPS
signals seen by a PTP hardware clock, and two production check tools.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## What is in the package

- `oscillatord.extts` – reads PTP external timestamp events
  (`read_extts`, `parse_extts_event`) and turns them on and off for a
  channel (`enable_extts`, `disable_extts`). The channels are listed in
  `ExttsIndex`; an event is an `ExttsEvent`; failures raise `ExttsError`.
- `oscillatord.phasemeter` – `Phasemeter` pairs the GNSS PPS timestamp
  with the card's internal PPS timestamp in a background thread and
  reports the phase error together with a `PhasemeterStatus`. Pairs more
  than 500 ms apart are skipped. `compare_timestamps` holds the pairing
  rule on its own.
- `oscillatord.oscillator` – the common `Oscillator` interface, the data
  classes it works with (`OscillatorCtrl`, `OscillatorAttributes`,
  `OdOutput`, `Action`, `DevicesPath`), the registry
  (`register_oscillator`, `create_oscillator`) and the `DummyOscillator`,
  which returns random values and needs no hardware. Operations a model
  does not support raise `UnsupportedOperation`.
- `oscillatord.sim_oscillator` – `SimOscillator` (model `"sim"`) starts a
  simulator command (`oscillator_sim` by default), opens its control FIFO
  and writes DAC values into it.
- `oscillatord.sa3x` – `Sa3xOscillator` (model `"sa3x"`) reads the SA3x
  telemetry line (`parse_telemetry`, `Sa3xTelemetry`) and caches it for a
  few seconds. When the telemetry cannot be read, `parse_attributes`
  reports a temperature of -400.0 and not locked.
- `oscillatord.mro50` – `Mro50Oscillator` (model `"mRO50"`) talks to an
  mRO50 over its serial port: reset, coarse and fine control, status,
  temperature and the internal temperature compensation parameters.
  Failures raise `Mro50Error`.
- `oscillatord.sa5x` – `Sa5xOscillator` (model `"sa5x"`) for SA5x devices,
  which run their own disciplining loop. It steps the TAU time constant
  through its phases, runs the latch procedure when the tuning is out of
  range, and reports a `Sa5xStatus` from `get_disciplining_status`. GNSS
  fix information is fed in with `push_gnss_info`.
- `oscillatord.io_test` – production check of the configurable SMA
  connectors (`configure_io`, `configure_ios`, `expect_timestamps`,
  `run_configurable_io_test`, `IoMode`).
- `oscillatord.write_eeprom` – production step writing EEPROM data
  (`scan_ocp_dir`, `valid_serial`, `build_commands`, `write_eeprom`,
  `EepromPaths`).

The serial-port models open `DevicesPath.mac_path` with pyserial unless a
port object is passed in.

## Using an oscillator

```python
from oscillatord.oscillator import DevicesPath, create_oscillator

with create_oscillator("dummy", DevicesPath()) as osc:
    ctrl = osc.get_ctrl()
    attributes = osc.parse_attributes()
    print(ctrl.dac, attributes.temperature, attributes.locked)
```

## Measuring phase error

```python
import os
from oscillatord.phasemeter import Phasemeter, PhasemeterStatus

fd = os.open("/dev/ptp0", os.O_RDWR)
with Phasemeter(fd) as meter:
    status, phase_error = meter.get_phase_error(timeout=5)
    if status is PhasemeterStatus.BOTH_TIMESTAMPS:
        print(f"phase error: {phase_error} ns")
os.close(fd)
```

`get_phase_error` waits for the next measurement and raises
`TimeoutError` if none arrives in time. Instead of a descriptor,
`Phasemeter` also accepts `read_event`, a callable with no arguments that
returns the next `ExttsEvent`.

## Production checks

Both tools take the name of the card under `/sys/class/timecard` and
exit with status 0 on success.

Check that each configurable SMA connector delivers external timestamps:

```
oscillatord-io-test ocp0
```

Write manufacturing data, the factory disciplining parameters and the
factory temperature table into the card's EEPROM by running the
`art_eeprom_format`, `art_disciplining_manager` and
`art_temperature_table_manager` tools, which must be installed. The
arguments are the card name, the coarse value and a serial number of
nine characters starting with `F`:

```
oscillatord-write-eeprom ocp0 4000 F00000000
```

## What the package does not do

There is no daemon here: nothing reads a configuration file, runs a
disciplining algorithm, talks to the GNSS receiver, sets the PTP clock
time, feeds NTP shared memory or serves monitoring requests. The package
provides the oscillator drivers, the phasemeter and the two production
tools; a service built on them has to supply the rest.