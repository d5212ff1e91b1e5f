# thermd

A thermal management engine for Linux machines. It keeps a registry of
thermal zones, sensors and cooling devices, runs a loop driven by a
wake-up pipe, a poll timer and kernel thermal uevents, can take thermal
policy over from the kernel, and decodes the adaptive policy held in the
firmware's GDDV data vault (PSVT, PPCC, APCT, APAT and APPC tables).

The package uses only the Python standard library and supports Python
3.10 and later.

## Modules

| Module | Purpose |
| --- | --- |
| `thermd.int3400` | `Int3400`: checks the INT3400 device's `available_uuids` and writes `current_uuid` |
| `thermd.uevent` | `KobjUevent`: a netlink kobject-uevent listener filtered on a device path prefix |
| `thermd.tables` | Table types `Psv`, `Psvt`, `Ppcc`, `Condition`, `CustomCondition`, `AdaptiveTarget`; enums `AdaptiveCondition`, `Comparison`, `Operation`; helpers `condition_name`, `comparison_name`, `deci_kelvin_to_celsius` |
| `thermd.gddv` | `GddvParser` and the object readers `read_object_type`, `read_uint64`, `read_string`; raises `GddvError` on malformed data |
| `thermd.conditions` | `ConditionEvaluator`: checks whether adaptive conditions are supported and whether they hold |
| `thermd.policy` | `AdaptivePolicy`: picks the matching condition set and the targets it selects |
| `thermd.messages` | `MessageId`, `ControlMode` and the fixed-size `Message` record |
| `thermd.platform` | `CpuId`, `read_cpu_id`, `decode_signature`, `is_supported_model`, `blocklisted`, `is_rt_kernel`, `check_cpu_id` |
| `thermd.engine` | `ThermalEngine` and `EngineError` |

## Decoding a data vault

```python
from pathlib import Path

from thermd.gddv import GddvError, GddvParser

data = Path("/sys/bus/platform/devices/INT3400:00/data_vault").read_bytes()

parser = GddvParser()
try:
    parser.parse(data)
except GddvError as exc:
    print("data vault rejected:", exc)
else:
    parser.merge_appc()
    default = parser.find_default_psvt()      # the "IETM.D0" table
    if default is not None:
        for psv in default.psvs:
            print(psv.source, "->", psv.target, psv.limit)
    print(parser.get_ppcc("TCPU"))
```

`parse()` accepts version 1 and 2 vaults, LZMA-compressed payloads and
nested repositories, and returns the offset where parsing stopped. The
parsed tables are collected in `parser.psvts`, `parser.ppccs`,
`parser.conditions`, `parser.custom_conditions` and `parser.targets`.
A PPCC table is kept only when it is long enough to carry the second
power limit. `find_psvt(name)` looks a table up ignoring case.

## Evaluating an adaptive policy

`ConditionEvaluator` is given what it cannot read by itself:

- `read_temperature`: a callable taking a sensor name and returning
  millidegrees Celsius, or `None` when there is no such sensor;
- `oem_root`: the directory holding the `odvpN` OEM variables;
- `power_status`: an object with `lid_is_closed()` and `on_battery()`;
  without it, lid and power-source conditions are unsupported;
- `tablet_mode`: a callable returning `True` in tablet mode;
- `clock`: a time source, `time.time` by default.

```python
from thermd.conditions import ConditionEvaluator
from thermd.policy import AdaptivePolicy

temperatures = {"TCPU": 55000}
evaluator = ConditionEvaluator(temperatures.get, oem_root="/sys/bus/platform/devices/INT3400:00")

policy = AdaptivePolicy(parser, evaluator)
for target in policy.select_targets():
    print(target.participant, target.code, target.argument)
```

When some conditions are unsupported and no condition set matches,
`AdaptivePolicy` falls back to the target chosen by
`find_aggressive_target()` (the one with the highest `PL1MAX`
argument); if there is none it raises `ValueError`. `select_targets()`
returns an empty list when the matching set has not changed.

## Running the engine

Zones, sensors and cooling devices are objects supplied by the caller
and registered with `add_zone`, `add_sensor` and `add_cdev`. A zone has
`zone_type` and `active` attributes and the methods
`notify_temperature(event_type, data)`, `async_capable()`,
`update_preference()`, `update_max_temperature(temp)` and
`update_psv_temperature(temp)`; a sensor has `sensor_type`; a cooling
device has `cdev_type` and `cdev_alias`.

```python
import threading

from thermd.engine import ThermalEngine

with ThermalEngine("42A441D6-AE6A-462b-A84B-4A8CE79027D3", "/") as engine:
    engine.add_zone(my_zone)
    worker = threading.Thread(target=engine.run)
    worker.start()
    ...
    engine.terminate()
    worker.join()
```

`run()` waits on the wake-up pipe and, unless `poll_interval_sec` is
set or `use_uevent` is false, on a thermal uevent socket. It notifies
every zone when the poll interval elapses or a thermal uevent arrives
(debounced to one per three seconds), and handles queued messages
(`send_message`, `poll_enable`, `fast_poll_enable` and their disable
counterparts) until a terminate message is processed. `preference_reader`
may be set to a callable consulted on `PREF_CHANGED`; returning `None`
disables zone notification.

With `control_mode` set to `ControlMode.EXCLUSIVE`,
`takeover_thermal_control()` writes the engine UUID through `Int3400`,
switches each kernel thermal zone's policy to `user_space` and enables
the INT3400 zone; `terminate()` calls `giveup_thermal_control()`, which
restores the saved policies and disables the INT3400 zone.

Zones can be adjusted at run time with `set_user_max_temp`,
`set_user_psv_temp`, `set_zone_status`, `get_zone_status` and
`delete_zone`. A request naming an unknown zone, or a set point that
does not start with a digit, raises `EngineError`.

## What the package does not do

- It does not discover zones, sensors or cooling devices from sysfs, and
  has no zone, sensor or cooling-device implementations of its own; the
  engine drives only the objects it is given.
- It does not act on selected adaptive targets: `AdaptivePolicy` returns
  them, and applying power limits or trip points is left to the caller.
- It reads no XML configuration and has no command-line program or
  D-Bus interface.

## Tests

The tests use pytest and are installed with the `test` extra.