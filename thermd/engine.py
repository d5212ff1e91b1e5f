"""The thermal engine: zone, sensor and cooling-device registry and its event loop."""

from __future__ import annotations

import logging
import os
import re
import selectors
import struct
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from thermd.int3400 import Int3400
from thermd.messages import PACKED_SIZE, ControlMode, Message, MessageId
from thermd.uevent import KobjUevent

log = logging.getLogger(__name__)

DEF_POLL_INTERVAL = 4000
FAST_POLL_INTERVAL = 1000
THZ_NOTIFY_DEBOUNCE_INTERVAL = 3
THERMAL_UEVENT_PATH = "/devices/virtual/thermal/thermal_zone"

_THERMAL_CLASS = "sys/class/thermal"
_ZONE_PREFIX = "thermal_zone"
_PARTIAL_PREFIX = "pch_"
_LEADING_DIGITS = re.compile(r"\d+")
_SENSOR_ID = struct.Struct("<I")
_ZONE_NOTIFY = struct.Struct("<ii")


class EngineError(Exception):
    """Raised when a request to the engine cannot be carried out."""


class Zone(Protocol):
    zone_type: str
    active: bool

    def notify_temperature(self, event_type: int, data: int) -> Any: ...

    def async_capable(self) -> bool: ...

    def update_preference(self) -> Any: ...

    def update_max_temperature(self, temp: int) -> Any: ...

    def update_psv_temperature(self, temp: int) -> Any: ...


class Sensor(Protocol):
    sensor_type: str


class CoolingDevice(Protocol):
    cdev_type: str
    cdev_alias: str


def _partial_match(wanted: str, candidate: str) -> bool:
    return wanted.startswith(_PARTIAL_PREFIX) and candidate.startswith(_PARTIAL_PREFIX)


def _zone_index(name: str) -> int:
    match = _LEADING_DIGITS.match(name[len(_ZONE_PREFIX):])
    return int(match.group()) if match else 0


class ThermalEngine:
    """Keeps the thermal objects and runs the loop that drives them."""

    def __init__(self, uuid: str, sysfs_root: str | Path = "/") -> None:
        self.uuid = uuid
        self.sysfs_root = Path(sysfs_root)
        self.zones: list[Zone] = []
        self.sensors: list[Sensor] = []
        self.cdevs: list[CoolingDevice] = []

        self.control_mode = ControlMode.COMPLEMENTRY
        self.poll_interval_sec = 0
        self.poll_timeout_msec = -1
        self.poll_sensor_mask = 0
        self.fast_poll_sensor_mask = 0
        self.saved_poll_interval = 0
        self.state_update_interval = DEF_POLL_INTERVAL // 1000
        self.status = True
        self.preference = 0
        self.preference_reader: Optional[Callable[[], Optional[int]]] = None
        self.zone_preferences: list[str] = []
        self.use_uevent = True
        self.clock: Callable[[], float] = time.monotonic
        self.terminated = False

        self._lock = threading.RLock()
        self._uevent: KobjUevent | None = None
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)

    def __enter__(self) -> "ThermalEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._close()

    def _close(self) -> None:
        for fd in (self._read_fd, self._write_fd):
            try:
                os.close(fd)
            except OSError:
                pass
        if self._uevent is not None:
            self._uevent.close()
            self._uevent = None

    # Messages

    def send_message(self, msg_id: MessageId, payload: bytes = b"") -> None:
        """Queue a message for the engine loop."""
        try:
            os.write(self._write_fd, Message(msg_id, payload).pack())
        except OSError:
            log.warning("Write to pipe failed")

    def process_message(self, message: Message) -> bool:
        """Handle one message; return False when the loop must stop."""
        log.debug("Received message %d", message.msg_id)
        kind = message.msg_id
        if kind == MessageId.TERMINATE:
            log.info("Terminating ...")
            self.terminated = True
            return False
        if kind == MessageId.PREF_CHANGED:
            self._process_pref_change()
        elif kind == MessageId.THERMAL_ZONE_NOTIFY:
            if not self.status:
                log.info("Thermal Daemon is disabled")
            else:
                self._thermal_zone_change(message.payload)
        elif kind == MessageId.RELOAD_ZONES:
            self._reload_zones()
        elif kind == MessageId.POLL_ENABLE:
            if not self.poll_interval_sec:
                self._poll_enable_disable(True, message.payload)
        elif kind == MessageId.POLL_DISABLE:
            if not self.poll_interval_sec:
                self._poll_enable_disable(False, message.payload)
        elif kind == MessageId.FAST_POLL_ENABLE:
            self._fast_poll_enable_disable(True, message.payload)
        elif kind == MessageId.FAST_POLL_DISABLE:
            self._fast_poll_enable_disable(False, message.payload)
        return True

    @staticmethod
    def _sensor_bit(payload: bytes) -> tuple[int, int]:
        (sensor_id,) = _SENSOR_ID.unpack(payload[:4].ljust(4, b"\0"))
        return sensor_id, (1 << (sensor_id % 32)) & 0xFFFFFFFF

    def _poll_enable_disable(self, enable: bool, payload: bytes) -> None:
        sensor_id, bit = self._sensor_bit(payload)
        if enable:
            self.poll_sensor_mask |= bit
            self.poll_timeout_msec = DEF_POLL_INTERVAL
            log.debug("polling enabled via %u", sensor_id)
        else:
            self.poll_sensor_mask &= ~bit
            if not self.poll_sensor_mask:
                self.poll_timeout_msec = -1
                log.debug("polling last disabled via %u", sensor_id)

    def _fast_poll_enable_disable(self, enable: bool, payload: bytes) -> None:
        sensor_id, bit = self._sensor_bit(payload)
        if enable:
            self.fast_poll_sensor_mask |= bit
            if not self.saved_poll_interval:
                self.saved_poll_interval = self.poll_timeout_msec
            self.poll_timeout_msec = FAST_POLL_INTERVAL
            log.debug("fast polling enabled via %u", sensor_id)
        else:
            self.fast_poll_sensor_mask &= ~bit
            if not self.fast_poll_sensor_mask:
                if self.saved_poll_interval:
                    self.poll_timeout_msec = self.saved_poll_interval
                log.debug("fast polling last disabled via %u", sensor_id)

    def _thermal_zone_change(self, payload: bytes) -> None:
        event_type, data = _ZONE_NOTIFY.unpack(payload[:8].ljust(8, b"\0"))
        for zone in self.zones:
            if zone.active:
                zone.notify_temperature(event_type, data)
            else:
                log.debug("zone is not active")

    def _process_pref_change(self) -> None:
        new_pref = self.preference_reader() if self.preference_reader else self.preference
        if new_pref is None:
            self.status = False
            return
        self.status = True
        if new_pref != self.preference:
            log.info("Preference changed")
        self.preference = new_pref
        for zone in self.zones:
            zone.update_preference()
        if self.control_mode == ControlMode.EXCLUSIVE:
            log.info("Control is taken over from kernel")
            self.takeover_thermal_control()

    def _reload_zones(self) -> None:
        log.info("Reloading zones")
        with self._lock:
            self.zones.clear()
            self.zones.extend(self._read_thermal_zones())
        if not self.zones:
            log.error("No thermal sensors found")

    def _read_thermal_zones(self) -> list[Zone]:
        return []

    def _update_engine_state(self) -> None:
        pass

    def _workarounds(self) -> None:
        pass

    def poll_enable(self, sensor_id: int) -> None:
        """Ask the loop to poll on behalf of a sensor."""
        self.send_message(MessageId.POLL_ENABLE, _SENSOR_ID.pack(sensor_id & 0xFFFFFFFF))

    def poll_disable(self, sensor_id: int) -> None:
        """Withdraw a sensor's polling request."""
        self.send_message(MessageId.POLL_DISABLE, _SENSOR_ID.pack(sensor_id & 0xFFFFFFFF))

    def fast_poll_enable(self, sensor_id: int) -> None:
        """Ask the loop to poll every second on behalf of a sensor."""
        self.send_message(MessageId.FAST_POLL_ENABLE, _SENSOR_ID.pack(sensor_id & 0xFFFFFFFF))

    def fast_poll_disable(self, sensor_id: int) -> None:
        """Withdraw a sensor's fast-polling request."""
        self.send_message(MessageId.FAST_POLL_DISABLE, _SENSOR_ID.pack(sensor_id & 0xFFFFFFFF))

    # Registry

    def add_zone(self, zone: Zone) -> None:
        with self._lock:
            self.zones.append(zone)

    def add_sensor(self, sensor: Sensor) -> None:
        with self._lock:
            self.sensors.append(sensor)

    def add_cdev(self, cdev: CoolingDevice) -> None:
        with self._lock:
            self.cdevs.append(cdev)

    def search_zone(self, name: str) -> Zone | None:
        """Find a zone by type; any 'pch_' zone matches a 'pch_' name."""
        for zone in self.zones:
            if zone.zone_type == name:
                return zone
            if _partial_match(name, zone.zone_type):
                log.info("Matching partial zone %s %s", name, zone.zone_type)
                return zone
        return None

    def search_cdev(self, name: str) -> CoolingDevice | None:
        """Find a cooling device by type or alias."""
        for cdev in self.cdevs:
            if name in (cdev.cdev_type, cdev.cdev_alias):
                return cdev
        return None

    def search_sensor(self, name: str) -> Sensor | None:
        """Find a sensor by type; any 'pch_' sensor matches a 'pch_' name."""
        for sensor in self.sensors:
            if sensor.sensor_type == name:
                return sensor
            if _partial_match(name, sensor.sensor_type):
                log.info("Matching partial %s %s", name, sensor.sensor_type)
                return sensor
        return None

    def get_zone(self, zone_type: str) -> Zone | None:
        """Find a zone by its exact type."""
        return next((zone for zone in self.zones if zone.zone_type == zone_type), None)

    def _user_zone(self, zone_type: str, set_point: str) -> tuple[Zone, int]:
        if not set_point or not set_point[0].isdigit():
            log.warning("Invalid set point %r", set_point)
            raise EngineError(f"invalid set point {set_point!r}")
        zone = self.get_zone(zone_type)
        if zone is None:
            log.warning("Invalid zone %r", zone_type)
            raise EngineError(f"no zone of type {zone_type!r}")
        match = _LEADING_DIGITS.match(set_point)
        return zone, int(match.group()) if match else 0

    def set_user_max_temp(self, zone_type: str, set_point: str) -> Any:
        """Set a zone's maximum temperature from a user-supplied string."""
        with self._lock:
            zone, temp = self._user_zone(zone_type, set_point)
            return zone.update_max_temperature(temp)

    def set_user_psv_temp(self, zone_type: str, set_point: str) -> Any:
        """Set a zone's passive temperature from a user-supplied string."""
        with self._lock:
            zone, temp = self._user_zone(zone_type, set_point)
            return zone.update_psv_temperature(temp)

    def set_zone_status(self, name: str, active: bool) -> None:
        """Activate or deactivate a zone."""
        with self._lock:
            zone = self.get_zone(name)
            if zone is None:
                raise EngineError(f"no zone of type {name!r}")
            log.info("Zone Set status %d", bool(active))
            zone.active = bool(active)

    def get_zone_status(self, name: str) -> bool:
        """Return whether a zone is active."""
        with self._lock:
            zone = self.get_zone(name)
            if zone is None:
                raise EngineError(f"no zone of type {name!r}")
            return bool(zone.active)

    def delete_zone(self, name: str) -> None:
        """Remove the first zone of this type, if there is one."""
        with self._lock:
            for position, zone in enumerate(self.zones):
                if zone.zone_type == name:
                    del self.zones[position]
                    break

    # Kernel thermal control

    def _thermal_zone_dirs(self) -> list[Path]:
        base = self.sysfs_root / _THERMAL_CLASS
        try:
            entries = [p for p in base.iterdir() if p.name.startswith(_ZONE_PREFIX)]
        except OSError:
            return []
        return sorted(entries, key=lambda p: _zone_index(p.name))

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text().rstrip()
        except OSError:
            return None

    @staticmethod
    def _write(path: Path, value: str) -> None:
        try:
            path.write_text(value)
        except OSError:
            log.debug("Unable to write %s", path)

    def takeover_thermal_control(self) -> None:
        """Switch kernel zones to user-space policy and enable INT3400."""
        log.info("Taking over thermal control")
        Int3400(self.uuid, self.sysfs_root).set_default_uuid()
        for zone_dir in self._thermal_zone_dirs():
            policy = zone_dir / "policy"
            if policy.exists():
                current = self._read(policy)
                if current is not None:
                    self.zone_preferences.append(current)
                    self._write(policy, "user_space")
            type_file = zone_dir / "type"
            if type_file.exists():
                thermal_type = self._read(type_file)
                log.info("Thermal zone of type %s", thermal_type)
                if thermal_type == "INT3400":
                    self._write(zone_dir / "mode", "enabled")

    def giveup_thermal_control(self) -> None:
        """Restore the kernel policies saved when control was taken over."""
        if self.control_mode != ControlMode.EXCLUSIVE or not self.zone_preferences:
            return
        log.info("Giving up thermal control")
        saved = iter(self.zone_preferences)
        for zone_dir in self._thermal_zone_dirs():
            policy = zone_dir / "policy"
            if policy.exists():
                previous = next(saved, None)
                if previous is not None:
                    self._write(policy, previous)
            type_file = zone_dir / "type"
            if type_file.exists() and self._read(type_file) == "INT3400":
                self._write(zone_dir / "mode", "disabled")

    # Loop

    def _prepare(self) -> None:
        self.poll_timeout_msec = -1
        if self.poll_interval_sec:
            log.info("Polling mode is enabled: %d", self.poll_interval_sec)
            self.poll_timeout_msec = self.poll_interval_sec * 1000
        else:
            if any(z.active and not z.async_capable() for z in self.zones):
                log.info("Polling will be enabled as some sensors can't notify asynchronously")
                self.poll_timeout_msec = DEF_POLL_INTERVAL
            else:
                log.info("Proceed without polling mode!")
            if self.use_uevent:
                uevent = KobjUevent()
                try:
                    uevent.open()
                except OSError:
                    log.warning("Invalid kobj_uevent handle")
                else:
                    uevent.register_dev_path(THERMAL_UEVENT_PATH)
                    self._uevent = uevent
        if self.control_mode == ControlMode.EXCLUSIVE:
            log.info("Control is taken over from kernel")
            self.takeover_thermal_control()

    def _notify_all_zones(self) -> None:
        with self._lock:
            for zone in self.zones:
                zone.notify_temperature(0, 0)

    def _read_message(self) -> Message | None:
        try:
            data = os.read(self._read_fd, PACKED_SIZE)
        except BlockingIOError:
            return None
        except OSError:
            log.warning("read on wakeup fd failed")
            return None
        if len(data) != PACKED_SIZE:
            log.warning("short read on wakeup fd")
            return None
        try:
            return Message.unpack(data)
        except ValueError as exc:
            log.warning("Invalid message: %s", exc)
            return None

    def run(self) -> None:
        """Run the engine loop until a terminate message arrives."""
        self._prepare()
        # Fixed at start, truncating toward zero: "no timeout" becomes 0.
        poll_timeout_sec = int(self.poll_timeout_msec / 1000)
        last_temp_ind = last_uevent = last_update = 0.0
        with selectors.DefaultSelector() as selector:
            selector.register(self._read_fd, selectors.EVENT_READ, "wakeup")
            if self._uevent is not None and self._uevent._sock is not None:
                selector.register(self._uevent._sock, selectors.EVENT_READ, "uevent")
            log.info("engine thread begin")
            while not self.terminated:
                timeout = None if self.poll_timeout_msec < 0 else self.poll_timeout_msec / 1000
                ready = {key.data for key, _ in selector.select(timeout)}
                now = self.clock()

                if not ready or now - last_temp_ind >= poll_timeout_sec:
                    if self.status:
                        self._notify_all_zones()
                        last_temp_ind = now
                    else:
                        log.info("Thermal Daemon is disabled")

                if "uevent" in ready and self._uevent is not None:
                    if self._uevent.check_for_event():
                        log.debug("kobj uevent for thermal")
                        if now - last_uevent >= THZ_NOTIFY_DEBOUNCE_INTERVAL:
                            self._notify_all_zones()
                        else:
                            log.debug("IGNORE THZ kevent")
                        last_uevent = now

                if "wakeup" in ready:
                    message = self._read_message()
                    if message is not None and not self.process_message(message):
                        log.debug("Terminating thread..")

                if now - last_update >= self.state_update_interval:
                    with self._lock:
                        self._update_engine_state()
                    last_update = now

                self._workarounds()
        if self._uevent is not None:
            self._uevent.close()
            self._uevent = None
        log.debug("engine thread end")

    def terminate(self) -> None:
        """Stop the loop and hand thermal control back to the kernel."""
        self.send_message(MessageId.TERMINATE)
        log.info("terminating on user request ..")
        self.giveup_thermal_control()