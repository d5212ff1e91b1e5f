import struct
import threading
from dataclasses import dataclass, field

import pytest

from thermd.engine import DEF_POLL_INTERVAL, EngineError, ThermalEngine
from thermd.messages import ControlMode, Message, MessageId


@dataclass
class FakeZone:
    zone_type: str
    active: bool = True
    async_ok: bool = True
    notifications: list = field(default_factory=list)
    max_temps: list = field(default_factory=list)
    psv_temps: list = field(default_factory=list)
    pref_updates: int = 0

    def notify_temperature(self, event_type, data):
        self.notifications.append((event_type, data))

    def async_capable(self):
        return self.async_ok

    def update_preference(self):
        self.pref_updates += 1

    def update_max_temperature(self, temp):
        self.max_temps.append(temp)
        return 0

    def update_psv_temperature(self, temp):
        self.psv_temps.append(temp)
        return 0


@dataclass
class FakeSensor:
    sensor_type: str


@dataclass
class FakeCdev:
    cdev_type: str
    cdev_alias: str = ""


@pytest.fixture
def engine(tmp_path):
    with ThermalEngine("uuid-under-test", tmp_path) as eng:
        eng.use_uevent = False
        yield eng


def sensor_payload(sensor_id):
    return struct.pack("<I", sensor_id)


def test_search_zone_exact_and_partial(engine):
    cpu = FakeZone("cpu")
    pch = FakeZone("pch_skylake")
    engine.add_zone(cpu)
    engine.add_zone(pch)
    assert engine.search_zone("cpu") is cpu
    assert engine.search_zone("pch_cannonlake") is pch
    assert engine.search_zone("gpu") is None


def test_get_zone_needs_exact_type(engine):
    pch = FakeZone("pch_skylake")
    engine.add_zone(pch)
    assert engine.get_zone("pch_cannonlake") is None
    assert engine.get_zone("pch_skylake") is pch


def test_search_cdev_by_type_or_alias(engine):
    rapl = FakeCdev("rapl_controller", "B0D4")
    engine.add_cdev(rapl)
    assert engine.search_cdev("rapl_controller") is rapl
    assert engine.search_cdev("B0D4") is rapl
    assert engine.search_cdev("LCD") is None


def test_search_sensor_partial(engine):
    sensor = FakeSensor("pch_skylake")
    engine.add_sensor(sensor)
    assert engine.search_sensor("pch_wildcat") is sensor
    assert engine.search_sensor("x86_pkg_temp") is None


def test_set_user_max_temp(engine):
    zone = FakeZone("cpu")
    engine.add_zone(zone)
    engine.set_user_max_temp("cpu", "85000")
    assert zone.max_temps == [85000]


def test_set_user_psv_temp_reads_leading_digits(engine):
    zone = FakeZone("cpu")
    engine.add_zone(zone)
    engine.set_user_psv_temp("cpu", "70000xyz")
    assert zone.psv_temps == [70000]


def test_set_user_temp_rejects_invalid(engine):
    engine.add_zone(FakeZone("cpu"))
    with pytest.raises(EngineError):
        engine.set_user_max_temp("cpu", "abc")
    with pytest.raises(EngineError):
        engine.set_user_psv_temp("cpu", "")
    with pytest.raises(EngineError):
        engine.set_user_max_temp("gpu", "50000")


def test_zone_status_round_trip(engine):
    engine.add_zone(FakeZone("cpu", active=False))
    engine.set_zone_status("cpu", True)
    assert engine.get_zone_status("cpu") is True
    engine.set_zone_status("cpu", False)
    assert engine.get_zone_status("cpu") is False
    with pytest.raises(EngineError):
        engine.get_zone_status("gpu")
    with pytest.raises(EngineError):
        engine.set_zone_status("gpu", True)


def test_delete_zone_removes_first_match(engine):
    first = FakeZone("cpu")
    second = FakeZone("cpu")
    engine.add_zone(first)
    engine.add_zone(second)
    engine.delete_zone("cpu")
    assert engine.zones == [second]
    engine.delete_zone("missing")
    assert engine.zones == [second]


def test_poll_enable_and_disable(engine):
    engine.process_message(Message(MessageId.POLL_ENABLE, sensor_payload(3)))
    assert engine.poll_sensor_mask == 1 << 3
    assert engine.poll_timeout_msec == DEF_POLL_INTERVAL
    engine.process_message(Message(MessageId.POLL_ENABLE, sensor_payload(1)))
    engine.process_message(Message(MessageId.POLL_DISABLE, sensor_payload(3)))
    assert engine.poll_timeout_msec == DEF_POLL_INTERVAL
    engine.process_message(Message(MessageId.POLL_DISABLE, sensor_payload(1)))
    assert engine.poll_sensor_mask == 0
    assert engine.poll_timeout_msec == -1


def test_poll_messages_ignored_in_polling_mode(engine):
    engine.poll_interval_sec = 2
    engine.process_message(Message(MessageId.POLL_ENABLE, sensor_payload(3)))
    assert engine.poll_sensor_mask == 0


def test_fast_poll_restores_saved_interval(engine):
    engine.poll_timeout_msec = DEF_POLL_INTERVAL
    engine.process_message(Message(MessageId.FAST_POLL_ENABLE, sensor_payload(2)))
    assert engine.poll_timeout_msec == 1000
    assert engine.saved_poll_interval == DEF_POLL_INTERVAL
    engine.process_message(Message(MessageId.FAST_POLL_DISABLE, sensor_payload(2)))
    assert engine.fast_poll_sensor_mask == 0
    assert engine.poll_timeout_msec == DEF_POLL_INTERVAL


def test_terminate_message_stops(engine):
    assert engine.process_message(Message(MessageId.WAKEUP)) is True
    assert engine.process_message(Message(MessageId.TERMINATE)) is False
    assert engine.terminated is True


def test_zone_notify_reaches_active_zones_only(engine):
    active = FakeZone("cpu")
    idle = FakeZone("gpu", active=False)
    engine.add_zone(active)
    engine.add_zone(idle)
    payload = struct.pack("<ii", 5, 42000)
    engine.process_message(Message(MessageId.THERMAL_ZONE_NOTIFY, payload))
    assert active.notifications == [(5, 42000)]
    assert idle.notifications == []

    engine.status = False
    engine.process_message(Message(MessageId.THERMAL_ZONE_NOTIFY, payload))
    assert active.notifications == [(5, 42000)]


def test_preference_change(engine):
    zone = FakeZone("cpu")
    engine.add_zone(zone)
    engine.preference_reader = lambda: 2
    engine.process_message(Message(MessageId.PREF_CHANGED))
    assert engine.preference == 2
    assert zone.pref_updates == 1
    assert engine.status is True

    engine.preference_reader = lambda: None
    engine.process_message(Message(MessageId.PREF_CHANGED))
    assert engine.status is False
    assert zone.pref_updates == 1


def _make_thermal_tree(root):
    base = root / "sys" / "class" / "thermal"
    zone0 = base / "thermal_zone0"
    zone1 = base / "thermal_zone1"
    zone0.mkdir(parents=True)
    zone1.mkdir(parents=True)
    (zone0 / "policy").write_text("step_wise\n")
    (zone0 / "type").write_text("acpitz\n")
    (zone1 / "policy").write_text("fair_share\n")
    (zone1 / "type").write_text("INT3400\n")
    (zone1 / "mode").write_text("disabled\n")
    return zone0, zone1


def test_takeover_and_giveup(engine, tmp_path):
    zone0, zone1 = _make_thermal_tree(tmp_path)
    engine.control_mode = ControlMode.EXCLUSIVE
    engine.takeover_thermal_control()
    assert engine.zone_preferences == ["step_wise", "fair_share"]
    assert (zone0 / "policy").read_text() == "user_space"
    assert (zone1 / "policy").read_text() == "user_space"
    assert (zone1 / "mode").read_text() == "enabled"

    engine.giveup_thermal_control()
    assert (zone0 / "policy").read_text() == "step_wise"
    assert (zone1 / "policy").read_text() == "fair_share"
    assert (zone1 / "mode").read_text() == "disabled"


def test_giveup_does_nothing_when_complementary(engine, tmp_path):
    zone0, zone1 = _make_thermal_tree(tmp_path)
    engine.takeover_thermal_control()
    assert engine.zone_preferences == ["step_wise", "fair_share"]
    engine.control_mode = ControlMode.COMPLEMENTRY
    engine.giveup_thermal_control()
    assert engine.zone_preferences == ["step_wise", "fair_share"]
    assert (zone0 / "policy").read_text() == "user_space"
    assert (zone1 / "policy").read_text() == "user_space"
    assert (zone1 / "mode").read_text() == "enabled"


def test_run_processes_messages_until_terminate(engine):
    zone = FakeZone("cpu")
    engine.add_zone(zone)
    engine.clock = lambda: 1000.0
    engine.fast_poll_enable(4)
    engine.terminate()
    worker = threading.Thread(target=engine.run)
    worker.start()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert engine.terminated is True
    assert engine.fast_poll_sensor_mask == 1 << 4
    assert zone.notifications and zone.notifications[0] == (0, 0)


def test_run_enables_polling_for_non_async_zone(engine):
    engine.add_zone(FakeZone("cpu", async_ok=False))
    engine.clock = lambda: 1000.0
    engine.terminate()
    worker = threading.Thread(target=engine.run)
    worker.start()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert engine.poll_timeout_msec == DEF_POLL_INTERVAL