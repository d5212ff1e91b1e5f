import struct

import pytest

from thermd.gddv import (
    GddvError,
    GddvParser,
    read_object_type,
    read_string,
    read_uint64,
)
from thermd.tables import AdaptiveTarget, Condition, CustomCondition


def _u(value):
    return struct.pack("<IQ", 4, value)


def _s(text):
    raw = text.encode() + b"\0"
    return struct.pack("<IQ", 8, len(raw)) + raw


_PAD = b"\0" * 12


def _header(major, flags=0, payload_size=0):
    return (
        struct.pack("<HHI", 0x1FE5, 148, major << 24)
        + struct.pack("<I", flags)
        + b"\0" * (32 + 64 + 32)
        + struct.pack("<II", payload_size, 0)
    )


def _key(path, value):
    raw = path.encode() + b"\0"
    return (
        struct.pack("<II", 0, len(raw)) + raw + struct.pack("<II", 0, len(value)) + value
    )


def _vault_v1(body):
    return _header(1) + body + b"\0" * 148


def _vault_v2(body):
    return _header(2, payload_size=len(body) + 296) + body


def _item(path, value):
    return struct.pack("<H", 0xA0D8) + _key(path, value)


def _psv_entry(source, target, temp, limit):
    return (
        _s(source) + _s(target) + _u(1) + _u(20) + _u(temp) + _u(0) + _u(65536)
        + limit + _u(0) + _u(0) + _u(0) + _PAD
    )


def _psvt_table(*entries):
    return _u(2) + b"".join(entries)


def test_read_uint64_returns_value_and_next_offset():
    data = _u(42)
    assert read_uint64(data, 0) == (42, 12)


def test_read_uint64_rejects_string_object():
    with pytest.raises(GddvError):
        read_uint64(_s("abc"), 0)


def test_read_string_strips_terminator():
    data = _s("TCPU") + _u(1)
    text, offset = read_string(data, 0)
    assert text == "TCPU"
    assert offset == len(_s("TCPU"))


def test_read_object_type():
    assert read_object_type(_s("x"), 0) == 8
    assert read_object_type(_u(0), 0) == 4


def test_read_string_past_end_raises():
    data = struct.pack("<IQ", 8, 100) + b"abc"
    with pytest.raises(GddvError):
        read_string(data, 0)


def test_parse_apat():
    parser = GddvParser()
    data = _u(2) + _u(7) + _s("tgt") + _s("\\_SB.TCPU") + _u(0) + _s("PL1MAX") + _s("15000")
    parser.parse_apat(data)
    assert parser.targets == [
        AdaptiveTarget(
            target_id=7, name="tgt", participant="\\_SB.TCPU", domain=0,
            code="PL1MAX", argument="15000",
        )
    ]


def test_parse_apat_wrong_version():
    with pytest.raises(GddvError):
        GddvParser().parse_apat(_u(1))


def test_parse_appc_ignores_malformed():
    parser = GddvParser()
    parser.parse_appc(_s("x"))
    parser.parse_appc(_u(3) + _u(1))
    assert parser.custom_conditions == []


def test_parse_appc_entries():
    parser = GddvParser()
    parser.parse_appc(_u(1) + _u(19) + _s("n") + _s("dev") + _u(0) + _u(17))
    assert parser.custom_conditions == [
        CustomCondition(condition=19, name="n", participant="dev", domain=0, type=17)
    ]


def test_parse_apct_v2_and():
    parser = GddvParser()
    data = (
        _u(2) + _u(3) + _u(2)
        + _u(17) + _s("TCPU") + _PAD + _u(3) + _u(3000) + _u(1)
        + _u(8) + _s("") + _PAD + _u(1) + _u(0)
    )
    parser.parse_apct(data)
    assert len(parser.conditions) == 1
    first, second = parser.conditions[0]
    assert first == Condition(
        condition=17, device="TCPU", comparison=3, argument=3000, operation=1, target=3
    )
    assert second.condition == 8
    assert second.operation == 0
    assert second.target == 3


def test_parse_apct_v2_for_consumes_slot():
    parser = GddvParser()
    data = (
        _u(2) + _u(4) + _u(2)
        + _u(10) + _s("") + _PAD + _u(1) + _u(1) + _u(2)
        + _PAD + _s("Time") + _PAD + _u(3) + _u(30) + _PAD
    )
    parser.parse_apct(data)
    assert len(parser.conditions[0]) == 1
    cond = parser.conditions[0][0]
    assert (cond.operation, cond.time_comparison, cond.time) == (2, 3, 30)


def test_parse_apct_v1_has_ten_conditions():
    parser = GddvParser()
    body = b"".join(_u(1) + _u(1) + _u(0) + _u(1) for _ in range(9))
    data = _u(1) + _u(5) + body + _u(1) + _u(1) + _u(0)
    parser.parse_apct(data)
    assert len(parser.conditions) == 1
    assert len(parser.conditions[0]) == 10
    assert all(cond.target == 5 for cond in parser.conditions[0])
    assert parser.conditions[0][-1].operation == 0


def test_parse_apct_invalid_target():
    with pytest.raises(GddvError):
        GddvParser().parse_apct(_u(2) + _u(0xFFFFFFFF) + _u(0))


def test_parse_apct_unsupported_version():
    with pytest.raises(GddvError):
        GddvParser().parse_apct(_u(3))


def test_parse_apct_truncated_v1():
    with pytest.raises(GddvError):
        GddvParser().parse_apct(_u(1) + _u(5) + _u(1) + _u(1) + _u(0) + _u(1))


def _ppcc(length, values):
    buf = bytearray(length)
    for offset, value in values.items():
        struct.pack_into("<Q", buf, offset, value)
    return bytes(buf)


def test_parse_ppcc_full():
    parser = GddvParser()
    data = _ppcc(156, {28: 1000, 40: 15000, 52: 28000, 64: 32000, 76: 250,
                       100: 2000, 112: 25000, 124: 1, 136: 2, 148: 100})
    parser.parse_ppcc("TCPU", data)
    ppcc = parser.get_ppcc("TCPU")
    assert ppcc.power_limit_min == 1000
    assert ppcc.power_limit_max == 15000
    assert ppcc.step_size == 250
    assert ppcc.power_limit_1_max == 25000
    assert ppcc.step_1_size == 100
    assert ppcc.limit_1_valid
    assert parser.get_ppcc("other") is None


def test_parse_ppcc_limit_1_invalid_when_zero():
    parser = GddvParser()
    parser.parse_ppcc("TCPU", _ppcc(156, {100: 2000}))
    assert parser.get_ppcc("TCPU").limit_1_valid is False


def test_parse_ppcc_short_not_stored():
    parser = GddvParser()
    parser.parse_ppcc("TCPU", _ppcc(100, {40: 15000}))
    assert parser.ppccs == []


def test_parse_psvt_default_name_and_limits():
    parser = GddvParser()
    data = _psvt_table(
        _psv_entry("\\_SB.TCPU", "\\_SB.TCPU", 3482, _s("MAX")),
        _psv_entry("\\_SB.TCPU", "\\_SB.TCPU", 3532, _u(12)),
    )
    parser.parse_psvt(None, data)
    psvt = parser.find_psvt("default")
    assert psvt.name == "Default"
    assert [psv.limit for psv in psvt.psvs] == ["MAX", "12"]
    assert [psv.temp for psv in psvt.psvs] == [3482, 3532]
    assert psvt.psvs[0].sample_period == 20


def test_parse_psvt_wrong_version():
    with pytest.raises(GddvError):
        GddvParser().parse_psvt("x", _u(3))


def test_merge_appc_overrides_condition():
    parser = GddvParser()
    parser.conditions = [[Condition(condition=19, target=1), Condition(condition=8)]]
    parser.custom_conditions = [CustomCondition(condition=19, participant="dev", type=17)]
    parser.merge_appc()
    assert parser.conditions[0][0].condition == 17
    assert parser.conditions[0][0].device == "dev"
    assert parser.conditions[0][1].condition == 8


def test_find_default_psvt_absent():
    parser = GddvParser()
    parser.parse_psvt("other", _psvt_table())
    assert parser.find_default_psvt() is None
    assert parser.find_psvt("OTHER").name == "other"


def test_parse_v1_vault():
    parser = GddvParser()
    table = _psvt_table(_psv_entry("A", "B", 3000, _u(1)))
    parser.parse(_vault_v1(_key("shared/tables/psvt/IETM.D0", table)))
    psvt = parser.find_default_psvt()
    assert psvt.name == "IETM.D0"
    assert psvt.psvs[0].source == "A"


def test_parse_ignores_empty_key():
    parser = GddvParser()
    parser.parse(_vault_v1(_key("///", b"xyz")))
    assert parser.targets == [] and parser.psvts == []


def test_parse_bad_signature():
    data = bytearray(_vault_v1(b""))
    struct.pack_into("<H", data, 0, 0x1234)
    with pytest.raises(GddvError):
        GddvParser().parse(bytes(data))


def test_parse_too_short():
    with pytest.raises(GddvError):
        GddvParser().parse(_header(1)[:100])


def test_parse_unknown_item_signature():
    with pytest.raises(GddvError):
        GddvParser().parse(_vault_v2(struct.pack("<H", 0x1111) + b"\0" * 20))


def test_parse_corrupt_compressed_payload():
    data = _header(2, flags=0x40000000) + b"\x5d\0\0\x10\0" + struct.pack("<Q", 10) + b"junk" * 8
    with pytest.raises(GddvError):
        GddvParser().parse(data)