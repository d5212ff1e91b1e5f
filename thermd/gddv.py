"""Parser for the GDDV data vault that carries the adaptive-policy tables."""

from __future__ import annotations

import logging
import lzma
import struct
from dataclasses import dataclass, field

from thermd.tables import (
    AdaptiveTarget,
    Condition,
    CustomCondition,
    Operation,
    Ppcc,
    Psv,
    Psvt,
)

log = logging.getLogger(__name__)

_TYPE_UINT64 = 4
_TYPE_STRING = 8

_HEADER = struct.Struct("<HHI")
_HEADER_SIZE = 148
_V2_FLAGS_OFFSET = 8
_V2_PAYLOAD_SIZE_OFFSET = 140

_HEADER_SIGNATURE = 0x1FE5
_ITEM_KEYS_SIGNATURE = 0xA0D8
_CONFIG_COMPRESSED = 0x40000000
_DECODER_MEMLIMIT = 64 * 1024 * 1024
_PPCC_LIMIT_1_LENGTH = 156
_DEFAULT_PSVT = "IETM.D0"


class GddvError(ValueError):
    """Raised when the data vault or one of its tables cannot be parsed."""


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= (1 << 31) else value


def _unpack(fmt: str, data, offset: int) -> tuple:
    try:
        return struct.unpack_from(fmt, data, offset)
    except struct.error as exc:
        raise GddvError(f"truncated data at offset {offset}") from exc


def read_object_type(data, offset: int) -> int:
    """Return the type tag of the object stored at ``offset``."""
    return _unpack("<I", data, offset)[0]


def read_uint64(data, offset: int) -> tuple[int, int]:
    """Read an integer object; return its value and the offset after it."""
    kind = read_object_type(data, offset)
    if kind != _TYPE_UINT64:
        log.warning("Found object of type %d, expecting 4", kind)
        raise GddvError(f"expected integer object, found type {kind}")
    (value,) = _unpack("<Q", data, offset + 4)
    return value, offset + 12


def read_string(data, offset: int) -> tuple[str, int]:
    """Read a string object; return its text and the offset after it."""
    kind = read_object_type(data, offset)
    if kind != _TYPE_STRING:
        log.warning("Found object of type %d, expecting 8", kind)
        raise GddvError(f"expected string object, found type {kind}")
    (length,) = _unpack("<Q", data, offset + 4)
    start = offset + 12
    end = start + length
    if end > len(data):
        raise GddvError(f"string at offset {offset} runs past the end")
    raw = bytes(data[start:end]).split(b"\0", 1)[0]
    return raw.decode("utf-8", "replace"), end


@dataclass
class GddvParser:
    """Collects the tables found while parsing a data vault."""

    ppccs: list[Ppcc] = field(default_factory=list)
    conditions: list[list[Condition]] = field(default_factory=list)
    custom_conditions: list[CustomCondition] = field(default_factory=list)
    targets: list[AdaptiveTarget] = field(default_factory=list)
    psvts: list[Psvt] = field(default_factory=list)

    def parse(self, data) -> int:
        """Parse a whole data vault; return the offset where parsing ended."""
        view = memoryview(bytes(data))
        return self._parse_vault(view, len(view))

    def _parse_vault(self, data: memoryview, size: int) -> int:
        if size < _HEADER_SIZE or len(data) < _HEADER_SIZE:
            raise GddvError("data vault is shorter than its header")
        signature, header_size, version = _HEADER.unpack_from(data, 0)
        if signature != _HEADER_SIGNATURE:
            log.warning("Unexpected GDDV signature 0x%x", signature)
            raise GddvError(f"unexpected signature 0x{signature:x}")
        major = (version >> 24) & 0xFF
        if major not in (1, 2):
            raise GddvError(f"unsupported data vault version {major}")

        offset = header_size
        log.debug("header version[%d] size[%d] header_size[%d]", major, size, header_size)

        if major == 2:
            (flags,) = struct.unpack_from("<I", data, _V2_FLAGS_OFFSET)
            if flags == _CONFIG_COMPRESSED:
                log.debug("Uncompress GDDV payload")
                return self._parse_compressed(data, header_size)
            (size,) = struct.unpack_from("<I", data, _V2_PAYLOAD_SIZE_OFFSET)

        while offset + header_size < size:
            if major == 2:
                (signature,) = _unpack("<H", data, offset)
                if signature == _ITEM_KEYS_SIGNATURE:
                    offset += 2
                    offset += self._parse_key(data[offset:])
                elif signature == _HEADER_SIGNATURE:
                    log.info("Got subobject at %d", offset)
                    consumed = self._parse_vault(data[offset:], size - offset)
                    if consumed <= 0:
                        raise GddvError(f"empty subobject at offset {offset}")
                    offset += consumed
                    log.info("Subobject ended at %d of %d", offset, size)
                else:
                    log.info("No known signature found 0x%04X", signature)
                    raise GddvError(f"unknown item signature 0x{signature:04X}")
            else:
                offset += self._parse_key(data[offset:])
        return offset

    def _parse_compressed(self, data: memoryview, header_size: int) -> int:
        (payload_size,) = _unpack("<Q", data, header_size + 5)
        decoder = lzma.LZMADecompressor(lzma.FORMAT_AUTO, memlimit=_DECODER_MEMLIMIT)
        try:
            payload = decoder.decompress(bytes(data[header_size:]))
        except lzma.LZMAError as exc:
            log.warning("Failed to decompress GDDV data: %s", exc)
            raise GddvError("failed to decompress data vault") from exc

        header = bytearray(data[:header_size])
        if len(header) >= _HEADER_SIZE:
            (flags,) = struct.unpack_from("<I", header, _V2_FLAGS_OFFSET)
            struct.pack_into("<I", header, _V2_FLAGS_OFFSET, flags & ~_CONFIG_COMPRESSED)
            struct.pack_into(
                "<I", header, _V2_PAYLOAD_SIZE_OFFSET, payload_size & 0xFFFFFFFF
            )
        else:
            header.extend(bytes(_HEADER_SIZE - len(header)))
        output = memoryview(bytes(header) + payload)
        return self._parse_vault(output, header_size + payload_size)

    def _parse_key(self, data: memoryview) -> int:
        _flags, key_length = _unpack("<II", data, 0)
        offset = 8
        key = bytes(data[offset:offset + key_length])
        if len(key) != key_length:
            raise GddvError("key runs past the end of the data vault")
        offset += key_length
        _value_type, value_length = _unpack("<II", data, offset)
        offset += 8
        value = bytes(data[offset:offset + value_length])
        if len(value) != value_length:
            raise GddvError("value runs past the end of the data vault")
        offset += value_length

        path = key.split(b"\0", 1)[0].decode("utf-8", "replace")
        self._dispatch_key(path, value)
        return offset

    def _dispatch_key(self, path: str, value: bytes) -> None:
        tokens = iter([token for token in path.split("/") if token])
        first = next(tokens, None)
        if first is None:
            log.debug("Ignoring key %s", path)
            return

        name = kind = point = None
        if first == "participants":
            name = next(tokens, None)
            kind = next(tokens, None)
            point = next(tokens, None)
        elif first == "shared":
            namespace = next(tokens, None)
            kind = next(tokens, None)
            if namespace == "tables":
                point = next(tokens, None)

        if name and kind == "ppcc":
            self.parse_ppcc(name, value)
        if kind == "psvt":
            self.parse_psvt(name if point is None else point, value)
        if kind == "appc":
            self.parse_appc(value)
        if kind == "apct":
            self.parse_apct(value)
        if kind == "apat":
            self.parse_apat(value)

    def parse_appc(self, data) -> None:
        """Parse custom-condition overrides; malformed tables are ignored."""
        if not data or data[0] != _TYPE_UINT64:
            log.info("Found malformed APPC table, ignoring")
            return
        version, offset = read_uint64(data, 0)
        if version != 1:
            log.info("Found unsupported or malformed APPC version %d", version)
            return
        while offset < len(data):
            condition, offset = read_uint64(data, offset)
            name, offset = read_string(data, offset)
            participant, offset = read_string(data, offset)
            domain, offset = read_uint64(data, offset)
            kind, offset = read_uint64(data, offset)
            self.custom_conditions.append(
                CustomCondition(
                    condition=condition,
                    name=name,
                    participant=participant,
                    domain=_to_int32(domain),
                    type=_to_int32(kind),
                )
            )

    def parse_apat(self, data) -> None:
        """Parse the adaptive action table."""
        version, offset = read_uint64(data, 0)
        if version != 2:
            log.warning("Found unsupported APAT version %d", version)
            raise GddvError(f"unsupported APAT version {version}")
        while offset < len(data):
            target_id, offset = read_uint64(data, offset)
            name, offset = read_string(data, offset)
            participant, offset = read_string(data, offset)
            domain, offset = read_uint64(data, offset)
            code, offset = read_string(data, offset)
            argument, offset = read_string(data, offset)
            self.targets.append(
                AdaptiveTarget(
                    target_id=target_id,
                    name=name,
                    participant=participant,
                    domain=_to_int32(domain),
                    code=code,
                    argument=argument,
                )
            )

    def parse_apct(self, data) -> None:
        """Parse the adaptive condition table (versions 1 and 2)."""
        version, offset = read_uint64(data, 0)
        if version == 1:
            self._parse_apct_v1(data, offset)
        elif version == 2:
            self._parse_apct_v2(data, offset)
        else:
            log.warning("Unsupported APCT version %d", version)
            raise GddvError(f"unsupported APCT version {version}")

    @staticmethod
    def _read_target(data, offset: int) -> tuple[int, int]:
        raw, offset = read_uint64(data, offset)
        target = _to_int32(raw)
        if target == -1:
            log.warning("Invalid APCT target")
            raise GddvError("invalid APCT target")
        return target, offset

    def _parse_apct_v1(self, data, offset: int) -> None:
        size = len(data)
        while offset < size:
            target, offset = self._read_target(data, offset)
            condition_set: list[Condition] = []
            index = 0
            while index < 10:
                if offset >= size:
                    log.warning("Read off end of buffer in APCT parsing")
                    raise GddvError("APCT condition set runs past the end")
                cond = Condition(target=target)
                cond.condition, offset = read_uint64(data, offset)
                cond.comparison, offset = read_uint64(data, offset)
                argument, offset = read_uint64(data, offset)
                cond.argument = _to_int32(argument)
                if index < 9:
                    operation, offset = read_uint64(data, offset)
                    cond.operation = _to_int32(operation)
                    if cond.operation == Operation.FOR:
                        offset += 12
                        time_comparison, offset = read_uint64(data, offset)
                        cond.time_comparison = _to_int32(time_comparison)
                        duration, offset = read_uint64(data, offset)
                        cond.time = _to_int32(duration)
                        offset += 12
                        index += 1
                condition_set.append(cond)
                index += 1
            self.conditions.append(condition_set)

    def _parse_apct_v2(self, data, offset: int) -> None:
        size = len(data)
        while offset < size:
            target, offset = self._read_target(data, offset)
            raw_count, offset = read_uint64(data, offset)
            count = _to_int32(raw_count)
            last = _to_int32(raw_count - 1)
            condition_set: list[Condition] = []
            index = 0
            while index < count:
                if offset >= size:
                    log.warning("Read off end of buffer in parsing APCT")
                    raise GddvError("APCT condition set runs past the end")
                cond = Condition(target=target)
                cond.condition, offset = read_uint64(data, offset)
                cond.device, offset = read_string(data, offset)
                offset += 12
                cond.comparison, offset = read_uint64(data, offset)
                argument, offset = read_uint64(data, offset)
                cond.argument = _to_int32(argument)
                if index < last:
                    operation, offset = read_uint64(data, offset)
                    cond.operation = _to_int32(operation)
                    if cond.operation == Operation.FOR:
                        offset += 12
                        _, offset = read_string(data, offset)
                        offset += 12
                        time_comparison, offset = read_uint64(data, offset)
                        cond.time_comparison = _to_int32(time_comparison)
                        duration, offset = read_uint64(data, offset)
                        cond.time = _to_int32(duration)
                        offset += 12
                        index += 1
                condition_set.append(cond)
                index += 1
            self.conditions.append(condition_set)

    def parse_ppcc(self, name: str, data) -> None:
        """Parse power-limit parameters; only tables carrying limit 1 are kept."""
        (power_limit_min,) = _unpack("<Q", data, 28)
        (power_limit_max,) = _unpack("<Q", data, 40)
        (time_wind_min,) = _unpack("<Q", data, 52)
        (time_wind_max,) = _unpack("<Q", data, 64)
        (step_size,) = _unpack("<Q", data, 76)
        ppcc = Ppcc(
            name=name,
            power_limit_min=power_limit_min,
            power_limit_max=power_limit_max,
            time_wind_min=time_wind_min,
            time_wind_max=time_wind_max,
            step_size=step_size,
            valid=True,
        )
        if len(data) < _PPCC_LIMIT_1_LENGTH:
            return

        log.info("Processing ppcc limit 2, length %d", len(data))
        start = 76 + 12
        (ppcc.power_limit_1_min,) = _unpack("<Q", data, start + 12)
        (ppcc.power_limit_1_max,) = _unpack("<Q", data, start + 24)
        (ppcc.time_wind_1_min,) = _unpack("<Q", data, start + 36)
        (ppcc.time_wind_1_max,) = _unpack("<Q", data, start + 48)
        (ppcc.step_1_size,) = _unpack("<Q", data, start + 60)
        ppcc.limit_1_valid = all(
            (
                ppcc.power_limit_1_max,
                ppcc.power_limit_1_min,
                ppcc.time_wind_1_min,
                ppcc.time_wind_1_max,
                ppcc.step_1_size,
            )
        )
        self.ppccs.append(ppcc)

    def parse_psvt(self, name: str | None, data) -> None:
        """Parse a passive-policy table; an unnamed one is called 'Default'."""
        raw_version, offset = read_uint64(data, 0)
        version = _to_int32(raw_version)
        if version > 2:
            log.warning("Found unsupported PSVT version %d", version)
            raise GddvError(f"unsupported PSVT version {version}")

        psvt = Psvt(name="Default" if name is None else name)
        while offset < len(data):
            psv = Psv()
            psv.source, offset = read_string(data, offset)
            psv.target, offset = read_string(data, offset)
            values = []
            for _ in range(5):
                value, offset = read_uint64(data, offset)
                values.append(_to_int32(value))
            (psv.priority, psv.sample_period, psv.temp, psv.domain,
             psv.control_knob) = values
            if read_object_type(data, offset) == _TYPE_STRING:
                psv.limit, offset = read_string(data, offset)
            else:
                limit, offset = read_uint64(data, offset)
                psv.limit = str(limit)
            values = []
            for _ in range(3):
                value, offset = read_uint64(data, offset)
                values.append(_to_int32(value))
            psv.step_size, psv.limit_coeff, psv.unlimit_coeff = values
            offset += 12
            psvt.psvs.append(psv)
        self.psvts.append(psvt)

    def merge_appc(self) -> None:
        """Apply custom-condition overrides to the parsed condition sets."""
        for custom in self.custom_conditions:
            for condition_set in self.conditions:
                for cond in condition_set:
                    if custom.condition == cond.condition:
                        cond.device = custom.participant
                        cond.condition = custom.type

    def get_ppcc(self, name: str) -> Ppcc | None:
        """Return the power-limit parameters of a participant, if known."""
        return next((ppcc for ppcc in self.ppccs if ppcc.name == name), None)

    def find_psvt(self, name: str) -> Psvt | None:
        """Return the passive table with this name, ignoring case."""
        wanted = name.lower()
        return next((psvt for psvt in self.psvts if psvt.name.lower() == wanted), None)

    def find_default_psvt(self) -> Psvt | None:
        """Return the default passive table, if present."""
        return next((psvt for psvt in self.psvts if psvt.name == _DEFAULT_PSVT), None)