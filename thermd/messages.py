"""Messages passed to the engine thread over its wakeup pipe."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

MAX_MSG_SIZE = 512

_HEADER = struct.Struct("<ii")
PACKED_SIZE = _HEADER.size + MAX_MSG_SIZE


class MessageId(IntEnum):
    """Kinds of request the engine thread handles."""

    WAKEUP = 0
    TERMINATE = 1
    PREF_CHANGED = 2
    THERMAL_ZONE_NOTIFY = 3
    RELOAD_ZONES = 4
    POLL_ENABLE = 5
    POLL_DISABLE = 6
    FAST_POLL_ENABLE = 7
    FAST_POLL_DISABLE = 8


class ControlMode(IntEnum):
    """Whether the daemon complements the kernel or takes over thermal control."""

    COMPLEMENTRY = 0
    EXCLUSIVE = 1


@dataclass(frozen=True)
class Message:
    """A request for the engine thread, with an optional payload."""

    msg_id: MessageId
    payload: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "msg_id", MessageId(self.msg_id))
        object.__setattr__(self, "payload", bytes(self.payload[:MAX_MSG_SIZE]))

    def pack(self) -> bytes:
        """Encode the message as a fixed-size record."""
        header = _HEADER.pack(int(self.msg_id), len(self.payload))
        return header + self.payload.ljust(MAX_MSG_SIZE, b"\0")

    @classmethod
    def unpack(cls, data: bytes) -> "Message":
        """Decode a fixed-size record produced by :meth:`pack`."""
        if len(data) != PACKED_SIZE:
            raise ValueError(
                f"message record must be {PACKED_SIZE} bytes, got {len(data)}"
            )
        raw_id, size = _HEADER.unpack_from(data, 0)
        if not 0 <= size <= MAX_MSG_SIZE:
            raise ValueError(f"invalid message size {size}")
        try:
            msg_id = MessageId(raw_id)
        except ValueError as exc:
            raise ValueError(f"unknown message id {raw_id}") from exc
        start = _HEADER.size
        return cls(msg_id, bytes(data[start:start + size]))