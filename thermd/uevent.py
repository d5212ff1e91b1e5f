"""Kernel kobject uevent notifications over a netlink socket."""

from __future__ import annotations

import logging
import os
import socket

log = logging.getLogger(__name__)

_MAX_BUFFER_SIZE = 512
_NETLINK_KOBJECT_UEVENT = 15
_DEV_PATH = b"DEVPATH="


class KobjUevent:
    """Listens for kobject uevents and filters them by device path."""

    def __init__(self) -> None:
        self._sock: socket.socket | None = None
        self.device_path = ""

    def open(self) -> int:
        """Open and bind the netlink socket; return its file descriptor."""
        family = getattr(socket, "AF_NETLINK", None)
        if family is None:
            raise OSError("netlink sockets are not supported on this system")
        sock = socket.socket(family, socket.SOCK_DGRAM, _NETLINK_KOBJECT_UEVENT)
        try:
            sock.bind((os.getpid(), 0xFFFFFFFF))
        except OSError:
            log.warning("kobj_uevent bind failed")
            sock.close()
            raise
        sock.setblocking(False)
        self._sock = sock
        return sock.fileno()

    def close(self) -> None:
        """Close the socket if it is open."""
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def register_dev_path(self, path: str) -> None:
        """Set the device path prefix that events must carry."""
        self.device_path = path[: _MAX_BUFFER_SIZE - 1]

    def matches(self, payload: bytes) -> bool:
        """Return True if a uevent payload names the registered device path."""
        wanted = self.device_path.encode()
        for entry in payload.split(b"\0"):
            if len(entry) > len(_DEV_PATH) and entry.startswith(_DEV_PATH):
                if entry[len(_DEV_PATH):].startswith(wanted):
                    return True
        return False

    def check_for_event(self) -> bool:
        """Read one pending uevent, if any, and report whether it matches."""
        if self._sock is None:
            return False
        try:
            payload = self._sock.recv(_MAX_BUFFER_SIZE - 1)
        except OSError:
            return False
        if not payload:
            return False
        return self.matches(payload)