"""Access to the INT3400 thermal device UUID interface in sysfs."""

from __future__ import annotations

import logging
from pathlib import Path

log = logging.getLogger(__name__)

_CANDIDATES = (
    "sys/bus/acpi/devices/INT3400:00/physical_node/uuids",
    "sys/bus/acpi/devices/INTC1040:00/physical_node/uuids",
    "sys/bus/acpi/devices/INTC1041:00/physical_node/uuids",
)


class Int3400:
    """Checks and selects the policy UUID exposed by the INT3400 device."""

    def __init__(self, uuid: str, root: str | Path = "/") -> None:
        self.uuid = uuid
        base = Path(root)
        self.base_path: Path | None = next(
            (base / rel for rel in _CANDIDATES if (base / rel).exists()), None
        )
        log.info("INT3400 Base path is %s", self.base_path or "")

    def match_supported_uuid(self) -> bool:
        """Return True if the engine UUID is among the available ones."""
        if self.base_path is None:
            return False
        try:
            with open(self.base_path / "available_uuids", newline="") as handle:
                for line in handle:
                    entry = line.rstrip("\n")
                    log.debug("uuid: %s", entry)
                    if entry == self.uuid:
                        return True
        except OSError:
            return False
        return False

    def set_default_uuid(self) -> None:
        """Write the engine UUID as the current policy UUID."""
        if self.base_path is None:
            return
        try:
            with open(self.base_path / "current_uuid", "w") as handle:
                log.info("Set Default UUID: %s", self.uuid)
                handle.write(self.uuid)
        except OSError:
            log.debug("Unable to write current_uuid under %s", self.base_path)