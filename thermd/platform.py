"""Processor identification and kernel checks for the running platform."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

log = logging.getLogger(__name__)

_GENUINE_INTEL = "GenuineIntel"

# Tested platforms as (family, model).
SUPPORTED_IDS = frozenset(
    {
        (6, 0x2A),  # Sandybridge
        (6, 0x3A),  # IvyBridge
        (6, 0x3C),  # Haswell
        (6, 0x45),  # Haswell ULT
        (6, 0x46),  # Haswell ULT
        (6, 0x3D),  # Broadwell
        (6, 0x47),  # Broadwell-GT3E
        (6, 0x37),  # Valleyview BYT
        (6, 0x4C),  # Braswell
        (6, 0x4E),  # Skylake
        (6, 0x5E),  # Skylake
        (6, 0x5C),  # Broxton
        (6, 0x7A),  # Gemini Lake
        (6, 0x8E),  # Kabylake
        (6, 0x9E),  # Kabylake
        (6, 0x66),  # Cannonlake
        (6, 0x7E),  # Icelake
        (6, 0x8C),  # Tigerlake_L
        (6, 0x8D),  # Tigerlake
        (6, 0xA5),  # Cometlake
        (6, 0xA6),  # Cometlake_L
        (6, 0xA7),  # Rocketlake
        (6, 0x9C),  # Jasper Lake
        (6, 0x97),  # Alderlake
        (6, 0x9A),  # Alderlake
    }
)

# Platforms with in-firmware thermal management that must not be doubled up.
BLOCKLIST_PATHS = ("/sys/devices/platform/thinkpad_acpi/dytc_lapmode",)

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass(frozen=True)
class CpuId:
    """Vendor and family/model/stepping of the boot processor."""

    vendor: str
    family: int
    model: int
    stepping: int

    @property
    def genuine_intel(self) -> bool:
        return self.vendor == _GENUINE_INTEL


def decode_signature(fms: int) -> tuple[int, int, int]:
    """Split a CPUID leaf 1 signature into (family, model, stepping)."""
    family = (fms >> 8) & 0xF
    model = (fms >> 4) & 0xF
    stepping = fms & 0xF
    if family in (6, 0xF):
        model += ((fms >> 16) & 0xF) << 4
    return family, model, stepping


def is_supported_model(family: int, model: int) -> bool:
    """Return True if the processor is in the table of tested platforms."""
    return (family, model) in SUPPORTED_IDS


def read_cpu_id(cpuinfo_path: str | Path = "/proc/cpuinfo") -> CpuId:
    """Read the first processor's identification from a cpuinfo file."""
    fields: dict[str, str] = {}
    with open(cpuinfo_path) as handle:
        for line in handle:
            if not line.strip():
                if fields:
                    break
                continue
            key, sep, value = line.partition(":")
            if sep:
                fields.setdefault(key.strip(), value.strip())
    try:
        return CpuId(
            vendor=fields.get("vendor_id", ""),
            family=int(fields["cpu family"]),
            model=int(fields["model"]),
            stepping=int(fields.get("stepping", "0")),
        )
    except (KeyError, ValueError) as exc:
        raise ValueError(f"incomplete processor description in {cpuinfo_path}") from exc


def blocklisted(paths: Iterable[str | Path] = BLOCKLIST_PATHS) -> str | None:
    """Return the first blocklist path that exists, or None."""
    for path in paths:
        if os.path.exists(path):
            log.warning("[%s] present: thermal daemon can't run on this platform", path)
            return str(path)
    return None


def is_rt_kernel(
    version: str | None = None, realtime_path: str | Path = "/sys/kernel/realtime"
) -> bool:
    """Return True when running on a PREEMPT RT kernel."""
    if version is None:
        version = os.uname().version
    marked = "preempt rt" in version.lower()
    flagged = False
    try:
        text = Path(realtime_path).read_text()
    except OSError:
        text = ""
    match = _LEADING_INT.match(text)
    if match is not None:
        flagged = int(match.group(1)) == 1
    rt_kernel = marked and flagged
    log.info("Running on a %s kernel", "PREEMPT RT" if rt_kernel else "vanilla")
    return rt_kernel


def check_cpu_id(
    cpuinfo_path: str | Path = "/proc/cpuinfo",
    blocklist: Iterable[str | Path] = BLOCKLIST_PATHS,
) -> bool:
    """Return True if this processor is a tested one and no blocklist path exists."""
    cpu = read_cpu_id(cpuinfo_path)
    if not cpu.genuine_intel:
        return False
    log.info(
        "family:model:stepping 0x%x:%x:%x (%u:%u:%u)",
        cpu.family, cpu.model, cpu.stepping, cpu.family, cpu.model, cpu.stepping,
    )
    matched = is_supported_model(cpu.family, cpu.model)
    if not matched:
        log.info("Need Linux PowerCap sysfs")
    if blocklisted(blocklist) is not None:
        return False
    return matched