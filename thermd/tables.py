"""Types describing the adaptive-policy tables of the data vault."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum


class AdaptiveCondition(IntEnum):
    DEFAULT = 1
    ORIENTATION = 2
    PROXIMITY = 3
    MOTION = 4
    DOCK = 5
    WORKLOAD = 6
    COOLING_MODE = 7
    POWER_SOURCE = 8
    AGGREGATE_POWER_PERCENTAGE = 9
    LID_STATE = 10
    PLATFORM_TYPE = 11
    PLATFORM_SKU = 12
    UTILISATION = 13
    TDP = 14
    DUTY_CYCLE = 15
    POWER = 16
    TEMPERATURE = 17
    DISPLAY_ORIENTATION = 18
    OEM0 = 19
    OEM1 = 20
    OEM2 = 21
    OEM3 = 22
    OEM4 = 23
    OEM5 = 24
    PMAX = 25
    PSRC = 26
    ARTG = 27
    CTYP = 28
    PROP = 29
    UNK1 = 30
    UNK2 = 31
    BATTERY_STATE = 32
    BATTERY_RATE = 33
    BATTERY_REMAINING = 34
    BATTERY_VOLTAGE = 35
    PBSS = 36
    BATTERY_CYCLES = 37
    BATTERY_LAST_FULL = 38
    POWER_PERSONALITY = 39
    BATTERY_DESIGN_CAPACITY = 40
    SCREEN_STATE = 41
    AVOL = 42
    ACUR = 43
    AP01 = 44
    AP02 = 45
    AP10 = 46
    TIME = 47
    TEMPERATURE_WITHOUT_HYSTERESIS = 48
    MIXED_REALITY = 49
    USER_PRESENCE = 50
    RBHF = 51
    VBNL = 52
    CMPP = 53
    BATTERY_PERCENTAGE = 54
    BATTERY_COUNT = 55
    POWER_SLIDER = 56


class Comparison(IntEnum):
    EQUAL = 1
    LESSER_OR_EQUAL = 2
    GREATER_OR_EQUAL = 3


class Operation(IntEnum):
    AND = 1
    FOR = 2


_CONDITION_NAMES = (
    "Invalid", "Default", "Orientation", "Proximity", "Motion", "Dock",
    "Workload", "Cooling_mode", "Power_source", "Aggregate_power_percentage",
    "Lid_state", "Platform_type", "Platform_SKU", "Utilisation", "TDP",
    "Duty_cycle", "Power", "Temperature", "Display_orientation", "Oem0",
    "Oem1", "Oem2", "Oem3", "Oem4", "Oem5", "PMAX", "PSRC", "ARTG", "CTYP",
    "PROP", "Unk1", "Unk2", "Battery_state", "Battery_rate",
    "Battery_remaining", "Battery_voltage", "PBSS", "Battery_cycles",
    "Battery_last_full", "Power_personality", "Battery_design_capacity",
    "Screen_state", "AVOL", "ACUR", "AP01", "AP02", "AP10", "Time",
    "Temperature_without_hysteresis", "Mixed_reality", "User_presence",
    "RBHF", "VBNL", "CMPP", "Battery_percentage", "Battery_count",
    "Power_slider",
)

_COMPARISON_NAMES = (
    "INVALID",
    "ADAPTIVE_EQUAL",
    "ADAPTIVE_LESSER_OR_EQUAL",
    "ADAPTIVE_GREATER_OR_EQUAL",
)


def condition_name(value: int) -> str:
    """Return the display name of a condition code, including OEM ranges."""
    if 0 <= value < len(_CONDITION_NAMES):
        return _CONDITION_NAMES[value]
    if 0x1000 <= value < 0x10000:
        return f"Oem{value - 0x1000 + 6}"
    return f"UNKNOWN( {value} )"


def comparison_name(value: int) -> str:
    """Return the display name of a comparison code, or '' if unknown."""
    if 0 <= value < len(_COMPARISON_NAMES):
        return _COMPARISON_NAMES[value]
    return ""


def deci_kelvin_to_celsius(value: int) -> int:
    """Convert decikelvin to whole degrees Celsius, rounding half away from zero."""
    delta = value - 2732
    if delta >= 0:
        return (delta + 5) // 10
    return -((5 - delta) // 10)


@dataclass
class Psv:
    """One passive-policy relationship entry."""

    name: str = ""
    source: str = ""
    target: str = ""
    priority: int = 0
    sample_period: int = 0
    temp: int = 0
    domain: int = 0
    control_knob: int = 0
    limit: str = ""
    step_size: int = 0
    limit_coeff: int = 0
    unlimit_coeff: int = 0


@dataclass
class Psvt:
    """A named passive-policy table."""

    name: str = ""
    psvs: list[Psv] = field(default_factory=list)


@dataclass
class Ppcc:
    """Power-limit parameters of a participant."""

    name: str = ""
    power_limit_min: int = 0
    power_limit_max: int = 0
    time_wind_min: int = 0
    time_wind_max: int = 0
    step_size: int = 0
    valid: bool = False
    power_limit_1_min: int = 0
    power_limit_1_max: int = 0
    time_wind_1_min: int = 0
    time_wind_1_max: int = 0
    step_1_size: int = 0
    limit_1_valid: bool = False


@dataclass
class Condition:
    """One condition of an adaptive condition set."""

    condition: int = 0
    device: str = ""
    comparison: int = 0
    argument: int = 0
    operation: int = 0
    time_comparison: int = 0
    time: int = 0
    target: int = 0
    state: int = 0
    state_entry_time: int = 0


@dataclass
class CustomCondition:
    """A custom condition override from the APPC table."""

    condition: int = 0
    name: str = ""
    participant: str = ""
    domain: int = 0
    type: int = 0


@dataclass
class AdaptiveTarget:
    """An action to take when a condition set matches."""

    target_id: int = 0
    name: str = ""
    participant: str = ""
    domain: int = 0
    code: str = ""
    argument: str = ""