"""Evaluation of adaptive-policy conditions against the running platform."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from thermd.tables import AdaptiveCondition, Comparison, Condition, condition_name

log = logging.getLogger(__name__)

_OEM_EXTENDED_START = 0x1000
_OEM_EXTENDED_END = 0x10000
_WORKLOAD_BURSTY = 3
_POWER_SLIDER_BETTER_PERFORMANCE = 75
_PLATFORM_CLAMSHELL = 1
_PLATFORM_TABLET = 2
_INTEGER = re.compile(r"\s*([+-]?\d+)")


class PowerStatus(Protocol):
    """Source of lid and power-supply state."""

    def lid_is_closed(self) -> bool: ...

    def on_battery(self) -> bool: ...


def _is_oem(code: int) -> bool:
    return (
        AdaptiveCondition.OEM0 <= code <= AdaptiveCondition.OEM5
        or _OEM_EXTENDED_START <= code < _OEM_EXTENDED_END
    )


def _is_temperature(code: int) -> bool:
    return code in (
        AdaptiveCondition.TEMPERATURE,
        AdaptiveCondition.TEMPERATURE_WITHOUT_HYSTERESIS,
        0,
    )


def _truncating_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return quotient if value >= 0 else -quotient


def _last_component(device: str) -> str:
    return device.rsplit(".", 1)[-1]


def _compare(kind: int, value: int, reference: int) -> bool:
    if kind == Comparison.EQUAL:
        return value == reference
    if kind == Comparison.LESSER_OR_EQUAL:
        return value <= reference
    if kind == Comparison.GREATER_OR_EQUAL:
        return value >= reference
    return False


class ConditionEvaluator:
    """Decides whether adaptive conditions hold on this platform."""

    def __init__(
        self,
        read_temperature: Callable[[str], Optional[int]],
        oem_root: str | Path | None = None,
        power_status: PowerStatus | None = None,
        tablet_mode: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.read_temperature = read_temperature
        self.oem_root = Path(oem_root) if oem_root is not None else None
        self.power_status = power_status
        self.tablet_mode = tablet_mode
        self.clock = clock

    def verify_condition(self, condition: Condition) -> bool:
        """Return True if this kind of condition can be evaluated."""
        code = condition.condition
        if _is_oem(code) or _is_temperature(code):
            return True
        if code == AdaptiveCondition.DEFAULT:
            return True
        if code in (AdaptiveCondition.LID_STATE, AdaptiveCondition.POWER_SOURCE):
            if self.power_status is not None:
                return True
        if code in (
            AdaptiveCondition.WORKLOAD,
            AdaptiveCondition.PLATFORM_TYPE,
            AdaptiveCondition.POWER_SLIDER,
        ):
            return True
        log.error("Unsupported condition %d (%s)", code, condition_name(code))
        return False

    def verify_conditions(self, condition_sets: Iterable[Iterable[Condition]]) -> bool:
        """Return True if every condition of every set is supported."""
        supported = True
        for condition_set in condition_sets:
            for condition in condition_set:
                if not self.verify_condition(condition):
                    supported = False
        if not supported:
            log.error("Unsupported conditions are present")
        return supported

    def compare_condition(self, condition: Condition, value: int) -> bool:
        """Compare a measured value with the condition's argument."""
        log.debug(
            "compare condition [%s] comparison [%d] value [%d]",
            condition_name(condition.condition), condition.comparison, value,
        )
        return _compare(condition.comparison, value, condition.argument)

    def compare_time(self, condition: Condition) -> bool:
        """Compare the time spent in the condition's state with its limit."""
        elapsed = int(self.clock() - condition.state_entry_time)
        return _compare(condition.time_comparison, elapsed, condition.time)

    def _evaluate_oem(self, condition: Condition) -> bool:
        code = condition.condition
        if AdaptiveCondition.OEM0 <= code <= AdaptiveCondition.OEM5:
            index = code - AdaptiveCondition.OEM0
        else:
            index = code - _OEM_EXTENDED_START + 6
        filename = f"odvp{index}"
        if self.oem_root is None:
            log.error("Unable to read %s", filename)
            return False
        try:
            data = (self.oem_root / filename).read_text()
        except OSError:
            log.error("Unable to read %s", filename)
            return False
        match = _INTEGER.match(data)
        if match is None:
            log.error("Invalid value in %s", filename)
            return False
        return self.compare_condition(condition, int(match.group(1)))

    def _evaluate_temperature(self, condition: Condition) -> bool:
        sensor_name = _last_component(condition.device)
        millicelsius = self.read_temperature(sensor_name)
        if millicelsius is None:
            log.warning("Unable to find a sensor for %s", condition.device)
            return False
        # Conditions are in decikelvin, sensors report millicelsius.
        value = _truncating_div(millicelsius, 100) + 2732
        return self.compare_condition(condition, value)

    def _evaluate_lid(self, condition: Condition) -> bool:
        if self.power_status is None:
            return False
        value = 0 if self.power_status.lid_is_closed() else 1
        return self.compare_condition(condition, value)

    def _evaluate_ac(self, condition: Condition) -> bool:
        if self.power_status is None:
            return False
        value = 1 if self.power_status.on_battery() else 0
        return self.compare_condition(condition, value)

    def _evaluate_platform_type(self, condition: Condition) -> bool:
        value = _PLATFORM_CLAMSHELL
        if self.tablet_mode is not None and self.tablet_mode():
            value = _PLATFORM_TABLET
        return self.compare_condition(condition, value)

    def evaluate_condition(self, condition: Condition) -> bool:
        """Return True if the condition currently holds."""
        code = condition.condition
        if code == AdaptiveCondition.DEFAULT:
            return True
        log.debug("evaluate condition %d", code)

        matched = False
        if _is_oem(code):
            matched = self._evaluate_oem(condition)
        if _is_temperature(code):
            matched = self._evaluate_temperature(condition)
        if code == AdaptiveCondition.LID_STATE:
            matched = self._evaluate_lid(condition)
        if code == AdaptiveCondition.POWER_SOURCE:
            matched = self._evaluate_ac(condition)
        if code == AdaptiveCondition.WORKLOAD:
            # No way to detect the workload yet; assume bursty.
            matched = self.compare_condition(condition, _WORKLOAD_BURSTY)
        if code == AdaptiveCondition.PLATFORM_TYPE:
            matched = self._evaluate_platform_type(condition)
        if code == AdaptiveCondition.POWER_SLIDER:
            # No power slider available; assume "better performance".
            matched = self.compare_condition(condition, _POWER_SLIDER_BETTER_PERFORMANCE)

        if matched:
            return True
        entry_time = condition.state_entry_time
        if condition.time and entry_time == 0:
            entry_time = int(self.clock())
        timed = Condition(
            time_comparison=condition.time_comparison,
            time=condition.time,
            state_entry_time=entry_time,
        )
        return self.compare_time(timed)

    def evaluate_condition_set(self, condition_set: Iterable[Condition]) -> bool:
        """Return True if every condition of the set holds."""
        return all(self.evaluate_condition(condition) for condition in condition_set)