"""Selection of adaptive-policy targets from parsed data-vault tables."""

from __future__ import annotations

import logging
import re

from thermd.conditions import ConditionEvaluator
from thermd.gddv import GddvParser
from thermd.tables import AdaptiveTarget

log = logging.getLogger(__name__)

_INTEGER = re.compile(r"\s*([+-]?\d+)")


def _parse_int(text: str) -> int | None:
    match = _INTEGER.match(text)
    return int(match.group(1)) if match else None


class AdaptivePolicy:
    """Chooses which adaptive targets apply as conditions change."""

    def __init__(self, parser: GddvParser, evaluator: ConditionEvaluator) -> None:
        self.parser = parser
        self.evaluator = evaluator
        self.current_condition_set = 0xFFFF
        self.policy_active = False
        self.fallback_id = -1

        if parser.conditions and not evaluator.verify_conditions(parser.conditions):
            log.info("Some conditions are not supported, checking condition sets")
            if self.evaluate_conditions() is None:
                log.info("Falling back to the configuration with the highest power")
                index = self.find_aggressive_target()
                if index is None:
                    raise ValueError("no condition set matches and no fallback target exists")
                log.info("fallback id:%d", index)
                self.fallback_id = index

    def evaluate_conditions(self) -> int | None:
        """Return the target id of a newly matching condition set, if any."""
        if self.fallback_id >= 0:
            return None
        for index, condition_set in enumerate(self.parser.conditions):
            log.debug("evaluate condition set %d", index)
            if self.evaluator.evaluate_condition_set(condition_set):
                if self.policy_active and index == self.current_condition_set:
                    return None
                self.current_condition_set = index
                return condition_set[0].target if condition_set else None
        return None

    def find_aggressive_target(self) -> int | None:
        """Return the index of the target with the largest PL1MAX argument."""
        best_value = 0
        best_index: int | None = None
        for index, target in enumerate(self.parser.targets):
            argument = _parse_int(target.argument)
            if argument is None:
                log.info("Invalid target target:%s %s", target.code, target.argument)
                continue
            if target.code == "PL1MAX" and argument > best_value:
                best_value = argument
                best_index = index
        return best_index

    def targets_for(self, target_id: int) -> list[AdaptiveTarget]:
        """Return every target entry carrying this id, in table order."""
        wanted = target_id & 0xFFFFFFFFFFFFFFFF
        return [t for t in self.parser.targets if t.target_id == wanted]

    def select_targets(self) -> list[AdaptiveTarget]:
        """Return the targets to execute now; empty if nothing changed."""
        target = self.evaluate_conditions()
        if target is None:
            if self.fallback_id >= 0 and not self.policy_active:
                selected = self.targets_for(self.parser.targets[self.fallback_id].target_id)
                self.policy_active = True
                return selected
            return []
        selected = self.targets_for(target)
        self.policy_active = True
        return selected