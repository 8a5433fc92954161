from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class MagicRulesSnapshot:
    evaluations: Dict[str, int]
    actions: Dict[str, int]
    boosters: Dict[str, int]
    rules: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "evaluations": dict(self.evaluations),
            "actions": dict(self.actions),
            "boosters": dict(self.boosters),
            "rules": dict(self.rules),
        }


class MagicRulesObservabilityStore:
    """Collect automation engine telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._evaluations: Dict[str, int] = defaultdict(int)
        self._actions: Dict[str, int] = defaultdict(int)
        self._boosters: Dict[str, int] = defaultdict(int)
        self._rules: Dict[str, int] = defaultdict(int)

    def record_evaluation(self, outcome: str) -> None:
        with self._lock:
            self._evaluations["total"] += 1
            self._evaluations[outcome] += 1

    def record_action(self, kind: str) -> None:
        with self._lock:
            self._actions[kind] += 1

    def record_action_failure(self, kind: str) -> None:
        with self._lock:
            self._actions[f"failed:{kind}"] += 1

    def record_boosters_consumed(self, count: int, points: int) -> None:
        with self._lock:
            self._boosters["consumed"] += count
            self._boosters["points_awarded"] += points

    def record_rule_auto_disabled(self) -> None:
        with self._lock:
            self._rules["auto_disabled"] += 1

    def record_duplicate_skipped(self) -> None:
        with self._lock:
            self._rules["duplicate_skipped"] += 1

    def snapshot(self) -> MagicRulesSnapshot:
        with self._lock:
            return MagicRulesSnapshot(
                evaluations=dict(self._evaluations),
                actions=dict(self._actions),
                boosters=dict(self._boosters),
                rules=dict(self._rules),
            )

    def reset(self) -> None:
        with self._lock:
            self._evaluations.clear()
            self._actions.clear()
            self._boosters.clear()
            self._rules.clear()


_STORE = MagicRulesObservabilityStore()


def get_magic_rules_store() -> MagicRulesObservabilityStore:
    return _STORE


__all__ = ["get_magic_rules_store", "MagicRulesObservabilityStore", "MagicRulesSnapshot"]
