"""Error taxonomy for the automation engine."""

from __future__ import annotations

from typing import Any, Sequence


class MagicRuleError(Exception):
    """Base class for automation engine failures."""


class MagicRuleDecodeError(MagicRuleError):
    """Stored rule JSON did not match the condition/action schema."""

    def __init__(self, rule_id: str, errors: Sequence[Any]) -> None:
        self.rule_id = rule_id
        self.errors = list(errors)
        super().__init__(f"Magic rule {rule_id} failed validation ({len(self.errors)} error(s))")
