"""Single-pass rule evaluation: the first matching rule fires, later rules are reported unmatched."""

from __future__ import annotations

from datetime import timezone, tzinfo
from typing import Protocol, Sequence

from loguru import logger

from merchant_api.schemas.magic_rules import (
    Action,
    EventPayload,
    MagicRuleDefinition,
    RuleExecutionResult,
)
from merchant_api.services.magic_rules.conditions import evaluate_conditions


class ActionRunner(Protocol):
    async def execute(self, action: Action, event: EventPayload) -> str:
        ...


class ExecutionLedger(Protocol):
    """Reservation hooks wrapped around a matched rule's actions."""

    async def claim(self, rule: MagicRuleDefinition) -> bool:
        """Reserve the rule for this event; ``False`` means another run already owns it."""

    async def complete(self, rule: MagicRuleDefinition, actions_executed: list[str]) -> None:
        ...

    async def fail(
        self,
        rule: MagicRuleDefinition,
        actions_executed: list[str],
        error: BaseException,
    ) -> None:
        ...


class MagicRuleEngine:
    """Evaluate rules in the supplied order and stop after the first match.

    Every supplied rule gets a result. Rules after the first match (or after
    a refused claim) are tagged ``matched=False`` without being evaluated.

    Actions of the matched rule run sequentially in declaration order. A
    raising action aborts the rest of the rule; effects already committed by
    earlier actions stay in place.
    """

    def __init__(self, executor: ActionRunner, *, tz: tzinfo = timezone.utc) -> None:
        self._executor = executor
        self._tz = tz

    def matches(self, rule: MagicRuleDefinition, event: EventPayload) -> bool:
        if not rule.enabled:
            return False
        if event.type not in {item.value for item in rule.match.any_of_events}:
            return False
        return evaluate_conditions(rule.conditions, event, tz=self._tz)

    async def run(
        self,
        rules: Sequence[MagicRuleDefinition],
        event: EventPayload,
        *,
        ledger: ExecutionLedger | None = None,
    ) -> list[RuleExecutionResult]:
        results: list[RuleExecutionResult] = []
        stopped = False

        for rule in rules:
            # Rules after the stop point are reported but never evaluated.
            if stopped or not self.matches(rule, event):
                results.append(RuleExecutionResult.not_matched(rule))
                continue

            stopped = True
            if ledger is not None and not await ledger.claim(rule):
                logger.info("Magic rule already claimed for event", rule_id=rule.id, event_type=event.type)
                results.append(RuleExecutionResult.not_matched(rule))
                continue

            executed: list[str] = []
            try:
                for action in rule.actions:
                    executed.append(await self._executor.execute(action, event))
            except Exception as exc:
                logger.error(
                    "Magic rule action failed",
                    rule_id=rule.id,
                    executed=executed,
                    error=str(exc),
                )
                if ledger is not None:
                    await ledger.fail(rule, executed, exc)
                raise

            if ledger is not None:
                await ledger.complete(rule, executed)

            logger.info("Magic rule fired", rule_id=rule.id, rule_name=rule.name, actions=executed)
            results.append(
                RuleExecutionResult(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    matched=True,
                    actions_executed=executed,
                )
            )

        return results


__all__ = ["ActionRunner", "ExecutionLedger", "MagicRuleEngine"]
