"""Evaluate magic rules when an order is paid."""

from __future__ import annotations

import json
from datetime import datetime, timezone, tzinfo
from typing import Any, Sequence
from uuid import UUID, uuid4

from loguru import logger
from pydantic import ValidationError
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_api.core.settings import settings
from merchant_api.db.dialect import dialect_insert
from merchant_api.models.magic_rule import (
    MagicEventTypeEnum,
    MagicRule,
    MagicRuleExecution,
    MagicRuleExecutionStatusEnum,
    MagicRuleScopeEnum,
)
from merchant_api.models.order import CartProduct, Order
from merchant_api.observability.magic_rules import get_magic_rules_store
from merchant_api.observability.tracing import get_tracer
from merchant_api.schemas.magic_rules import (
    MagicRuleDefinition,
    OrderPaidEvent,
    RuleExecutionResult,
)
from merchant_api.services.loyalty.affiliate_points import AffiliatePointsService
from merchant_api.services.notifications.backend import NotificationEnqueuer

from .actions import MagicRuleActionExecutor
from .conditions import resolve_timezone
from .engine import MagicRuleEngine
from .errors import MagicRuleDecodeError


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _json_list(value: Any) -> Any:
    # Rows written by older tooling may hold the JSON array as text.
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value if value is not None else []


def decode_rule(row: MagicRule) -> MagicRuleDefinition:
    """Decode a stored rule row; malformed conditions/actions raise ``MagicRuleDecodeError``."""

    rule_id = str(row.id)
    event = row.event.value if isinstance(row.event, MagicEventTypeEnum) else str(row.event)
    try:
        return MagicRuleDefinition.model_validate(
            {
                "id": rule_id,
                "name": row.name,
                "enabled": bool(row.is_enabled),
                "match": {"anyOfEvents": [event]},
                "conditions": _json_list(row.conditions),
                "actions": _json_list(row.actions),
            }
        )
    except ValidationError as exc:
        raise MagicRuleDecodeError(rule_id, exc.errors()) from exc
    except json.JSONDecodeError as exc:
        raise MagicRuleDecodeError(rule_id, [{"msg": str(exc)}]) from exc


class _OrderExecutionLedger:
    """Execution records keyed by ``(rule_id, order_id)``, claimed before any action runs."""

    def __init__(self, db_session: AsyncSession, *, organization_id: str, order_id: UUID) -> None:
        self._db = db_session
        self._organization_id = organization_id
        self._order_id = order_id

    async def claim(self, rule: MagicRuleDefinition) -> bool:
        stmt = (
            dialect_insert(self._db, MagicRuleExecution)
            .values(
                id=uuid4(),
                rule_id=UUID(rule.id),
                order_id=self._order_id,
                organization_id=self._organization_id,
                status=MagicRuleExecutionStatusEnum.CLAIMED,
                actions_executed=[],
            )
            .on_conflict_do_nothing(
                index_elements=[MagicRuleExecution.rule_id, MagicRuleExecution.order_id]
            )
            .returning(MagicRuleExecution.id)
        )
        try:
            result = await self._db.execute(stmt)
            claimed = result.scalar_one_or_none() is not None
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        if not claimed:
            get_magic_rules_store().record_duplicate_skipped()
        return claimed

    async def complete(self, rule: MagicRuleDefinition, actions_executed: list[str]) -> None:
        await self._finish(
            rule,
            status=MagicRuleExecutionStatusEnum.COMPLETED,
            actions_executed=actions_executed,
            error=None,
        )

    async def fail(
        self,
        rule: MagicRuleDefinition,
        actions_executed: list[str],
        error: BaseException,
    ) -> None:
        # A failed action may leave the session mid-transaction.
        await self._db.rollback()
        await self._finish(
            rule,
            status=MagicRuleExecutionStatusEnum.FAILED,
            actions_executed=actions_executed,
            error=f"{type(error).__name__}: {error}",
        )

    async def _finish(
        self,
        rule: MagicRuleDefinition,
        *,
        status: MagicRuleExecutionStatusEnum,
        actions_executed: list[str],
        error: str | None,
    ) -> None:
        try:
            await self._db.execute(
                update(MagicRuleExecution)
                .where(
                    and_(
                        MagicRuleExecution.rule_id == UUID(rule.id),
                        MagicRuleExecution.order_id == self._order_id,
                    )
                )
                .values(
                    status=status,
                    actions_executed=list(actions_executed),
                    error=error,
                    completed_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise


class MagicRuleOrchestrator:
    """Runs the order-paid pipeline: facts, boosters, candidates, engine, execution records."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        notifier: NotificationEnqueuer | None = None,
        points_service: AffiliatePointsService | None = None,
        executor: MagicRuleActionExecutor | None = None,
        tz: tzinfo | None = None,
        candidate_limit: int | None = None,
    ) -> None:
        self._db = db_session
        self._points = points_service or AffiliatePointsService(db_session)
        self._executor = executor or MagicRuleActionExecutor(
            db_session,
            notifier=notifier,
            points_service=self._points,
        )
        self._tz = tz or resolve_timezone(settings.magic_rules_timezone)
        self._candidate_limit = candidate_limit or settings.magic_rules_candidate_limit
        self._store = get_magic_rules_store()

    async def evaluate_rules_for_order(
        self,
        *,
        organization_id: str,
        order_id: str | UUID,
        event: str = MagicEventTypeEnum.ORDER_PAID.value,
        base_affiliate_points_awarded: int | None = None,
        now: datetime | None = None,
    ) -> list[RuleExecutionResult]:
        """Evaluate the organization's ``order_paid`` rules for one order.

        Returns an empty list when the event is not ``order_paid`` or the
        order does not exist in the organization. Action failures propagate
        after the claimed execution record is marked ``failed``.
        """

        if event != MagicEventTypeEnum.ORDER_PAID.value:
            self._store.record_evaluation("ignored_event")
            return []

        try:
            order_uuid = order_id if isinstance(order_id, UUID) else UUID(str(order_id))
        except ValueError:
            logger.warning("Ignoring magic rule evaluation for malformed order id", order_id=str(order_id))
            self._store.record_evaluation("order_not_found")
            return []

        reference_time = _as_utc(now) if now else datetime.now(timezone.utc)

        with get_tracer().start_as_current_span("magic_rules.evaluate_order") as span:
            span.set_attribute("merchant.organization_id", organization_id)
            span.set_attribute("merchant.order_id", str(order_uuid))

            order = await self._load_order(organization_id, order_uuid)
            if order is None:
                logger.info(
                    "Order not found for magic rule evaluation",
                    organization_id=organization_id,
                    order_id=str(order_uuid),
                )
                self._store.record_evaluation("order_not_found")
                return []

            order_pk = order.id
            client_id = order.client_id
            paid_at = _as_utc(order.date_paid or order.date_created)
            product_ids = await self._purchased_product_ids(order.cart_id)
            days_since = await self._days_since_last_purchase(order, paid_at)

            consumption = await self._points.consume_boosters(
                organization_id=organization_id,
                client_id=client_id,
                order_id=order_pk,
                reference_time=paid_at,
            )
            if consumption is not None:
                self._store.record_boosters_consumed(len(consumption.booster_ids), consumption.total_points)
                span.set_attribute("merchant.boosters_consumed", len(consumption.booster_ids))

            rules = await self._load_candidate_rules(organization_id, order_pk, reference_time)
            span.set_attribute("merchant.candidate_rules", len(rules))

            event_payload = OrderPaidEvent(
                organization_id=organization_id,
                client_id=client_id,
                country=order.country,
                order_id=str(order_pk),
                purchased_product_ids=product_ids,
                purchased_at=paid_at,
                base_affiliate_points_awarded=base_affiliate_points_awarded,
                days_since_last_purchase=days_since,
            )

            engine = MagicRuleEngine(self._executor, tz=self._tz)
            ledger = _OrderExecutionLedger(self._db, organization_id=organization_id, order_id=order_pk)
            try:
                results = await engine.run(rules, event_payload, ledger=ledger)
            except Exception:
                self._store.record_evaluation("failed")
                raise

            matched = next((result for result in results if result.matched), None)
            self._store.record_evaluation("matched" if matched else "no_match")
            if matched is not None:
                span.set_attribute("merchant.matched_rule_id", matched.rule_id)

            logger.info(
                "Evaluated magic rules for order",
                organization_id=organization_id,
                order_id=str(order_pk),
                candidates=len(rules),
                matched_rule_id=matched.rule_id if matched else None,
            )
            return results

    async def _load_order(self, organization_id: str, order_id: UUID) -> Order | None:
        stmt = select(Order).where(and_(Order.id == order_id, Order.organization_id == organization_id))
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _purchased_product_ids(self, cart_id: UUID | None) -> list[str]:
        if cart_id is None:
            return []
        product_id = func.coalesce(CartProduct.product_id, CartProduct.affiliate_product_id)
        stmt = select(product_id).where(and_(CartProduct.cart_id == cart_id, product_id.is_not(None))).distinct()
        result = await self._db.execute(stmt)
        return [str(value) for value in result.scalars().all()]

    async def _days_since_last_purchase(self, order: Order, paid_at: datetime) -> int | None:
        purchased_at = func.coalesce(Order.date_paid, Order.date_created)
        stmt = select(func.max(purchased_at)).where(
            and_(
                Order.organization_id == order.organization_id,
                Order.client_id == order.client_id,
                Order.id != order.id,
                purchased_at <= paid_at,
            )
        )
        result = await self._db.execute(stmt)
        last_purchase = result.scalar_one_or_none()
        if last_purchase is None:
            return None
        if isinstance(last_purchase, str):
            last_purchase = datetime.fromisoformat(last_purchase)
        delta = paid_at - _as_utc(last_purchase)
        return int(delta.total_seconds() // 86400)

    async def _load_candidate_rules(
        self,
        organization_id: str,
        order_id: UUID,
        reference_time: datetime,
    ) -> list[MagicRuleDefinition]:
        stmt = (
            select(MagicRule)
            .where(
                and_(
                    MagicRule.organization_id == organization_id,
                    MagicRule.event == MagicEventTypeEnum.ORDER_PAID,
                    MagicRule.scope == MagicRuleScopeEnum.BASE,
                    MagicRule.is_enabled.is_(True),
                )
            )
            .order_by(MagicRule.priority.asc(), MagicRule.updated_at.desc())
            .limit(self._candidate_limit)
        )
        result = await self._db.execute(stmt)
        rows: Sequence[MagicRule] = result.scalars().all()

        executed_ids = await self._executed_rule_ids(order_id, [row.id for row in rows])

        candidates: list[MagicRuleDefinition] = []
        expired: list[UUID] = []
        for row in rows:
            if row.start_date is not None and _as_utc(row.start_date) > reference_time:
                continue
            if row.end_date is not None and _as_utc(row.end_date) < reference_time:
                expired.append(row.id)
                continue
            if row.id in executed_ids:
                self._store.record_duplicate_skipped()
                logger.debug("Magic rule already executed for order", rule_id=str(row.id), order_id=str(order_id))
                continue
            candidates.append(decode_rule(row))

        if expired:
            await self._disable_rules(expired)
        return candidates

    async def _executed_rule_ids(self, order_id: UUID, rule_ids: list[UUID]) -> set[UUID]:
        if not rule_ids:
            return set()
        stmt = select(MagicRuleExecution.rule_id).where(
            and_(
                MagicRuleExecution.order_id == order_id,
                MagicRuleExecution.rule_id.in_(rule_ids),
            )
        )
        result = await self._db.execute(stmt)
        return set(result.scalars().all())

    async def _disable_rules(self, rule_ids: list[UUID]) -> None:
        try:
            await self._db.execute(
                update(MagicRule)
                .where(MagicRule.id.in_(rule_ids))
                .values(is_enabled=False, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise

        for rule_id in rule_ids:
            self._store.record_rule_auto_disabled()
            logger.info("Auto-disabled expired magic rule", rule_id=str(rule_id))


__all__ = ["MagicRuleOrchestrator", "decode_rule"]
