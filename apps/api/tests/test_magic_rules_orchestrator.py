from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select

from merchant_api.models.affiliate import AffiliatePointBooster, AffiliatePointLog
from merchant_api.models.coupon import Coupon
from merchant_api.models.magic_rule import (
    MagicEventTypeEnum,
    MagicRule,
    MagicRuleExecution,
    MagicRuleExecutionStatusEnum,
    MagicRuleScopeEnum,
)
from merchant_api.models.order import CartProduct, Order
from merchant_api.services.loyalty import NEXT_ORDER_BONUS_ACTION, AffiliatePointsService
from merchant_api.services.magic_rules import MagicRuleDecodeError, MagicRuleOrchestrator
from merchant_api.services.magic_rules.orchestrator import _OrderExecutionLedger, decode_rule
from merchant_api.services.notifications import InMemoryNotificationEnqueuer


ORG = "org_1"
CLIENT = "client_1"
PAID_AT = datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)
NOW = PAID_AT + timedelta(minutes=5)

GRANT_100 = {"kind": "grant_affiliate_points", "points": 100, "action": "promo"}
BUYS_P1 = {"kind": "purchased_product_in_list", "productIds": ["P1", "P2"]}


class ExplodingNotifier:
    async def enqueue(self, request) -> list[str]:
        raise RuntimeError("notification backend down")


async def _add_order(session, *, paid_at=PAID_AT, products=("P1",), client_id=CLIENT, organization_id=ORG) -> Order:
    cart_id = uuid4()
    order = Order(
        id=uuid4(),
        organization_id=organization_id,
        client_id=client_id,
        country="DE",
        cart_id=cart_id,
        status="paid",
        total=Decimal("49.90"),
        date_paid=paid_at,
        date_created=paid_at - timedelta(minutes=10),
    )
    session.add(order)
    for index, product_id in enumerate(products):
        # Alternate between catalog and affiliate product columns.
        if index % 2:
            session.add(CartProduct(cart_id=cart_id, affiliate_product_id=product_id))
        else:
            session.add(CartProduct(cart_id=cart_id, product_id=product_id))
    await session.commit()
    return order


async def _add_rule(
    session,
    name: str,
    *,
    actions,
    conditions=None,
    priority: int = 100,
    scope: MagicRuleScopeEnum = MagicRuleScopeEnum.BASE,
    event: MagicEventTypeEnum = MagicEventTypeEnum.ORDER_PAID,
    start_date=None,
    end_date=None,
    is_enabled: bool = True,
) -> MagicRule:
    rule = MagicRule(
        id=uuid4(),
        organization_id=ORG,
        name=name,
        event=event,
        scope=scope,
        priority=priority,
        is_enabled=is_enabled,
        start_date=start_date,
        end_date=end_date,
        conditions=conditions if conditions is not None else [],
        actions=actions,
    )
    session.add(rule)
    await session.commit()
    return rule


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _executions(session) -> list[MagicRuleExecution]:
    stmt = select(MagicRuleExecution).execution_options(populate_existing=True)
    return list((await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_product_rule_grants_points_and_records_execution(session_factory, reset_magic_rules_store) -> None:
    async with session_factory() as session:
        order = await _add_order(session, products=("P9", "P1"))
        rule = await _add_rule(session, "Buy P1", conditions=[BUYS_P1], actions=[GRANT_100])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=str(order.id), now=NOW)

        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()
        balance = await AffiliatePointsService(session).get_balance(client_id=CLIENT, organization_id=ORG)
        executions = await _executions(session)

    assert [(result.rule_id, result.matched) for result in results] == [(str(rule.id), True)]
    assert results[0].actions_executed == ["grant_affiliate_points:100"]
    assert [(log.points, log.action) for log in logs] == [(100, "promo")]
    assert balance.points_current == 100
    assert len(executions) == 1
    assert executions[0].rule_id == rule.id
    assert executions[0].order_id == order.id
    assert executions[0].status == MagicRuleExecutionStatusEnum.COMPLETED
    assert executions[0].actions_executed == ["grant_affiliate_points:100"]
    assert reset_magic_rules_store.snapshot().evaluations == {"total": 1, "matched": 1}


@pytest.mark.asyncio
async def test_inactive_customer_receives_coupon_message(session_factory) -> None:
    notifier = InMemoryNotificationEnqueuer()
    coupon_action = {
        "kind": "send_message_with_coupon",
        "subject": "We missed you",
        "htmlTemplate": "<p>Code: {coupon_code}</p>",
        "channels": ["email"],
        "coupon": {
            "name": "Win-back",
            "description": "15% off",
            "discountType": "percentage",
            "discountAmount": 15,
            "usageLimit": 1,
            "expendingLimit": 1,
            "countries": ["DE"],
            "visibility": False,
            "stackable": False,
        },
    }

    async with session_factory() as session:
        await _add_order(session, paid_at=PAID_AT - timedelta(days=40), products=("P5",))
        await _add_order(session, paid_at=PAID_AT + timedelta(days=2), products=("P5",))
        order = await _add_order(session, products=("P9",))
        await _add_rule(
            session,
            "Win-back",
            conditions=[{"kind": "customer_inactive_for_days", "days": 30}],
            actions=[coupon_action],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=notifier)
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        coupons = (await session.execute(select(Coupon))).scalars().all()

    assert results[0].matched is True
    assert results[0].actions_executed == ["send_message_with_coupon"]
    assert len(coupons) == 1
    assert len(notifier.requests) == 1
    assert notifier.requests[0].payload.message == f"<p>Code: {coupons[0].code}</p>"
    assert notifier.requests[0].order_id == str(order.id)


@pytest.mark.asyncio
async def test_days_since_last_purchase_is_floored(session_factory) -> None:
    async with session_factory() as session:
        await _add_order(session, paid_at=PAID_AT - timedelta(days=30, hours=-1))
        order = await _add_order(session)
        await _add_rule(
            session,
            "Inactive 30",
            conditions=[{"kind": "customer_inactive_for_days", "days": 30}],
            actions=[GRANT_100],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert [result.matched for result in results] == [False]


@pytest.mark.asyncio
async def test_first_time_customer_is_not_inactive(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await _add_rule(
            session,
            "Inactive 1",
            conditions=[{"kind": "customer_inactive_for_days", "days": 1}],
            actions=[GRANT_100],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert [result.matched for result in results] == [False]


@pytest.mark.asyncio
async def test_only_first_matching_rule_fires_by_priority(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        second = await _add_rule(
            session,
            "Second",
            priority=20,
            actions=[{"kind": "grant_affiliate_points", "points": 5, "action": "second"}],
        )
        first = await _add_rule(
            session,
            "First",
            priority=10,
            actions=[{"kind": "grant_affiliate_points", "points": 7, "action": "first"}],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()
        executions = await _executions(session)

    assert [(result.rule_id, result.matched) for result in results] == [
        (str(first.id), True),
        (str(second.id), False),
    ]
    assert results[1].actions_executed == []
    assert [log.action for log in logs] == ["first"]
    assert [execution.rule_id for execution in executions] == [first.id]


@pytest.mark.asyncio
async def test_queued_booster_is_applied_on_next_order(session_factory) -> None:
    async with session_factory() as session:
        first_order = await _add_order(session, paid_at=PAID_AT - timedelta(days=3), products=("P1",))
        await _add_rule(
            session,
            "Come back bonus",
            conditions=[{"kind": "purchased_product_in_list", "productIds": ["P1"]}],
            actions=[{"kind": "queue_next_order_points", "points": 20}],
        )
        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        service = AffiliatePointsService(session)

        first_results = await orchestrator.evaluate_rules_for_order(
            organization_id=ORG,
            order_id=first_order.id,
            now=NOW - timedelta(days=3),
        )
        assert first_results[0].actions_executed == ["queue_next_order_points:20"]
        assert await service.get_balance(client_id=CLIENT, organization_id=ORG) is None

        second_order = await _add_order(session, products=("P9",))
        second_results = await orchestrator.evaluate_rules_for_order(
            organization_id=ORG,
            order_id=second_order.id,
            now=NOW,
        )

        balance = await service.get_balance(client_id=CLIENT, organization_id=ORG)
        booster = (
            await session.execute(select(AffiliatePointBooster).execution_options(populate_existing=True))
        ).scalar_one()
        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()

    assert [result.matched for result in second_results] == [False]
    assert balance.points_current == 20
    assert booster.consumed_order_id == second_order.id
    assert booster.consumed_at is not None
    assert [(log.action, log.points) for log in logs] == [(NEXT_ORDER_BONUS_ACTION, 20)]


@pytest.mark.asyncio
async def test_booster_is_consumed_once_across_repeated_evaluations(session_factory, reset_magic_rules_store) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        other_order = await _add_order(session, paid_at=PAID_AT + timedelta(minutes=1))
        await AffiliatePointsService(session).queue_booster(organization_id=ORG, client_id=CLIENT, points=25)

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=other_order.id, now=NOW)
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        balance = await AffiliatePointsService(session).get_balance(client_id=CLIENT, organization_id=ORG)
        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()

    assert balance.points_current == 25
    assert len(logs) == 1
    assert reset_magic_rules_store.snapshot().boosters == {"consumed": 1, "points_awarded": 25}


@pytest.mark.asyncio
async def test_redelivered_order_keeps_its_own_booster_for_the_next_order(session_factory) -> None:
    async with session_factory() as session:
        first_order = await _add_order(session, paid_at=PAID_AT - timedelta(days=1))
        first_order_id = first_order.id
        await _add_rule(session, "Come back bonus", actions=[{"kind": "queue_next_order_points", "points": 20}])
        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())

        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=first_order_id, now=NOW)
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=first_order_id, now=NOW)

        queued = (
            await session.execute(select(AffiliatePointBooster).execution_options(populate_existing=True))
        ).scalar_one()
        queued_source, queued_consumed_at = queued.source_order_id, queued.consumed_at
        logs_after_redelivery = await _count(session, AffiliatePointLog)

        second_order = await _add_order(session)
        second_order_id = second_order.id
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=second_order_id, now=NOW)

        first_booster = (
            await session.execute(
                select(AffiliatePointBooster)
                .where(AffiliatePointBooster.source_order_id == first_order_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()

    assert queued_source == first_order_id
    assert queued_consumed_at is None
    assert logs_after_redelivery == 0
    assert first_booster.consumed_order_id == second_order_id
    assert [(log.action, log.points) for log in logs] == [(NEXT_ORDER_BONUS_ACTION, 20)]


@pytest.mark.asyncio
async def test_booster_expiry_is_judged_at_paid_time_on_late_evaluation(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await AffiliatePointsService(session).queue_booster(
            organization_id=ORG,
            client_id=CLIENT,
            points=20,
            expires_at=PAID_AT + timedelta(hours=1),
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        await orchestrator.evaluate_rules_for_order(
            organization_id=ORG,
            order_id=order.id,
            now=PAID_AT + timedelta(hours=2),
        )

        logs = (await session.execute(select(AffiliatePointLog))).scalars().all()

    assert [(log.action, log.points) for log in logs] == [(NEXT_ORDER_BONUS_ACTION, 20)]


@pytest.mark.asyncio
async def test_booster_expired_before_payment_is_not_applied(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await AffiliatePointsService(session).queue_booster(
            organization_id=ORG,
            client_id=CLIENT,
            points=20,
            expires_at=PAID_AT - timedelta(minutes=1),
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        logs = await _count(session, AffiliatePointLog)

    assert logs == 0


@pytest.mark.asyncio
async def test_repeated_delivery_does_not_refire_rule(session_factory, reset_magic_rules_store) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await _add_rule(session, "Always", actions=[GRANT_100])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        first = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)
        second = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        logs = await _count(session, AffiliatePointLog)
        executions = await _count(session, MagicRuleExecution)

    assert [result.matched for result in first] == [True]
    assert second == []
    assert logs == 1
    assert executions == 1
    assert reset_magic_rules_store.snapshot().rules == {"duplicate_skipped": 1}


@pytest.mark.asyncio
async def test_execution_claim_is_exclusive(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        rule = await _add_rule(session, "Always", actions=[GRANT_100])
        definition = decode_rule(rule)

        ledger = _OrderExecutionLedger(session, organization_id=ORG, order_id=order.id)
        racing_ledger = _OrderExecutionLedger(session, organization_id=ORG, order_id=order.id)

        assert await ledger.claim(definition) is True
        assert await racing_ledger.claim(definition) is False

        executions = await _executions(session)

    assert len(executions) == 1
    assert executions[0].status == MagicRuleExecutionStatusEnum.CLAIMED


@pytest.mark.asyncio
async def test_failed_action_marks_execution_failed_and_propagates(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        order_id = order.id
        await _add_rule(
            session,
            "Grant then notify",
            actions=[
                GRANT_100,
                {
                    "kind": "recommend_product",
                    "subject": "Hi",
                    "htmlTemplate": "<p>{product_id}</p>",
                    "channels": ["email"],
                    "productId": "P2",
                },
            ],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=ExplodingNotifier())
        with pytest.raises(RuntimeError, match="notification backend down"):
            await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order_id, now=NOW)

        executions = await _executions(session)
        logs = await _count(session, AffiliatePointLog)

        retry = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order_id, now=NOW)

    assert logs == 1
    assert len(executions) == 1
    assert executions[0].status == MagicRuleExecutionStatusEnum.FAILED
    assert executions[0].actions_executed == ["grant_affiliate_points:100"]
    assert "notification backend down" in executions[0].error
    assert retry == []


@pytest.mark.asyncio
async def test_expired_rule_is_disabled_and_future_rule_waits(session_factory, reset_magic_rules_store) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        expired = await _add_rule(session, "Expired", priority=1, end_date=NOW - timedelta(days=1), actions=[GRANT_100])
        upcoming = await _add_rule(
            session,
            "Upcoming",
            priority=2,
            start_date=NOW + timedelta(days=1),
            actions=[GRANT_100],
        )

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

        rules = {
            rule.id: rule
            for rule in (
                await session.execute(select(MagicRule).execution_options(populate_existing=True))
            ).scalars()
        }

    assert results == []
    assert rules[expired.id].is_enabled is False
    assert rules[upcoming.id].is_enabled is True
    assert reset_magic_rules_store.snapshot().rules == {"auto_disabled": 1}


@pytest.mark.asyncio
async def test_only_base_scope_order_paid_rules_are_candidates(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await _add_rule(session, "Supplier", priority=1, scope=MagicRuleScopeEnum.SUPPLIER, actions=[GRANT_100])
        await _add_rule(session, "Manual", priority=2, event=MagicEventTypeEnum.MANUAL, actions=[GRANT_100])
        await _add_rule(session, "Disabled", priority=3, is_enabled=False, actions=[GRANT_100])
        await _add_rule(session, "Other tenant", priority=4, actions=[GRANT_100])
        base = await _add_rule(
            session,
            "Base",
            priority=5,
            actions=[{"kind": "grant_affiliate_points", "points": 1, "action": "base"}],
        )
        other = (await session.execute(select(MagicRule).where(MagicRule.name == "Other tenant"))).scalar_one()
        other.organization_id = "org_2"
        await session.commit()

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert [(result.rule_id, result.matched) for result in results] == [(str(base.id), True)]


@pytest.mark.asyncio
async def test_candidate_limit_caps_loaded_rules(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await _add_rule(session, "Never", priority=1, conditions=[{"kind": "purchased_product_in_list", "productIds": ["X"]}], actions=[GRANT_100])
        await _add_rule(session, "Always", priority=2, actions=[GRANT_100])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer(), candidate_limit=1)
        results = await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert [(result.rule_name, result.matched) for result in results] == [("Never", False)]


@pytest.mark.asyncio
async def test_purchase_window_uses_configured_timezone(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session, paid_at=datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc))
        await _add_rule(
            session,
            "Night owls",
            conditions=[{"kind": "purchase_time_in_window", "fromHour": 0, "toHour": 1}],
            actions=[GRANT_100],
        )

        utc = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        assert [r.matched for r in await utc.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)] == [False]

        berlin = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer(), tz=ZoneInfo("Europe/Berlin"))
        results = await berlin.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert [result.matched for result in results] == [True]


@pytest.mark.asyncio
async def test_multiplier_uses_supplied_base_points(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        await _add_rule(session, "Double", actions=[{"kind": "multiply_affiliate_points_for_order", "multiplier": 2}])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        results = await orchestrator.evaluate_rules_for_order(
            organization_id=ORG,
            order_id=order.id,
            base_affiliate_points_awarded=60,
            now=NOW,
        )
        log = (await session.execute(select(AffiliatePointLog))).scalar_one()

    assert results[0].actions_executed == ["multiply_affiliate_points_for_order:x2"]
    assert (log.points, log.action) == (60, "promo_multiplier")


@pytest.mark.asyncio
async def test_malformed_rule_raises_decode_error(session_factory) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        rule = await _add_rule(session, "Broken", actions=[{"kind": "teleport_customer"}])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        with pytest.raises(MagicRuleDecodeError) as excinfo:
            await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, now=NOW)

    assert excinfo.value.rule_id == str(rule.id)
    assert excinfo.value.errors


@pytest.mark.asyncio
async def test_rules_stored_as_json_text_are_decoded(session_factory) -> None:
    async with session_factory() as session:
        rule = await _add_rule(
            session,
            "Text encoded",
            conditions='[{"kind": "always"}]',
            actions='[{"kind": "grant_affiliate_points", "points": 3, "action": "text"}]',
        )

        definition = decode_rule(rule)

    assert definition.conditions[0].kind == "always"
    assert definition.actions[0].points == 3


@pytest.mark.asyncio
async def test_non_order_paid_events_and_unknown_orders_are_ignored(session_factory, reset_magic_rules_store) -> None:
    async with session_factory() as session:
        order = await _add_order(session)
        foreign = await _add_order(session, organization_id="org_2")
        await _add_rule(session, "Always", actions=[GRANT_100])

        orchestrator = MagicRuleOrchestrator(session, notifier=InMemoryNotificationEnqueuer())
        assert await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=order.id, event="manual") == []
        assert await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=foreign.id, now=NOW) == []
        assert await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id=uuid4(), now=NOW) == []
        assert await orchestrator.evaluate_rules_for_order(organization_id=ORG, order_id="not-a-uuid", now=NOW) == []

        logs = await _count(session, AffiliatePointLog)

    assert logs == 0
    evaluations = reset_magic_rules_store.snapshot().evaluations
    assert evaluations["ignored_event"] == 1
    assert evaluations["order_not_found"] == 3
