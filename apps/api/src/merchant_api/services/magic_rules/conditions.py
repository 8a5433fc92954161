"""Pure predicates testing one condition against an event's facts."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Iterable
from zoneinfo import ZoneInfo

from merchant_api.schemas.magic_rules import (
    AlwaysCondition,
    Condition,
    CustomerInactiveForDaysCondition,
    EventPayload,
    OrderPaidEvent,
    PurchaseTimeInWindowCondition,
    PurchasedProductInListCondition,
    SweepEvent,
)


def resolve_timezone(name: str | None) -> tzinfo:
    """Resolve the configured purchase-hour timezone; blank means UTC."""

    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def hour_in_window(hour: int, from_hour: int, to_hour: int) -> bool:
    """Inclusive window test; equal bounds cover the whole day."""

    if from_hour == to_hour:
        return True
    if from_hour < to_hour:
        return from_hour <= hour <= to_hour
    return hour >= from_hour or hour <= to_hour


def purchase_hour(purchased_at: datetime, tz: tzinfo = timezone.utc) -> int:
    # Naive timestamps are stored as UTC.
    if purchased_at.tzinfo is None:
        purchased_at = purchased_at.replace(tzinfo=timezone.utc)
    return purchased_at.astimezone(tz).hour


def _days_since_last_purchase(event: EventPayload) -> int | None:
    if isinstance(event, (OrderPaidEvent, SweepEvent)):
        return event.days_since_last_purchase
    return None


def evaluate_condition(condition: Condition, event: EventPayload, *, tz: tzinfo = timezone.utc) -> bool:
    """Return whether ``condition`` holds; incompatible event variants evaluate false."""

    if isinstance(condition, AlwaysCondition):
        return True

    if isinstance(condition, CustomerInactiveForDaysCondition):
        days = _days_since_last_purchase(event)
        return days is not None and days >= condition.days

    if isinstance(condition, PurchasedProductInListCondition):
        if not isinstance(event, OrderPaidEvent):
            return False
        wanted = set(condition.product_ids)
        return any(product_id in wanted for product_id in event.purchased_product_ids)

    if isinstance(condition, PurchaseTimeInWindowCondition):
        if not isinstance(event, OrderPaidEvent):
            return False
        hour = purchase_hour(event.purchased_at, tz)
        return hour_in_window(hour, condition.from_hour, condition.to_hour)

    return False


def evaluate_conditions(
    conditions: Iterable[Condition],
    event: EventPayload,
    *,
    tz: tzinfo = timezone.utc,
) -> bool:
    """AND-combine conditions; an empty list matches unconditionally."""

    return all(evaluate_condition(condition, event, tz=tz) for condition in conditions)


__all__ = [
    "evaluate_condition",
    "evaluate_conditions",
    "hour_in_window",
    "purchase_hour",
    "resolve_timezone",
]
