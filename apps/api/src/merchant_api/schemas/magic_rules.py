"""Typed rule, condition, action and event shapes for the automation engine.

Rules are stored as JSON (camelCase keys) and decoded into these models at the
storage boundary; the engine only ever sees validated, immutable values.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter


NonEmptyStr = Annotated[str, StringConstraints(min_length=1)]
CountryCode = Annotated[str, StringConstraints(min_length=2)]
NotificationChannel = Literal["email", "telegram"]


class MagicEventType(str, Enum):
    ORDER_PAID = "order_paid"
    MANUAL = "manual"
    SWEEP = "sweep"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


# Conditions


class AlwaysCondition(_FrozenModel):
    kind: Literal["always"] = "always"


class CustomerInactiveForDaysCondition(_FrozenModel):
    kind: Literal["customer_inactive_for_days"] = "customer_inactive_for_days"
    days: int = Field(..., ge=1)


class PurchasedProductInListCondition(_FrozenModel):
    kind: Literal["purchased_product_in_list"] = "purchased_product_in_list"
    product_ids: list[NonEmptyStr] = Field(..., alias="productIds", min_length=1)


class PurchaseTimeInWindowCondition(_FrozenModel):
    """Inclusive hour window; wraps past midnight when ``from_hour > to_hour``."""

    kind: Literal["purchase_time_in_window"] = "purchase_time_in_window"
    from_hour: int = Field(..., alias="fromHour", ge=0, le=23)
    to_hour: int = Field(..., alias="toHour", ge=0, le=23)


Condition = Annotated[
    Union[
        AlwaysCondition,
        CustomerInactiveForDaysCondition,
        PurchasedProductInListCondition,
        PurchaseTimeInWindowCondition,
    ],
    Field(discriminator="kind"),
]


# Actions


class CouponTemplate(_FrozenModel):
    name: NonEmptyStr
    description: NonEmptyStr
    discount_type: Literal["fixed", "percentage"] = Field(..., alias="discountType")
    discount_amount: float = Field(..., alias="discountAmount", gt=0)
    usage_limit: int = Field(..., alias="usageLimit", ge=0)
    expending_limit: int = Field(..., alias="expendingLimit", ge=0)
    expending_minimum: int = Field(default=0, alias="expendingMinimum", ge=0)
    countries: list[CountryCode] = Field(..., min_length=1)
    visibility: bool
    stackable: bool
    start_date: datetime | None = Field(default=None, alias="startDateISO")
    expiration_date: datetime | None = Field(default=None, alias="expirationDateISO")


class SendMessageWithCouponAction(_FrozenModel):
    """Issue a coupon, then notify with ``{coupon_code}``/``{coupon_expires}`` substituted."""

    kind: Literal["send_message_with_coupon"] = "send_message_with_coupon"
    subject: NonEmptyStr
    html_template: NonEmptyStr = Field(..., alias="htmlTemplate")
    channels: list[NotificationChannel] = Field(..., min_length=1)
    coupon: CouponTemplate


class RecommendProductAction(_FrozenModel):
    kind: Literal["recommend_product"] = "recommend_product"
    subject: NonEmptyStr
    html_template: NonEmptyStr = Field(..., alias="htmlTemplate")
    channels: list[NotificationChannel] = Field(..., min_length=1)
    product_id: NonEmptyStr = Field(..., alias="productId")


class GrantAffiliatePointsAction(_FrozenModel):
    kind: Literal["grant_affiliate_points"] = "grant_affiliate_points"
    points: int
    action: NonEmptyStr
    description: str | None = None


class MultiplyAffiliatePointsForOrderAction(_FrozenModel):
    kind: Literal["multiply_affiliate_points_for_order"] = "multiply_affiliate_points_for_order"
    multiplier: float = Field(..., gt=0)
    action: str = "promo_multiplier"
    description: str | None = None


class QueueNextOrderPointsAction(_FrozenModel):
    kind: Literal["queue_next_order_points"] = "queue_next_order_points"
    points: int = Field(..., gt=0)
    expires_at: datetime | None = Field(default=None, alias="expiresAtISO")
    description: str | None = None


Action = Annotated[
    Union[
        SendMessageWithCouponAction,
        RecommendProductAction,
        GrantAffiliatePointsAction,
        MultiplyAffiliatePointsForOrderAction,
        QueueNextOrderPointsAction,
    ],
    Field(discriminator="kind"),
]


# Rules


class RuleMatch(_FrozenModel):
    any_of_events: list[MagicEventType] = Field(..., alias="anyOfEvents", min_length=1)


class MagicRuleDefinition(_FrozenModel):
    """A decoded rule. Stop-after-match and run-once-per-order are engine invariants."""

    id: NonEmptyStr
    name: NonEmptyStr
    enabled: bool = True
    match: RuleMatch
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(..., min_length=1)


# Events


class _EventBase(_FrozenModel):
    organization_id: NonEmptyStr = Field(..., alias="organizationId")
    client_id: NonEmptyStr = Field(..., alias="clientId")
    user_id: str | None = Field(default=None, alias="userId")
    country: str | None = None


class OrderPaidEvent(_EventBase):
    type: Literal["order_paid"] = "order_paid"
    order_id: NonEmptyStr = Field(..., alias="orderId")
    purchased_product_ids: list[str] = Field(default_factory=list, alias="purchasedProductIds")
    purchased_at: datetime = Field(..., alias="purchasedAtISO")
    base_affiliate_points_awarded: int | None = Field(default=None, alias="baseAffiliatePointsAwarded")
    days_since_last_purchase: int | None = Field(default=None, alias="daysSinceLastPurchase")


class ManualEvent(_EventBase):
    type: Literal["manual"] = "manual"


class SweepEvent(_EventBase):
    type: Literal["sweep"] = "sweep"
    days_since_last_purchase: int | None = Field(default=None, alias="daysSinceLastPurchase")


EventPayload = Annotated[
    Union[OrderPaidEvent, ManualEvent, SweepEvent],
    Field(discriminator="type"),
]


class RuleExecutionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    rule_id: str = Field(..., alias="ruleId")
    rule_name: str = Field(..., alias="ruleName")
    matched: bool
    actions_executed: list[str] = Field(default_factory=list, alias="actionsExecuted")

    @classmethod
    def not_matched(cls, rule: MagicRuleDefinition) -> "RuleExecutionResult":
        return cls(rule_id=rule.id, rule_name=rule.name, matched=False, actions_executed=[])


CONDITIONS_ADAPTER: TypeAdapter[list[Condition]] = TypeAdapter(list[Condition])
ACTIONS_ADAPTER: TypeAdapter[list[Action]] = TypeAdapter(list[Action])
EVENT_ADAPTER: TypeAdapter[EventPayload] = TypeAdapter(EventPayload)


__all__ = [
    "ACTIONS_ADAPTER",
    "Action",
    "AlwaysCondition",
    "CONDITIONS_ADAPTER",
    "Condition",
    "CouponTemplate",
    "CustomerInactiveForDaysCondition",
    "EVENT_ADAPTER",
    "EventPayload",
    "GrantAffiliatePointsAction",
    "MagicEventType",
    "MagicRuleDefinition",
    "ManualEvent",
    "MultiplyAffiliatePointsForOrderAction",
    "NotificationChannel",
    "OrderPaidEvent",
    "PurchaseTimeInWindowCondition",
    "PurchasedProductInListCondition",
    "QueueNextOrderPointsAction",
    "RecommendProductAction",
    "RuleExecutionResult",
    "RuleMatch",
    "SendMessageWithCouponAction",
    "SweepEvent",
]
