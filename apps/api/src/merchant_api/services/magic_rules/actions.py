"""Side-effecting executors for rule actions.

Each executor commits its own work. A failing action propagates its exception
and nothing already committed by earlier actions is compensated.
"""

from __future__ import annotations

import math
from typing import Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_api.models.notification import NotificationChannelEnum
from merchant_api.observability.magic_rules import get_magic_rules_store
from merchant_api.schemas.magic_rules import (
    Action,
    EventPayload,
    GrantAffiliatePointsAction,
    MultiplyAffiliatePointsForOrderAction,
    OrderPaidEvent,
    QueueNextOrderPointsAction,
    RecommendProductAction,
    SendMessageWithCouponAction,
)
from merchant_api.services.coupons.service import CouponService
from merchant_api.services.loyalty.affiliate_points import AffiliatePointsService
from merchant_api.services.notifications.backend import (
    NotificationEnqueuer,
    NotificationPayload,
    NotificationRequest,
)
from merchant_api.services.notifications.outbox import NotificationOutbox


ORDER_MESSAGE_NOTIFICATION_TYPE = "order_message"


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Substitute every ``{name}`` placeholder present in ``variables``."""

    rendered = template
    for key, value in variables.items():
        rendered = rendered.replace(f"{{{key}}}", value or "")
    return rendered


def multiplier_bonus(base_points: int, multiplier: float) -> int:
    """Extra points on top of ``base_points``; half-way values round toward +inf."""

    if base_points <= 0 or multiplier == 1:
        return 0
    return math.floor(base_points * (multiplier - 1) + 0.5)


def _format_multiplier(multiplier: float) -> str:
    return f"{multiplier:g}"


def _order_id(event: EventPayload) -> str:
    return event.order_id if isinstance(event, OrderPaidEvent) else ""


def _order_uuid(event: EventPayload) -> UUID | None:
    try:
        return UUID(_order_id(event))
    except ValueError:
        return None


class MagicRuleActionExecutor:
    """Dispatches a decoded action to its coupon, point or notification executor."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        notifier: NotificationEnqueuer | None = None,
        points_service: AffiliatePointsService | None = None,
        coupon_service: CouponService | None = None,
    ) -> None:
        self._notifier = notifier or NotificationOutbox(db_session)
        self._points = points_service or AffiliatePointsService(db_session)
        self._coupons = coupon_service or CouponService(db_session)
        self._store = get_magic_rules_store()

    async def execute(self, action: Action, event: EventPayload) -> str:
        """Run ``action`` and return the label recorded in ``actionsExecuted``."""

        try:
            if isinstance(action, SendMessageWithCouponAction):
                label = await self._send_message_with_coupon(action, event)
            elif isinstance(action, RecommendProductAction):
                label = await self._recommend_product(action, event)
            elif isinstance(action, GrantAffiliatePointsAction):
                label = await self._grant_points(action, event)
            elif isinstance(action, MultiplyAffiliatePointsForOrderAction):
                label = await self._multiply_points(action, event)
            elif isinstance(action, QueueNextOrderPointsAction):
                label = await self._queue_next_order_points(action, event)
            else:  # pragma: no cover - the discriminated union is exhaustive
                raise TypeError(f"Unsupported magic rule action: {type(action).__name__}")
        except Exception:
            self._store.record_action_failure(action.kind)
            raise

        self._store.record_action(action.kind)
        return label

    async def _send_message_with_coupon(
        self,
        action: SendMessageWithCouponAction,
        event: EventPayload,
    ) -> str:
        coupon = await self._coupons.issue_coupon(event.organization_id, action.coupon)
        variables = {
            "coupon_code": coupon.code,
            "coupon_expires": coupon.expiration_date.date().isoformat() if coupon.expiration_date else "",
            "client_id": event.client_id,
            "order_id": _order_id(event),
        }
        await self._notify(
            event,
            subject=action.subject,
            template=action.html_template,
            channels=action.channels,
            variables=variables,
        )
        return action.kind

    async def _recommend_product(self, action: RecommendProductAction, event: EventPayload) -> str:
        variables = {
            "product_id": action.product_id,
            "client_id": event.client_id,
            "order_id": _order_id(event),
        }
        await self._notify(
            event,
            subject=action.subject,
            template=action.html_template,
            channels=action.channels,
            variables=variables,
        )
        return action.kind

    async def _grant_points(self, action: GrantAffiliatePointsAction, event: EventPayload) -> str:
        await self._points.grant_points(
            organization_id=event.organization_id,
            client_id=event.client_id,
            points=action.points,
            action=action.action,
            description=action.description,
        )
        return f"{action.kind}:{action.points}"

    async def _multiply_points(
        self,
        action: MultiplyAffiliatePointsForOrderAction,
        event: EventPayload,
    ) -> str:
        base = 0
        if isinstance(event, OrderPaidEvent):
            base = event.base_affiliate_points_awarded or 0
        extra = multiplier_bonus(base, action.multiplier)
        if extra != 0:
            await self._points.grant_points(
                organization_id=event.organization_id,
                client_id=event.client_id,
                points=extra,
                action=action.action,
                description=action.description or f"Multiplier x{_format_multiplier(action.multiplier)}",
            )
        else:
            logger.debug(
                "Multiplier produced no extra points",
                client_id=event.client_id,
                base_points=base,
                multiplier=action.multiplier,
            )
        return f"{action.kind}:x{_format_multiplier(action.multiplier)}"

    async def _queue_next_order_points(
        self,
        action: QueueNextOrderPointsAction,
        event: EventPayload,
    ) -> str:
        await self._points.queue_booster(
            organization_id=event.organization_id,
            client_id=event.client_id,
            points=action.points,
            expires_at=action.expires_at,
            description=action.description,
            source_order_id=_order_uuid(event),
        )
        return f"{action.kind}:{action.points}"

    async def _notify(
        self,
        event: EventPayload,
        *,
        subject: str,
        template: str,
        channels: list[str],
        variables: dict[str, str],
    ) -> None:
        request = NotificationRequest(
            organization_id=event.organization_id,
            type=ORDER_MESSAGE_NOTIFICATION_TYPE,
            channels=[NotificationChannelEnum(channel) for channel in channels],
            order_id=_order_id(event) or None,
            trigger=None,
            payload=NotificationPayload(
                subject=render_template(subject, variables),
                message=render_template(template, variables),
                variables=variables,
                country=event.country,
                user_id=event.user_id,
                client_id=event.client_id,
            ),
        )
        await self._notifier.enqueue(request)


__all__ = [
    "MagicRuleActionExecutor",
    "ORDER_MESSAGE_NOTIFICATION_TYPE",
    "multiplier_bonus",
    "render_template",
]
