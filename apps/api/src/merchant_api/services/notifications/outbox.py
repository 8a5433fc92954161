"""Database-backed notification outbox (one pending row per channel)."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_api.core.settings import settings
from merchant_api.db.dialect import dialect_insert
from merchant_api.models.notification import (
    NotificationChannelEnum,
    NotificationOutbox as NotificationOutboxRow,
    NotificationOutboxStatusEnum,
)

from .backend import NotificationRequest


ADMIN_ONLY_TRIGGER = "admin_only"
_STABLE_ADMIN_ORDER_TYPES = {"order_paid", "order_completed"}


def make_dedupe_key(values: Mapping[str, Any]) -> str:
    """Stable SHA-256 over sorted-key JSON."""

    encoded = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _dedupe_key_for(request: NotificationRequest, channel: NotificationChannelEnum) -> str:
    trigger = request.trigger or ""
    # Admin copies of order notifications collapse to one row regardless of wording.
    if trigger == ADMIN_ONLY_TRIGGER and request.type in _STABLE_ADMIN_ORDER_TYPES and request.order_id:
        return f"admin:{request.organization_id}:{request.order_id}:{request.type}:{channel.value}"

    salt = "admin" if trigger == ADMIN_ONLY_TRIGGER else (request.dedupe_salt or "")
    payload = request.payload
    return make_dedupe_key(
        {
            "org": request.organization_id,
            "order": request.order_id,
            "type": request.type,
            "trigger": request.trigger,
            "channel": channel.value,
            "salt": salt,
            "clientId": payload.client_id,
            "userId": payload.user_id,
            "vars": payload.variables,
            "subject": payload.subject or "",
            "message": payload.message or "",
        }
    )


def _coerce_order_id(order_id: str | None) -> UUID | None:
    if not order_id:
        return None
    try:
        return UUID(str(order_id))
    except ValueError:
        return None


class NotificationOutbox:
    """Persist fan-out requests; identical requests are deduplicated per channel."""

    def __init__(self, db_session: AsyncSession, *, max_attempts: int | None = None) -> None:
        self._db = db_session
        self._max_attempts = max_attempts or settings.notification_outbox_max_attempts

    async def enqueue(self, request: NotificationRequest) -> list[str]:
        """Insert one pending row per channel and return the ids actually inserted."""

        inserted: list[str] = []
        now = datetime.now(timezone.utc)
        payload = request.payload.as_dict()
        for channel in request.channels:
            channel = NotificationChannelEnum(channel)
            dedupe_key = _dedupe_key_for(request, channel)
            outbox_id = f"out_{uuid4()}"
            stmt = (
                dialect_insert(self._db, NotificationOutboxRow)
                .values(
                    id=outbox_id,
                    organization_id=request.organization_id,
                    order_id=_coerce_order_id(request.order_id),
                    type=request.type,
                    trigger=request.trigger,
                    channel=channel,
                    payload=payload,
                    dedupe_key=dedupe_key,
                    attempts=0,
                    max_attempts=self._max_attempts,
                    next_attempt_at=now,
                    last_error=None,
                    status=NotificationOutboxStatusEnum.PENDING,
                )
                .on_conflict_do_nothing(index_elements=[NotificationOutboxRow.dedupe_key])
                .returning(NotificationOutboxRow.id)
            )
            result = await self._db.execute(stmt)
            row_id = result.scalar_one_or_none()
            if row_id is None:
                logger.debug(
                    "Skipped duplicate notification",
                    organization_id=request.organization_id,
                    channel=channel.value,
                    dedupe_key=dedupe_key,
                )
                continue
            inserted.append(row_id)

        await self._db.commit()
        logger.info(
            "Enqueued notification fan-out",
            organization_id=request.organization_id,
            order_id=request.order_id,
            type=request.type,
            channels=[NotificationChannelEnum(channel).value for channel in request.channels],
            inserted=len(inserted),
        )
        return inserted
