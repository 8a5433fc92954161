"""Affiliate point ledger: grants, balances and next-order boosters."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from merchant_api.db.dialect import dialect_insert
from merchant_api.models.affiliate import (
    AffiliatePointBalance,
    AffiliatePointBooster,
    AffiliatePointLog,
)


NEXT_ORDER_BONUS_ACTION = "next_order_bonus"


@dataclass
class BoosterConsumption:
    """Outcome of applying queued boosters to an order."""

    order_id: UUID
    booster_ids: list[UUID]
    total_points: int
    log_id: UUID


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AffiliatePointsService:
    """Coordinates point-log writes and their balance side effects.

    Every log row that moves points is committed together with its balance
    upsert; balances are only ever changed with an atomic accumulate so that
    concurrent grants for the same client never lose updates.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def grant_points(
        self,
        *,
        organization_id: str,
        client_id: str,
        points: int,
        action: str,
        description: str | None = None,
        source_client_id: str | None = None,
    ) -> AffiliatePointLog:
        """Append a signed point log and apply it to the balance in one transaction."""

        try:
            log = AffiliatePointLog(
                id=uuid4(),
                organization_id=organization_id,
                client_id=client_id,
                points=points,
                action=action,
                description=description,
                source_client_id=source_client_id,
            )
            self._db.add(log)
            await self._db.flush()

            delta_spent = abs(points) if points < 0 else 0
            await self._apply_balance_delta(
                client_id=client_id,
                organization_id=organization_id,
                delta_current=points,
                delta_spent=delta_spent,
            )
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            logger.warning(
                "Affiliate point grant rolled back",
                error=str(exc),
                organization_id=organization_id,
                client_id=client_id,
                points=points,
                action=action,
            )
            raise

        logger.info(
            "Granted affiliate points",
            organization_id=organization_id,
            client_id=client_id,
            points=points,
            action=action,
        )
        return log

    async def queue_booster(
        self,
        *,
        organization_id: str,
        client_id: str,
        points: int,
        expires_at: datetime | None = None,
        description: str | None = None,
        source_order_id: UUID | None = None,
    ) -> AffiliatePointBooster:
        """Store points for the client's next qualifying order; the balance is untouched.

        ``source_order_id`` is the order that queued the booster; that order
        never consumes it, even when its event is delivered again.
        """

        normalized_expiry = _as_utc(expires_at) if expires_at else None
        booster = AffiliatePointBooster(
            id=uuid4(),
            organization_id=organization_id,
            client_id=client_id,
            points=points,
            expires_at=normalized_expiry,
            description=description,
            source_order_id=source_order_id,
        )
        self._db.add(booster)
        await self._db.commit()
        logger.info(
            "Queued next-order point booster",
            organization_id=organization_id,
            client_id=client_id,
            points=points,
            expires_at=normalized_expiry.isoformat() if normalized_expiry else None,
        )
        return booster

    async def consume_boosters(
        self,
        *,
        organization_id: str,
        client_id: str,
        order_id: UUID,
        reference_time: datetime,
    ) -> BoosterConsumption | None:
        """Apply every pending booster still valid at ``reference_time`` to ``order_id`` exactly once.

        ``reference_time`` is the order's paid time, so a replayed evaluation
        sees the same boosters the original delivery did. Boosters queued by
        ``order_id`` itself are left for the client's next order.

        Pending rows are locked with ``SELECT ... FOR UPDATE`` so concurrent
        order evaluations for the same client serialize here; the second
        caller sees the rows already consumed.
        """

        reference_time = _as_utc(reference_time)
        try:
            stmt = (
                select(AffiliatePointBooster)
                .where(
                    and_(
                        AffiliatePointBooster.organization_id == organization_id,
                        AffiliatePointBooster.client_id == client_id,
                        AffiliatePointBooster.consumed_at.is_(None),
                        or_(
                            AffiliatePointBooster.expires_at.is_(None),
                            AffiliatePointBooster.expires_at >= reference_time,
                        ),
                        or_(
                            AffiliatePointBooster.source_order_id.is_(None),
                            AffiliatePointBooster.source_order_id != order_id,
                        ),
                    )
                )
                .order_by(AffiliatePointBooster.created_at.asc())
                .with_for_update()
            )
            result = await self._db.execute(stmt)
            pending: Sequence[AffiliatePointBooster] = result.scalars().all()
            if not pending:
                await self._db.commit()
                return None

            # Only rows this call flips from pending are awarded; a racing
            # caller that read the same rows claims nothing here.
            claimed = (
                await self._db.execute(
                    update(AffiliatePointBooster)
                    .where(
                        and_(
                            AffiliatePointBooster.id.in_([booster.id for booster in pending]),
                            AffiliatePointBooster.consumed_at.is_(None),
                        )
                    )
                    .values(
                        consumed_at=datetime.now(timezone.utc),
                        consumed_order_id=order_id,
                        updated_at=func.now(),
                    )
                    .returning(AffiliatePointBooster.id, AffiliatePointBooster.points)
                    .execution_options(synchronize_session=False)
                )
            ).all()
            if not claimed:
                await self._db.commit()
                return None

            booster_ids = [row.id for row in claimed]
            total = sum(int(row.points or 0) for row in claimed)

            log = AffiliatePointLog(
                id=uuid4(),
                organization_id=organization_id,
                client_id=client_id,
                points=total,
                action=NEXT_ORDER_BONUS_ACTION,
                description=f"Auto-applied {len(booster_ids)} booster(s) on order {order_id}",
            )
            self._db.add(log)
            await self._db.flush()
            log_id = log.id

            await self._apply_balance_delta(
                client_id=client_id,
                organization_id=organization_id,
                delta_current=total,
                delta_spent=0,
            )
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            logger.warning(
                "Booster consumption rolled back",
                error=str(exc),
                organization_id=organization_id,
                client_id=client_id,
                order_id=str(order_id),
            )
            raise

        logger.info(
            "Consumed next-order boosters",
            organization_id=organization_id,
            client_id=client_id,
            order_id=str(order_id),
            boosters=len(booster_ids),
            points=total,
        )
        return BoosterConsumption(
            order_id=order_id,
            booster_ids=booster_ids,
            total_points=total,
            log_id=log_id,
        )

    async def get_balance(self, *, client_id: str, organization_id: str) -> AffiliatePointBalance | None:
        stmt = (
            select(AffiliatePointBalance)
            .where(
                and_(
                    AffiliatePointBalance.client_id == client_id,
                    AffiliatePointBalance.organization_id == organization_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def _apply_balance_delta(
        self,
        *,
        client_id: str,
        organization_id: str,
        delta_current: int,
        delta_spent: int,
    ) -> None:
        insert = dialect_insert(self._db, AffiliatePointBalance)
        stmt = insert.values(
            id=uuid4(),
            client_id=client_id,
            organization_id=organization_id,
            points_current=delta_current,
            points_spent=delta_spent,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[AffiliatePointBalance.client_id, AffiliatePointBalance.organization_id],
            set_={
                "points_current": AffiliatePointBalance.points_current + stmt.excluded.points_current,
                "points_spent": AffiliatePointBalance.points_spent + stmt.excluded.points_spent,
                "updated_at": func.now(),
            },
        )
        await self._db.execute(stmt)


__all__ = [
    "AffiliatePointsService",
    "BoosterConsumption",
    "NEXT_ORDER_BONUS_ACTION",
]
