"""Coupon issuance for automation actions."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from merchant_api.core.settings import settings
from merchant_api.models.coupon import Coupon, CouponDiscountTypeEnum
from merchant_api.schemas.magic_rules import CouponTemplate


COUPON_CODE_ALPHABET = string.ascii_uppercase + string.digits


class CouponCodeExhaustedError(RuntimeError):
    """No free coupon code was found within the attempt budget."""

    def __init__(self, organization_id: str, attempts: int) -> None:
        self.organization_id = organization_id
        self.attempts = attempts
        super().__init__(
            f"Could not generate a unique coupon code for organization {organization_id} after {attempts} attempts"
        )


@dataclass
class IssuedCoupon:
    id: UUID
    code: str
    expiration_date: datetime | None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CouponService:
    """Creates organization-scoped coupons with unique human-readable codes."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        code_length: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._db = db_session
        self._code_length = code_length or settings.magic_rules_coupon_code_length
        self._max_attempts = max_attempts or settings.magic_rules_coupon_code_attempts

    def _random_code(self) -> str:
        return "".join(secrets.choice(COUPON_CODE_ALPHABET) for _ in range(self._code_length))

    async def code_exists(self, organization_id: str, code: str) -> bool:
        stmt = (
            select(Coupon.id)
            .where(and_(Coupon.organization_id == organization_id, Coupon.code == code))
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def generate_unique_code(self, organization_id: str) -> str:
        """Draw random codes until one is free for the organization."""

        for _ in range(self._max_attempts):
            candidate = self._random_code()
            if not await self.code_exists(organization_id, candidate):
                return candidate
            logger.debug("Coupon code collision", organization_id=organization_id)
        raise CouponCodeExhaustedError(organization_id, self._max_attempts)

    async def issue_coupon(self, organization_id: str, template: CouponTemplate) -> IssuedCoupon:
        """Insert a coupon built from ``template``; retries on a concurrent code clash."""

        for _ in range(self._max_attempts):
            code = await self.generate_unique_code(organization_id)
            expiration_date = _as_utc(template.expiration_date)
            coupon = Coupon(
                id=uuid4(),
                organization_id=organization_id,
                name=template.name,
                code=code,
                description=template.description,
                discount_type=CouponDiscountTypeEnum(template.discount_type),
                discount_amount=Decimal(str(template.discount_amount)),
                start_date=_as_utc(template.start_date),
                expiration_date=expiration_date,
                limit_per_user=0,
                usage_limit=template.usage_limit,
                expending_limit=template.expending_limit,
                expending_minimum=template.expending_minimum,
                countries=list(template.countries),
                visibility=template.visibility,
                stackable=template.stackable,
            )
            coupon_id = coupon.id
            self._db.add(coupon)
            try:
                await self._db.commit()
            except IntegrityError:
                await self._db.rollback()
                logger.warning("Detected race when issuing coupon code", organization_id=organization_id)
                continue

            logger.info(
                "Issued coupon",
                organization_id=organization_id,
                coupon_id=str(coupon_id),
                code=code,
            )
            return IssuedCoupon(id=coupon_id, code=code, expiration_date=expiration_date)

        raise CouponCodeExhaustedError(organization_id, self._max_attempts)
