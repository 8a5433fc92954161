from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from merchant_api.db.base import Base, enum_values


class CouponDiscountTypeEnum(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class Coupon(Base):
    """Organization-scoped discount coupon."""

    __tablename__ = "coupons"
    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_coupons_org_code"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    code = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    discount_type = Column(
        SqlEnum(CouponDiscountTypeEnum, name="coupon_discount_type_enum", values_callable=enum_values),
        nullable=False,
    )
    discount_amount = Column(Numeric(12, 2), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=True)
    expiration_date = Column(DateTime(timezone=True), nullable=True)
    limit_per_user = Column(Integer, nullable=False, server_default="0")
    usage_limit = Column(Integer, nullable=False, server_default="0")
    expending_limit = Column(Integer, nullable=False, server_default="0")
    expending_minimum = Column(Integer, nullable=False, server_default="0")
    countries = Column(JSON, nullable=False, default=list)
    visibility = Column(Boolean, nullable=False, server_default="true")
    stackable = Column(Boolean, nullable=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
