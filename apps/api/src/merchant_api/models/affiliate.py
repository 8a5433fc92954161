"""Affiliate point ledger models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID

from merchant_api.db.base import Base


class AffiliatePointLog(Base):
    """Append-only log of signed point movements."""

    __tablename__ = "affiliate_point_logs"
    __table_args__ = (
        Index("ix_affiliate_point_logs_org_client", "organization_id", "client_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    points = Column(Integer, nullable=False)
    action = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    source_client_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AffiliatePointBalance(Base):
    """Running spendable and lifetime-spent totals per client and tenant."""

    __tablename__ = "affiliate_point_balances"
    __table_args__ = (
        UniqueConstraint("client_id", "organization_id", name="uq_affiliate_point_balances_client_org"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(String, nullable=False)
    organization_id = Column(String, nullable=False)
    points_current = Column(Integer, nullable=False, server_default="0")
    points_spent = Column(Integer, nullable=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class AffiliatePointBooster(Base):
    """Points queued for the client's next qualifying order."""

    __tablename__ = "affiliate_point_boosters"
    __table_args__ = (
        Index("ix_affiliate_point_boosters_org_client", "organization_id", "client_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    points = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    source_order_id = Column(UUID(as_uuid=True), nullable=True)
    consumed_order_id = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
