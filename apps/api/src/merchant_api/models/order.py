from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID

from merchant_api.db.base import Base


class Order(Base):
    """Tenant-scoped order as seen by the automation engine."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_org_client", "organization_id", "client_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False)
    country = Column(String(2), nullable=True)
    cart_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    status = Column(String, nullable=False, server_default="open")
    total = Column(Numeric(12, 2), nullable=False, server_default="0")
    date_paid = Column(DateTime(timezone=True), nullable=True)
    date_created = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class CartProduct(Base):
    """Cart line referencing either a catalog product or an affiliate product."""

    __tablename__ = "cart_products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    cart_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    product_id = Column(String, nullable=True)
    affiliate_product_id = Column(String, nullable=True)
    quantity = Column(Numeric(12, 2), nullable=False, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
