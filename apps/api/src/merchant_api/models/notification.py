from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Enum as SqlEnum, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from merchant_api.db.base import Base, enum_values


class NotificationChannelEnum(str, Enum):
    EMAIL = "email"
    TELEGRAM = "telegram"


class NotificationOutboxStatusEnum(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DEAD = "dead"


class NotificationOutbox(Base):
    """One pending delivery per channel; drained by the fan-out worker."""

    __tablename__ = "notification_outbox"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    order_id = Column(UUID(as_uuid=True), nullable=True)
    type = Column(String, nullable=False)
    trigger = Column(String, nullable=True)
    channel = Column(
        SqlEnum(NotificationChannelEnum, name="notification_channel_enum", values_callable=enum_values),
        nullable=False,
    )
    payload = Column(JSON, nullable=False, default=dict)
    dedupe_key = Column(String, nullable=False, unique=True)
    attempts = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="8")
    next_attempt_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_error = Column(Text, nullable=True)
    status = Column(
        SqlEnum(NotificationOutboxStatusEnum, name="notification_outbox_status_enum", values_callable=enum_values),
        nullable=False,
        server_default=NotificationOutboxStatusEnum.PENDING.value,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
