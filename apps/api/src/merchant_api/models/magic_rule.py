"""Automation rule definitions and their per-order execution records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from merchant_api.db.base import Base, enum_values


class MagicEventTypeEnum(str, Enum):
    ORDER_PAID = "order_paid"
    MANUAL = "manual"
    SWEEP = "sweep"


class MagicRuleScopeEnum(str, Enum):
    BASE = "base"
    SUPPLIER = "supplier"
    BOTH = "both"


class MagicRuleExecutionStatusEnum(str, Enum):
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


class MagicRule(Base):
    """Tenant-configured automation rule with JSON-encoded conditions/actions."""

    __tablename__ = "magic_rules"
    __table_args__ = (
        Index("ix_magic_rules_org_event_scope", "organization_id", "event", "scope"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    event = Column(
        SqlEnum(MagicEventTypeEnum, name="magic_event_type_enum", values_callable=enum_values),
        nullable=False,
        server_default=MagicEventTypeEnum.ORDER_PAID.value,
    )
    scope = Column(
        SqlEnum(MagicRuleScopeEnum, name="magic_rule_scope_enum", values_callable=enum_values),
        nullable=False,
        server_default=MagicRuleScopeEnum.BOTH.value,
    )
    priority = Column(Integer, nullable=False, server_default="100")
    is_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    conditions = Column(JSON, nullable=False, default=list)
    actions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    executions = relationship(
        "MagicRuleExecution", back_populates="rule", cascade="all, delete-orphan"
    )


class MagicRuleExecution(Base):
    """Idempotency marker: a rule fires at most once per order."""

    __tablename__ = "magic_rule_executions"
    __table_args__ = (
        UniqueConstraint("rule_id", "order_id", name="uq_magic_rule_executions_rule_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    rule_id = Column(
        UUID(as_uuid=True),
        ForeignKey("magic_rules.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id = Column(UUID(as_uuid=True), nullable=False)
    organization_id = Column(String, nullable=False)
    status = Column(
        SqlEnum(MagicRuleExecutionStatusEnum, name="magic_rule_execution_status_enum", values_callable=enum_values),
        nullable=False,
        default=MagicRuleExecutionStatusEnum.CLAIMED,
        server_default=MagicRuleExecutionStatusEnum.CLAIMED.value,
    )
    actions_executed = Column(JSON, nullable=False, default=list)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    rule = relationship("MagicRule", back_populates="executions")
