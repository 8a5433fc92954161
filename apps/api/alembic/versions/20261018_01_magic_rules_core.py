"""Orders, coupons, affiliate points, magic rules and notification outbox.

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261018_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid() -> sa.types.TypeEngine:
    return sa.dialects.postgresql.UUID(as_uuid=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "orders",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("cart_id", _uuid(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("date_paid", sa.DateTime(timezone=True), nullable=True),
        sa.Column("date_created", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_orders_organization_id", "orders", ["organization_id"])
    op.create_index("ix_orders_cart_id", "orders", ["cart_id"])
    op.create_index("ix_orders_org_client", "orders", ["organization_id", "client_id"])

    op.create_table(
        "cart_products",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("cart_id", _uuid(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("affiliate_product_id", sa.String(), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 2), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_cart_products_cart_id", "cart_products", ["cart_id"])

    op.create_table(
        "coupons",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "discount_type",
            sa.Enum("fixed", "percentage", name="coupon_discount_type_enum"),
            nullable=False,
        ),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expiration_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("limit_per_user", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("usage_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expending_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expending_minimum", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("countries", sa.JSON(), nullable=False),
        sa.Column("visibility", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("stackable", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.UniqueConstraint("organization_id", "code", name="uq_coupons_org_code"),
    )
    op.create_index("ix_coupons_organization_id", "coupons", ["organization_id"])

    op.create_table(
        "affiliate_point_logs",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_client_id", sa.String(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_affiliate_point_logs_org_client",
        "affiliate_point_logs",
        ["organization_id", "client_id"],
    )

    op.create_table(
        "affiliate_point_balances",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("points_current", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_spent", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("client_id", "organization_id", name="uq_affiliate_point_balances_client_org"),
    )

    op.create_table(
        "affiliate_point_boosters",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_order_id", _uuid(), nullable=True),
        sa.Column("consumed_order_id", _uuid(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_affiliate_point_boosters_org_client",
        "affiliate_point_boosters",
        ["organization_id", "client_id"],
    )

    op.create_table(
        "magic_rules",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "event",
            sa.Enum("order_paid", "manual", "sweep", name="magic_event_type_enum"),
            nullable=False,
            server_default="order_paid",
        ),
        sa.Column(
            "scope",
            sa.Enum("base", "supplier", "both", name="magic_rule_scope_enum"),
            nullable=False,
            server_default="both",
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("actions", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_magic_rules_org_event_scope",
        "magic_rules",
        ["organization_id", "event", "scope"],
    )

    op.create_table(
        "magic_rule_executions",
        sa.Column("id", _uuid(), primary_key=True),
        sa.Column(
            "rule_id",
            _uuid(),
            sa.ForeignKey("magic_rules.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("order_id", _uuid(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("claimed", "completed", "failed", name="magic_rule_execution_status_enum"),
            nullable=False,
            server_default="claimed",
        ),
        sa.Column("actions_executed", sa.JSON(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("rule_id", "order_id", name="uq_magic_rule_executions_rule_order"),
    )

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("order_id", _uuid(), nullable=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("trigger", sa.String(), nullable=True),
        sa.Column(
            "channel",
            sa.Enum("email", "telegram", name="notification_channel_enum"),
            nullable=False,
        ),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False, unique=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="8"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "dead", name="notification_outbox_status_enum"),
            nullable=False,
            server_default="pending",
        ),
        *_timestamps(),
    )
    op.create_index("ix_notification_outbox_organization_id", "notification_outbox", ["organization_id"])


def downgrade() -> None:
    op.drop_index("ix_notification_outbox_organization_id", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_table("magic_rule_executions")
    op.drop_index("ix_magic_rules_org_event_scope", table_name="magic_rules")
    op.drop_table("magic_rules")
    op.drop_index("ix_affiliate_point_boosters_org_client", table_name="affiliate_point_boosters")
    op.drop_table("affiliate_point_boosters")
    op.drop_table("affiliate_point_balances")
    op.drop_index("ix_affiliate_point_logs_org_client", table_name="affiliate_point_logs")
    op.drop_table("affiliate_point_logs")
    op.drop_index("ix_coupons_organization_id", table_name="coupons")
    op.drop_table("coupons")
    op.drop_index("ix_cart_products_cart_id", table_name="cart_products")
    op.drop_table("cart_products")
    op.drop_index("ix_orders_org_client", table_name="orders")
    op.drop_index("ix_orders_cart_id", table_name="orders")
    op.drop_index("ix_orders_organization_id", table_name="orders")
    op.drop_table("orders")

    for enum_name in (
        "notification_outbox_status_enum",
        "notification_channel_enum",
        "magic_rule_execution_status_enum",
        "magic_rule_scope_enum",
        "magic_event_type_enum",
        "coupon_discount_type_enum",
    ):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
