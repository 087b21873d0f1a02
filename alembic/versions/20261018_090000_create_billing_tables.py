"""Create billing reconciliation tables

Revision ID: 3f9c1b7e2a10
Revises:
Create Date: 2026-10-18 09:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f9c1b7e2a10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum labels are the member names, matching SQLAlchemy's default Enum mapping
ENUMS = {
    "subscriptiontier": ("FREE", "PREMIUM"),
    "billingcycle": ("MONTHLY", "YEARLY", "NONE"),
    "subscriptionstatus": (
        "INCOMPLETE",
        "ACTIVE",
        "PAST_DUE",
        "GRACE_PERIOD",
        "CANCELED_PENDING",
        "PAUSED",
        "CANCELED",
        "EXPIRED",
    ),
    "provider": ("STRIPE", "APPLE_IAP"),
    "eventoutcome": ("PENDING", "SUCCEEDED", "FAILED", "SKIPPED_DUPLICATE", "SKIPPED_NOT_OWNER"),
    "transactionstatus": ("SUCCEEDED", "FAILED", "REFUNDED"),
    "refundstatus": ("REQUESTED", "APPROVED", "REJECTED", "COMPLETED"),
    "usageeventtype": (
        "LIMIT_REACHED",
        "PAYWALL_SHOWN",
        "PLAN_SELECTED",
        "PAYMENT_INITIATED",
        "PAYMENT_COMPLETED",
        "PAYMENT_FAILED",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade database schema."""

    # ------------------------------------------------------------------
    # 1. Enum types
    # ------------------------------------------------------------------
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # ------------------------------------------------------------------
    # 2. subscription_records
    # ------------------------------------------------------------------
    op.create_table(
        "subscription_records",
        sa.Column("record_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("tier", _enum("subscriptiontier"), nullable=False),
        sa.Column("billing_cycle", _enum("billingcycle"), nullable=False),
        sa.Column("status", _enum("subscriptionstatus"), nullable=False),
        sa.Column("provider", _enum("provider"), nullable=True),
        sa.Column("external_subscription_id", sa.String(length=255), nullable=True),
        sa.Column("external_customer_id", sa.String(length=255), nullable=True),
        sa.Column("product_id", sa.String(length=255), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_id", sa.String(length=255), nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("latest_receipt", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index("ix_subscription_records_user_id", "subscription_records", ["user_id"], unique=True)
    op.create_index(
        "ix_subscription_records_external_subscription_id",
        "subscription_records",
        ["external_subscription_id"],
    )
    op.create_index(
        "ix_subscription_records_external_customer_id",
        "subscription_records",
        ["external_customer_id"],
    )
    op.create_index(
        "idx_sub_record_status_period_end",
        "subscription_records",
        ["status", "current_period_end"],
    )
    op.create_index("idx_sub_record_provider_status", "subscription_records", ["provider", "status"])

    # ------------------------------------------------------------------
    # 3. processed_events
    # ------------------------------------------------------------------
    op.create_table(
        "processed_events",
        sa.Column("event_row_id", sa.UUID(), nullable=False),
        sa.Column("provider", _enum("provider"), nullable=False),
        sa.Column("provider_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("user_id", sa.UUID(), nullable=True),
        sa.Column("outcome", _enum("eventoutcome"), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("event_row_id"),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_processed_event_key"),
    )
    op.create_index("idx_processed_event_outcome", "processed_events", ["outcome", "received_at"])
    op.create_index("idx_processed_event_user", "processed_events", ["user_id", "received_at"])

    # ------------------------------------------------------------------
    # 4. payment_transactions
    # ------------------------------------------------------------------
    op.create_table(
        "payment_transactions",
        sa.Column("transaction_id", sa.UUID(), nullable=False),
        sa.Column("record_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("provider", _enum("provider"), nullable=False),
        sa.Column("amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", _enum("transactionstatus"), nullable=False),
        sa.Column("charge_reference", sa.String(length=255), nullable=False),
        sa.Column("charge_reference_synthetic", sa.Boolean(), nullable=False),
        sa.Column("invoice_reference", sa.String(length=255), nullable=True),
        sa.Column("provider_event_id", sa.String(length=255), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["subscription_records.record_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.UniqueConstraint("provider", "charge_reference", name="uq_payment_charge_reference"),
    )
    op.create_index("ix_payment_transactions_user_id", "payment_transactions", ["user_id"])
    op.create_index("idx_payment_user_created", "payment_transactions", ["user_id", "created_at"])

    # ------------------------------------------------------------------
    # 5. refund_requests
    # ------------------------------------------------------------------
    op.create_table(
        "refund_requests",
        sa.Column("refund_request_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("transaction_id", sa.UUID(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("status", _enum("refundstatus"), nullable=False),
        sa.Column("provider_refund_id", sa.String(length=255), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["transaction_id"],
            ["payment_transactions.transaction_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("refund_request_id"),
    )
    op.create_index("ix_refund_requests_user_id", "refund_requests", ["user_id"])

    # ------------------------------------------------------------------
    # 6. usage_events and tracked_items
    # ------------------------------------------------------------------
    op.create_table(
        "usage_events",
        sa.Column("event_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("event_type", _enum("usageeventtype"), nullable=False),
        sa.Column("context", sa.String(length=100), nullable=True),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("idx_usage_user_event", "usage_events", ["user_id", "event_type", "created_at"])

    op.create_table(
        "tracked_items",
        sa.Column("item_id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("ix_tracked_items_user_id", "tracked_items", ["user_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_table("tracked_items")
    op.drop_table("usage_events")
    op.drop_table("refund_requests")
    op.drop_table("payment_transactions")
    op.drop_table("processed_events")
    op.drop_table("subscription_records")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
