"""
Billing Models
==============

Event store, payment transactions and refund requests.

``processed_events`` is append-only: one row per (provider, provider event
id), the idempotency key for every notification and confirmed action.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin
from app.models.subscription import Provider


class EventOutcome(str, Enum):
    """Processing outcome of a stored provider event."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    # Ignored while another provider owned the record; may be claimed again
    SKIPPED_NOT_OWNER = "skipped_not_owner"


class TransactionStatus(str, Enum):
    """Payment transaction states."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    """Refund request lifecycle."""
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class ProcessedEvent(Base):
    """
    One received provider event (webhook, receipt fact or confirmed action).

    ``outcome`` moves from ``pending`` to a terminal value exactly once.
    The one exception is ``skipped_not_owner``, which a redelivery of the
    same event may claim back to ``pending``.
    """

    __tablename__ = "processed_events"

    # Primary Key
    event_row_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Idempotency key
    provider: Mapped[Provider] = mapped_column(
        SQLEnum(Provider),
        nullable=False,
    )
    provider_event_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Event details
    event_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    payload: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    # Outcome
    outcome: Mapped[EventOutcome] = mapped_column(
        SQLEnum(EventOutcome),
        default=EventOutcome.PENDING,
        nullable=False,
    )
    detail: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Indexes
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_processed_event_key"),
        Index("idx_processed_event_outcome", "outcome", "received_at"),
        Index("idx_processed_event_user", "user_id", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessedEvent(provider={self.provider}, "
            f"id={self.provider_event_id}, outcome={self.outcome})>"
        )


class PaymentTransaction(Base, TimestampMixin):
    """
    A single charge (or failed charge attempt) against a subscription.

    ``charge_reference`` is never null; when the provider does not supply
    one it is synthesized from the invoice and ``charge_reference_synthetic``
    is set.
    """

    __tablename__ = "payment_transactions"

    # Primary Key
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Foreign Keys
    record_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("subscription_records.record_id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )

    # Payment info
    provider: Mapped[Provider] = mapped_column(
        SQLEnum(Provider),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SQLEnum(TransactionStatus),
        nullable=False,
    )
    charge_reference: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    charge_reference_synthetic: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    invoice_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    provider_event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Indexes
    __table_args__ = (
        UniqueConstraint("provider", "charge_reference", name="uq_payment_charge_reference"),
        Index("idx_payment_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentTransaction(user_id={self.user_id}, amount={self.amount}, "
            f"status={self.status})>"
        )


class RefundRequest(Base, TimestampMixin):
    """
    A user-initiated refund.

    ``requested -> approved | rejected``; an approved request becomes
    ``completed`` when the provider's refund notification is reconciled.
    """

    __tablename__ = "refund_requests"

    # Primary Key
    refund_request_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("payment_transactions.transaction_id", ondelete="CASCADE"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )
    reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    status: Mapped[RefundStatus] = mapped_column(
        SQLEnum(RefundStatus),
        default=RefundStatus.REQUESTED,
        nullable=False,
    )
    provider_refund_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<RefundRequest(user_id={self.user_id}, status={self.status})>"
