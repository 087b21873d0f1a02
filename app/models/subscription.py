"""
Subscription Models
===================

The per-user subscription record that every provider notification is
reconciled into. One row per user; never deleted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    String,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin


class SubscriptionTier(str, Enum):
    """Entitlement tier."""
    FREE = "free"
    PREMIUM = "premium"


class BillingCycle(str, Enum):
    """Billing cadence of the paid plan."""
    MONTHLY = "monthly"
    YEARLY = "yearly"
    NONE = "none"


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a subscription record."""
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    GRACE_PERIOD = "grace_period"
    CANCELED_PENDING = "canceled_pending"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Provider(str, Enum):
    """Payment backends that can own a subscription."""
    STRIPE = "stripe"
    APPLE_IAP = "apple_iap"


# States in which the owning provider's subscription is over
TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.EXPIRED,
})

# States that still carry premium until a deadline passes
DEADLINE_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.CANCELED_PENDING,
})


class SubscriptionRecord(Base, TimestampMixin):
    """
    Authoritative subscription state for one user.

    Mutated only by the reconciler (the checkout action may create it in
    ``incomplete``). ``provider`` names the backend that currently owns the
    record; another backend may take over only once the owner's
    subscription is terminal or never got past ``incomplete``.
    """

    __tablename__ = "subscription_records"

    # Primary Key
    record_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owner (users live in the account service; no FK)
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        unique=True,
        nullable=False,
        index=True,
    )

    # Entitlement state
    tier: Mapped[SubscriptionTier] = mapped_column(
        SQLEnum(SubscriptionTier),
        default=SubscriptionTier.FREE,
        nullable=False,
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        SQLEnum(BillingCycle),
        default=BillingCycle.NONE,
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.INCOMPLETE,
        nullable=False,
    )

    # Provider ownership
    provider: Mapped[Optional[Provider]] = mapped_column(
        SQLEnum(Provider),
        nullable=True,
    )
    external_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    external_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Billing period
    current_period_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    grace_period_ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Ordering watermark
    last_event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Last validated App Store receipt, re-validated by the resync job
    latest_receipt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Indexes
    __table_args__ = (
        Index("idx_sub_record_status_period_end", "status", "current_period_end"),
        Index("idx_sub_record_provider_status", "provider", "status"),
    )

    @classmethod
    def new_for_user(cls, user_id: uuid.UUID) -> "SubscriptionRecord":
        """Build an unsaved free record with every default set explicitly."""
        return cls(
            user_id=user_id,
            tier=SubscriptionTier.FREE,
            billing_cycle=BillingCycle.NONE,
            status=SubscriptionStatus.INCOMPLETE,
            cancel_at_period_end=False,
        )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, tier={self.tier}, "
            f"status={self.status}, provider={self.provider})>"
        )

    @property
    def is_terminal(self) -> bool:
        """Check if the owning provider's subscription is over."""
        return self.status in TERMINAL_STATUSES

    @property
    def entitlement_deadline(self) -> Optional[datetime]:
        """Moment premium access ends for a record in a deadline state."""
        if self.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.GRACE_PERIOD):
            return self.grace_period_ends_at or self.current_period_end
        if self.status == SubscriptionStatus.CANCELED_PENDING:
            return self.current_period_end
        return None
