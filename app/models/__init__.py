"""
Database Models
===============

SQLAlchemy ORM models for all database entities.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata for migrations.
"""

from app.models.subscription import (
    SubscriptionRecord,
    SubscriptionTier,
    SubscriptionStatus,
    BillingCycle,
    Provider,
)
from app.models.billing import (
    ProcessedEvent,
    PaymentTransaction,
    RefundRequest,
    EventOutcome,
    TransactionStatus,
    RefundStatus,
)
from app.models.usage import (
    UsageEvent,
    UsageEventType,
    TrackedItem,
)

__all__ = [
    # Subscription
    "SubscriptionRecord",
    "SubscriptionTier",
    "SubscriptionStatus",
    "BillingCycle",
    "Provider",
    # Billing
    "ProcessedEvent",
    "PaymentTransaction",
    "RefundRequest",
    "EventOutcome",
    "TransactionStatus",
    "RefundStatus",
    # Usage
    "UsageEvent",
    "UsageEventType",
    "TrackedItem",
]
