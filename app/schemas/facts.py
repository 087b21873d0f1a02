"""
Billing Fact Schemas
====================

Provider-neutral facts. Every Stripe webhook, App Store receipt and
confirmed user action is normalized into one or more ``BillingFact``
objects before it reaches the state machine.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import TransactionStatus
from app.models.subscription import BillingCycle, Provider


class FactKind(str, Enum):
    """Shared fact vocabulary."""

    ACTIVATED = "activated"
    RENEWED = "renewed"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PRORATION_APPLIED = "proration_applied"
    RESUMED = "resumed"
    PAUSED = "paused"
    # Emitted only by the period-end sweep
    EXPIRED = "expired"


class PaymentInfo(BaseModel):
    """Money movement attached to a fact."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = "usd"
    status: TransactionStatus
    charge_reference: str
    charge_reference_synthetic: bool = False
    invoice_reference: Optional[str] = None
    # Second id the same charge may be stored under (Stripe payment intent)
    alternate_reference: Optional[str] = None


class BillingFact(BaseModel):
    """
    One normalized change to a user's subscription.

    ``event_id`` is the idempotency key within ``provider``. Facts derived
    from one provider notification get distinct ids so each one is claimed
    separately.
    """

    model_config = ConfigDict(frozen=True)

    provider: Provider
    kind: FactKind
    event_id: str
    event_type: str
    occurred_at: datetime

    # Record resolution
    user_id: Optional[uuid.UUID] = None
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None

    # Plan and period
    product_id: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    # Cancellation / failure details
    at_period_end: bool = False
    grace_period_ends_at: Optional[datetime] = None

    payment: Optional[PaymentInfo] = None

    # Latest App Store receipt to remember for re-validation
    receipt: Optional[str] = Field(default=None, repr=False)

    def audit_payload(self) -> dict:
        """JSON-safe representation stored with the processed event."""
        return self.model_dump(mode="json", exclude={"receipt"})
