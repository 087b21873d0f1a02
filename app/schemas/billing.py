"""
Billing Schemas
===============

Pydantic schemas for user billing actions and the entitlement query.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.subscription import BillingCycle


class CheckoutRequest(BaseModel):
    """Start a card subscription."""

    model_config = ConfigDict(populate_by_name=True)

    billing_cycle: BillingCycle = Field(alias="billingCycle")
    email: Optional[str] = Field(default=None, max_length=255)


class CancelRequest(BaseModel):
    """Cancel the card subscription, by default at period end."""

    model_config = ConfigDict(populate_by_name=True)

    at_period_end: bool = Field(default=True, alias="atPeriodEnd")


class RefundRequestBody(BaseModel):
    """Ask for a refund of the latest card charge."""

    reason: Optional[str] = Field(default=None, max_length=500)


class SwitchCycleRequest(BaseModel):
    """Move an active card subscription to the other billing cycle."""

    model_config = ConfigDict(populate_by_name=True)

    target_cycle: BillingCycle = Field(alias="targetCycle")


class EntitlementData(BaseModel):
    """What the user may do right now."""

    tier: str
    status: Optional[str] = None
    billingCycle: str
    provider: Optional[str] = None
    itemLimit: int
    itemsUsed: int
    canAddMore: bool
    remainingSlots: int
    pending: bool
    periodEnd: Optional[str] = None
    cancelAtPeriodEnd: bool = False


class EntitlementResponse(BaseModel):
    success: bool = True
    data: EntitlementData


class BillingActionResponse(BaseModel):
    """Generic envelope for billing action results."""

    success: bool = True
    data: dict[str, Any]
    message: Optional[str] = None
