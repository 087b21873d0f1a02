"""
Billing API Endpoints
=====================

User billing actions on card subscriptions: checkout, cancel, refund
and billing-cycle switch.

Every action calls Stripe first; the local record changes only after
Stripe confirms. App Store subscriptions are managed in the App Store and
rejected with SUB_007.
"""

import logging

from fastapi import APIRouter, Query

from app.core.errors import (
    AppException,
    BillingError,
    ConflictError,
    OwnershipConflictError,
    PaymentRequiredError,
    ProrationError,
    ProviderUnavailableError,
    ServiceUnavailableError,
    ValidationError,
)
from app.dependencies import CurrentUserId, DBSession
from app.models.subscription import BillingCycle
from app.schemas.billing import (
    BillingActionResponse,
    CancelRequest,
    CheckoutRequest,
    RefundRequestBody,
    SwitchCycleRequest,
)
from app.services.stripe_billing import StripeCardDeclinedError
from app.services.subscription_actions import SubscriptionActionService

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_http(error: BillingError) -> AppException:
    """Map a billing error from a user action onto an HTTP error."""
    if isinstance(error, StripeCardDeclinedError):
        return PaymentRequiredError(code=error.code, message=error.message)
    if isinstance(error, ProviderUnavailableError):
        return ServiceUnavailableError(code=error.code, message=error.message)
    if isinstance(error, (ProrationError, OwnershipConflictError)):
        return ConflictError(code=error.code, message=error.message)
    return ValidationError(message=error.message, code=error.code)


@router.post("/checkout", response_model=BillingActionResponse)
async def checkout(
    checkout_data: CheckoutRequest,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """
    Start a card subscription.

    Returns the payment intent client secret for the app to confirm. The
    entitlement stays ``pending`` until Stripe reports the first payment.
    """
    if checkout_data.billing_cycle == BillingCycle.NONE:
        raise ValidationError(message="Choose monthly or yearly", field="billingCycle")

    service = SubscriptionActionService(db)
    try:
        data = await service.start_checkout(
            current_user_id,
            checkout_data.billing_cycle,
            checkout_data.email,
        )
    except BillingError as e:
        raise _to_http(e)

    return BillingActionResponse(success=True, data=data, message="Checkout started")


@router.post("/cancel", response_model=BillingActionResponse)
async def cancel_subscription(
    cancel_data: CancelRequest,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """Cancel at period end (default) or immediately."""
    service = SubscriptionActionService(db)
    try:
        outcome = await service.cancel(current_user_id, at_period_end=cancel_data.at_period_end)
    except BillingError as e:
        raise _to_http(e)

    return BillingActionResponse(
        success=True,
        data={"outcome": outcome.as_dict()},
        message=(
            "Subscription will cancel at period end"
            if cancel_data.at_period_end
            else "Subscription cancelled"
        ),
    )


@router.post("/refund", response_model=BillingActionResponse)
async def request_refund(
    refund_data: RefundRequestBody,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """Refund the latest card payment if it is within the refund window."""
    service = SubscriptionActionService(db)
    try:
        data = await service.request_refund(current_user_id, refund_data.reason)
    except BillingError as e:
        raise _to_http(e)

    return BillingActionResponse(success=True, data=data, message="Refund issued")


@router.get("/switch-cycle/quote", response_model=BillingActionResponse)
async def quote_switch_cycle(
    current_user_id: CurrentUserId,
    db: DBSession,
    target_cycle: BillingCycle = Query(alias="targetCycle"),
):
    """Preview the proration for a billing-cycle switch."""
    service = SubscriptionActionService(db)
    try:
        quote = await service.quote_switch(current_user_id, target_cycle)
    except BillingError as e:
        raise _to_http(e)

    return BillingActionResponse(success=True, data={"quote": quote.as_dict()})


@router.post("/switch-cycle", response_model=BillingActionResponse)
async def switch_cycle(
    switch_data: SwitchCycleRequest,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """Switch between monthly and yearly, charging or crediting the difference."""
    service = SubscriptionActionService(db)
    try:
        data = await service.switch_cycle(current_user_id, switch_data.target_cycle)
    except BillingError as e:
        raise _to_http(e)

    return BillingActionResponse(success=True, data=data, message="Billing cycle switched")
