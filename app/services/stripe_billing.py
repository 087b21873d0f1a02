"""
Stripe Billing Service
======================

Thin wrapper over the Stripe SDK for the calls user actions make:
customer and subscription creation, cancellation, cycle switches and
refunds.

None of these calls mutate local state. Local changes happen only when
the confirmed result (or the webhook that follows) goes through the
reconciler. SDK calls are blocking and run in a worker thread.
"""

import asyncio
import logging
from typing import Any, Optional

import stripe

from app.config import settings
from app.core.errors import BillingError, ErrorCodes, ProviderUnavailableError
from app.models.subscription import BillingCycle

logger = logging.getLogger(__name__)


class StripeServiceError(BillingError):
    """Stripe rejected the request."""

    code = ErrorCodes.PROVIDER_REJECTED


class StripeCardDeclinedError(StripeServiceError):
    """The customer's card was declined."""

    code = ErrorCodes.SUB_PAYMENT_FAILED


def _translate(error: stripe.StripeError, action: str) -> BillingError:
    """Map a Stripe SDK error onto the billing error family."""
    message = getattr(error, "user_message", None) or str(error)
    if isinstance(error, stripe.CardError):
        return StripeCardDeclinedError(f"{action}: {message}")
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
        return ProviderUnavailableError(f"{action}: Stripe unavailable ({message})")
    return StripeServiceError(f"{action}: {message}")


class StripeBillingService:
    """
    Stripe payment operations.

    All methods are idempotent where Stripe allows it and raise
    ``BillingError`` subclasses instead of SDK exceptions.
    """

    def __init__(self):
        if settings.STRIPE_SECRET_KEY:
            stripe.api_key = settings.STRIPE_SECRET_KEY

    async def _call(self, action: str, fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", action, e)
            raise _translate(e, action)

    def price_id_for(self, cycle: BillingCycle) -> str:
        """Stripe price id configured for a billing cycle."""
        price_id = settings.stripe_price_ids.get(cycle.value)
        if not price_id:
            raise StripeServiceError(f"No Stripe price configured for {cycle.value}")
        return price_id

    # =========================================================================
    # Customer & Subscription Creation
    # =========================================================================

    async def create_customer(self, user_id: str, email: Optional[str] = None) -> Any:
        """Create a customer tagged with our user id."""
        customer = await self._call(
            "create customer",
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
            idempotency_key=f"customer:{user_id}",
        )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer

    async def create_subscription(
        self,
        customer_id: str,
        cycle: BillingCycle,
        user_id: str,
    ) -> Any:
        """
        Create an incomplete subscription awaiting its first payment.

        The returned subscription's ``latest_invoice.payment_intent`` carries
        the client secret the app confirms with the Stripe SDK.
        """
        subscription = await self._call(
            "create subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": self.price_id_for(cycle)}],
            payment_behavior="default_incomplete",
            payment_settings={"save_default_payment_method": "on_subscription"},
            expand=["latest_invoice.payment_intent"],
            metadata={"user_id": user_id, "billing_cycle": cycle.value},
        )
        logger.info(
            "Created Stripe subscription %s for user %s (%s)",
            subscription.id,
            user_id,
            cycle.value,
        )
        return subscription

    # =========================================================================
    # Subscription Changes
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(
            "retrieve subscription",
            stripe.Subscription.retrieve,
            subscription_id,
        )

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_period_end: bool = True,
    ) -> Any:
        """Cancel at period end (default) or immediately."""
        if cancel_at_period_end:
            subscription = await self._call(
                "cancel subscription",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            subscription = await self._call(
                "cancel subscription",
                stripe.Subscription.cancel,
                subscription_id,
            )

        logger.info(
            "Cancelled subscription %s, at_period_end=%s",
            subscription_id,
            cancel_at_period_end,
        )
        return subscription

    async def switch_cycle(self, subscription_id: str, target_cycle: BillingCycle) -> Any:
        """
        Move a subscription to another price, invoicing the proration now.

        Fails instead of leaving the subscription past due when the
        proration charge is declined.
        """
        current = await self.retrieve_subscription(subscription_id)
        items = current["items"]["data"]
        if not items:
            raise StripeServiceError(f"Subscription {subscription_id} has no items")

        subscription = await self._call(
            "switch billing cycle",
            stripe.Subscription.modify,
            subscription_id,
            items=[{"id": items[0]["id"], "price": self.price_id_for(target_cycle)}],
            proration_behavior="always_invoice",
            payment_behavior="error_if_incomplete",
            billing_cycle_anchor="now",
            cancel_at_period_end=False,
            expand=["latest_invoice"],
            metadata={"billing_cycle": target_cycle.value},
        )
        logger.info(
            "Switched subscription %s to %s",
            subscription_id,
            target_cycle.value,
        )
        return subscription

    # =========================================================================
    # Refunds
    # =========================================================================

    async def refund_charge(
        self,
        charge_reference: str,
        amount: Optional[int] = None,
        refund_request_id: Optional[str] = None,
    ) -> Any:
        """
        Refund a charge (``ch_``) or payment intent (``pi_``).

        ``amount`` is in minor units; None refunds the full charge.
        """
        params: dict[str, Any] = {"reason": "requested_by_customer"}
        if charge_reference.startswith("pi_"):
            params["payment_intent"] = charge_reference
        else:
            params["charge"] = charge_reference
        if amount is not None:
            params["amount"] = amount
        if refund_request_id:
            params["metadata"] = {"refund_request_id": refund_request_id}
            params["idempotency_key"] = f"refund:{refund_request_id}"

        refund = await self._call("refund charge", stripe.Refund.create, **params)
        logger.info("Created Stripe refund %s for %s", refund.id, charge_reference)
        return refund


# =============================================================================
# Singleton Instance
# =============================================================================

_stripe_service_instance: Optional[StripeBillingService] = None


def get_stripe_service() -> StripeBillingService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeBillingService()

    return _stripe_service_instance
