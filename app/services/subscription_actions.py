"""
Subscription Actions
====================

User-initiated billing actions: checkout, cancel, refund and billing
cycle switch.

Each action instructs Stripe first. Local state changes only once Stripe
has confirmed, by feeding a fact built from the confirmed response through
the reconciler. Subscriptions bought through the App Store are managed
there and rejected here.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    ConflictError,
    ErrorCodes,
    NotFoundError,
    OwnershipConflictError,
    ProviderUnavailableError,
)
from app.models.billing import (
    PaymentTransaction,
    RefundRequest,
    RefundStatus,
    TransactionStatus,
)
from app.models.subscription import (
    BillingCycle,
    Provider,
    SubscriptionRecord,
    SubscriptionStatus,
)
from app.models.usage import UsageEventType
from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.services.proration import ProrationQuote, quote_cycle_change
from app.services.reconciler import FactOutcome, Reconciler
from app.services.stripe_billing import StripeBillingService, StripeServiceError, get_stripe_service
from app.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

_CANCELABLE = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.PAUSED,
)


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _period_of(subscription: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    items = (subscription.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _from_epoch(start), _from_epoch(end)


class SubscriptionActionService:
    """Orchestrates provider calls and reconciliation for user actions."""

    def __init__(
        self,
        db: AsyncSession,
        stripe_service: Optional[StripeBillingService] = None,
    ):
        self.db = db
        self.stripe = stripe_service or get_stripe_service()
        self.reconciler = Reconciler(db)
        self.usage = UsageRecorder(db)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_record(self, user_id: uuid.UUID) -> Optional[SubscriptionRecord]:
        stmt = select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _require_stripe_record(self, user_id: uuid.UUID) -> SubscriptionRecord:
        record = await self._get_record(user_id)
        if record is None or record.external_subscription_id is None:
            raise NotFoundError(
                code=ErrorCodes.SUB_NO_ACTIVE_SUB,
                message="No subscription found",
            )
        if record.provider == Provider.APPLE_IAP:
            raise ConflictError(
                code=ErrorCodes.SUB_MANAGED_BY_STORE,
                message="This subscription is managed through the App Store",
            )
        if record.provider != Provider.STRIPE:
            raise OwnershipConflictError(f"Record for {user_id} has no card subscription")
        return record

    def _action_fact(self, record: SubscriptionRecord, kind: FactKind, event_id: str, **fields) -> BillingFact:
        return BillingFact(
            provider=Provider.STRIPE,
            kind=kind,
            event_id=event_id,
            event_type=f"api.{kind.value}",
            occurred_at=datetime.now(timezone.utc),
            user_id=record.user_id,
            external_subscription_id=record.external_subscription_id,
            external_customer_id=record.external_customer_id,
            **fields,
        )

    async def _submit(self, fact: BillingFact) -> FactOutcome:
        outcome = await self.reconciler.process(fact)
        await self.reconciler.commit()
        return outcome

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    async def start_checkout(
        self,
        user_id: uuid.UUID,
        cycle: BillingCycle,
        email: Optional[str] = None,
    ) -> dict:
        """
        Create a Stripe subscription awaiting its first payment.

        The record is created in ``incomplete`` so the app can show a
        pending state until the payment webhook activates it.
        """
        record = await self._get_record(user_id)
        if record is not None and not record.is_terminal:
            if record.provider == Provider.APPLE_IAP and record.status != SubscriptionStatus.INCOMPLETE:
                raise ConflictError(
                    code=ErrorCodes.SUB_MANAGED_BY_STORE,
                    message="An App Store subscription is already active",
                )
            if record.status != SubscriptionStatus.INCOMPLETE:
                raise ConflictError(
                    code=ErrorCodes.SUB_ALREADY_ACTIVE,
                    message="A subscription is already active",
                )

        customer_id = record.external_customer_id if record and record.provider == Provider.STRIPE else None
        if not customer_id:
            customer = await self.stripe.create_customer(str(user_id), email)
            customer_id = customer.id

        subscription = await self.stripe.create_subscription(customer_id, cycle, str(user_id))

        if record is None:
            record = SubscriptionRecord.new_for_user(user_id)
            record.provider = Provider.STRIPE
            record.billing_cycle = cycle
            self.db.add(record)
        if record.status == SubscriptionStatus.INCOMPLETE:
            record.provider = Provider.STRIPE
            record.external_subscription_id = subscription.id
        record.external_customer_id = record.external_customer_id or customer_id

        await self.usage.record(
            user_id,
            UsageEventType.PAYMENT_INITIATED,
            context="checkout",
            data={"billingCycle": cycle.value, "subscriptionId": subscription.id},
        )
        await self.db.commit()

        invoice = subscription.get("latest_invoice") or {}
        intent = invoice.get("payment_intent") if isinstance(invoice, dict) else None
        return {
            "subscriptionId": subscription.id,
            "customerId": customer_id,
            "status": subscription.get("status"),
            "clientSecret": intent.get("client_secret") if isinstance(intent, dict) else None,
            "pending": True,
        }

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    async def cancel(self, user_id: uuid.UUID, at_period_end: bool = True) -> FactOutcome:
        record = await self._require_stripe_record(user_id)
        if record.status == SubscriptionStatus.CANCELED_PENDING and at_period_end:
            raise ConflictError(
                code=ErrorCodes.SUB_ALREADY_CANCELLED,
                message="Subscription is already set to cancel",
            )
        if record.status not in _CANCELABLE and record.status != SubscriptionStatus.CANCELED_PENDING:
            raise ConflictError(
                code=ErrorCodes.SUB_ALREADY_CANCELLED,
                message=f"Subscription is {record.status.value}",
            )

        confirmed = await self.stripe.cancel_subscription(
            record.external_subscription_id,
            cancel_at_period_end=at_period_end,
        )
        _, period_end = _period_of(confirmed)
        stamp = confirmed.get("canceled_at") or int(datetime.now(timezone.utc).timestamp())
        fact = self._action_fact(
            record,
            FactKind.CANCELED,
            f"api:cancel:{confirmed.id}:{stamp}",
            at_period_end=at_period_end,
            period_end=period_end,
        )
        return await self._submit(fact)

    async def release_pending_checkout(self, user_id: uuid.UUID) -> Optional[FactOutcome]:
        """
        Cancel an unpaid card checkout so a store purchase can own the record.

        Returns None when there is no pending checkout, or when Stripe does
        not confirm the cancel. The checkout then stays in place and the
        store purchase is recorded without taking over.
        """
        record = await self._get_record(user_id)
        if (
            record is None
            or record.provider != Provider.STRIPE
            or record.status != SubscriptionStatus.INCOMPLETE
        ):
            return None

        event_id = f"api:release:{user_id}:{int(datetime.now(timezone.utc).timestamp())}"
        if record.external_subscription_id:
            try:
                confirmed = await self.stripe.cancel_subscription(
                    record.external_subscription_id,
                    cancel_at_period_end=False,
                )
            except (StripeServiceError, ProviderUnavailableError) as e:
                logger.warning("Could not cancel pending checkout for %s: %s", user_id, e)
                return None
            stamp = confirmed.get("canceled_at") or int(datetime.now(timezone.utc).timestamp())
            event_id = f"api:cancel:{confirmed.id}:{stamp}"

        logger.info("Releasing pending checkout %s for user %s", record.external_subscription_id, user_id)
        fact = self._action_fact(record, FactKind.CANCELED, event_id, at_period_end=False)
        return await self._submit(fact)

    # -------------------------------------------------------------------------
    # Refund
    # -------------------------------------------------------------------------

    async def request_refund(self, user_id: uuid.UUID, reason: Optional[str] = None) -> dict:
        """
        Refund the latest card charge if it is inside the refund window.

        The refund request is ``approved`` once Stripe accepts it and
        ``completed`` when the refund is reconciled. The subscription is
        canceled immediately so it cannot renew.
        """
        record = await self._require_stripe_record(user_id)
        cutoff = datetime.now(timezone.utc) - timedelta(days=settings.REFUND_WINDOW_DAYS)

        stmt = (
            select(PaymentTransaction)
            .where(
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.provider == Provider.STRIPE,
                PaymentTransaction.status == TransactionStatus.SUCCEEDED,
            )
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        transaction = (await self.db.execute(stmt)).scalar_one_or_none()
        if transaction is None:
            raise NotFoundError(
                code=ErrorCodes.REFUND_NO_TRANSACTION,
                message="No refundable payment found",
            )
        if transaction.created_at < cutoff:
            raise ConflictError(
                code=ErrorCodes.REFUND_WINDOW_EXPIRED,
                message=f"Refunds are only available within {settings.REFUND_WINDOW_DAYS} days of payment",
            )

        existing = await self.db.execute(
            select(RefundRequest.refund_request_id).where(
                RefundRequest.transaction_id == transaction.transaction_id,
                RefundRequest.status != RefundStatus.REJECTED,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                code=ErrorCodes.REFUND_ALREADY_REQUESTED,
                message="A refund was already requested for this payment",
            )

        refund_request = RefundRequest(
            user_id=user_id,
            transaction_id=transaction.transaction_id,
            amount=transaction.amount,
            reason=reason,
            status=RefundStatus.REQUESTED,
        )
        self.db.add(refund_request)
        await self.db.flush()
        # Persist the request before talking to Stripe
        await self.db.commit()

        try:
            refund = await self.stripe.refund_charge(
                transaction.charge_reference,
                refund_request_id=str(refund_request.refund_request_id),
            )
        except Exception:
            refund_request.status = RefundStatus.REJECTED
            refund_request.processed_at = datetime.now(timezone.utc)
            await self.db.commit()
            raise

        refund_request.status = RefundStatus.APPROVED
        refund_request.provider_refund_id = refund.id
        await self.db.flush()

        try:
            await self.stripe.cancel_subscription(
                record.external_subscription_id,
                cancel_at_period_end=False,
            )
        except StripeServiceError as e:
            # Already canceled in Stripe; the refund fact below still revokes access
            logger.warning("Cancel after refund failed for %s: %s", user_id, e)

        fact = self._action_fact(
            record,
            FactKind.REFUNDED,
            f"api:refund:{refund.id}",
            payment=PaymentInfo(
                amount=transaction.amount,
                currency=transaction.currency,
                status=TransactionStatus.REFUNDED,
                charge_reference=transaction.charge_reference,
                invoice_reference=transaction.invoice_reference,
            ),
        )
        outcome = await self._submit(fact)

        return {
            "refundRequestId": str(refund_request.refund_request_id),
            "providerRefundId": refund.id,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "status": refund_request.status.value,
            "outcome": outcome.as_dict(),
        }

    # -------------------------------------------------------------------------
    # Billing cycle switch
    # -------------------------------------------------------------------------

    async def quote_switch(
        self,
        user_id: uuid.UUID,
        target_cycle: BillingCycle,
        now: Optional[datetime] = None,
    ) -> ProrationQuote:
        record = await self._require_stripe_record(user_id)
        return self._quote(record, target_cycle, now or datetime.now(timezone.utc))

    def _quote(self, record: SubscriptionRecord, target_cycle: BillingCycle, now: datetime) -> ProrationQuote:
        if record.status != SubscriptionStatus.ACTIVE:
            raise ConflictError(
                code=ErrorCodes.SUB_NO_ACTIVE_SUB,
                message="Only active subscriptions can change billing cycle",
            )
        if record.billing_cycle == target_cycle:
            raise ConflictError(
                code=ErrorCodes.SUB_SAME_CYCLE,
                message=f"Already on the {target_cycle.value} cycle",
            )
        if record.current_period_start is None or record.current_period_end is None:
            raise ConflictError(
                code=ErrorCodes.SUB_INVALID_CYCLE,
                message="Current billing period is unknown",
            )
        return quote_cycle_change(
            record.billing_cycle,
            target_cycle,
            record.current_period_start,
            record.current_period_end,
            now,
        )

    async def switch_cycle(self, user_id: uuid.UUID, target_cycle: BillingCycle) -> dict:
        record = await self._require_stripe_record(user_id)
        quote = self._quote(record, target_cycle, datetime.now(timezone.utc))

        confirmed = await self.stripe.switch_cycle(record.external_subscription_id, target_cycle)

        period_start, period_end = _period_of(confirmed)
        invoice = confirmed.get("latest_invoice") or {}
        payment = None
        if isinstance(invoice, dict) and int(invoice.get("amount_paid") or 0) > 0:
            charge = invoice.get("charge") or invoice.get("payment_intent")
            payment = PaymentInfo(
                amount=(Decimal(int(invoice["amount_paid"])) / Decimal(100)).quantize(Decimal("0.01")),
                currency=(invoice.get("currency") or settings.CURRENCY).lower(),
                status=TransactionStatus.SUCCEEDED,
                charge_reference=charge or f"synthetic:{invoice['id']}",
                charge_reference_synthetic=charge is None,
                invoice_reference=invoice.get("id"),
            )
        invoice_id = invoice.get("id") if isinstance(invoice, dict) else None

        fact = self._action_fact(
            record,
            FactKind.PRORATION_APPLIED,
            f"api:switch:{confirmed.id}:{invoice_id or int(quote.new_period_start.timestamp())}",
            billing_cycle=target_cycle,
            period_start=period_start or quote.new_period_start,
            period_end=period_end or quote.new_period_end,
            payment=payment,
        )
        outcome = await self._submit(fact)

        return {
            "quote": quote.as_dict(),
            "outcome": outcome.as_dict(),
        }
