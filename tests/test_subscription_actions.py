"""
Subscription Action Tests
=========================

Tests for checkout, cancel, refund and billing-cycle switch. Stripe is
mocked; confirmed responses flow through the in-memory reconciler.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from app.core.errors import ConflictError, ErrorCodes, NotFoundError
from app.models.billing import PaymentTransaction, RefundStatus, TransactionStatus
from app.models.subscription import (
    BillingCycle,
    Provider,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.services.stripe_billing import StripeServiceError
from app.services.subscription_actions import SubscriptionActionService


USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
APRIL = datetime(2026, 4, 1, tzinfo=timezone.utc)
MAY = datetime(2026, 5, 1, tzinfo=timezone.utc)
HALFWAY = datetime(2026, 4, 16, tzinfo=timezone.utc)


def stripe_object(values: dict):
    return stripe.StripeObject.construct_from(values, "sk_test_123")


def _record(
    provider: Provider = Provider.STRIPE,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
) -> SubscriptionRecord:
    record = SubscriptionRecord.new_for_user(USER_ID)
    record.record_id = uuid.uuid4()
    record.status = status
    record.tier = SubscriptionTier.PREMIUM
    record.billing_cycle = BillingCycle.MONTHLY
    record.provider = provider
    record.external_subscription_id = "sub_123" if provider == Provider.STRIPE else "1000000001"
    record.external_customer_id = "cus_123" if provider == Provider.STRIPE else None
    record.current_period_start = APRIL
    record.current_period_end = MAY
    return record


def _stripe_service() -> MagicMock:
    service = MagicMock()
    service.create_customer = AsyncMock(return_value=stripe_object({"id": "cus_new"}))
    service.create_subscription = AsyncMock(return_value=stripe_object({
        "id": "sub_new",
        "status": "incomplete",
        "latest_invoice": {"id": "in_1", "payment_intent": {"id": "pi_1", "client_secret": "pi_1_secret"}},
    }))
    service.cancel_subscription = AsyncMock()
    service.switch_cycle = AsyncMock()
    service.refund_charge = AsyncMock(return_value=stripe_object({"id": "re_1"}))
    return service


def _make_service(ledger, record=None):
    service = SubscriptionActionService(ledger.session, stripe_service=_stripe_service())
    service.reconciler = ledger.reconciler()
    if record is not None:
        ledger.add_record(record)
    service._get_record = AsyncMock(return_value=record)
    return service


class TestCheckout:
    """Tests for start_checkout"""

    @pytest.mark.asyncio
    async def test_new_user_gets_incomplete_record(self, ledger):
        service = _make_service(ledger)

        data = await service.start_checkout(USER_ID, BillingCycle.YEARLY, "user@example.com")

        assert data["pending"] is True
        assert data["clientSecret"] == "pi_1_secret"
        assert data["subscriptionId"] == "sub_new"

        added = [
            call.args[0] for call in ledger.session.add.call_args_list
            if isinstance(call.args[0], SubscriptionRecord)
        ]
        assert len(added) == 1
        assert added[0].status == SubscriptionStatus.INCOMPLETE
        assert added[0].tier == SubscriptionTier.FREE
        assert added[0].external_subscription_id == "sub_new"
        ledger.session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_active_subscription_rejected(self, ledger):
        service = _make_service(ledger, _record())

        with pytest.raises(ConflictError) as exc_info:
            await service.start_checkout(USER_ID, BillingCycle.MONTHLY)

        assert exc_info.value.code == ErrorCodes.SUB_ALREADY_ACTIVE
        service.stripe.create_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_active_app_store_subscription_rejected(self, ledger):
        service = _make_service(ledger, _record(provider=Provider.APPLE_IAP))

        with pytest.raises(ConflictError) as exc_info:
            await service.start_checkout(USER_ID, BillingCycle.MONTHLY)

        assert exc_info.value.code == ErrorCodes.SUB_MANAGED_BY_STORE

    @pytest.mark.asyncio
    async def test_lapsed_user_reuses_customer(self, ledger):
        record = _record(status=SubscriptionStatus.CANCELED)
        service = _make_service(ledger, record)

        await service.start_checkout(USER_ID, BillingCycle.MONTHLY)

        service.stripe.create_customer.assert_not_awaited()
        assert service.stripe.create_subscription.await_args.args[0] == "cus_123"


class TestCancel:
    """Tests for cancel"""

    @pytest.mark.asyncio
    async def test_app_store_subscription_is_managed_elsewhere(self, ledger):
        service = _make_service(ledger, _record(provider=Provider.APPLE_IAP))

        with pytest.raises(ConflictError) as exc_info:
            await service.cancel(USER_ID)

        assert exc_info.value.code == ErrorCodes.SUB_MANAGED_BY_STORE
        service.stripe.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_subscription(self, ledger):
        service = _make_service(ledger)

        with pytest.raises(NotFoundError):
            await service.cancel(USER_ID)

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_after_confirmation(self, ledger):
        record = _record()
        service = _make_service(ledger, record)
        service.stripe.cancel_subscription.return_value = stripe_object({
            "id": "sub_123",
            "cancel_at_period_end": True,
            "canceled_at": 1776000000,
            "current_period_start": int(APRIL.timestamp()),
            "current_period_end": int(MAY.timestamp()),
        })

        outcome = await service.cancel(USER_ID)

        service.stripe.cancel_subscription.assert_awaited_once_with(
            "sub_123", cancel_at_period_end=True
        )
        assert outcome.applied
        assert record.status == SubscriptionStatus.CANCELED_PENDING
        assert record.tier == SubscriptionTier.PREMIUM
        assert ledger.events.outcome_of(Provider.STRIPE, "api:cancel:sub_123:1776000000") is not None

    @pytest.mark.asyncio
    async def test_already_scheduled(self, ledger):
        service = _make_service(ledger, _record(status=SubscriptionStatus.CANCELED_PENDING))

        with pytest.raises(ConflictError) as exc_info:
            await service.cancel(USER_ID)

        assert exc_info.value.code == ErrorCodes.SUB_ALREADY_CANCELLED


class TestReleasePendingCheckout:
    """Tests for release_pending_checkout"""

    @pytest.mark.asyncio
    async def test_pending_checkout_is_canceled_in_stripe_first(self, ledger):
        record = _record(status=SubscriptionStatus.INCOMPLETE)
        record.tier = SubscriptionTier.FREE
        service = _make_service(ledger, record)
        service.stripe.cancel_subscription.return_value = stripe_object({
            "id": "sub_123",
            "status": "canceled",
            "canceled_at": 1776000000,
        })

        outcome = await service.release_pending_checkout(USER_ID)

        service.stripe.cancel_subscription.assert_awaited_once_with(
            "sub_123", cancel_at_period_end=False
        )
        assert outcome.applied
        assert record.status == SubscriptionStatus.CANCELED
        assert record.is_terminal

    @pytest.mark.asyncio
    async def test_active_subscription_is_left_alone(self, ledger):
        record = _record()
        service = _make_service(ledger, record)

        assert await service.release_pending_checkout(USER_ID) is None
        service.stripe.cancel_subscription.assert_not_awaited()
        assert record.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_stripe_refusal_keeps_checkout(self, ledger):
        record = _record(status=SubscriptionStatus.INCOMPLETE)
        service = _make_service(ledger, record)
        service.stripe.cancel_subscription.side_effect = StripeServiceError("cancel subscription: no such subscription")

        assert await service.release_pending_checkout(USER_ID) is None
        assert record.status == SubscriptionStatus.INCOMPLETE


class TestSwitchCycle:
    """Tests for quote_switch and switch_cycle"""

    @pytest.mark.asyncio
    async def test_quote_halfway_monthly_to_yearly(self, ledger):
        service = _make_service(ledger, _record())

        quote = await service.quote_switch(USER_ID, BillingCycle.YEARLY, now=HALFWAY)

        assert quote.delta == Decimal("36.50")

    @pytest.mark.asyncio
    async def test_same_cycle_rejected(self, ledger):
        service = _make_service(ledger, _record())

        with pytest.raises(ConflictError) as exc_info:
            await service.switch_cycle(USER_ID, BillingCycle.MONTHLY)

        assert exc_info.value.code == ErrorCodes.SUB_SAME_CYCLE
        service.stripe.switch_cycle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_switch_applies_confirmed_cycle(self, ledger):
        record = _record()
        service = _make_service(ledger, record)
        new_start = datetime(2026, 4, 16, tzinfo=timezone.utc)
        new_end = datetime(2027, 4, 16, tzinfo=timezone.utc)
        service.stripe.switch_cycle.return_value = stripe_object({
            "id": "sub_123",
            "current_period_start": int(new_start.timestamp()),
            "current_period_end": int(new_end.timestamp()),
            "latest_invoice": {
                "id": "in_sw",
                "amount_paid": 3650,
                "currency": "usd",
                "charge": "ch_sw",
            },
        })

        data = await service.switch_cycle(USER_ID, BillingCycle.YEARLY)

        assert data["outcome"]["status"] == "applied"
        assert record.billing_cycle == BillingCycle.YEARLY
        assert record.current_period_end == new_end
        assert ledger.payments["ch_sw"]["amount"] == Decimal("36.50")

    @pytest.mark.asyncio
    async def test_only_active_subscriptions_switch(self, ledger):
        service = _make_service(ledger, _record(status=SubscriptionStatus.PAST_DUE))

        with pytest.raises(ConflictError) as exc_info:
            await service.quote_switch(USER_ID, BillingCycle.YEARLY)

        assert exc_info.value.code == ErrorCodes.SUB_NO_ACTIVE_SUB


class TestRefund:
    """Tests for request_refund"""

    def _transaction(self, age: timedelta) -> PaymentTransaction:
        return PaymentTransaction(
            transaction_id=uuid.uuid4(),
            user_id=USER_ID,
            provider=Provider.STRIPE,
            amount=Decimal("4.99"),
            currency="usd",
            status=TransactionStatus.SUCCEEDED,
            charge_reference="ch_paid",
            invoice_reference="in_paid",
            created_at=datetime.now(timezone.utc) - age,
        )

    def _results(self, ledger, transaction, existing=None):
        tx_result = MagicMock()
        tx_result.scalar_one_or_none.return_value = transaction
        existing_result = MagicMock()
        existing_result.scalar_one_or_none.return_value = existing
        responses = [tx_result, existing_result]

        # Later statements (the user lock) get a plain result
        def execute(*args, **kwargs):
            return responses.pop(0) if responses else MagicMock()

        ledger.session.execute.side_effect = execute

    @pytest.mark.asyncio
    async def test_no_payment(self, ledger):
        service = _make_service(ledger, _record())
        self._results(ledger, None)

        with pytest.raises(NotFoundError) as exc_info:
            await service.request_refund(USER_ID)

        assert exc_info.value.code == ErrorCodes.REFUND_NO_TRANSACTION

    @pytest.mark.asyncio
    async def test_outside_window(self, ledger):
        service = _make_service(ledger, _record())
        self._results(ledger, self._transaction(timedelta(days=30)))

        with pytest.raises(ConflictError) as exc_info:
            await service.request_refund(USER_ID)

        assert exc_info.value.code == ErrorCodes.REFUND_WINDOW_EXPIRED
        service.stripe.refund_charge.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_requested(self, ledger):
        service = _make_service(ledger, _record())
        self._results(ledger, self._transaction(timedelta(days=1)), existing=uuid.uuid4())

        with pytest.raises(ConflictError) as exc_info:
            await service.request_refund(USER_ID)

        assert exc_info.value.code == ErrorCodes.REFUND_ALREADY_REQUESTED

    @pytest.mark.asyncio
    async def test_refund_revokes_access(self, ledger):
        record = _record()
        service = _make_service(ledger, record)
        self._results(ledger, self._transaction(timedelta(days=1)))

        data = await service.request_refund(USER_ID, "changed my mind")

        assert data["providerRefundId"] == "re_1"
        assert data["status"] == RefundStatus.APPROVED.value
        assert data["outcome"]["status"] == "applied"
        assert record.status == SubscriptionStatus.CANCELED
        assert record.tier == SubscriptionTier.FREE
        service.stripe.cancel_subscription.assert_awaited_once_with(
            "sub_123", cancel_at_period_end=False
        )

    @pytest.mark.asyncio
    async def test_stripe_failure_rejects_request(self, ledger):
        record = _record()
        service = _make_service(ledger, record)
        self._results(ledger, self._transaction(timedelta(days=1)))
        service.stripe.refund_charge.side_effect = RuntimeError("stripe down")

        with pytest.raises(RuntimeError):
            await service.request_refund(USER_ID)

        assert record.status == SubscriptionStatus.ACTIVE
        refund_requests = [
            call.args[0] for call in ledger.session.add.call_args_list
            if type(call.args[0]).__name__ == "RefundRequest"
        ]
        assert refund_requests[0].status == RefundStatus.REJECTED
