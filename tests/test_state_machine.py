"""
State Machine Tests
===================

Tests for applying facts to subscription records, including:
- Activation and provider takeover
- Ownership precedence
- Out-of-order and stale facts
- Payment failure deadlines
- Cancellation, refunds, proration and expiry
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from app.core.errors import MalformedFactError
from app.models.billing import TransactionStatus
from app.models.subscription import (
    BillingCycle,
    Provider,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.services.state_machine import apply_fact, expiry_deadline


USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
APRIL = datetime(2026, 4, 1, tzinfo=timezone.utc)
MAY = datetime(2026, 5, 1, tzinfo=timezone.utc)
JUNE = datetime(2026, 6, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_record(
    *,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    provider: Optional[Provider] = Provider.STRIPE,
    period_start: Optional[datetime] = APRIL,
    period_end: Optional[datetime] = MAY,
    last_event_at: Optional[datetime] = None,
) -> SubscriptionRecord:
    record = SubscriptionRecord.new_for_user(USER_ID)
    record.status = status
    record.provider = provider
    record.current_period_start = period_start
    record.current_period_end = period_end
    record.last_event_at = last_event_at
    if status in (
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.GRACE_PERIOD,
        SubscriptionStatus.CANCELED_PENDING,
        SubscriptionStatus.PAUSED,
    ):
        record.tier = SubscriptionTier.PREMIUM
        record.billing_cycle = BillingCycle.MONTHLY
    if provider == Provider.STRIPE:
        record.external_subscription_id = "sub_123"
        record.external_customer_id = "cus_123"
    elif provider == Provider.APPLE_IAP:
        record.external_subscription_id = "1000000001"
    return record


def _make_fact(
    kind: FactKind,
    *,
    provider: Provider = Provider.STRIPE,
    occurred_at: datetime = APRIL,
    event_id: Optional[str] = None,
    **fields,
) -> BillingFact:
    return BillingFact(
        provider=provider,
        kind=kind,
        event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
        event_type=f"test.{kind.value}",
        occurred_at=occurred_at,
        user_id=USER_ID,
        **fields,
    )


def _payment(status: TransactionStatus = TransactionStatus.SUCCEEDED, ref: str = "ch_1") -> PaymentInfo:
    return PaymentInfo(amount=Decimal("4.99"), status=status, charge_reference=ref)


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------

class TestActivated:
    """Tests for activated facts."""

    def test_incomplete_record_becomes_active_premium(self):
        record = _make_record(status=SubscriptionStatus.INCOMPLETE, period_start=None, period_end=None)
        record.tier = SubscriptionTier.FREE

        result = apply_fact(record, _make_fact(
            FactKind.ACTIVATED,
            external_subscription_id="sub_123",
            billing_cycle=BillingCycle.MONTHLY,
            period_start=APRIL,
            period_end=MAY,
        ))

        assert result.applied
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.current_period_end == MAY
        assert record.last_event_at == APRIL

    def test_other_provider_takes_over_terminal_record(self):
        record = _make_record(status=SubscriptionStatus.CANCELED, provider=Provider.STRIPE)
        record.tier = SubscriptionTier.FREE

        result = apply_fact(record, _make_fact(
            FactKind.ACTIVATED,
            provider=Provider.APPLE_IAP,
            occurred_at=MAY,
            external_subscription_id="1000000001",
            period_start=MAY,
            period_end=JUNE,
            receipt="MIIT...",
        ))

        assert result.applied
        assert "ownership moved" in result.detail
        assert record.provider == Provider.APPLE_IAP
        assert record.external_subscription_id == "1000000001"
        assert record.external_customer_id is None
        assert record.current_period_end == JUNE
        assert record.latest_receipt == "MIIT..."

    def test_other_provider_cannot_take_over_active_record(self):
        """A receipt while a card subscription is active does not move ownership."""
        record = _make_record()

        result = apply_fact(record, _make_fact(
            FactKind.ACTIVATED,
            provider=Provider.APPLE_IAP,
            period_end=JUNE,
            receipt="MIIT...",
        ))

        assert not result.applied
        assert "owned by stripe" in result.detail
        assert record.provider == Provider.STRIPE
        assert record.current_period_end == MAY
        assert record.latest_receipt is None
        assert result.payment is None
        assert result.reclaimable

    def test_store_purchase_cannot_take_over_pending_checkout(self):
        """An unpaid card checkout still holds a Stripe subscription."""
        record = _make_record(status=SubscriptionStatus.INCOMPLETE, period_start=None, period_end=None)
        record.tier = SubscriptionTier.FREE
        payment = _payment(ref="1000000001")

        result = apply_fact(record, _make_fact(
            FactKind.ACTIVATED,
            provider=Provider.APPLE_IAP,
            period_end=JUNE,
            payment=payment,
        ))

        assert not result.applied
        assert result.reclaimable
        assert result.payment == payment
        assert record.provider == Provider.STRIPE
        assert record.status == SubscriptionStatus.INCOMPLETE

    def test_ownership_skip_still_reports_payment(self):
        """A card charge while the store owns the record is still money received."""
        record = _make_record(provider=Provider.APPLE_IAP)
        payment = _payment(ref="ch_1")

        result = apply_fact(record, _make_fact(
            FactKind.ACTIVATED,
            period_start=MAY,
            period_end=JUNE,
            payment=payment,
        ))

        assert not result.applied
        assert result.payment == payment
        assert record.provider == Provider.APPLE_IAP

    def test_live_renewal_takes_over_terminal_record(self):
        record = _make_record(status=SubscriptionStatus.CANCELED, provider=Provider.STRIPE)
        record.tier = SubscriptionTier.FREE
        record.canceled_at = APRIL

        result = apply_fact(record, _make_fact(
            FactKind.RENEWED,
            provider=Provider.APPLE_IAP,
            occurred_at=MAY,
            external_subscription_id="1000000001",
            period_start=MAY,
            period_end=JUNE,
        ), now=MAY + timedelta(days=1))

        assert result.applied
        assert result.detail == "renewed, ownership moved to apple_iap"
        assert record.provider == Provider.APPLE_IAP
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.external_customer_id is None
        assert record.current_period_end == JUNE

    def test_renewal_for_ended_period_does_not_take_over(self):
        record = _make_record(status=SubscriptionStatus.CANCELED, provider=Provider.STRIPE)
        record.tier = SubscriptionTier.FREE

        result = apply_fact(record, _make_fact(
            FactKind.RENEWED,
            provider=Provider.APPLE_IAP,
            occurred_at=MAY,
            period_start=MAY,
            period_end=JUNE,
        ), now=JUNE + timedelta(days=1))

        assert not result.applied
        assert result.reclaimable
        assert record.provider == Provider.STRIPE


# ---------------------------------------------------------------------------
# Renewal and ordering
# ---------------------------------------------------------------------------

class TestRenewed:
    """Tests for renewal ordering."""

    def test_later_period_extends(self):
        record = _make_record()

        result = apply_fact(record, _make_fact(
            FactKind.RENEWED, occurred_at=MAY, period_start=MAY, period_end=JUNE,
        ))

        assert result.applied
        assert record.current_period_end == JUNE

    def test_out_of_order_renewals_keep_max_period(self):
        record = _make_record()
        july = datetime(2026, 7, 1, tzinfo=timezone.utc)

        apply_fact(record, _make_fact(
            FactKind.RENEWED, occurred_at=JUNE, period_start=JUNE, period_end=july,
        ))
        late = apply_fact(record, _make_fact(
            FactKind.RENEWED, occurred_at=MAY, period_start=MAY, period_end=JUNE,
        ))

        assert not late.applied
        assert record.current_period_end == july

    def test_skipped_renewal_still_reports_payment(self):
        """The charge is real even when the period is already covered."""
        record = _make_record(period_end=JUNE)
        payment = _payment()

        result = apply_fact(record, _make_fact(
            FactKind.RENEWED, period_start=APRIL, period_end=MAY, payment=payment,
        ))

        assert not result.applied
        assert result.payment == payment

    def test_past_due_recovers_on_successful_payment(self):
        record = _make_record(status=SubscriptionStatus.PAST_DUE)
        record.grace_period_ends_at = MAY

        result = apply_fact(record, _make_fact(
            FactKind.RENEWED, period_start=APRIL, period_end=MAY, payment=_payment(),
        ))

        assert result.applied
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.grace_period_ends_at is None

    def test_renewal_on_incomplete_is_illegal(self):
        record = _make_record(status=SubscriptionStatus.INCOMPLETE, period_end=None)

        with pytest.raises(MalformedFactError):
            apply_fact(record, _make_fact(FactKind.RENEWED, period_end=JUNE))

    def test_stale_non_renewal_fact_skipped(self):
        record = _make_record(last_event_at=MAY)

        result = apply_fact(record, _make_fact(
            FactKind.CANCELED, occurred_at=APRIL, at_period_end=True,
        ))

        assert not result.applied
        assert "stale" in result.detail
        assert record.status == SubscriptionStatus.ACTIVE


# ---------------------------------------------------------------------------
# Payment failures
# ---------------------------------------------------------------------------

class TestPaymentFailed:
    """Tests for payment failure handling."""

    def test_card_failure_moves_to_past_due_until_period_end(self):
        record = _make_record()

        result = apply_fact(
            record,
            _make_fact(FactKind.PAYMENT_FAILED, payment=_payment(TransactionStatus.FAILED)),
            grace_days=0,
        )

        assert result.applied
        assert record.status == SubscriptionStatus.PAST_DUE
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.grace_period_ends_at == MAY

    def test_configured_grace_days_extend_deadline(self):
        record = _make_record()

        apply_fact(record, _make_fact(FactKind.PAYMENT_FAILED), grace_days=3)

        assert record.grace_period_ends_at == MAY + timedelta(days=3)

    def test_apple_failure_uses_store_grace_period(self):
        record = _make_record(provider=Provider.APPLE_IAP)
        grace = MAY + timedelta(days=16)

        apply_fact(record, _make_fact(
            FactKind.PAYMENT_FAILED,
            provider=Provider.APPLE_IAP,
            grace_period_ends_at=grace,
        ))

        assert record.status == SubscriptionStatus.GRACE_PERIOD
        assert record.grace_period_ends_at == grace

    def test_initial_payment_failure_keeps_incomplete(self):
        record = _make_record(status=SubscriptionStatus.INCOMPLETE, period_end=None)
        record.tier = SubscriptionTier.FREE

        result = apply_fact(record, _make_fact(FactKind.PAYMENT_FAILED))

        assert result.applied
        assert record.status == SubscriptionStatus.INCOMPLETE
        assert record.tier == SubscriptionTier.FREE


# ---------------------------------------------------------------------------
# Cancellation and refunds
# ---------------------------------------------------------------------------

class TestCanceledAndRefunded:
    """Tests for cancellation and refund facts."""

    def test_cancel_at_period_end_keeps_premium(self):
        record = _make_record()

        result = apply_fact(record, _make_fact(FactKind.CANCELED, at_period_end=True))

        assert result.applied
        assert record.status == SubscriptionStatus.CANCELED_PENDING
        assert record.tier == SubscriptionTier.PREMIUM
        assert record.cancel_at_period_end is True

    def test_immediate_cancel_revokes(self):
        record = _make_record()

        apply_fact(record, _make_fact(FactKind.CANCELED, at_period_end=False))

        assert record.status == SubscriptionStatus.CANCELED
        assert record.tier == SubscriptionTier.FREE

    def test_resume_after_scheduled_cancel(self):
        record = _make_record(status=SubscriptionStatus.CANCELED_PENDING)
        record.cancel_at_period_end = True

        result = apply_fact(record, _make_fact(FactKind.RESUMED))

        assert result.applied
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.cancel_at_period_end is False

    @pytest.mark.parametrize("status", [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED_PENDING,
        SubscriptionStatus.PAUSED,
        SubscriptionStatus.EXPIRED,
    ])
    def test_refund_always_cancels_to_free(self, status):
        record = _make_record(status=status)

        result = apply_fact(record, _make_fact(
            FactKind.REFUNDED,
            payment=_payment(TransactionStatus.REFUNDED),
        ))

        assert result.applied
        assert record.status == SubscriptionStatus.CANCELED
        assert record.tier == SubscriptionTier.FREE

    def test_refund_applies_even_when_older_than_watermark(self):
        record = _make_record(last_event_at=JUNE)

        result = apply_fact(record, _make_fact(FactKind.REFUNDED, occurred_at=APRIL))

        assert result.applied
        assert record.status == SubscriptionStatus.CANCELED


# ---------------------------------------------------------------------------
# Proration and expiry
# ---------------------------------------------------------------------------

class TestProrationAndExpiry:
    """Tests for proration and period-end expiry."""

    def test_proration_switches_cycle_and_period(self):
        record = _make_record()
        now = datetime(2026, 4, 16, tzinfo=timezone.utc)
        new_end = datetime(2027, 4, 16, tzinfo=timezone.utc)

        result = apply_fact(record, _make_fact(
            FactKind.PRORATION_APPLIED,
            occurred_at=now,
            billing_cycle=BillingCycle.YEARLY,
            period_start=now,
            period_end=new_end,
        ))

        assert result.applied
        assert record.billing_cycle == BillingCycle.YEARLY
        assert record.current_period_end == new_end

    def test_proration_without_cycle_is_malformed(self):
        record = _make_record()

        with pytest.raises(MalformedFactError):
            apply_fact(record, _make_fact(FactKind.PRORATION_APPLIED))

    def test_expired_before_deadline_is_skipped(self):
        record = _make_record(status=SubscriptionStatus.CANCELED_PENDING)

        result = apply_fact(record, _make_fact(FactKind.EXPIRED, occurred_at=APRIL))

        assert not result.applied
        assert record.status == SubscriptionStatus.CANCELED_PENDING

    def test_expired_after_deadline_demotes(self):
        record = _make_record(status=SubscriptionStatus.CANCELED_PENDING)

        result = apply_fact(record, _make_fact(FactKind.EXPIRED, occurred_at=MAY + timedelta(minutes=1)))

        assert result.applied
        assert record.status == SubscriptionStatus.EXPIRED
        assert record.tier == SubscriptionTier.FREE

    def test_active_record_gets_leeway(self):
        record = _make_record()
        leeway = timedelta(hours=24)

        assert expiry_deadline(record, leeway) == MAY + leeway

        early = apply_fact(
            record,
            _make_fact(FactKind.EXPIRED, occurred_at=MAY + timedelta(hours=1)),
            active_leeway=leeway,
        )
        assert not early.applied
        assert record.status == SubscriptionStatus.ACTIVE
