"""
Subscription State Machine
==========================

Applies one ``BillingFact`` to one ``SubscriptionRecord`` in memory.

No I/O happens here: the reconciler loads the record under the per-user
lock, calls ``apply_fact`` and persists whatever changed. The function
either mutates the record and reports ``applied=True``, leaves it
untouched and reports a skip reason, or raises ``MalformedFactError`` for
a fact that cannot apply to the record's current state.

Lifecycle::

    incomplete -> active -> {past_due, grace_period, canceled_pending, paused}
                         -> {active, canceled, expired}
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.config import settings
from app.core.errors import ErrorCodes, MalformedFactError
from app.models.subscription import (
    BillingCycle,
    Provider,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
    TERMINAL_STATUSES,
)
from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.models.billing import TransactionStatus


@dataclass
class TransitionResult:
    """What ``apply_fact`` did to the record."""

    applied: bool
    detail: str
    previous_status: SubscriptionStatus
    previous_tier: SubscriptionTier
    # Money movement the caller must persist, even for some skipped facts
    payment: Optional[PaymentInfo] = None
    # Skipped only because another provider owns the record; the same
    # event may be applied later once that provider's subscription ends
    reclaimable: bool = False

    @property
    def entitlement_changed(self) -> bool:
        return self.applied


# Facts that bypass the per-record clock check
_CLOCK_EXEMPT = frozenset({FactKind.RENEWED, FactKind.REFUNDED, FactKind.EXPIRED})

# States a failed renewal charge can move out of
_BILLABLE = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.GRACE_PERIOD,
})


def _illegal(fact: BillingFact, record: SubscriptionRecord) -> MalformedFactError:
    return MalformedFactError(
        f"{fact.kind.value} cannot apply to a {record.status.value} subscription",
        code=ErrorCodes.FACT_ILLEGAL_TRANSITION,
    )


# ---------------------------------------------------------------------------
# Shared mutations
# ---------------------------------------------------------------------------

def _set_external_refs(record: SubscriptionRecord, fact: BillingFact) -> None:
    if fact.external_subscription_id:
        record.external_subscription_id = fact.external_subscription_id
    if fact.external_customer_id:
        record.external_customer_id = fact.external_customer_id
    if fact.product_id:
        record.product_id = fact.product_id
    if fact.billing_cycle and fact.billing_cycle != BillingCycle.NONE:
        record.billing_cycle = fact.billing_cycle


def _period_is_later(record: SubscriptionRecord, fact: BillingFact) -> bool:
    if fact.period_end is None:
        return False
    return record.current_period_end is None or fact.period_end > record.current_period_end


def _set_period(record: SubscriptionRecord, fact: BillingFact) -> None:
    if fact.period_start is not None:
        record.current_period_start = fact.period_start
    if fact.period_end is not None:
        record.current_period_end = fact.period_end


def _make_active(record: SubscriptionRecord) -> None:
    record.status = SubscriptionStatus.ACTIVE
    record.tier = SubscriptionTier.PREMIUM
    record.cancel_at_period_end = False
    record.grace_period_ends_at = None
    record.canceled_at = None


def _make_free(record: SubscriptionRecord, status: SubscriptionStatus) -> None:
    record.status = status
    record.tier = SubscriptionTier.FREE
    record.cancel_at_period_end = False
    record.grace_period_ends_at = None


# ---------------------------------------------------------------------------
# Per-kind rules
# ---------------------------------------------------------------------------

def _apply_activated(record: SubscriptionRecord, fact: BillingFact) -> str:
    takeover = record.provider is not None and record.provider != fact.provider
    new_subscription = (
        fact.external_subscription_id is not None
        and fact.external_subscription_id != record.external_subscription_id
    )

    if takeover:
        # Refs and period belong to the previous owner
        record.external_subscription_id = None
        record.external_customer_id = None
        record.current_period_start = None
        record.current_period_end = None
        record.latest_receipt = None

    record.provider = fact.provider
    _set_external_refs(record, fact)
    if new_subscription or takeover or _period_is_later(record, fact):
        _set_period(record, fact)
    _make_active(record)

    if takeover:
        return f"{fact.kind.value}, ownership moved to {fact.provider.value}"
    return "activated"


def _apply_renewed(record: SubscriptionRecord, fact: BillingFact) -> Optional[str]:
    if record.status == SubscriptionStatus.INCOMPLETE:
        raise _illegal(fact, record)

    later = _period_is_later(record, fact)

    if record.status in TERMINAL_STATUSES:
        resubscribed = later and (
            record.canceled_at is None or fact.occurred_at > record.canceled_at
        )
        if not resubscribed:
            return None
        _set_external_refs(record, fact)
        _set_period(record, fact)
        _make_active(record)
        return "renewed after lapse, reactivated"

    recovering = (
        record.status in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.GRACE_PERIOD)
        and fact.payment is not None
        and fact.payment.status == TransactionStatus.SUCCEEDED
    )
    if not later and not recovering:
        return None

    _set_external_refs(record, fact)
    if later:
        _set_period(record, fact)
    _make_active(record)
    return "renewed" if later else "payment recovered"


def _apply_payment_failed(
    record: SubscriptionRecord,
    fact: BillingFact,
    grace_days: int,
) -> Optional[str]:
    if record.status == SubscriptionStatus.INCOMPLETE:
        # First charge declined; the subscription never started
        return "initial payment failed"

    if record.status not in _BILLABLE:
        return None

    first_failure = record.status == SubscriptionStatus.ACTIVE
    if fact.provider == Provider.APPLE_IAP:
        record.status = SubscriptionStatus.GRACE_PERIOD
    else:
        record.status = SubscriptionStatus.PAST_DUE

    if fact.grace_period_ends_at is not None:
        record.grace_period_ends_at = fact.grace_period_ends_at
    elif first_failure or record.grace_period_ends_at is None:
        if record.current_period_end is not None:
            record.grace_period_ends_at = record.current_period_end + timedelta(days=grace_days)

    return f"payment failed, {record.status.value} until {record.grace_period_ends_at}"


def _apply_canceled(record: SubscriptionRecord, fact: BillingFact) -> Optional[str]:
    if record.status in TERMINAL_STATUSES:
        return None

    if fact.at_period_end and record.status != SubscriptionStatus.INCOMPLETE:
        if record.status == SubscriptionStatus.CANCELED_PENDING:
            return None
        record.canceled_at = fact.occurred_at
        record.status = SubscriptionStatus.CANCELED_PENDING
        record.cancel_at_period_end = True
        _set_period_if_later(record, fact)
        return "cancellation scheduled for period end"

    record.canceled_at = fact.occurred_at
    _make_free(record, SubscriptionStatus.CANCELED)
    return "canceled immediately"


def _set_period_if_later(record: SubscriptionRecord, fact: BillingFact) -> None:
    if _period_is_later(record, fact):
        _set_period(record, fact)


def _apply_refunded(record: SubscriptionRecord, fact: BillingFact) -> str:
    _make_free(record, SubscriptionStatus.CANCELED)
    record.canceled_at = fact.occurred_at
    return "refunded, access revoked"


def _apply_proration(record: SubscriptionRecord, fact: BillingFact) -> str:
    if record.status == SubscriptionStatus.INCOMPLETE or record.status in TERMINAL_STATUSES:
        raise _illegal(fact, record)
    if fact.billing_cycle is None or fact.billing_cycle == BillingCycle.NONE:
        raise MalformedFactError("proration_applied requires a billing cycle")

    previous = record.billing_cycle
    record.billing_cycle = fact.billing_cycle
    if fact.product_id:
        record.product_id = fact.product_id
    # The new cadence starts now; a downgrade may shorten the period
    _set_period(record, fact)
    return f"billing cycle {previous.value} -> {fact.billing_cycle.value}"


def _apply_resumed(record: SubscriptionRecord, fact: BillingFact) -> Optional[str]:
    if record.status not in (SubscriptionStatus.CANCELED_PENDING, SubscriptionStatus.PAUSED):
        return None
    _set_period_if_later(record, fact)
    _make_active(record)
    return "resumed"


def _apply_paused(record: SubscriptionRecord, fact: BillingFact) -> Optional[str]:
    if record.status not in _BILLABLE:
        return None
    record.status = SubscriptionStatus.PAUSED
    return "paused"


def _may_take_over(record: SubscriptionRecord, fact: BillingFact, now: datetime) -> bool:
    """
    Whether a fact from the non-owning provider may claim the record.

    Only a record whose owner's subscription has ended can change hands.
    An ``incomplete`` checkout still holds a live subscription at the
    owner, which has to be canceled (turning the record terminal) first.
    """
    if not record.is_terminal:
        return False
    if fact.kind == FactKind.ACTIVATED:
        return True
    # A renewal proves a running subscription only while its period lasts
    return (
        fact.kind == FactKind.RENEWED
        and fact.period_end is not None
        and fact.period_end > now
    )


def expiry_deadline(
    record: SubscriptionRecord,
    active_leeway: timedelta,
) -> Optional[datetime]:
    """When the period-end sweep may expire ``record``, or None if never."""
    if record.status == SubscriptionStatus.ACTIVE:
        if record.current_period_end is None:
            return None
        return record.current_period_end + active_leeway
    if record.status == SubscriptionStatus.PAUSED:
        return record.current_period_end
    return record.entitlement_deadline


def _apply_expired(
    record: SubscriptionRecord,
    fact: BillingFact,
    active_leeway: timedelta,
) -> Optional[str]:
    deadline = expiry_deadline(record, active_leeway)
    if deadline is None or fact.occurred_at < deadline:
        return None
    previous = record.status.value
    _make_free(record, SubscriptionStatus.EXPIRED)
    return f"expired from {previous}"


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def apply_fact(
    record: SubscriptionRecord,
    fact: BillingFact,
    *,
    grace_days: Optional[int] = None,
    active_leeway: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Apply ``fact`` to ``record`` in place.

    ``now`` is the processing time, used to decide whether a renewal from
    the non-owning provider still covers a live period.

    Raises:
        MalformedFactError: the fact is illegal for the record's state.
    """
    if grace_days is None:
        grace_days = settings.PAYMENT_GRACE_DAYS
    if active_leeway is None:
        active_leeway = timedelta(hours=settings.SWEEP_ACTIVE_LEEWAY_HOURS)
    if now is None:
        now = datetime.now(timezone.utc)

    previous_status = record.status
    previous_tier = record.tier

    def skipped(
        reason: str,
        payment: Optional[PaymentInfo] = None,
        reclaimable: bool = False,
    ) -> TransitionResult:
        return TransitionResult(
            applied=False,
            detail=reason,
            previous_status=previous_status,
            previous_tier=previous_tier,
            payment=payment,
            reclaimable=reclaimable,
        )

    # Ownership precedence
    owner = record.provider
    takeover = owner is not None and fact.provider != owner
    if takeover and not _may_take_over(record, fact, now):
        return skipped(
            f"record owned by {owner.value}; {fact.provider.value} "
            f"{fact.kind.value} ignored",
            payment=fact.payment,
            reclaimable=fact.kind in (FactKind.ACTIVATED, FactKind.RENEWED),
        )

    # Stale facts from the owner
    if (
        fact.kind not in _CLOCK_EXEMPT
        and owner == fact.provider
        and record.last_event_at is not None
        and fact.occurred_at < record.last_event_at
    ):
        return skipped(
            f"stale {fact.kind.value} at {fact.occurred_at.isoformat()}, "
            f"record already at {record.last_event_at.isoformat()}",
            payment=fact.payment,
        )

    kind = fact.kind
    if kind == FactKind.ACTIVATED or takeover:
        detail = _apply_activated(record, fact)
    elif kind == FactKind.RENEWED:
        detail = _apply_renewed(record, fact)
    elif kind == FactKind.PAYMENT_FAILED:
        detail = _apply_payment_failed(record, fact, grace_days)
    elif kind == FactKind.CANCELED:
        detail = _apply_canceled(record, fact)
    elif kind == FactKind.REFUNDED:
        detail = _apply_refunded(record, fact)
    elif kind == FactKind.PRORATION_APPLIED:
        detail = _apply_proration(record, fact)
    elif kind == FactKind.RESUMED:
        detail = _apply_resumed(record, fact)
    elif kind == FactKind.PAUSED:
        detail = _apply_paused(record, fact)
    elif kind == FactKind.EXPIRED:
        detail = _apply_expired(record, fact, active_leeway)
    else:
        raise MalformedFactError(f"Unknown fact kind {kind}")

    if fact.receipt and fact.provider == Provider.APPLE_IAP and record.provider == fact.provider:
        record.latest_receipt = fact.receipt

    if detail is None:
        return skipped(
            f"{kind.value} has no effect on a {record.status.value} subscription",
            payment=fact.payment,
        )

    record.last_event_id = fact.event_id
    if record.last_event_at is None or fact.occurred_at > record.last_event_at:
        record.last_event_at = fact.occurred_at

    return TransitionResult(
        applied=True,
        detail=detail,
        previous_status=previous_status,
        previous_tier=previous_tier,
        payment=fact.payment,
    )
