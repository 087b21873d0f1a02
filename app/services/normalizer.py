"""
Event Normalizer
================

Turns provider payloads into ``BillingFact`` lists.

Stripe events map one webhook to zero or more facts; unsupported event
types map to none. App Store receipts map one validated snapshot to the
facts it implies (purchase or renewal, billing retry, auto-renew change,
refund). App Store Server Notifications map one verified notification to
at most one fact keyed by its notificationUUID. Transaction and invoice
fact ids are deterministic so re-delivery or re-validation of the same
payment is caught by the event store.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
import uuid

from app.config import settings
from app.core.errors import MalformedFactError
from app.models.billing import TransactionStatus
from app.models.subscription import BillingCycle, Provider
from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.schemas.receipts import ReceiptSnapshot

logger = logging.getLogger(__name__)

_INTERVAL_CYCLES = {
    "month": BillingCycle.MONTHLY,
    "year": BillingCycle.YEARLY,
}

_ACTIVE_STRIPE_STATUSES = ("active", "trialing")
_ENDED_STRIPE_STATUSES = ("canceled", "incomplete_expired", "unpaid")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _to_amount(minor_units: Any) -> Decimal:
    return (Decimal(int(minor_units or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("Ignoring non-UUID user id: %s", value)
        return None


def _first_item(subscription: dict) -> dict:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_cycle(subscription: dict) -> Optional[BillingCycle]:
    """Billing cycle from the first subscription item's price."""
    price = _first_item(subscription).get("price") or subscription.get("plan") or {}
    interval = (price.get("recurring") or {}).get("interval") or price.get("interval")
    if interval in _INTERVAL_CYCLES:
        return _INTERVAL_CYCLES[interval]

    price_id = price.get("id")
    for cycle, configured in settings.stripe_price_ids.items():
        if configured and configured == price_id:
            return BillingCycle(cycle)
    return None


def _subscription_period(subscription: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    """Period bounds; newer API versions only carry them on items."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _from_epoch(start), _from_epoch(end)


def _invoice_subscription_ref(invoice: dict) -> tuple[Optional[str], dict]:
    """Subscription id and its metadata from either invoice API shape."""
    details = invoice.get("subscription_details") or {}
    parent = (invoice.get("parent") or {}).get("subscription_details") or {}
    sub_id = invoice.get("subscription") or parent.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    metadata = details.get("metadata") or parent.get("metadata") or invoice.get("metadata") or {}
    return sub_id, metadata


def _invoice_period(invoice: dict) -> tuple[Optional[datetime], Optional[datetime]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("end"):
            return _from_epoch(period.get("start")), _from_epoch(period.get("end"))
    return _from_epoch(invoice.get("period_start")), _from_epoch(invoice.get("period_end"))


def _invoice_cycle(invoice: dict) -> Optional[BillingCycle]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        price = line.get("price") or line.get("plan") or {}
        interval = (price.get("recurring") or {}).get("interval") or price.get("interval")
        if interval in _INTERVAL_CYCLES:
            return _INTERVAL_CYCLES[interval]
    return None


def _invoice_payment(invoice: dict, status: TransactionStatus) -> PaymentInfo:
    """
    Payment info for an invoice.

    The charge id is preferred because each retry attempt gets its own
    charge while the payment intent is shared. Without either, a
    reference is synthesized from the invoice and flagged.
    """
    charge = invoice.get("charge")
    intent = invoice.get("payment_intent")
    if isinstance(charge, dict):
        charge = charge.get("id")
    if isinstance(intent, dict):
        intent = intent.get("id")

    if status == TransactionStatus.SUCCEEDED:
        amount = _to_amount(invoice.get("amount_paid"))
    else:
        amount = _to_amount(invoice.get("amount_due"))

    reference = charge or intent
    synthetic = reference is None
    if synthetic:
        reference = f"synthetic:{invoice['id']}"
        if status == TransactionStatus.FAILED:
            reference = f"{reference}:attempt:{invoice.get('attempt_count') or 0}"

    return PaymentInfo(
        amount=amount,
        currency=(invoice.get("currency") or settings.CURRENCY).lower(),
        status=status,
        charge_reference=reference,
        charge_reference_synthetic=synthetic,
        invoice_reference=invoice.get("id"),
        alternate_reference=intent if charge else None,
    )


def _stamp(facts: list[dict], event: dict) -> list[BillingFact]:
    """Assign event ids; a single fact keeps the provider event id."""
    event_id = event["id"]
    stamped = []
    for fields in facts:
        fact_id = event_id if len(facts) == 1 else f"{event_id}:{fields['kind'].value}"
        stamped.append(BillingFact(
            provider=Provider.STRIPE,
            event_id=fact_id,
            event_type=event["type"],
            occurred_at=_from_epoch(event["created"]),
            **fields,
        ))
    return stamped


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def _subscription_base(subscription: dict) -> dict:
    start, end = _subscription_period(subscription)
    return {
        "user_id": _parse_uuid((subscription.get("metadata") or {}).get("user_id")),
        "external_subscription_id": subscription.get("id"),
        "external_customer_id": subscription.get("customer"),
        "product_id": (_first_item(subscription).get("price") or {}).get("id"),
        "billing_cycle": _subscription_cycle(subscription),
        "period_start": start,
        "period_end": end,
    }


def _facts_subscription_created(subscription: dict, previous: dict) -> list[dict]:
    if subscription.get("status") in _ACTIVE_STRIPE_STATUSES:
        return [{"kind": FactKind.ACTIVATED, **_subscription_base(subscription)}]
    return []


def _facts_subscription_updated(subscription: dict, previous: dict) -> list[dict]:
    base = _subscription_base(subscription)
    status = subscription.get("status")
    prev_status = previous.get("status")

    if status in _ENDED_STRIPE_STATUSES:
        if prev_status is None or prev_status == status:
            return []
        return [{"kind": FactKind.CANCELED, "at_period_end": False, **base}]

    if status == "paused":
        return [{"kind": FactKind.PAUSED, **base}] if prev_status not in (None, "paused") else []

    if status == "past_due":
        return [{"kind": FactKind.PAYMENT_FAILED, **base}] if prev_status not in (None, "past_due") else []

    if status not in _ACTIVE_STRIPE_STATUSES:
        # incomplete: nothing to reconcile until the first payment lands
        return []

    facts: list[dict] = []
    if prev_status in ("incomplete", "incomplete_expired"):
        facts.append({"kind": FactKind.ACTIVATED, **base})
    elif prev_status in ("paused", "past_due", "unpaid"):
        facts.append({"kind": FactKind.RESUMED if prev_status == "paused" else FactKind.RENEWED, **base})

    if "cancel_at_period_end" in previous or "cancel_at" in previous:
        if subscription.get("cancel_at_period_end") or subscription.get("cancel_at"):
            facts.append({"kind": FactKind.CANCELED, "at_period_end": True, **base})
        else:
            facts.append({"kind": FactKind.RESUMED, **base})

    if "items" in previous or "plan" in previous:
        old_cycle = _subscription_cycle(previous)
        if base["billing_cycle"] and old_cycle and old_cycle != base["billing_cycle"]:
            facts.append({"kind": FactKind.PRORATION_APPLIED, **base})

    period_moved = "current_period_end" in previous or "current_period_end" in (
        _first_item(previous) if "items" in previous else {}
    )
    if period_moved and not any(
        f["kind"] in (FactKind.ACTIVATED, FactKind.RENEWED, FactKind.PRORATION_APPLIED)
        for f in facts
    ):
        facts.append({"kind": FactKind.RENEWED, **base})

    return facts


def _facts_subscription_deleted(subscription: dict, previous: dict) -> list[dict]:
    return [{"kind": FactKind.CANCELED, "at_period_end": False, **_subscription_base(subscription)}]


def _facts_subscription_paused(subscription: dict, previous: dict) -> list[dict]:
    return [{"kind": FactKind.PAUSED, **_subscription_base(subscription)}]


def _facts_subscription_resumed(subscription: dict, previous: dict) -> list[dict]:
    return [{"kind": FactKind.RESUMED, **_subscription_base(subscription)}]


def _invoice_base(invoice: dict) -> dict:
    sub_id, metadata = _invoice_subscription_ref(invoice)
    start, end = _invoice_period(invoice)
    return {
        "user_id": _parse_uuid(metadata.get("user_id")),
        "external_subscription_id": sub_id,
        "external_customer_id": invoice.get("customer"),
        "billing_cycle": _invoice_cycle(invoice),
        "period_start": start,
        "period_end": end,
    }


def _facts_invoice_succeeded(invoice: dict, previous: dict) -> list[dict]:
    base = _invoice_base(invoice)
    if not base["external_subscription_id"]:
        # One-off invoices do not touch subscription state
        return []

    payment = None
    if int(invoice.get("amount_paid") or 0) > 0:
        payment = _invoice_payment(invoice, TransactionStatus.SUCCEEDED)

    if invoice.get("billing_reason") == "subscription_create":
        kind = FactKind.ACTIVATED
    else:
        kind = FactKind.RENEWED
    return [{"kind": kind, "payment": payment, **base}]


def _facts_invoice_failed(invoice: dict, previous: dict) -> list[dict]:
    base = _invoice_base(invoice)
    if not base["external_subscription_id"]:
        return []
    # The grace deadline comes from the stored period, not the invoice lines
    base["period_start"] = None
    base["period_end"] = None
    return [{
        "kind": FactKind.PAYMENT_FAILED,
        "payment": _invoice_payment(invoice, TransactionStatus.FAILED),
        **base,
    }]


def _facts_charge_refunded(charge: dict, previous: dict) -> list[dict]:
    intent = charge.get("payment_intent")
    if isinstance(intent, dict):
        intent = intent.get("id")
    payment = PaymentInfo(
        amount=_to_amount(charge.get("amount_refunded")),
        currency=(charge.get("currency") or settings.CURRENCY).lower(),
        status=TransactionStatus.REFUNDED,
        charge_reference=charge["id"],
        invoice_reference=charge.get("invoice"),
        alternate_reference=intent,
    )
    return [{
        "kind": FactKind.REFUNDED,
        "user_id": _parse_uuid((charge.get("metadata") or {}).get("user_id")),
        "external_customer_id": charge.get("customer"),
        "payment": payment,
    }]


_STRIPE_HANDLERS = {
    "customer.subscription.created": _facts_subscription_created,
    "customer.subscription.updated": _facts_subscription_updated,
    "customer.subscription.deleted": _facts_subscription_deleted,
    "customer.subscription.paused": _facts_subscription_paused,
    "customer.subscription.resumed": _facts_subscription_resumed,
    "invoice.payment_succeeded": _facts_invoice_succeeded,
    "invoice.payment_failed": _facts_invoice_failed,
    "charge.refunded": _facts_charge_refunded,
}


def is_supported_stripe_event(event_type: str) -> bool:
    return event_type in _STRIPE_HANDLERS


def normalize_stripe_event(event: dict) -> list[BillingFact]:
    """
    Map a verified Stripe event to facts.

    Raises:
        MalformedFactError: the event object lacks fields its type requires.
    """
    handler = _STRIPE_HANDLERS.get(event["type"])
    if handler is None:
        return []

    data = event["data"]
    obj = data["object"]
    previous = data.get("previous_attributes") or {}
    try:
        return _stamp(handler(obj, previous), event)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedFactError(
            f"Cannot normalize {event['type']} {event['id']}: {e}"
        ) from e


# ---------------------------------------------------------------------------
# App Store receipts
# ---------------------------------------------------------------------------

def normalize_receipt(
    snapshot: ReceiptSnapshot,
    user_id: uuid.UUID,
    now: datetime,
) -> list[BillingFact]:
    """
    Facts implied by a validated receipt, in application order.

    Only the subscription with the furthest expiry is considered.
    """
    cycles = settings.apple_product_cycles
    latest = snapshot.latest_transaction(set(cycles) or None)
    if latest is None:
        latest = snapshot.latest_transaction()
    if latest is None:
        return []

    cycle = cycles.get(latest.product_id)
    original_id = latest.original_transaction_id
    expires_ms = int(latest.expires_date.timestamp() * 1000) if latest.expires_date else 0
    common = {
        "provider": Provider.APPLE_IAP,
        "user_id": user_id,
        "external_subscription_id": original_id,
        "product_id": latest.product_id,
        "billing_cycle": BillingCycle(cycle) if cycle else None,
        "period_start": latest.purchase_date,
        "period_end": latest.expires_date,
        "receipt": snapshot.latest_receipt,
    }

    if latest.cancellation_date is not None:
        return [BillingFact(
            kind=FactKind.REFUNDED,
            event_id=f"{latest.transaction_id}:refund",
            event_type="receipt.refund",
            occurred_at=latest.cancellation_date,
            payment=PaymentInfo(
                amount=_cycle_amount(cycle),
                currency=settings.CURRENCY,
                status=TransactionStatus.REFUNDED,
                charge_reference=latest.transaction_id,
            ),
            **common,
        )]

    facts = [BillingFact(
        kind=FactKind.ACTIVATED if latest.is_first_purchase else FactKind.RENEWED,
        event_id=latest.transaction_id,
        event_type="receipt.purchase" if latest.is_first_purchase else "receipt.renewal",
        occurred_at=latest.purchase_date,
        payment=PaymentInfo(
            amount=_cycle_amount(cycle),
            currency=settings.CURRENCY,
            status=TransactionStatus.SUCCEEDED,
            charge_reference=latest.transaction_id,
        ),
        **common,
    )]

    renewal = snapshot.renewal_for(original_id)
    # verifyReceipt reports the auto-renew preference without a change time,
    # so each observation is its own event; repeats are no-ops downstream
    observed_ms = int(now.timestamp() * 1000)
    expired = latest.expires_date is not None and latest.expires_date <= now

    if renewal is not None and renewal.in_billing_retry:
        facts.append(BillingFact(
            kind=FactKind.PAYMENT_FAILED,
            event_id=f"{original_id}:billing_retry:{expires_ms}",
            event_type="receipt.billing_retry",
            occurred_at=latest.expires_date or latest.purchase_date,
            grace_period_ends_at=renewal.grace_period_expires_date,
            **common,
        ))
    elif expired:
        facts.append(BillingFact(
            kind=FactKind.CANCELED,
            at_period_end=False,
            event_id=f"{original_id}:lapsed:{expires_ms}",
            event_type="receipt.lapsed",
            occurred_at=latest.expires_date,
            **common,
        ))
    elif renewal is not None and not renewal.auto_renew_status:
        facts.append(BillingFact(
            kind=FactKind.CANCELED,
            at_period_end=True,
            event_id=f"{original_id}:auto_renew_off:{expires_ms}:{observed_ms}",
            event_type="receipt.auto_renew_off",
            occurred_at=now,
            **common,
        ))
    elif renewal is not None:
        facts.append(BillingFact(
            kind=FactKind.RESUMED,
            event_id=f"{original_id}:auto_renew_on:{expires_ms}:{observed_ms}",
            event_type="receipt.auto_renew_on",
            occurred_at=now,
            **common,
        ))

    return facts


def _cycle_amount(cycle: Optional[str]) -> Decimal:
    if cycle == BillingCycle.YEARLY.value:
        return settings.YEARLY_PRICE
    return settings.MONTHLY_PRICE


# ---------------------------------------------------------------------------
# App Store Server Notifications V2
# ---------------------------------------------------------------------------

def _from_epoch_ms(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _apple_amount(transaction: dict, cycle: Optional[str]) -> Decimal:
    # Transaction prices are in milliunits of the storefront currency
    price = transaction.get("price")
    if price is None:
        return _cycle_amount(cycle)
    return (Decimal(int(price)) / Decimal(1000)).quantize(Decimal("0.01"))


def _apple_payment(transaction: dict, cycle: Optional[str], status: TransactionStatus) -> PaymentInfo:
    return PaymentInfo(
        amount=_apple_amount(transaction, cycle),
        currency=(transaction.get("currency") or settings.CURRENCY).lower(),
        status=status,
        charge_reference=transaction["transactionId"],
    )


def _apple_subscribed(notification: dict, transaction: dict, cycle: Optional[str]) -> dict:
    return {
        "kind": FactKind.ACTIVATED,
        "payment": _apple_payment(transaction, cycle, TransactionStatus.SUCCEEDED),
    }


def _apple_renewed(notification: dict, transaction: dict, cycle: Optional[str]) -> dict:
    return {
        "kind": FactKind.RENEWED,
        "payment": _apple_payment(transaction, cycle, TransactionStatus.SUCCEEDED),
    }


def _apple_failed(notification: dict, transaction: dict, cycle: Optional[str]) -> dict:
    renewal = notification.get("renewal") or {}
    return {
        "kind": FactKind.PAYMENT_FAILED,
        "grace_period_ends_at": _from_epoch_ms(renewal.get("gracePeriodExpiresDate")),
    }


def _apple_renewal_status(notification: dict, transaction: dict, cycle: Optional[str]) -> Optional[dict]:
    subtype = notification.get("subtype")
    if subtype == "AUTO_RENEW_DISABLED":
        return {"kind": FactKind.CANCELED, "at_period_end": True}
    if subtype == "AUTO_RENEW_ENABLED":
        return {"kind": FactKind.RESUMED}
    return None


def _apple_expired(notification: dict, transaction: dict, cycle: Optional[str]) -> dict:
    return {"kind": FactKind.CANCELED, "at_period_end": False}


def _apple_refunded(notification: dict, transaction: dict, cycle: Optional[str]) -> dict:
    return {
        "kind": FactKind.REFUNDED,
        "payment": _apple_payment(transaction, cycle, TransactionStatus.REFUNDED),
    }


_APPLE_HANDLERS = {
    "SUBSCRIBED": _apple_subscribed,
    "DID_RENEW": _apple_renewed,
    "DID_FAIL_TO_RENEW": _apple_failed,
    "DID_CHANGE_RENEWAL_STATUS": _apple_renewal_status,
    "EXPIRED": _apple_expired,
    "GRACE_PERIOD_EXPIRED": _apple_expired,
    "REFUND": _apple_refunded,
    "REVOKE": _apple_refunded,
}


def is_supported_apple_notification(notification_type: str) -> bool:
    return notification_type in _APPLE_HANDLERS


def normalize_apple_notification(notification: dict) -> list[BillingFact]:
    """
    Map a verified App Store notification to at most one fact.

    The user comes from the transaction's appAccountToken when the app set
    one; otherwise the reconciler resolves it through the original
    transaction id, which is the record's external subscription id.

    Raises:
        MalformedFactError: a handled notification without the signed
            transaction it needs.
    """
    notification_type = notification["notificationType"]
    handler = _APPLE_HANDLERS.get(notification_type)
    if handler is None:
        return []

    transaction = notification.get("transaction")
    try:
        if not transaction:
            raise KeyError("signedTransactionInfo")
        cycle = settings.apple_product_cycles.get(transaction.get("productId"))
        fields = handler(notification, transaction, cycle)
        if fields is None:
            return []
        subtype = notification.get("subtype")
        return [BillingFact(
            provider=Provider.APPLE_IAP,
            event_id=notification["notificationUUID"],
            event_type=f"{notification_type}.{subtype}" if subtype else notification_type,
            occurred_at=_from_epoch_ms(notification.get("signedDate")) or datetime.now(timezone.utc),
            user_id=_parse_uuid(transaction.get("appAccountToken")),
            external_subscription_id=transaction["originalTransactionId"],
            product_id=transaction.get("productId"),
            billing_cycle=BillingCycle(cycle) if cycle else None,
            period_start=_from_epoch_ms(transaction.get("purchaseDate")),
            period_end=_from_epoch_ms(transaction.get("expiresDate")),
            **fields,
        )]
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedFactError(
            f"Cannot normalize {notification_type} {notification['notificationUUID']}: {e}"
        ) from e
