"""
Webhooks API Endpoints
======================

Handles Stripe webhooks and App Store Server Notifications V2.

Authentication:
    Stripe signs every delivery. The ``Stripe-Signature`` header is checked
    against STRIPE_WEBHOOK_SECRET over the raw body, with a replay
    tolerance of STRIPE_WEBHOOK_TOLERANCE_SECONDS.

    Apple sends ``{"signedPayload": ...}``, a JWS whose certificate chain
    must end in one of APPLE_ROOT_CERT_PATHS and whose bundle id and
    environment must match ours.

Idempotency:
    Each fact derived from an event is claimed in ``processed_events``
    inside the same transaction that applies it, so a redelivered event
    is acknowledged without changing anything.

Responses:
    200 once the event is recorded (applied, skipped, duplicate or failed
    for review), 400 when the signature or body is rejected, and 500 only
    when processing broke unexpectedly so that the provider retries.
"""

import logging
from typing import Annotated, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticityError, MalformedFactError
from app.db.session import get_db
from app.models.subscription import Provider
from app.schemas.facts import BillingFact
from app.services.normalizer import (
    is_supported_apple_notification,
    is_supported_stripe_event,
    normalize_apple_notification,
    normalize_stripe_event,
)
from app.services.reconciler import Reconciler
from app.services.verifier import get_apple_verifier, get_stripe_verifier

logger = logging.getLogger(__name__)

router = APIRouter()


def _rejected(provider: Provider, e: AuthenticityError) -> HTTPException:
    logger.warning("Rejected %s webhook: %s", provider.value, e.message)
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "code": e.code,
            "message": e.message,
        },
    )


async def _reconcile(
    db: AsyncSession,
    provider: Provider,
    event_id: str,
    event_type: str,
    event: dict,
    supported: bool,
    normalize: Callable[[dict], list[BillingFact]],
) -> dict:
    """Record or apply one verified event and build the acknowledgement."""
    logger.info(
        "Webhook received: provider=%s type=%s event_id=%s",
        provider.value,
        event_type,
        event_id,
    )

    reconciler = Reconciler(db)

    # ── Process event ─────────────────────────────────────────────────────
    try:
        if not supported:
            outcomes = [await reconciler.record_ignored(
                provider, event_id, event_type, event, f"{event_type} is not handled",
            )]
        else:
            try:
                facts = normalize(event)
            except MalformedFactError as e:
                outcomes = [await reconciler.record_rejected(
                    provider, event_id, event_type, event, e,
                )]
            else:
                if facts:
                    outcomes = await reconciler.process_all(facts, payload=event)
                else:
                    outcomes = [await reconciler.record_ignored(
                        provider, event_id, event_type, event, "no billing change",
                    )]

        await reconciler.commit()

    except Exception:
        logger.exception(
            "Webhook processing error: provider=%s type=%s event_id=%s",
            provider.value,
            event_type,
            event_id,
        )
        await db.rollback()
        # Return 500 so the provider will retry
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error processing webhook",
        )

    duplicate = all(outcome.status == "duplicate" for outcome in outcomes)
    logger.info(
        "Webhook processed: provider=%s type=%s event_id=%s outcomes=%s",
        provider.value,
        event_type,
        event_id,
        [outcome.status for outcome in outcomes],
    )
    return {
        "received": True,
        "duplicate": duplicate,
        "outcomes": [outcome.as_dict() for outcome in outcomes],
    }


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
):
    """
    Handle Stripe webhook events.

    Events handled:
    - customer.subscription.created / updated / deleted / paused / resumed
    - invoice.payment_succeeded
    - invoice.payment_failed
    - charge.refunded

    Anything else is acknowledged and recorded as skipped.
    """
    body = await request.body()

    # ── Verify signature ──────────────────────────────────────────────────
    try:
        event = get_stripe_verifier().verify(body, stripe_signature)
    except AuthenticityError as e:
        raise _rejected(Provider.STRIPE, e)

    return await _reconcile(
        db,
        Provider.STRIPE,
        event["id"],
        event["type"],
        event,
        is_supported_stripe_event(event["type"]),
        normalize_stripe_event,
    )


@router.post("/apple")
async def apple_notification(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Handle App Store Server Notifications V2.

    Notifications handled:
    - SUBSCRIBED, DID_RENEW
    - DID_FAIL_TO_RENEW
    - DID_CHANGE_RENEWAL_STATUS (AUTO_RENEW_DISABLED / AUTO_RENEW_ENABLED)
    - EXPIRED, GRACE_PERIOD_EXPIRED
    - REFUND, REVOKE

    Anything else, TEST included, is acknowledged and recorded as skipped.
    """
    body = await request.body()

    # ── Verify signed payload ─────────────────────────────────────────────
    try:
        notification = await run_in_threadpool(get_apple_verifier().verify, body)
    except AuthenticityError as e:
        raise _rejected(Provider.APPLE_IAP, e)

    notification_type = notification["notificationType"]
    return await _reconcile(
        db,
        Provider.APPLE_IAP,
        notification["notificationUUID"],
        notification_type,
        notification,
        is_supported_apple_notification(notification_type),
        normalize_apple_notification,
    )
