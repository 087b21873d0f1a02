"""
Receipts API Endpoints
======================

App Store receipt validation.

The receipt is checked locally, then with Apple, before any row is
locked. The resulting facts go through the same reconciler as Stripe
webhooks, so a receipt for a user whose card subscription is active is
recorded but does not take over the subscription. An unpaid card checkout
is canceled in Stripe first, so a store purchase made while it was pending
takes the record over.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.errors import (
    BillingError,
    ErrorCodes,
    ForbiddenError,
    ProviderUnavailableError,
    ReceiptFormatError,
)
from app.dependencies import CurrentUserId, DBSession
from app.schemas.facts import BillingFact, FactKind
from app.schemas.receipts import ReceiptValidationRequest, ReceiptValidationResponse
from app.services.normalizer import normalize_receipt
from app.services.receipt_validator import get_receipt_validator
from app.services.reconciler import Reconciler
from app.services.subscription_actions import SubscriptionActionService

logger = logging.getLogger(__name__)

router = APIRouter()


def _proves_live_subscription(facts: list[BillingFact], now: datetime) -> bool:
    return any(
        fact.kind in (FactKind.ACTIVATED, FactKind.RENEWED)
        and fact.period_end is not None
        and fact.period_end > now
        for fact in facts
    )


def _error(status_code: int, code: str, detail: str) -> JSONResponse:
    body = ReceiptValidationResponse(success=False, error_code=code, error_detail=detail)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


@router.post("/apple", response_model=ReceiptValidationResponse, response_model_exclude_none=True)
async def validate_apple_receipt(
    request_data: ReceiptValidationRequest,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """
    Validate an App Store receipt and reconcile the subscription it proves.

    Error codes:
    - RECEIPT_MALFORMED_FORMAT: rejected locally (``wrong_token_type`` or
      ``invalid_encoding``), Apple was not called
    - RECEIPT_ENVIRONMENT_MISMATCH: sandbox/production mismatch after retry
    - PROVIDER_UNAVAILABLE: Apple could not be reached; retry later
    - RECEIPT_INVALID: Apple rejected the receipt
    """
    if request_data.user_id != current_user_id:
        raise ForbiddenError(message="Receipt user does not match the authenticated user")

    try:
        snapshot = await get_receipt_validator().validate(request_data.receipt_blob)
    except ReceiptFormatError as e:
        logger.info("Receipt for user %s rejected locally: %s", current_user_id, e.kind)
        return _error(400, ErrorCodes.RECEIPT_MALFORMED_FORMAT, e.kind)
    except ProviderUnavailableError as e:
        logger.warning("Apple unavailable validating receipt for %s: %s", current_user_id, e.message)
        return _error(503, ErrorCodes.PROVIDER_UNAVAILABLE, e.message)
    except BillingError as e:
        logger.info("Receipt for user %s rejected: %s", current_user_id, e.message)
        return _error(400, e.code, e.message)

    now = datetime.now(timezone.utc)
    facts = normalize_receipt(snapshot, current_user_id, now)

    if _proves_live_subscription(facts, now):
        # The card checkout has to be canceled before the purchase can own the record
        await SubscriptionActionService(db).release_pending_checkout(current_user_id)

    reconciler = Reconciler(db)
    outcomes = await reconciler.process_all(facts, now=now)
    await reconciler.commit()

    logger.info(
        "Receipt reconciled for user %s (%s): %s",
        current_user_id,
        snapshot.environment,
        [(outcome.kind.value, outcome.status) for outcome in outcomes],
    )
    return ReceiptValidationResponse(
        success=True,
        applied_facts=[outcome.kind.value for outcome in outcomes if outcome.applied],
    )
