"""
Usage API Endpoints
===================

Client-reported conversion funnel events.
"""

import logging

from fastapi import APIRouter

from app.core.errors import ErrorCodes, ValidationError
from app.dependencies import CurrentUserId, DBSession
from app.schemas.usage import SERVER_ONLY_EVENTS, UsageEventRequest, UsageEventResponse
from app.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/events", response_model=UsageEventResponse)
async def record_usage_event(
    event_data: UsageEventRequest,
    current_user_id: CurrentUserId,
    db: DBSession,
):
    """
    Record a funnel event (limit_reached, paywall_shown, plan_selected,
    payment_initiated).

    Payment outcomes are recorded by the billing pipeline and rejected here.
    """
    if event_data.event_type in SERVER_ONLY_EVENTS:
        raise ValidationError(
            message=f"{event_data.event_type.value} is recorded by the server",
            field="eventType",
            code=ErrorCodes.VALIDATION_ERROR,
        )

    recorded = await UsageRecorder(db).record(
        current_user_id,
        event_data.event_type,
        context=event_data.context,
        data=event_data.data,
    )
    return UsageEventResponse(success=True, recorded=recorded)
