"""
Entitlement API Endpoints
=========================

The single read path clients use to decide what the user may do.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query

from app.dependencies import CurrentUserId, DBSession
from app.models.usage import UsageEventType
from app.schemas.billing import EntitlementResponse
from app.services.entitlement import EntitlementReader
from app.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=EntitlementResponse)
async def get_entitlement(
    current_user_id: CurrentUserId,
    db: DBSession,
    intent: Optional[str] = Query(default=None, pattern="^add$"),
):
    """
    Get the user's current entitlement.

    With ``intent=add`` the client is about to add an item; if that would
    exceed the cap a ``limit_reached`` funnel event is recorded.
    """
    entitlement = await EntitlementReader(db).get_entitlement(current_user_id)

    if intent == "add" and not entitlement["canAddMore"]:
        await UsageRecorder(db).record(
            current_user_id,
            UsageEventType.LIMIT_REACHED,
            context="entitlement",
            data={
                "itemLimit": entitlement["itemLimit"],
                "itemsUsed": entitlement["itemsUsed"],
            },
        )

    return EntitlementResponse(success=True, data=entitlement)
