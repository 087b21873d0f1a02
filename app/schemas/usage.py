"""
Usage Schemas
=============

Client-reported conversion funnel events.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.usage import UsageEventType

# Recorded server-side only
SERVER_ONLY_EVENTS = frozenset({
    UsageEventType.PAYMENT_COMPLETED,
    UsageEventType.PAYMENT_FAILED,
})


class UsageEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: UsageEventType = Field(alias="eventType")
    context: Optional[str] = Field(default=None, max_length=100)
    data: Optional[dict[str, Any]] = None


class UsageEventResponse(BaseModel):
    success: bool = True
    recorded: bool
