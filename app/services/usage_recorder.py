"""
Usage / Funnel Recorder
=======================

Appends conversion funnel events. Recording never blocks or fails the
caller: each insert runs in its own savepoint and errors are logged.
"""

import logging
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.usage import UsageEvent, UsageEventType

logger = logging.getLogger(__name__)


class UsageRecorder:
    """Write-only access to ``usage_events``."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        user_id: uuid.UUID,
        event_type: UsageEventType,
        context: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> bool:
        """
        Append one funnel event.

        Returns:
            True if the event was written, False if recording failed.
        """
        try:
            async with self.db.begin_nested():
                self.db.add(UsageEvent(
                    user_id=user_id,
                    event_type=event_type,
                    context=context,
                    data=data,
                ))
                await self.db.flush()
        except Exception as e:
            logger.warning(
                "Failed to record usage event %s for user %s: %s",
                event_type.value,
                user_id,
                e,
            )
            return False

        return True
