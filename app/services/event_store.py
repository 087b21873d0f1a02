"""
Event Store
===========

Append-only record of every provider event, doubling as the idempotency
guard.

``claim`` is an ``INSERT ... ON CONFLICT ... RETURNING`` run in the
caller's transaction: if the row already exists the insert returns nothing
and ``DuplicateEventError`` is raised; otherwise the new row is locked by
the caller's transaction until commit, so a concurrent delivery of the same
key waits on the unique index and then sees the conflict.

The one row an existing key may reclaim is a ``skipped_not_owner`` one: a
fact ignored because the other provider owned the record is re-applied if
it is delivered again after that provider's subscription ended.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateEventError
from app.models.billing import EventOutcome, ProcessedEvent
from app.models.subscription import Provider

logger = logging.getLogger(__name__)


class EventStore:
    """Claims and finalizes ``processed_events`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def claim(
        self,
        provider: Provider,
        provider_event_id: str,
        event_type: str,
        payload: Optional[dict] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> uuid.UUID:
        """
        Insert a pending row for the event.

        Returns:
            The row id, new or reclaimed from ``skipped_not_owner``.

        Raises:
            DuplicateEventError: the (provider, event id) pair exists.
        """
        stmt = pg_insert(ProcessedEvent).values(
            event_row_id=uuid.uuid4(),
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            user_id=user_id,
            outcome=EventOutcome.PENDING,
        )
        # An event skipped only for ownership goes back to pending
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "provider_event_id"],
            set_={
                "outcome": EventOutcome.PENDING,
                "detail": None,
                "processed_at": None,
                "payload": stmt.excluded.payload,
            },
            where=ProcessedEvent.outcome == EventOutcome.SKIPPED_NOT_OWNER,
        ).returning(ProcessedEvent.event_row_id)
        result = await self.db.execute(stmt)
        row_id = result.scalar_one_or_none()

        if row_id is None:
            logger.info(
                "Duplicate event %s/%s ignored",
                provider.value,
                provider_event_id,
            )
            raise DuplicateEventError(
                f"Event {provider.value}/{provider_event_id} already processed"
            )

        return row_id

    async def _finish(
        self,
        row_id: uuid.UUID,
        outcome: EventOutcome,
        detail: Optional[str],
        user_id: Optional[uuid.UUID],
    ) -> bool:
        values = {
            "outcome": outcome,
            "detail": detail,
            "processed_at": datetime.now(timezone.utc),
        }
        if user_id is not None:
            values["user_id"] = user_id

        # Only a pending row may reach a terminal outcome
        stmt = (
            update(ProcessedEvent)
            .where(
                ProcessedEvent.event_row_id == row_id,
                ProcessedEvent.outcome == EventOutcome.PENDING,
            )
            .values(**values)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            logger.warning(
                "Event row %s already finalized, %s not recorded",
                row_id,
                outcome.value,
            )
            return False
        return True

    async def mark_succeeded(
        self,
        row_id: uuid.UUID,
        detail: Optional[str] = None,
        user_id: Optional[uuid.UUID] = None,
    ) -> bool:
        return await self._finish(row_id, EventOutcome.SUCCEEDED, detail, user_id)

    async def mark_skipped(
        self,
        row_id: uuid.UUID,
        detail: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Record an event that was accepted but changed nothing."""
        return await self._finish(row_id, EventOutcome.SKIPPED_DUPLICATE, detail, user_id)

    async def mark_not_owner(
        self,
        row_id: uuid.UUID,
        detail: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """Record a fact ignored because the other provider owns the record."""
        return await self._finish(row_id, EventOutcome.SKIPPED_NOT_OWNER, detail, user_id)

    async def mark_failed(
        self,
        row_id: uuid.UUID,
        detail: str,
        user_id: Optional[uuid.UUID] = None,
    ) -> bool:
        return await self._finish(row_id, EventOutcome.FAILED, detail, user_id)

    async def list_failed(self, limit: int = 50, offset: int = 0) -> list[ProcessedEvent]:
        """Failed events awaiting operator review, newest first."""
        stmt = (
            select(ProcessedEvent)
            .where(ProcessedEvent.outcome == EventOutcome.FAILED)
            .order_by(ProcessedEvent.received_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
