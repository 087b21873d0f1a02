"""
Usage Models
============

Append-only funnel events and the tracked items counted against the
free-tier cap.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
import uuid

from sqlalchemy import DateTime, Enum as SQLEnum, String, Index
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, CreatedAtMixin, TimestampMixin


class UsageEventType(str, Enum):
    """Conversion funnel steps."""
    LIMIT_REACHED = "limit_reached"
    PAYWALL_SHOWN = "paywall_shown"
    PLAN_SELECTED = "plan_selected"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_FAILED = "payment_failed"


class UsageEvent(Base, CreatedAtMixin):
    """Funnel event. Written, never read by billing logic."""

    __tablename__ = "usage_events"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    event_type: Mapped[UsageEventType] = mapped_column(
        SQLEnum(UsageEventType),
        nullable=False,
    )
    context: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    data: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )
    __table_args__ = (
        Index("idx_usage_user_event", "user_id", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<UsageEvent(user_id={self.user_id}, type={self.event_type})>"


class TrackedItem(Base, TimestampMixin):
    """
    A recurring item the user tracks.

    Owned by the item CRUD service; billing only counts live rows.
    """

    __tablename__ = "tracked_items"

    item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<TrackedItem(user_id={self.user_id}, name={self.name})>"
