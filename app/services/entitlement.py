"""
Entitlement Reader
==================

The single read path for "is this user premium and how many items may
they track". Reads the subscription record (Redis-cached snapshot) and a
live count of tracked items; never calls a payment provider.

The cached snapshot is dropped by ``CacheInvalidator.on_subscription_change``
after every reconciler commit for the user.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.feature_limits import can_add_item, get_item_limit, remaining_slots
from app.models.subscription import (
    DEADLINE_STATUSES,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.models.usage import TrackedItem
from app.services.cache import CacheKeys, CacheManager

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def snapshot_record(record: Optional[SubscriptionRecord]) -> dict:
    """JSON-safe subset of a record needed to compute entitlement."""
    if record is None:
        return {
            "tier": SubscriptionTier.FREE.value,
            "status": None,
            "billingCycle": "none",
            "provider": None,
            "periodEnd": None,
            "graceEndsAt": None,
            "cancelAtPeriodEnd": False,
        }
    return {
        "tier": record.tier.value,
        "status": record.status.value,
        "billingCycle": record.billing_cycle.value,
        "provider": record.provider.value if record.provider else None,
        "periodEnd": _iso(record.current_period_end),
        "graceEndsAt": _iso(record.grace_period_ends_at),
        "cancelAtPeriodEnd": record.cancel_at_period_end,
    }


def effective_tier(snapshot: dict, now: datetime) -> str:
    """
    Tier the user is entitled to right now.

    Premium when the record is active, or in a deadline state whose
    deadline has not passed.
    """
    if snapshot["tier"] != SubscriptionTier.PREMIUM.value or snapshot["status"] is None:
        return SubscriptionTier.FREE.value

    status = SubscriptionStatus(snapshot["status"])
    if status == SubscriptionStatus.ACTIVE:
        return SubscriptionTier.PREMIUM.value

    if status in DEADLINE_STATUSES:
        if status == SubscriptionStatus.CANCELED_PENDING:
            deadline = _parse_dt(snapshot["periodEnd"])
        else:
            deadline = _parse_dt(snapshot["graceEndsAt"]) or _parse_dt(snapshot["periodEnd"])
        if deadline is not None and now < deadline:
            return SubscriptionTier.PREMIUM.value

    return SubscriptionTier.FREE.value


class EntitlementReader:
    """Computes entitlement for one user."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_snapshot(self, user_id: uuid.UUID) -> dict:
        cache_key = CacheKeys.entitlement(str(user_id))
        cached = await CacheManager.get(cache_key)
        if cached is not None:
            return cached

        # Read before the query; an invalidation after this point wins
        version_key = CacheKeys.entitlement_version(str(user_id))
        version = await CacheManager.get_version(version_key)

        stmt = select(SubscriptionRecord).where(SubscriptionRecord.user_id == user_id)
        record = (await self.db.execute(stmt)).scalar_one_or_none()
        snapshot = snapshot_record(record)
        if version is not None:
            await CacheManager.set_if_version(
                cache_key,
                snapshot,
                version_key,
                version,
                ttl=settings.ENTITLEMENT_CACHE_TTL_SECONDS,
            )
        return snapshot

    async def count_items(self, user_id: uuid.UUID) -> int:
        stmt = select(func.count(TrackedItem.item_id)).where(
            TrackedItem.user_id == user_id,
            TrackedItem.deleted_at.is_(None),
        )
        return int((await self.db.execute(stmt)).scalar_one() or 0)

    async def get_entitlement(
        self,
        user_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Entitlement for ``user_id``.

        Returns:
            dict with tier, status, itemLimit, itemsUsed, canAddMore,
            remainingSlots, pending, periodEnd, billingCycle, provider,
            cancelAtPeriodEnd
        """
        now = now or datetime.now(timezone.utc)
        snapshot = await self._get_snapshot(user_id)
        items_used = await self.count_items(user_id)
        tier = effective_tier(snapshot, now)

        return {
            "tier": tier,
            "status": snapshot["status"],
            "billingCycle": snapshot["billingCycle"],
            "provider": snapshot["provider"],
            "itemLimit": get_item_limit(tier),
            "itemsUsed": items_used,
            "canAddMore": can_add_item(tier, items_used),
            "remainingSlots": remaining_slots(tier, items_used),
            "pending": snapshot["status"] == SubscriptionStatus.INCOMPLETE.value,
            "periodEnd": snapshot["periodEnd"],
            "cancelAtPeriodEnd": snapshot["cancelAtPeriodEnd"],
        }
