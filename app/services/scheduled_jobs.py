"""
Scheduled Jobs
==============

Background tasks for maintenance operations:
- Period-end sweep (expire subscriptions whose entitlement deadline passed)
- App Store receipt re-validation

Both jobs feed facts through the reconciler; neither writes subscription
records directly. Each record is committed on its own so one bad record
cannot hold back the rest of the batch.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import BillingError
from app.models.subscription import (
    DEADLINE_STATUSES,
    Provider,
    SubscriptionRecord,
    SubscriptionStatus,
    TERMINAL_STATUSES,
)
from app.schemas.facts import BillingFact, FactKind
from app.services.normalizer import normalize_receipt
from app.services.receipt_validator import AppleReceiptValidator, get_receipt_validator
from app.services.reconciler import Reconciler
from app.services.state_machine import expiry_deadline

logger = logging.getLogger(__name__)

_SWEEPABLE = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
    *DEADLINE_STATUSES,
)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(
        self,
        db: AsyncSession,
        receipt_validator: Optional[AppleReceiptValidator] = None,
    ):
        self.db = db
        self._receipt_validator = receipt_validator

    @property
    def receipt_validator(self) -> AppleReceiptValidator:
        if self._receipt_validator is None:
            self._receipt_validator = get_receipt_validator()
        return self._receipt_validator

    async def sweep_period_end(self, now: Optional[datetime] = None) -> dict:
        """
        Expire records whose entitlement deadline has passed.

        Run hourly. Active records get ``SWEEP_ACTIVE_LEEWAY_HOURS`` past
        period end so a late renewal webhook can still land first.

        Returns:
            Summary of processed records
        """
        now = now or datetime.now(timezone.utc)
        leeway = timedelta(hours=settings.SWEEP_ACTIVE_LEEWAY_HOURS)

        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.status.in_(_SWEEPABLE),
            SubscriptionRecord.provider.isnot(None),
            SubscriptionRecord.current_period_end < now,
        )
        records = (await self.db.execute(stmt)).scalars().all()

        skipped = 0
        # Detach what the loop needs; a rollback expires the instances
        targets = []
        for record in records:
            deadline = expiry_deadline(record, leeway)
            if deadline is None or deadline > now:
                skipped += 1
                continue
            targets.append((
                record.record_id,
                record.user_id,
                record.provider,
                record.external_subscription_id,
                deadline,
            ))

        expired = 0
        errors = []

        for record_id, user_id, provider, subscription_id, deadline in targets:
            fact = BillingFact(
                provider=provider,
                kind=FactKind.EXPIRED,
                event_id=f"sweep:{record_id}:{int(deadline.timestamp())}",
                event_type="sweep.period_end",
                occurred_at=now,
                user_id=user_id,
                external_subscription_id=subscription_id,
            )
            reconciler = Reconciler(self.db)
            try:
                outcome = await reconciler.process(fact, now=now)
                await reconciler.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error("Sweep failed for record %s: %s", record_id, e)
                errors.append({
                    "record_id": str(record_id),
                    "error": str(e),
                })
                continue

            if outcome.applied:
                expired += 1
            else:
                skipped += 1

        logger.info("Period-end sweep: %d expired, %d skipped, %d errors", expired, skipped, len(errors))
        return {
            "job": "sweep_period_end",
            "expired": expired,
            "skipped": skipped,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def resync_iap_subscriptions(self, now: Optional[datetime] = None) -> dict:
        """
        Re-validate stored App Store receipts and reconcile what changed.

        Run every 6 hours. Catches renewals, lapses and refunds that the
        app never reported.

        Returns:
            Summary of synced records
        """
        now = now or datetime.now(timezone.utc)

        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.provider == Provider.APPLE_IAP,
            SubscriptionRecord.latest_receipt.isnot(None),
            SubscriptionRecord.status.notin_(TERMINAL_STATUSES),
        )
        records = (await self.db.execute(stmt)).scalars().all()
        # Detach the fields we need before commits expire the instances
        targets = [(record.record_id, record.user_id, record.latest_receipt) for record in records]

        synced = 0
        applied = 0
        errors = []

        for record_id, user_id, receipt in targets:
            try:
                snapshot = await self.receipt_validator.validate(receipt)
            except BillingError as e:
                logger.warning("Receipt resync failed for record %s: %s", record_id, e.message)
                errors.append({
                    "record_id": str(record_id),
                    "code": e.code,
                    "error": e.message,
                })
                continue

            reconciler = Reconciler(self.db)
            try:
                outcomes = await reconciler.process_all(
                    normalize_receipt(snapshot, user_id, now), now=now,
                )
                await reconciler.commit()
            except Exception as e:
                await self.db.rollback()
                logger.error("Receipt resync failed for record %s: %s", record_id, e)
                errors.append({
                    "record_id": str(record_id),
                    "error": str(e),
                })
                continue

            synced += 1
            applied += sum(1 for outcome in outcomes if outcome.applied)

        return {
            "job": "resync_iap_subscriptions",
            "synced": synced,
            "applied": applied,
            "errors": errors,
            "run_at": now.isoformat(),
        }


# Job runner functions (can be called from scheduler like APScheduler or Celery)

async def run_period_end_sweep(db: AsyncSession) -> dict:
    """Run the period-end sweep."""
    service = ScheduledJobService(db)
    return await service.sweep_period_end()


async def run_iap_resync(db: AsyncSession) -> dict:
    """Run App Store receipt re-validation."""
    service = ScheduledJobService(db)
    return await service.resync_iap_subscriptions()
