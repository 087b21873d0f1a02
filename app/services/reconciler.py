"""
Reconciler
==========

Runs facts through the shared pipeline:

    claim event -> resolve record -> lock user -> apply (savepoint)
                -> persist payments -> finalize event

Every provider path (Stripe webhooks, App Store receipts, confirmed user
actions, scheduled jobs) ends here, so ownership precedence and ordering
rules are enforced in exactly one place.

A fact that cannot be applied is rolled back to its savepoint, recorded
as ``failed`` on its event row and reported to New Relic; it is not
retried. Unexpected errors (database down, bugs) propagate so the whole
transaction, claim included, rolls back and the provider redelivers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import uuid

import newrelic.agent
from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import DuplicateEventError, MalformedFactError, RecordNotFoundError
from app.models.billing import (
    PaymentTransaction,
    RefundRequest,
    RefundStatus,
    TransactionStatus,
)
from app.models.subscription import Provider, SubscriptionRecord
from app.models.usage import UsageEventType
from app.schemas.facts import BillingFact, FactKind, PaymentInfo
from app.services.cache import CacheInvalidator
from app.services.event_store import EventStore
from app.services.locks import lock_user
from app.services.state_machine import TransitionResult, apply_fact
from app.services.usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)


@dataclass
class FactOutcome:
    """Result of pushing one fact through the pipeline."""

    event_id: str
    kind: Optional[FactKind]
    status: str  # applied | skipped | duplicate | failed
    detail: Optional[str] = None
    user_id: Optional[uuid.UUID] = None

    @property
    def applied(self) -> bool:
        return self.status == "applied"

    def as_dict(self) -> dict:
        return {
            "eventId": self.event_id,
            "kind": self.kind.value if self.kind else None,
            "status": self.status,
            "detail": self.detail,
        }


class Reconciler:
    """Applies facts to subscription records within one DB transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventStore(db)
        self.usage = UsageRecorder(db)
        self._changed_users: set[uuid.UUID] = set()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def process(
        self,
        fact: BillingFact,
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> FactOutcome:
        """Claim, apply and finalize one fact."""
        try:
            row_id = await self.events.claim(
                fact.provider,
                fact.event_id,
                fact.event_type,
                payload if payload is not None else fact.audit_payload(),
                fact.user_id,
            )
        except DuplicateEventError as e:
            return FactOutcome(fact.event_id, fact.kind, "duplicate", e.message, fact.user_id)

        user_id: Optional[uuid.UUID] = None
        try:
            user_id = await self._resolve_user_id(fact)
            await lock_user(self.db, user_id)

            async with self.db.begin_nested():
                record = await self._load_record(user_id, fact)
                result = apply_fact(record, fact, now=now)
                await self.db.flush()
                if result.payment is not None:
                    await self._persist_payment(record, fact, result.payment)
                await self._record_funnel(record, result)

        except MalformedFactError as e:
            await self.events.mark_failed(row_id, e.message, user_id)
            self._report_failure(fact.provider, fact.kind, fact.event_id, fact.event_type, e, user_id)
            return FactOutcome(fact.event_id, fact.kind, "failed", e.message, user_id)

        if result.applied:
            await self.events.mark_succeeded(row_id, result.detail, user_id)
            self._changed_users.add(user_id)
            logger.info(
                "Applied %s %s for user %s: %s -> %s (%s)",
                fact.provider.value,
                fact.kind.value,
                user_id,
                result.previous_status.value,
                record.status.value,
                result.detail,
            )
            return FactOutcome(fact.event_id, fact.kind, "applied", result.detail, user_id)

        if result.reclaimable:
            await self.events.mark_not_owner(row_id, result.detail, user_id)
        else:
            await self.events.mark_skipped(row_id, result.detail, user_id)
        logger.info(
            "Skipped %s %s for user %s: %s",
            fact.provider.value,
            fact.kind.value,
            user_id,
            result.detail,
        )
        return FactOutcome(fact.event_id, fact.kind, "skipped", result.detail, user_id)

    async def process_all(
        self,
        facts: list[BillingFact],
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> list[FactOutcome]:
        """Process facts in order; the raw payload is stored with each."""
        return [await self.process(fact, payload, now) for fact in facts]

    async def record_ignored(
        self,
        provider: Provider,
        event_id: str,
        event_type: str,
        payload: Optional[dict],
        detail: str,
    ) -> FactOutcome:
        """Claim an event that carries no billing change."""
        try:
            row_id = await self.events.claim(provider, event_id, event_type, payload)
        except DuplicateEventError as e:
            return FactOutcome(event_id, None, "duplicate", e.message)
        await self.events.mark_skipped(row_id, detail)
        return FactOutcome(event_id, None, "skipped", detail)

    async def record_rejected(
        self,
        provider: Provider,
        event_id: str,
        event_type: str,
        payload: Optional[dict],
        error: MalformedFactError,
    ) -> FactOutcome:
        """Claim an event that could not be normalized and mark it failed."""
        try:
            row_id = await self.events.claim(provider, event_id, event_type, payload)
        except DuplicateEventError as e:
            return FactOutcome(event_id, None, "duplicate", e.message)
        await self.events.mark_failed(row_id, error.message)
        self._report_failure(provider, None, event_id, event_type, error, None)
        return FactOutcome(event_id, None, "failed", error.message)

    async def commit(self) -> None:
        """Commit the transaction, then drop cached entitlements that changed."""
        await self.db.commit()
        changed, self._changed_users = self._changed_users, set()
        for user_id in changed:
            await CacheInvalidator.on_subscription_change(str(user_id))

    # -------------------------------------------------------------------------
    # Record resolution
    # -------------------------------------------------------------------------

    async def _resolve_user_id(self, fact: BillingFact) -> uuid.UUID:
        if fact.user_id is not None:
            return fact.user_id

        lookups = (
            (SubscriptionRecord.external_subscription_id, fact.external_subscription_id),
            (SubscriptionRecord.external_customer_id, fact.external_customer_id),
        )
        for column, value in lookups:
            if not value:
                continue
            stmt = select(SubscriptionRecord.user_id).where(column == value).limit(1)
            user_id = (await self.db.execute(stmt)).scalar_one_or_none()
            if user_id is not None:
                return user_id

        raise RecordNotFoundError(
            f"No subscription record for subscription={fact.external_subscription_id} "
            f"customer={fact.external_customer_id}"
        )

    async def _load_record(self, user_id: uuid.UUID, fact: BillingFact) -> SubscriptionRecord:
        """Load the record under the user lock, creating it for activations."""
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        record = (await self.db.execute(stmt)).scalar_one_or_none()
        if record is not None:
            return record

        if fact.kind != FactKind.ACTIVATED:
            raise RecordNotFoundError(
                f"No subscription record for user {user_id} ({fact.kind.value})"
            )

        record = SubscriptionRecord.new_for_user(user_id)
        self.db.add(record)
        await self.db.flush()
        return record

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    async def _persist_payment(
        self,
        record: SubscriptionRecord,
        fact: BillingFact,
        payment: PaymentInfo,
    ) -> None:
        if payment.status == TransactionStatus.REFUNDED:
            await self._persist_refund(record, fact, payment)
            return

        stmt = pg_insert(PaymentTransaction).values(
            transaction_id=uuid.uuid4(),
            record_id=record.record_id,
            user_id=record.user_id,
            provider=fact.provider,
            amount=payment.amount,
            currency=payment.currency,
            status=payment.status,
            charge_reference=payment.charge_reference,
            charge_reference_synthetic=payment.charge_reference_synthetic,
            invoice_reference=payment.invoice_reference,
            provider_event_id=fact.event_id,
        )
        # A charge that failed earlier may succeed on retry under the same id
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider", "charge_reference"],
            set_={
                "status": stmt.excluded.status,
                "amount": stmt.excluded.amount,
                "provider_event_id": stmt.excluded.provider_event_id,
            },
            where=PaymentTransaction.status == TransactionStatus.FAILED,
        )
        await self.db.execute(stmt)

    async def _persist_refund(
        self,
        record: SubscriptionRecord,
        fact: BillingFact,
        payment: PaymentInfo,
    ) -> None:
        now = datetime.now(timezone.utc)
        references = [payment.charge_reference]
        if payment.alternate_reference:
            references.append(payment.alternate_reference)

        matches = [PaymentTransaction.charge_reference.in_(references)]
        if payment.invoice_reference:
            matches.append(PaymentTransaction.invoice_reference == payment.invoice_reference)

        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.provider == fact.provider,
                PaymentTransaction.status == TransactionStatus.SUCCEEDED,
                or_(*matches),
            )
            .values(status=TransactionStatus.REFUNDED, refunded_at=now)
            .returning(PaymentTransaction.transaction_id)
        )
        refunded_ids = list((await self.db.execute(stmt)).scalars().all())

        if not refunded_ids:
            logger.warning(
                "Refund %s matched no stored charge; recording it standalone",
                payment.charge_reference,
            )
            insert_stmt = pg_insert(PaymentTransaction).values(
                transaction_id=uuid.uuid4(),
                record_id=record.record_id,
                user_id=record.user_id,
                provider=fact.provider,
                amount=payment.amount,
                currency=payment.currency,
                status=TransactionStatus.REFUNDED,
                charge_reference=payment.charge_reference,
                charge_reference_synthetic=payment.charge_reference_synthetic,
                invoice_reference=payment.invoice_reference,
                provider_event_id=fact.event_id,
                refunded_at=now,
            ).on_conflict_do_nothing(index_elements=["provider", "charge_reference"])
            await self.db.execute(insert_stmt)
            return

        completed = await self.db.execute(
            update(RefundRequest)
            .where(
                RefundRequest.transaction_id.in_(refunded_ids),
                RefundRequest.status == RefundStatus.APPROVED,
            )
            .values(status=RefundStatus.COMPLETED, processed_at=now)
        )
        if completed.rowcount:
            logger.info("Completed %d refund request(s) for user %s", completed.rowcount, record.user_id)

    async def _record_funnel(self, record: SubscriptionRecord, result: TransitionResult) -> None:
        payment = result.payment
        if payment is None:
            return
        if payment.status == TransactionStatus.SUCCEEDED:
            event_type = UsageEventType.PAYMENT_COMPLETED
        elif payment.status == TransactionStatus.FAILED:
            event_type = UsageEventType.PAYMENT_FAILED
        else:
            return
        await self.usage.record(
            record.user_id,
            event_type,
            context="billing",
            data={
                "amount": str(payment.amount),
                "currency": payment.currency,
                "chargeReference": payment.charge_reference,
            },
        )

    @staticmethod
    def _report_failure(
        provider: Provider,
        kind: Optional[FactKind],
        event_id: str,
        event_type: str,
        error: MalformedFactError,
        user_id: Optional[uuid.UUID],
    ) -> None:
        kind_name = kind.value if kind else "unparsed"
        logger.error(
            "Failed to apply %s %s (%s): %s",
            provider.value,
            kind_name,
            event_id,
            error.message,
        )
        newrelic.agent.record_custom_event(
            "BillingFactFailed",
            {
                "provider": provider.value,
                "kind": kind_name,
                "eventId": event_id,
                "eventType": event_type,
                "userId": str(user_id) if user_id else "",
                "code": error.code,
                "reason": error.message[:255],
            },
        )
