"""
Shared test fixtures.

Settings are read once at import time, so the environment is prepared
before anything from ``app`` is imported.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-chars")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("APPLE_BUNDLE_ID", "com.example.tracker")
os.environ.setdefault("STRIPE_PRICE_ID_MONTHLY", "price_monthly")
os.environ.setdefault("STRIPE_PRICE_ID_YEARLY", "price_yearly")

import uuid
from datetime import timedelta
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.errors import DuplicateEventError, RecordNotFoundError
from app.core.security import create_access_token
from app.db.session import get_db
from app.main import app
from app.models.billing import EventOutcome, TransactionStatus
from app.models.subscription import SubscriptionRecord
from app.schemas.facts import FactKind
from app.services.reconciler import Reconciler

USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")


def make_session() -> AsyncMock:
    """AsyncSession stand-in whose savepoints behave like async context managers."""
    session = AsyncMock()
    nested = MagicMock()
    nested.__aenter__ = AsyncMock(return_value=nested)
    nested.__aexit__ = AsyncMock(return_value=False)
    session.begin_nested = MagicMock(return_value=nested)
    session.add = MagicMock()
    return session


# =============================================================================
# In-memory billing storage
# =============================================================================

class InMemoryEventStore:
    """EventStore with the same claim/finalize contract, kept in a dict."""

    def __init__(self):
        self.rows: dict[uuid.UUID, dict] = {}

    async def claim(self, provider, provider_event_id, event_type, payload=None, user_id=None):
        for row_id, row in self.rows.items():
            if (row["provider"], row["event_id"]) != (provider, provider_event_id):
                continue
            if row["outcome"] != EventOutcome.SKIPPED_NOT_OWNER:
                raise DuplicateEventError(
                    f"Event {provider.value}/{provider_event_id} already processed"
                )
            row.update(outcome=EventOutcome.PENDING, detail=None, payload=payload)
            return row_id
        row_id = uuid.uuid4()
        self.rows[row_id] = {
            "provider": provider,
            "event_id": provider_event_id,
            "event_type": event_type,
            "payload": payload,
            "outcome": EventOutcome.PENDING,
            "detail": None,
        }
        return row_id

    async def _finish(self, row_id, outcome, detail):
        row = self.rows[row_id]
        if row["outcome"] != EventOutcome.PENDING:
            return False
        row["outcome"] = outcome
        row["detail"] = detail
        return True

    async def mark_succeeded(self, row_id, detail=None, user_id=None):
        return await self._finish(row_id, EventOutcome.SUCCEEDED, detail)

    async def mark_skipped(self, row_id, detail, user_id=None):
        return await self._finish(row_id, EventOutcome.SKIPPED_DUPLICATE, detail)

    async def mark_not_owner(self, row_id, detail, user_id=None):
        return await self._finish(row_id, EventOutcome.SKIPPED_NOT_OWNER, detail)

    async def mark_failed(self, row_id, detail, user_id=None):
        return await self._finish(row_id, EventOutcome.FAILED, detail)

    def outcome_of(self, provider, event_id) -> Optional[EventOutcome]:
        for row in self.rows.values():
            if (row["provider"], row["event_id"]) == (provider, event_id):
                return row["outcome"]
        return None


class InMemoryLedger:
    """
    Reconciler wired to in-memory event rows, records and payments.

    The state machine, ordering and ownership rules run unchanged; only
    the SQL statements are replaced.
    """

    def __init__(self):
        self.session = make_session()
        self.events = InMemoryEventStore()
        self.records: dict[uuid.UUID, SubscriptionRecord] = {}
        self.payments: dict[str, dict] = {}
        self.payment_writes = 0

    def reconciler(self) -> Reconciler:
        reconciler = Reconciler(self.session)
        reconciler.events = self.events
        reconciler._resolve_user_id = self._resolve_user_id
        reconciler._load_record = self._load_record
        reconciler._persist_payment = self._persist_payment
        return reconciler

    def add_record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.record_id is None:
            record.record_id = uuid.uuid4()
        self.records[record.user_id] = record
        return record

    async def _resolve_user_id(self, fact):
        if fact.user_id is not None:
            return fact.user_id
        for record in self.records.values():
            if fact.external_subscription_id and record.external_subscription_id == fact.external_subscription_id:
                return record.user_id
            if fact.external_customer_id and record.external_customer_id == fact.external_customer_id:
                return record.user_id
        raise RecordNotFoundError("No subscription record")

    async def _load_record(self, user_id, fact):
        record = self.records.get(user_id)
        if record is not None:
            return record
        if fact.kind != FactKind.ACTIVATED:
            raise RecordNotFoundError(f"No subscription record for user {user_id}")
        return self.add_record(SubscriptionRecord.new_for_user(user_id))

    async def _persist_payment(self, record, fact, payment):
        self.payment_writes += 1
        if payment.status == TransactionStatus.REFUNDED:
            refs = {payment.charge_reference, payment.alternate_reference}
            for stored in self.payments.values():
                if stored["charge_reference"] in refs and stored["status"] == TransactionStatus.SUCCEEDED:
                    stored["status"] = TransactionStatus.REFUNDED
            return

        existing = self.payments.get(payment.charge_reference)
        if existing is None or existing["status"] == TransactionStatus.FAILED:
            self.payments[payment.charge_reference] = {
                "user_id": record.user_id,
                "provider": fact.provider,
                "charge_reference": payment.charge_reference,
                "amount": payment.amount,
                "status": payment.status,
            }


@pytest.fixture(autouse=True)
def redis_client():
    """Keep tests off a real Redis; every lookup is a cache miss."""
    client = AsyncMock()
    client.get.return_value = None
    client.delete.return_value = 1
    with patch("app.services.cache.get_redis", return_value=client), \
            patch("app.main.get_redis", return_value=client):
        yield client


@pytest.fixture
def db_session() -> AsyncMock:
    return make_session()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def user_id() -> uuid.UUID:
    return USER_ID


@pytest.fixture
def auth_headers(user_id) -> dict:
    token = create_access_token({"sub": str(user_id)}, expires_delta=timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def service_headers() -> dict:
    return {"X-Service-Key": "test-service-key"}


@pytest_asyncio.fixture
async def client(db_session):
    """HTTP client against the app, with the database session mocked."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()
