"""
Pytest configuration and fixtures
"""

import os

# Settings are read at import time; point them at SQLite before any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["BACKOFF_JITTER"] = "0"

import itertools
from typing import AsyncGenerator, Dict, List, Optional, Sequence

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from models import Base, SourceRecord, Subscription, DeliveryRecord
from models.base import JobKind, JobStatus, DeliveryChannel, SendMode, EventType
from schemas.events import ChangeEvent, ExtractionRequest
from jobs.notifiers import Notifier
from jobs.extractors import Extractor
from jobs.outcomes import ExtractionResult, Failure, SendResult
from jobs.policy import RetryPolicy


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """
    File-backed SQLite engine.

    Every transaction starts with BEGIN IMMEDIATE, so concurrent sessions
    serialise their writes the way row locks do on PostgreSQL.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'queue_test.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def race_engine(test_engine, tmp_path):
    """
    Second engine on the same database file for concurrency tests.

    Statements autocommit, so reads take no lasting lock and concurrent
    sessions interleave freely between statements. Each conditional
    UPDATE is still atomic, which is the only guarantee the claims rely on.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'queue_test.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
        isolation_level="AUTOCOMMIT",
    )

    yield engine

    await engine.dispose()


@pytest.fixture
def race_session_factory(race_engine) -> async_sessionmaker:
    return async_sessionmaker(
        race_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for seeding and assertions; commit before other sessions write"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def policy():
    """Deterministic job policy: 3 attempts, 10s base, 60s cap, no jitter"""
    return RetryPolicy(max_attempts=3, base_delay=10, max_delay=60, jitter=0.0)


# ============================================================================
# Factories
# ============================================================================

_refs = itertools.count(1)


def change_event_payload(**overrides) -> Dict:
    payload = {
        "event_type": EventType.BILL_STATUS_CHANGED.value,
        "bill_number": "HB0001",
        "bill_title": "An act relating to public schools",
        "committee_id": 12,
        "committee_name": "Education",
        "chamber": "house",
        "subjects": ["Education", "Budget"],
        "summary": "Status changed to Passed 2nd Reading",
        "is_flagged": False,
    }
    payload.update(overrides)
    return payload


def extraction_payload(**overrides) -> Dict:
    payload = {
        "document_url": "https://legislature.example.gov/votes/HB0001-77.pdf",
        "bill_number": "HB0001",
        "action_id": 77,
        "chamber": "house",
        "vote_type": "committee",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_record(db_session):
    async def _make(kind: JobKind = JobKind.CHANGE_EVENT, payload: Optional[Dict] = None, **fields) -> SourceRecord:
        if payload is None:
            payload = change_event_payload() if kind == JobKind.CHANGE_EVENT else extraction_payload()
        record = SourceRecord(
            kind=kind,
            payload_ref=fields.pop("payload_ref", f"{kind.value}:{next(_refs)}"),
            payload=payload,
            **fields
        )
        db_session.add(record)
        await db_session.commit()
        return record
    return _make


@pytest.fixture
def make_subscription(db_session):
    async def _make(**fields) -> Subscription:
        fields.setdefault("user_id", "user-1")
        fields.setdefault("delivery_channel", DeliveryChannel.EMAIL)
        fields.setdefault("target", f"user{next(_refs)}@example.com")
        fields.setdefault("send_mode", SendMode.INSTANT)
        subscription = Subscription(**fields)
        db_session.add(subscription)
        await db_session.commit()
        return subscription
    return _make


@pytest.fixture
def fetch(session_factory):
    """Reload one row in a short-lived session"""
    async def _fetch(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)
    return _fetch


@pytest.fixture
def fetch_deliveries(session_factory):
    async def _fetch(source_record_id: int) -> List[DeliveryRecord]:
        from sqlalchemy import select
        async with session_factory() as session:
            result = await session.execute(
                select(DeliveryRecord)
                .where(DeliveryRecord.source_record_id == source_record_id)
                .order_by(DeliveryRecord.subscription_id)
            )
            return list(result.scalars().all())
    return _fetch


# ============================================================================
# Collaborator fakes
# ============================================================================

class FakeNotifier(Notifier):
    """
    Records sends. ``results`` maps subscription id to a SendResult or a list
    consumed one per call; anything unmapped is sent.
    """

    def __init__(self, results: Optional[Dict[int, object]] = None):
        self.results = results or {}
        self.sent: List[tuple] = []
        self.digests: List[tuple] = []

    def _next(self, subscription_id: int) -> SendResult:
        result = self.results.get(subscription_id)
        if isinstance(result, list):
            result = result.pop(0) if result else None
        if isinstance(result, Exception):
            raise result
        return result or SendResult.sent(f"msg-{len(self.sent) + len(self.digests) + 1}")

    async def send(self, subscription: Subscription, event: ChangeEvent, delivery_id: int) -> SendResult:
        result = self._next(subscription.id)
        if result.ok:
            self.sent.append((subscription.id, event.bill_number, delivery_id))
        return result

    async def send_digest(
        self,
        subscription: Subscription,
        events: Sequence[ChangeEvent],
        delivery_ids: Sequence[int]
    ) -> SendResult:
        result = self._next(subscription.id)
        if result.ok:
            self.digests.append((subscription.id, [e.bill_number for e in events], list(delivery_ids)))
        return result


class FakeExtractor(Extractor):
    def __init__(self, results: Optional[List[ExtractionResult]] = None):
        self.results = list(results or [])
        self.requests: List[ExtractionRequest] = []

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return ExtractionResult.parsed({"result": "Passed", "totals": {"yeas": 7, "nays": 2}})


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


def transient_send(code: str = "network_error", retry_after: Optional[float] = None) -> SendResult:
    return SendResult.failed(Failure.transient(code, "provider unavailable", retry_after))


def permanent_send(code: str = "invalid_recipient") -> SendResult:
    return SendResult.failed(Failure.permanent(code, "recipient rejected"))


def processing_fields(worker_id: str = "worker-a", lease_seconds: float = 300, attempts: int = 1) -> Dict:
    from datetime import timedelta
    from core.clock import utcnow
    return {
        "status": JobStatus.PROCESSING,
        "lease_owner": worker_id,
        "lease_expires_at": utcnow() + timedelta(seconds=lease_seconds),
        "attempts": attempts,
    }
