"""
Tests for the worker loop: claim, dispatch by kind, report, run records
"""

import asyncio
import random
from unittest.mock import AsyncMock
import pytest
from sqlalchemy import select
from models.source_record import SourceRecord
from models.worker_run import WorkerRun
from models.base import JobKind, JobStatus, RunType, RunStatus
from jobs.worker import QueueWorker, create_worker
from jobs.handlers import JobHandler, ChangeEventHandler
from jobs.ingest import enqueue
from jobs.outcomes import Failure, JobOutcome
from core.exceptions import DatabaseConnectionError, RateLimitError
from tests.conftest import FakeNotifier, change_event_payload


class ScriptedHandler(JobHandler):
    """Returns (or raises) the scripted outcomes in order"""

    kind = JobKind.CHANGE_EVENT

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.seen = []

    async def handle(self, session, record):
        self.seen.append(record.id)
        outcome = self.outcomes.pop(0) if self.outcomes else JobOutcome.succeeded()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def make_eligible(session_factory, record_id):
    from sqlalchemy import update
    from core.clock import utcnow
    async with session_factory() as session:
        await session.execute(
            update(SourceRecord).where(SourceRecord.id == record_id).values(next_attempt_at=utcnow())
        )
        await session.commit()


@pytest.mark.asyncio
async def test_no_work_returns_zero_stats_and_records_nothing(session_factory, db_session, policy):
    worker = QueueWorker(session_factory, [ScriptedHandler()], worker_id="idle", policy=policy)

    stats = await worker.run_once()

    assert stats == {"claimed": 0, "succeeded": 0, "retried": 0, "failed": 0, "lease_lost": 0}
    result = await db_session.execute(select(WorkerRun))
    assert result.scalars().all() == []
    await db_session.commit()


@pytest.mark.asyncio
async def test_cycle_records_worker_run(session_factory, db_session, make_record, policy):
    await make_record()
    await make_record()
    worker = QueueWorker(session_factory, [ScriptedHandler()], worker_id="w-run", policy=policy)

    await worker.run_once()

    result = await db_session.execute(select(WorkerRun).where(WorkerRun.run_type == RunType.WORKER))
    run = result.scalar_one()
    assert run.worker_id == "w-run"
    assert run.status == RunStatus.SUCCESS
    assert run.records_claimed == 2
    assert run.records_succeeded == 2
    assert run.duration_seconds >= 0
    await db_session.commit()


@pytest.mark.asyncio
async def test_unknown_kind_fails_permanently(session_factory, make_record, fetch, policy):
    record = await make_record(kind=JobKind.EXTRACTION_REQUEST)
    worker = QueueWorker(session_factory, [ScriptedHandler()], worker_id="w1", policy=policy)

    stats = await worker.run_once()

    assert stats["failed"] == 1
    stored = await fetch(SourceRecord, record.id)
    assert stored.status == JobStatus.FAILED
    assert stored.last_error_code == "unknown_kind"


@pytest.mark.asyncio
async def test_transient_failures_exhaust_attempts(session_factory, make_record, fetch, policy):
    record = await make_record()
    transient = JobOutcome.from_failure(Failure.transient("network_error", "connection reset"))
    handler = ScriptedHandler(transient, transient, transient)
    worker = QueueWorker(session_factory, [handler], worker_id="w1", policy=policy)

    for expected in (JobStatus.PENDING, JobStatus.PENDING, JobStatus.FAILED):
        await make_eligible(session_factory, record.id)
        await worker.run_once()
        assert (await fetch(SourceRecord, record.id)).status == expected

    stored = await fetch(SourceRecord, record.id)
    assert stored.attempts == policy.max_attempts
    assert stored.last_error_code == "network_error"
    assert len(handler.seen) == 3


@pytest.mark.asyncio
async def test_handler_exception_translated_once(session_factory, make_record, fetch, policy):
    record = await make_record()
    handler = ScriptedHandler(RateLimitError("slow down", retry_after=120))
    worker = QueueWorker(session_factory, [handler], worker_id="w1", policy=policy)

    stats = await worker.run_once()

    assert stats["retried"] == 1
    stored = await fetch(SourceRecord, record.id)
    assert stored.status == JobStatus.PENDING
    assert stored.last_error_code == "rate_limited"
    delay = (stored.next_attempt_at - stored.updated_at).total_seconds()
    assert delay == pytest.approx(120, abs=1)


@pytest.mark.asyncio
async def test_unexpected_exception_is_transient(session_factory, make_record, fetch, policy):
    record = await make_record()
    worker = QueueWorker(session_factory, [ScriptedHandler(KeyError("boom"))], worker_id="w1", policy=policy)

    await worker.run_once()

    stored = await fetch(SourceRecord, record.id)
    assert stored.status == JobStatus.PENDING
    assert stored.last_error_code == "unexpected_error"


@pytest.mark.asyncio
async def test_two_workers_never_process_the_same_record(race_session_factory, make_record, make_subscription, fetch, policy):
    records = [await make_record() for _ in range(6)]
    await make_subscription()
    notifier = FakeNotifier()
    workers = [
        QueueWorker(race_session_factory, [ChangeEventHandler(notifier)], worker_id=f"w{i}", batch_size=2, policy=policy)
        for i in range(3)
    ]

    # every round with PENDING rows completes at least one of them
    for _ in range(len(records)):
        await asyncio.gather(*(w.run_once() for w in workers))

    for record in records:
        assert (await fetch(SourceRecord, record.id)).attempts == 1
        assert (await fetch(SourceRecord, record.id)).status == JobStatus.DONE
    assert len(notifier.sent) == 6
    assert len({s[2] for s in notifier.sent}) == 6


def test_poll_backoff_grows_and_caps(session_factory):
    worker = QueueWorker(
        session_factory, [ScriptedHandler()],
        poll_interval=2, max_poll_backoff=30, rng=random.Random(7)
    )

    first = worker.poll_backoff(1)
    assert 1.6 <= first <= 2.4
    assert 3.2 <= worker.poll_backoff(2) <= 4.8
    assert worker.poll_backoff(50) <= 30


@pytest.mark.asyncio
async def test_run_forever_backs_off_on_store_failure_and_stops(session_factory):
    stop_event = asyncio.Event()
    worker = QueueWorker(session_factory, [ScriptedHandler()], worker_id="w1", batch_size=5, poll_interval=1)
    calls = []

    async def fake_run_once():
        calls.append(1)
        if len(calls) == 1:
            raise DatabaseConnectionError("connection refused")
        stop_event.set()
        return {"claimed": 0, "succeeded": 0, "retried": 0, "failed": 0, "lease_lost": 0}

    worker.run_once = fake_run_once
    worker._wait = AsyncMock()

    await asyncio.wait_for(worker.run_forever(stop_event), timeout=5)

    assert len(calls) == 2
    first_delay = worker._wait.await_args_list[0].args[1]
    assert first_delay > 0


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_payload_ref(db_session):
    first = await enqueue(db_session, JobKind.CHANGE_EVENT, "bill_event:42", change_event_payload())
    second = await enqueue(db_session, JobKind.CHANGE_EVENT, "bill_event:42", change_event_payload(summary="x"))

    assert first.id == second.id
    assert second.status == JobStatus.PENDING
    assert second.payload["summary"] == change_event_payload()["summary"]

    other_kind = await enqueue(db_session, JobKind.EXTRACTION_REQUEST, "bill_event:42", {"document_url": "https://x"})
    assert other_kind.id != first.id


def test_create_worker_registers_every_kind(session_factory):
    worker = create_worker(session_factory, worker_id="prod-like")

    assert set(worker.handlers) == {JobKind.CHANGE_EVENT, JobKind.EXTRACTION_REQUEST}
    assert worker.worker_id == "prod-like"
