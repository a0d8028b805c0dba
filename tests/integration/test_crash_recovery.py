"""
Crash-recovery scenario: a worker dies mid-fan-out, the reaper reclaims the
event, and a second worker finishes it without duplicating any delivery.
"""

from datetime import timedelta
import pytest
from sqlalchemy import update
from models.source_record import SourceRecord
from models.base import JobStatus, DeliveryStatus
from jobs.claimer import JobClaimer
from jobs.ledger import DeliveryLedger
from jobs.reaper import LeaseReaper
from jobs.worker import QueueWorker
from jobs.handlers import ChangeEventHandler
from core.clock import utcnow
from tests.conftest import FakeNotifier


@pytest.mark.asyncio
async def test_worker_crash_after_partial_fan_out(
    session_factory, db_session, make_record, make_subscription, fetch, fetch_deliveries, policy
):
    event = await make_record()
    sub_a = await make_subscription()
    sub_b = await make_subscription()

    # W1 claims E and queues A, then dies before touching B
    async with session_factory() as session:
        claimed = await JobClaimer(session).claim("w1", batch_size=1, lease_duration=60)
        assert [r.id for r in claimed] == [event.id]
        delivery_a = await DeliveryLedger(session, 3).ensure_queued(sub_a.id, event.id)

    # Lease runs out
    async with session_factory() as session:
        await session.execute(
            update(SourceRecord)
            .where(SourceRecord.id == event.id)
            .values(lease_expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()

    async with session_factory() as session:
        assert await LeaseReaper(session).reclaim_expired_leases() == 1

    reclaimed = await fetch(SourceRecord, event.id)
    assert reclaimed.status == JobStatus.PENDING
    assert reclaimed.attempts == 1

    # W2 picks it up and re-matches {A, B}
    notifier = FakeNotifier()
    worker = QueueWorker(session_factory, [ChangeEventHandler(notifier)], worker_id="w2", policy=policy)
    stats = await worker.run_once()

    assert stats["claimed"] == 1
    assert stats["succeeded"] == 1

    done = await fetch(SourceRecord, event.id)
    assert done.status == JobStatus.DONE
    assert done.attempts == 2

    deliveries = await fetch_deliveries(event.id)
    assert [d.subscription_id for d in deliveries] == [sub_a.id, sub_b.id]
    assert all(d.status == DeliveryStatus.SENT for d in deliveries)
    assert deliveries[0].id == delivery_a.id
    assert sorted(s[0] for s in notifier.sent) == [sub_a.id, sub_b.id]


@pytest.mark.asyncio
async def test_late_report_from_reclaimed_worker_is_rejected(session_factory, make_record, fetch, policy):
    from jobs.state_machine import JobStateMachine
    from jobs.outcomes import JobOutcome

    record = await make_record()

    async with session_factory() as session:
        await JobClaimer(session).claim("w1", batch_size=1, lease_duration=60)
        await session.execute(
            update(SourceRecord)
            .where(SourceRecord.id == record.id)
            .values(lease_expires_at=utcnow() - timedelta(seconds=1))
        )
        await session.commit()
        await LeaseReaper(session).reclaim_expired_leases()
        await JobClaimer(session).claim("w2", batch_size=1, lease_duration=60)

        status = await JobStateMachine(session, policy).report(record.id, "w1", JobOutcome.succeeded())

    assert status is None
    stored = await fetch(SourceRecord, record.id)
    assert stored.status == JobStatus.PROCESSING
    assert stored.lease_owner == "w2"
    assert stored.attempts == 2
