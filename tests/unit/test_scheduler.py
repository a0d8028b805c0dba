import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from jobs.scheduler import QueueScheduler
from core.exceptions import DatabaseConnectionError
from tests.conftest import FakeNotifier


def build_scheduler(**kwargs):
    worker = MagicMock()
    worker.run_once = AsyncMock(return_value={"claimed": 0})
    kwargs.setdefault("worker", worker)
    kwargs.setdefault("notifier", FakeNotifier())
    kwargs.setdefault("session_factory", MagicMock())
    return QueueScheduler(**kwargs)


@pytest.mark.asyncio
async def test_scheduler_initialization():
    scheduler = build_scheduler()
    assert scheduler.scheduler is not None
    assert scheduler.run_worker is True


@pytest.mark.asyncio
async def test_scheduler_registers_sweeps():
    scheduler = build_scheduler()
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {"worker_cycle", "lease_reaper", "digest_dispatch"}
        for job in scheduler.scheduler.get_jobs():
            assert job.max_instances == 1
            assert job.coalesce is True
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_scheduler_without_worker_cycle():
    scheduler = build_scheduler(run_worker=False)
    scheduler.start()
    try:
        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert "worker_cycle" not in job_ids
    finally:
        scheduler.stop()


@pytest.mark.asyncio
async def test_worker_cycle_survives_store_outage():
    scheduler = build_scheduler()
    scheduler.worker.run_once = AsyncMock(side_effect=DatabaseConnectionError("database down"))

    await scheduler.run_worker_cycle()

    assert scheduler.worker.run_once.called


@pytest.mark.asyncio
async def test_reaper_job_execution():
    with patch("jobs.scheduler.LeaseReaper") as mock_reaper_cls:
        mock_reaper = MagicMock()
        mock_reaper.sweep = AsyncMock(return_value=2)
        mock_reaper_cls.return_value = mock_reaper

        mock_session = AsyncMock()
        session_maker = MagicMock()
        session_maker.return_value.__aenter__.return_value = mock_session

        scheduler = build_scheduler(session_factory=session_maker)
        await scheduler.run_reaper()

        mock_reaper_cls.assert_called_once()
        assert mock_reaper_cls.call_args.args[0] is mock_session
        assert mock_reaper.sweep.called
