import logging
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import async_session_maker
from core.exceptions import StoreError
from jobs.worker import QueueWorker, create_worker
from jobs.reaper import LeaseReaper
from jobs.digest import DigestDispatcher
from jobs.notifiers import Notifier, default_notifier

logger = logging.getLogger(__name__)


class QueueScheduler:
    """
    Interval jobs for the queue's background sweeps.

    - worker_cycle: one claim/process cycle (POLL_INTERVAL_SECONDS)
    - lease_reaper: reclaim expired leases (REAPER_INTERVAL_SECONDS)
    - digest_dispatch: send due digests (DIGEST_INTERVAL_SECONDS)

    Each job runs with max_instances=1 so a slow sweep is never overlapped
    by its next tick; missed ticks are coalesced.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        worker: Optional[QueueWorker] = None,
        notifier: Optional[Notifier] = None,
        run_worker: bool = True
    ):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_factory or async_session_maker
        self.worker = worker or create_worker(self.SessionLocal)
        self.notifier = notifier or default_notifier()
        self.run_worker = run_worker

    async def run_worker_cycle(self):
        """Job to run one worker cycle"""
        try:
            stats = await self.worker.run_once()
            if stats["claimed"]:
                logger.info(f"Scheduler: worker cycle finished {stats}")
        except StoreError as e:
            logger.error(f"Scheduler: worker cycle failed - {e.message}")

    async def run_reaper(self):
        """Job to reclaim expired leases"""
        async with self.SessionLocal() as session:
            try:
                reaper = LeaseReaper(session, batch_size=settings.REAPER_BATCH_SIZE)
                await reaper.sweep()
            except StoreError as e:
                logger.error(f"Scheduler: lease reaper failed - {e.message}")

    async def run_digest(self):
        """Job to send due digests"""
        async with self.SessionLocal() as session:
            try:
                dispatcher = DigestDispatcher(session, self.notifier, dispatcher_id=self.worker.worker_id)
                stats = await dispatcher.sweep()
                if stats["digests_sent"] or stats["digests_failed"]:
                    logger.info(f"Scheduler: digest sweep finished {stats}")
            except StoreError as e:
                logger.error(f"Scheduler: digest sweep failed - {e.message}")

    def start(self):
        """Start the scheduler"""
        if self.run_worker:
            self.scheduler.add_job(
                self.run_worker_cycle,
                trigger=IntervalTrigger(seconds=settings.POLL_INTERVAL_SECONDS),
                id="worker_cycle",
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )
        self.scheduler.add_job(
            self.run_reaper,
            trigger=IntervalTrigger(seconds=settings.REAPER_INTERVAL_SECONDS),
            id="lease_reaper",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.add_job(
            self.run_digest,
            trigger=IntervalTrigger(seconds=settings.DIGEST_INTERVAL_SECONDS),
            id="digest_dispatch",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        self.scheduler.start()
        logger.info("Queue Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Queue Scheduler stopped")
