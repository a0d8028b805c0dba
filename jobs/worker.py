"""
Queue worker: claims batches and drives each leased record through its
handler and the state machine.

Design:
- No in-memory coordination between workers; all of it goes through the
  claimer's conditional update
- Each leased record gets its own session and is processed by exactly one
  task; WORKER_CONCURRENCY bounds the tasks in flight
- A heartbeat renews the lease every LEASE_RENEW_INTERVAL_SECONDS while the
  handler runs
- Handler exceptions become outcomes (Failure.from_exception); only store
  failures escape run_once, and run_forever backs off on them
"""

import asyncio
import contextlib
import random
from typing import Dict, Iterable, List, Optional, Union
from sqlalchemy.ext.asyncio import async_sessionmaker
from models.source_record import SourceRecord
from models.worker_run import WorkerRun
from models.base import JobKind, JobStatus, RunType, RunStatus
from jobs.claimer import JobClaimer
from jobs.state_machine import JobStateMachine
from jobs.policy import RetryPolicy
from jobs.outcomes import Failure, JobOutcome
from jobs.handlers import JobHandler, ChangeEventHandler, ExtractionHandler, build_registry
from jobs.notifiers import default_notifier
from jobs.extractors import OpenAIVoteExtractor
from core.clock import utcnow
from core.config import settings
from core.database import async_session_maker, store_operation
from core.exceptions import StoreError
import logging

logger = logging.getLogger(__name__)

# Sentinel for a report rejected because the lease was lost
LEASE_LOST = "lease_lost"


class QueueWorker:
    """
    One logical worker (one lease owner id).

    Attributes:
        worker_id: Lease owner written by claims
        batch_size: Rows leased per claim
        concurrency: Records processed at once
        lease_duration: Lease length in seconds
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        handlers: Union[Dict[JobKind, JobHandler], Iterable[JobHandler]],
        worker_id: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        lease_duration: Optional[float] = None,
        lease_renew_interval: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_poll_backoff: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None
    ):
        self.session_factory = session_factory
        self.handlers = handlers if isinstance(handlers, dict) else build_registry(handlers)
        self.worker_id = worker_id or settings.WORKER_ID
        self.batch_size = batch_size or settings.WORKER_BATCH_SIZE
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.lease_duration = lease_duration or settings.LEASE_DURATION_SECONDS
        self.lease_renew_interval = lease_renew_interval or settings.LEASE_RENEW_INTERVAL_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self.max_poll_backoff = max_poll_backoff or settings.MAX_POLL_BACKOFF_SECONDS
        self.policy = policy or RetryPolicy.from_settings()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def run_once(self) -> Dict[str, int]:
        """
        Claim one batch and process it.

        Returns:
            Counters for the cycle (claimed, succeeded, retried, failed, lease_lost)

        Raises:
            StoreError: The store was unreachable while claiming or reporting
        """
        stats = {"claimed": 0, "succeeded": 0, "retried": 0, "failed": 0, "lease_lost": 0}
        started_at = utcnow()

        async with self.session_factory() as session:
            claimed = await JobClaimer(session).claim(self.worker_id, self.batch_size, self.lease_duration)

        if not claimed:
            return stats

        stats["claimed"] = len(claimed)
        logger.info(f"Worker {self.worker_id} claimed {len(claimed)} record(s)")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(record: SourceRecord):
            async with semaphore:
                return await self.process(record)

        results = await asyncio.gather(*(bounded(r) for r in claimed), return_exceptions=True)

        store_failure = None
        for result in results:
            if isinstance(result, StoreError):
                store_failure = store_failure or result
            elif isinstance(result, BaseException):
                raise result
            elif result == JobStatus.DONE:
                stats["succeeded"] += 1
            elif result == JobStatus.PENDING:
                stats["retried"] += 1
            elif result == JobStatus.FAILED:
                stats["failed"] += 1
            else:
                stats["lease_lost"] += 1

        await self._record_run(started_at, stats, store_failure)
        if store_failure is not None:
            raise store_failure
        return stats

    async def process(self, record: SourceRecord):
        """
        Run the handler for one leased record and report its outcome.

        Returns:
            The record's new status, or LEASE_LOST
        """
        heartbeat = asyncio.create_task(self._renew_lease_periodically(record.id))
        try:
            outcome = await self._run_handler(record)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        async with self.session_factory() as session:
            status = await JobStateMachine(session, self.policy).report(record.id, self.worker_id, outcome)
        return status if status is not None else LEASE_LOST

    async def _run_handler(self, record: SourceRecord) -> JobOutcome:
        handler = self.handlers.get(record.kind)
        if handler is None:
            return JobOutcome.from_failure(
                Failure.permanent("unknown_kind", f"No handler registered for {record.kind}")
            )

        async with self.session_factory() as session:
            try:
                return await handler.handle(session, record)
            except Exception as e:
                failure = Failure.from_exception(e)
                logger.exception(f"Handler for record {record.id} raised; reporting {failure.code}")
                return JobOutcome.from_failure(failure)

    async def _renew_lease_periodically(self, record_id: int):
        while True:
            await asyncio.sleep(self.lease_renew_interval)
            try:
                async with self.session_factory() as session:
                    renewed = await JobClaimer(session).renew_lease(record_id, self.worker_id, self.lease_duration)
            except StoreError as e:
                logger.warning(f"Lease renewal for record {record_id} failed: {e.message}")
                continue
            if not renewed:
                return

    async def _record_run(self, started_at, stats: Dict[str, int], store_failure: Optional[StoreError]):
        completed_at = utcnow()
        if store_failure is not None:
            status = RunStatus.FAILED
        elif stats["failed"] == 0:
            status = RunStatus.SUCCESS
        elif stats["succeeded"] or stats["retried"]:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.FAILED

        run = WorkerRun(
            run_type=RunType.WORKER,
            worker_id=self.worker_id,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            duration_seconds=(completed_at - started_at).total_seconds(),
            records_claimed=stats["claimed"],
            records_succeeded=stats["succeeded"],
            records_retried=stats["retried"],
            records_failed=stats["failed"],
            error_message=store_failure.message if store_failure else None,
            run_metadata={"lease_lost": stats["lease_lost"]}
        )
        try:
            async with self.session_factory() as session:
                session.add(run)
                async with store_operation("record_worker_run", "worker_runs"):
                    await session.commit()
        except StoreError as e:
            # Run rows are audit only
            logger.warning(f"Could not record worker run: {e.message}")

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def poll_backoff(self, consecutive_failures: int) -> float:
        """Delay before the next claim after consecutive store failures"""
        exponent = min(max(consecutive_failures - 1, 0), 16)
        base = max(self.poll_interval, 1.0)
        delay = min(self.max_poll_backoff, base * (2 ** exponent))
        delay *= self.rng.uniform(0.8, 1.2)
        return min(self.max_poll_backoff, delay)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Poll until stop_event is set"""
        stop_event = stop_event or asyncio.Event()
        consecutive_failures = 0
        logger.info(f"Worker {self.worker_id} started (batch={self.batch_size}, concurrency={self.concurrency})")

        while not stop_event.is_set():
            try:
                stats = await self.run_once()
            except StoreError as e:
                consecutive_failures += 1
                delay = self.poll_backoff(consecutive_failures)
                logger.error(
                    f"Worker {self.worker_id} store failure #{consecutive_failures}; "
                    f"retrying in {delay:.1f}s: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                await self._wait(stop_event, delay)
                continue

            consecutive_failures = 0
            # A full batch suggests more work is waiting
            delay = 0 if stats["claimed"] >= self.batch_size else self.poll_interval
            await self._wait(stop_event, delay)

        logger.info(f"Worker {self.worker_id} stopped")

    async def _wait(self, stop_event: asyncio.Event, delay: float):
        if delay <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass


def create_worker(session_factory: Optional[async_sessionmaker] = None, **kwargs) -> QueueWorker:
    """Worker wired with the production notifier and extractor"""
    session_factory = session_factory or async_session_maker
    handlers: List[JobHandler] = [
        ChangeEventHandler(default_notifier()),
        ExtractionHandler(OpenAIVoteExtractor()),
    ]
    return QueueWorker(session_factory, handlers, **kwargs)
