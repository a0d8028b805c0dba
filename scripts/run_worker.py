"""
Standalone queue worker process.

Runs the worker's poll loop plus the lease reaper and digest sweeps
(APScheduler). Any number of these processes may run against the same
database; they coordinate only through conditional updates (the job
claim and the digest lease).
"""

import asyncio
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import engine
from core.logging import setup_logging
from jobs.scheduler import QueueScheduler
from jobs.worker import create_worker

logger = logging.getLogger(__name__)


async def run_worker():
    """Poll until SIGINT / SIGTERM"""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    worker = create_worker()
    # The poll loop below claims work; the scheduler only runs the sweeps
    scheduler = QueueScheduler(worker=worker, run_worker=False)

    logger.info(f"Starting worker {settings.WORKER_ID}")
    scheduler.start()
    try:
        await worker.run_forever(stop_event)
    finally:
        scheduler.stop()
        await engine.dispose()
        logger.info(f"Worker {settings.WORKER_ID} exited")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_worker())
