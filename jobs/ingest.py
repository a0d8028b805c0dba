"""
Ingestion entry point: how producers hand work to the queue.

(kind, payload_ref) is unique, so re-ingesting the same domain object
returns the existing row instead of creating a second job.
"""

from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models.source_record import SourceRecord
from models.base import JobKind, JobStatus
from core.clock import utcnow
from core.database import dialect_insert, store_operation
import logging

logger = logging.getLogger(__name__)


async def enqueue(
    session: AsyncSession,
    kind: JobKind,
    payload_ref: str,
    payload: Optional[Dict[str, Any]] = None
) -> SourceRecord:
    """
    Insert a PENDING source record eligible immediately.

    Args:
        session: Database session
        kind: Job kind
        payload_ref: Stable pointer to the domain object ("bill_event:1234")
        payload: Snapshot handed to the handler

    Returns:
        The new record, or the existing one for the same (kind, payload_ref)
    """
    now = utcnow()
    stmt = dialect_insert(session, SourceRecord).values(
        kind=kind,
        payload_ref=payload_ref,
        payload=payload,
        status=JobStatus.PENDING,
        attempts=0,
        next_attempt_at=now,
        created_at=now,
        updated_at=now
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["kind", "payload_ref"])

    async with store_operation("enqueue"):
        result = await session.execute(stmt)
        row = await session.execute(
            select(SourceRecord)
            .where(
                SourceRecord.kind == kind,
                SourceRecord.payload_ref == payload_ref
            )
            .execution_options(populate_existing=True)
        )
        record = row.scalar_one()
        await session.commit()

    if result.rowcount == 1:
        logger.info(f"Enqueued {kind.value} {payload_ref} as record {record.id}")
    else:
        logger.debug(f"{kind.value} {payload_ref} already queued as record {record.id}")
    return record
