from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, Uuid
from models.base import Base, BigIntPK, JSONType, RunType, RunStatus
from core.clock import utcnow
import uuid


class WorkerRun(Base):
    """
    Tracks metadata for each background sweep.

    Purpose:
    - Audit trail of worker cycles, reaper sweeps and digest sweeps
    - Feeds the /stats and /health surfaces
    - Error tracking for operators
    """
    __tablename__ = "worker_runs"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    run_type = Column(Enum(RunType), nullable=False, index=True)
    worker_id = Column(String(255), nullable=True)
    status = Column(Enum(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_claimed = Column(Integer, default=0)
    records_succeeded = Column(Integer, default=0)
    records_retried = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    records_reclaimed = Column(Integer, default=0)
    messages_sent = Column(Integer, default=0)

    # Error tracking
    error_message = Column(Text, nullable=True)

    run_metadata = Column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("idx_worker_run_type_started", "run_type", "started_at"),
    )
