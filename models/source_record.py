from sqlalchemy import Column, String, Integer, Enum, DateTime, Text, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from models.base import Base, BigIntPK, JSONType, JobKind, JobStatus
from core.clock import utcnow


class SourceRecord(Base):
    """
    A unit of asynchronous work.

    Purpose:
    - Change events (bill status changes, calendars, hearings) awaiting
      subscriber notification
    - Extraction requests (scanned vote sheets) awaiting parsing

    Design:
    - The ingestion side owns the row and its payload; the queue only
      mutates the job-control columns (status, attempts, lease_*, next_attempt_at,
      last_error*, processed_at, result)
    - status = PROCESSING implies lease_owner and lease_expires_at are set
    - attempts counts PROCESSING entries and only increases, except through
      an operator requeue with reset
    """
    __tablename__ = "source_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Work identification
    kind = Column(Enum(JobKind), nullable=False, index=True)
    payload_ref = Column(String(255), nullable=False)  # "bill_event:1234", "vote_sheet:HB0001/77"
    payload = Column(JSONType, nullable=True)  # Snapshot of the domain object

    # Job control
    status = Column(Enum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    lease_owner = Column(String(255), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=False, default=utcnow)

    # Outcome
    last_error = Column(Text, nullable=True)
    last_error_code = Column(String(100), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    result = Column(JSONType, nullable=True)  # Structured extraction output

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    deliveries = relationship("DeliveryRecord", back_populates="source_record")

    __table_args__ = (
        UniqueConstraint("kind", "payload_ref", name="uq_source_record_kind_ref"),
        Index("idx_source_record_claim", "status", "next_attempt_at"),
        Index("idx_source_record_lease", "status", "lease_expires_at"),
        CheckConstraint(
            "status != 'PROCESSING' OR (lease_owner IS NOT NULL AND lease_expires_at IS NOT NULL)",
            name="ck_source_record_lease_when_processing",
        ),
    )

    def __repr__(self) -> str:
        return f"<SourceRecord id={self.id} kind={self.kind} status={self.status} attempts={self.attempts}>"
