from sqlalchemy import Column, BigInteger, String, Integer, Boolean, Enum, DateTime, Text, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from models.base import Base, BigIntPK, DeliveryStatus, SendMode
from core.clock import utcnow


class DeliveryRecord(Base):
    """
    Idempotency ledger: one row per (subscription, change event), ever.

    Purpose:
    - The unique pair is the only de-duplication mechanism; re-running the
      matching step on retry re-derives the same pairs and finds the rows
      already there
    - Tracks per-delivery retry budget independently of the parent job

    Lifecycle:
    - Created QUEUED on first match, then moves to SENT or FAILED
    - Never deleted; FAILED rows with retryable=True are attempted again on
      the parent's next pass while attempts < MAX_DELIVERY_ATTEMPTS
    """
    __tablename__ = "delivery_records"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    subscription_id = Column(BigInteger, ForeignKey("subscriptions.id"), nullable=False)
    source_record_id = Column(BigInteger, ForeignKey("source_records.id"), nullable=False, index=True)

    status = Column(Enum(DeliveryStatus), default=DeliveryStatus.QUEUED, nullable=False)
    send_mode = Column(Enum(SendMode), default=SendMode.INSTANT, nullable=False)

    # Retry tracking
    attempts = Column(Integer, default=0, nullable=False)
    retryable = Column(Boolean, default=True, nullable=False)
    error = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    provider_message_id = Column(String(255), nullable=True)
    sent_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="deliveries")
    source_record = relationship("SourceRecord", back_populates="deliveries")

    __table_args__ = (
        UniqueConstraint("subscription_id", "source_record_id", name="uq_delivery_subscription_source"),
        Index("idx_delivery_status_created", "status", "created_at"),
        Index("idx_delivery_subscription_status", "subscription_id", "status"),
    )
