from sqlalchemy import Column, String, Integer, Boolean, Enum, DateTime, Index
from sqlalchemy.orm import relationship
from models.base import Base, BigIntPK, JSONType, Chamber, EventType, DeliveryChannel, SendMode, DigestCadence
from core.clock import utcnow


class Subscription(Base):
    """
    A standing alert rule owned by an end user.

    Predicate fields are all optional; every non-null one must match the
    event. A subscription with no criteria matches all activity.

    Created and edited through the user-facing app. The queue stamps
    last_triggered_at when something is sent and holds the digest lease
    while one dispatcher sends the digest.
    """
    __tablename__ = "subscriptions"

    id = Column(BigIntPK, primary_key=True, autoincrement=True)

    # Owner
    user_id = Column(String(255), nullable=True, index=True)
    active = Column(Boolean, default=True, nullable=False)

    # Match predicate
    bill_number = Column(String(50), nullable=True)
    committee_id = Column(Integer, nullable=True)
    chamber = Column(Enum(Chamber), nullable=True)
    subject = Column(String(200), nullable=True)
    event_type_filter = Column(Enum(EventType), nullable=True)

    # Delivery
    delivery_channel = Column(Enum(DeliveryChannel), default=DeliveryChannel.EMAIL, nullable=False)
    target = Column(String(500), nullable=False)  # email address, phone number or webhook URL
    send_mode = Column(Enum(SendMode), default=SendMode.INSTANT, nullable=False)
    digest_cadence = Column(Enum(DigestCadence), nullable=True)
    digest_time = Column(String(5), nullable=True)  # "HH:MM" in DIGEST_TIMEZONE
    digest_day = Column(String(10), nullable=True)  # "monday" .. "sunday"
    last_triggered_at = Column(DateTime, nullable=True)

    # Digest lease: held by one dispatcher while it sends this subscription's digest
    digest_lease_owner = Column(String(255), nullable=True)
    digest_lease_expires_at = Column(DateTime, nullable=True)

    extra_metadata = Column("metadata", JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    deliveries = relationship("DeliveryRecord", back_populates="subscription")

    __table_args__ = (
        Index("idx_subscription_active_mode", "active", "send_mode"),
    )
