from sqlalchemy import BigInteger, Integer, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# BIGINT primary keys only autoincrement on SQLite as INTEGER
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


# ============================================================================
# ENUMS
# ============================================================================

class JobKind(str, enum.Enum):
    """Discriminator for source records sharing the job table"""
    CHANGE_EVENT = "change_event"
    EXTRACTION_REQUEST = "extraction_request"


class JobStatus(str, enum.Enum):
    """Job lifecycle status"""
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class DeliveryStatus(str, enum.Enum):
    """Delivery ledger row status"""
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class DeliveryChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    PUSH = "push"


class SendMode(str, enum.Enum):
    """Immediate send vs. batched into a digest"""
    INSTANT = "instant"
    DIGEST = "digest"


class DigestCadence(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class Chamber(str, enum.Enum):
    SENATE = "senate"
    HOUSE = "house"
    JOINT = "joint"


class EventType(str, enum.Enum):
    """Legislative change event types"""
    BILL_STATUS_CHANGED = "bill_status_changed"
    BILL_INTRODUCED = "bill_introduced"
    BILL_NEW_ACTION = "bill_new_action"
    BILL_ADDED_TO_CALENDAR = "bill_added_to_calendar"
    BILL_REMOVED_FROM_CALENDAR = "bill_removed_from_calendar"
    COMMITTEE_REFERRAL = "committee_referral"
    COMMITTEE_VOTE_RECORDED = "committee_vote_recorded"
    HEARING_SCHEDULED = "hearing_scheduled"
    HEARING_CHANGED = "hearing_changed"
    HEARING_CANCELED = "hearing_canceled"
    CALENDAR_PUBLISHED = "calendar_published"
    CALENDAR_UPDATED = "calendar_updated"


class RunType(str, enum.Enum):
    """Background sweep kinds recorded in worker_runs"""
    WORKER = "worker"
    REAPER = "reaper"
    DIGEST = "digest"


class RunStatus(str, enum.Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
