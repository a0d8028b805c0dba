"""initial queue schema

Revision ID: 0001
Revises:
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

job_kind = sa.Enum("CHANGE_EVENT", "EXTRACTION_REQUEST", name="jobkind")
job_status = sa.Enum("PENDING", "PROCESSING", "DONE", "FAILED", name="jobstatus")
delivery_status = sa.Enum("QUEUED", "SENT", "FAILED", name="deliverystatus")
send_mode = sa.Enum("INSTANT", "DIGEST", name="sendmode")
delivery_channel = sa.Enum("EMAIL", "SMS", "WEBHOOK", "PUSH", name="deliverychannel")
digest_cadence = sa.Enum("HOURLY", "DAILY", "WEEKLY", name="digestcadence")
chamber = sa.Enum("SENATE", "HOUSE", "JOINT", name="chamber")
event_type = sa.Enum(
    "BILL_STATUS_CHANGED", "BILL_INTRODUCED", "BILL_NEW_ACTION", "BILL_ADDED_TO_CALENDAR",
    "BILL_REMOVED_FROM_CALENDAR", "COMMITTEE_REFERRAL", "COMMITTEE_VOTE_RECORDED",
    "HEARING_SCHEDULED", "HEARING_CHANGED", "HEARING_CANCELED", "CALENDAR_PUBLISHED",
    "CALENDAR_UPDATED",
    name="eventtype"
)
run_type = sa.Enum("WORKER", "REAPER", "DIGEST", name="runtype")
run_status = sa.Enum("RUNNING", "SUCCESS", "PARTIAL", "FAILED", name="runstatus")

json_type = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade():
    op.create_table(
        "source_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("kind", job_kind, nullable=False),
        sa.Column("payload_ref", sa.String(255), nullable=False),
        sa.Column("payload", json_type, nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_code", sa.String(100), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("result", json_type, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("kind", "payload_ref", name="uq_source_record_kind_ref"),
        sa.CheckConstraint(
            "status != 'PROCESSING' OR (lease_owner IS NOT NULL AND lease_expires_at IS NOT NULL)",
            name="ck_source_record_lease_when_processing",
        ),
    )
    op.create_index("ix_source_records_kind", "source_records", ["kind"])
    op.create_index("idx_source_record_claim", "source_records", ["status", "next_attempt_at"])
    op.create_index("idx_source_record_lease", "source_records", ["status", "lease_expires_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.Column("bill_number", sa.String(50), nullable=True),
        sa.Column("committee_id", sa.Integer(), nullable=True),
        sa.Column("chamber", chamber, nullable=True),
        sa.Column("subject", sa.String(200), nullable=True),
        sa.Column("event_type_filter", event_type, nullable=True),
        sa.Column("delivery_channel", delivery_channel, nullable=False),
        sa.Column("target", sa.String(500), nullable=False),
        sa.Column("send_mode", send_mode, nullable=False),
        sa.Column("digest_cadence", digest_cadence, nullable=True),
        sa.Column("digest_time", sa.String(5), nullable=True),
        sa.Column("digest_day", sa.String(10), nullable=True),
        sa.Column("last_triggered_at", sa.DateTime(), nullable=True),
        sa.Column("digest_lease_owner", sa.String(255), nullable=True),
        sa.Column("digest_lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("idx_subscription_active_mode", "subscriptions", ["active", "send_mode"])

    op.create_table(
        "delivery_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("subscription_id", sa.BigInteger(), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("source_record_id", sa.BigInteger(), sa.ForeignKey("source_records.id"), nullable=False),
        sa.Column("status", delivery_status, nullable=False),
        sa.Column("send_mode", send_mode, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("retryable", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("subscription_id", "source_record_id", name="uq_delivery_subscription_source"),
    )
    op.create_index("ix_delivery_records_source_record_id", "delivery_records", ["source_record_id"])
    op.create_index("idx_delivery_status_created", "delivery_records", ["status", "created_at"])
    op.create_index("idx_delivery_subscription_status", "delivery_records", ["subscription_id", "status"])

    op.create_table(
        "worker_runs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("run_type", run_type, nullable=False),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("status", run_status, nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("records_claimed", sa.Integer(), nullable=True),
        sa.Column("records_succeeded", sa.Integer(), nullable=True),
        sa.Column("records_retried", sa.Integer(), nullable=True),
        sa.Column("records_failed", sa.Integer(), nullable=True),
        sa.Column("records_reclaimed", sa.Integer(), nullable=True),
        sa.Column("messages_sent", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", json_type, nullable=True),
    )
    op.create_index("ix_worker_runs_run_id", "worker_runs", ["run_id"], unique=True)
    op.create_index("ix_worker_runs_run_type", "worker_runs", ["run_type"])
    op.create_index("ix_worker_runs_status", "worker_runs", ["status"])
    op.create_index("ix_worker_runs_started_at", "worker_runs", ["started_at"])
    op.create_index("idx_worker_run_type_started", "worker_runs", ["run_type", "started_at"])


def downgrade():
    op.drop_table("worker_runs")
    op.drop_table("delivery_records")
    op.drop_table("subscriptions")
    op.drop_table("source_records")

    bind = op.get_bind()
    for enum_type in (
        run_status, run_type, event_type, chamber, digest_cadence,
        delivery_channel, send_mode, delivery_status, job_status, job_kind
    ):
        enum_type.drop(bind, checkfirst=True)
