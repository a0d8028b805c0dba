"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, portable column types and shared enums
    source_record: Job table shared by change events and extraction requests
    subscription: User alert rules (read-only to the queue)
    delivery: Delivery ledger, one row per (subscription, event)
    worker_run: Background sweep tracking and metrics

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL; big-integer keys degrade to INTEGER on SQLite so
    the same metadata can be created in the test database.

Usage:
    from models import SourceRecord, Subscription, DeliveryRecord, WorkerRun
    from models.base import JobKind, JobStatus

Example:
    # Ingest a change event
    record = SourceRecord(
        kind=JobKind.CHANGE_EVENT,
        payload_ref="bill_event:1234",
        payload={"event_type": "bill_status_changed", "bill_number": "HB0001"}
    )
    session.add(record)
    await session.commit()

Relationships:
    - SourceRecord → DeliveryRecord (one-to-many, change events only)
    - Subscription → DeliveryRecord (one-to-many)
"""

from models.base import Base
from models.source_record import SourceRecord
from models.subscription import Subscription
from models.delivery import DeliveryRecord
from models.worker_run import WorkerRun

__all__ = [
    "Base",
    "SourceRecord",
    "Subscription",
    "DeliveryRecord",
    "WorkerRun",
]
