"""
Strategy interface for the "what happens during PROCESSING" step.

The state machine is shared by every job kind; a handler only decides the
outcome of one pass over one leased record.
"""

from abc import ABC, abstractmethod
from typing import Type, TypeVar
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from models.source_record import SourceRecord
from models.base import JobKind
from jobs.outcomes import JobOutcome
from core.exceptions import InvalidPayloadError

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def validate_payload(schema: Type[PayloadT], record: SourceRecord) -> PayloadT:
    """Parse a record's payload, raising InvalidPayloadError when it does not fit the schema"""
    try:
        return schema.model_validate(record.payload or {})
    except ValidationError as e:
        raise InvalidPayloadError(
            str(e),
            context={
                "record_id": record.id,
                "kind": record.kind.value if record.kind else None,
                "field_errors": e.error_count(),
            },
            original_exception=e
        )


class JobHandler(ABC):
    """
    Process one leased source record.

    Handlers return a JobOutcome for expected failures. Anything they raise
    is translated by the worker through Failure.from_exception.
    """

    kind: JobKind

    @abstractmethod
    async def handle(self, session: AsyncSession, record: SourceRecord) -> JobOutcome:
        pass
