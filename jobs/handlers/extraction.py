"""
Extraction-request handler: the same queue substrate with a single
extractor call and no fan-out.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from models.source_record import SourceRecord
from models.base import JobKind
from schemas.events import ExtractionRequest
from jobs.handlers.base import JobHandler, validate_payload
from jobs.extractors import Extractor
from jobs.outcomes import Failure, JobOutcome
from core.exceptions import InvalidPayloadError


class ExtractionHandler(JobHandler):
    kind = JobKind.EXTRACTION_REQUEST

    def __init__(self, extractor: Extractor):
        self.extractor = extractor

    async def handle(self, session: AsyncSession, record: SourceRecord) -> JobOutcome:
        try:
            request = validate_payload(ExtractionRequest, record)
        except InvalidPayloadError as e:
            return JobOutcome.from_failure(Failure.from_exception(e))

        result = await self.extractor.extract(request)
        if result.ok:
            return JobOutcome.succeeded(result=result.data, extracted=1)
        return JobOutcome.from_failure(result.failure)
