"""
Extractor collaborators: turn an extraction request into structured data.

OpenAIVoteExtractor reads a roll-call vote sheet and asks an
OpenAI-compatible chat completions endpoint for a VoteTally constrained by
a strict JSON schema. A reply whose totals disagree with its member votes
gets one more pass with the validation problems as feedback; a second
failure is a permanent ``malformed_document``.
"""

from abc import ABC, abstractmethod
from collections import Counter
from typing import List, Optional
import json
import httpx
from schemas.events import ExtractionRequest, VoteTally, totals_from_member_votes, VOTE_CHOICES
from jobs.outcomes import ExtractionResult, Failure
from jobs.http import classify_response, classify_transport_error
from core.config import settings
from core.exceptions import QueueException, AuthenticationError, MalformedDocumentError
import logging

logger = logging.getLogger(__name__)

VOTE_TALLY_JSON_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["date", "vote_type", "result", "details", "totals", "member_votes"],
    "properties": {
        "date": {"type": "string", "description": "Vote date, YYYY-MM-DD"},
        "vote_type": {"type": "string", "enum": ["committee", "floor"]},
        "result": {"type": "string"},
        "details": {"type": "string"},
        "totals": {
            "type": "object",
            "additionalProperties": False,
            "required": ["yeas", "nays", "not_voting", "excused", "absent"],
            "properties": {
                "yeas": {"type": "integer"},
                "nays": {"type": "integer"},
                "not_voting": {"type": "integer"},
                "excused": {"type": "integer"},
                "absent": {"type": "integer"},
            },
        },
        "member_votes": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "required": ["member_name", "vote", "legislator_id"],
                "properties": {
                    "member_name": {"type": "string"},
                    "vote": {"type": "string", "enum": list(VOTE_CHOICES)},
                    "legislator_id": {"type": ["integer", "null"]},
                },
            },
        },
    },
}

SYSTEM_INSTRUCTIONS = "\n".join([
    "You extract roll-call votes from legislative vote sheets.",
    "totals MUST match the totals printed on the sheet exactly.",
    "Output exactly one member_votes entry per name listed under a vote heading; no duplicates.",
    "Mapping: Yea => 'yes', Nay => 'no', Not Voting => 'not_voting', Excused => 'excused', Absent => 'absent'.",
    "Set details to an empty string unless there is a short, important note.",
    "Return JSON only, matching the provided schema exactly.",
])


def validate_tally(tally: VoteTally) -> List[str]:
    """Consistency problems in a parsed tally (empty when it is usable)"""
    problems = []
    if tally.member_votes:
        computed = totals_from_member_votes(tally.member_votes)
        if computed != tally.totals:
            problems.append(
                f"totals {tally.totals.model_dump()} do not match member votes {computed.model_dump()}"
            )

    names = Counter(mv.member_name.strip().lower() for mv in tally.member_votes)
    duplicates = sorted(name for name, count in names.items() if count > 1)
    if duplicates:
        problems.append(f"duplicate members: {', '.join(duplicates[:10])}")

    ids = Counter(mv.legislator_id for mv in tally.member_votes if mv.legislator_id is not None)
    duplicate_ids = sorted(i for i, count in ids.items() if count > 1)
    if duplicate_ids:
        problems.append(f"duplicate legislator ids: {duplicate_ids[:10]}")
    return problems


class Extractor(ABC):
    """
    Parse the document behind an extraction request.

    Implementations return ExtractionResult.failed(Failure) rather than
    raising for document or provider problems.
    """

    @abstractmethod
    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        pass


class OpenAIVoteExtractor(Extractor):
    """Vote-sheet parser backed by an OpenAI-compatible chat completions API"""

    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_document_chars: Optional[int] = None
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.OPENAI_MODEL
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT_SECONDS
        self.max_document_chars = max_document_chars or settings.EXTRACTION_MAX_DOCUMENT_CHARS

    async def extract(self, request: ExtractionRequest) -> ExtractionResult:
        if not self.api_key:
            return ExtractionResult.failed(Failure.from_exception(
                AuthenticationError("OPENAI_API_KEY is not configured", context={"provider": self.provider})
            ))

        url = request.document_url
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                document_text = await self._fetch_document(client, request)
                url = f"{self.base_url}/chat/completions"

                tally = await self._parse(client, request, document_text)
                problems = validate_tally(tally)
                if problems:
                    logger.warning(
                        f"Vote tally for {request.document_url} failed validation, retrying with feedback: "
                        f"{'; '.join(problems)}"
                    )
                    tally = await self._parse(client, request, document_text, feedback=problems)
                    problems = validate_tally(tally)
                    if problems:
                        raise MalformedDocumentError(
                            "Vote tally failed validation twice",
                            context={"document_url": request.document_url, "reason": "; ".join(problems)}
                        )

        except QueueException as e:
            logger.warning(
                f"Extraction failed for {request.document_url}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            return ExtractionResult.failed(Failure.from_exception(e))

        except (httpx.TimeoutException, httpx.TransportError) as e:
            error = classify_transport_error(e, self.provider, url)
            logger.warning(f"Extraction failed for {request.document_url}: {error.message}")
            return ExtractionResult.failed(Failure.from_exception(error))

        logger.info(
            f"Extracted vote tally for {request.document_url}: {tally.result} "
            f"({len(tally.member_votes)} member votes)"
        )
        return ExtractionResult.parsed(tally.model_dump(mode="json"))

    async def _fetch_document(self, client: httpx.AsyncClient, request: ExtractionRequest) -> str:
        response = await client.get(request.document_url)
        error = classify_response(response, "document", request.document_url)
        if error is not None:
            raise error

        text = (response.text or "").strip()
        if not text:
            raise MalformedDocumentError(
                "Document is empty",
                context={"document_url": request.document_url, "reason": "empty body"}
            )
        if len(text) > self.max_document_chars:
            logger.debug(f"Truncating {request.document_url} from {len(text)} to {self.max_document_chars} chars")
            text = text[: self.max_document_chars]
        return text

    def _build_messages(
        self,
        request: ExtractionRequest,
        document_text: str,
        feedback: Optional[List[str]]
    ) -> List[dict]:
        prompt = "\n".join([
            f"Bill: {request.bill_number or 'UNKNOWN'}",
            f"Chamber: {request.chamber.name if request.chamber else 'UNKNOWN'}",
            f"Vote type: {request.vote_type}",
            "",
            "Vote sheet:",
            document_text,
        ])
        if feedback:
            prompt += "\n\nVALIDATION FEEDBACK:\n" + "\n".join(f"- {p}" for p in feedback)
        return [
            {"role": "system", "content": SYSTEM_INSTRUCTIONS},
            {"role": "user", "content": prompt},
        ]

    async def _parse(
        self,
        client: httpx.AsyncClient,
        request: ExtractionRequest,
        document_text: str,
        feedback: Optional[List[str]] = None
    ) -> VoteTally:
        url = f"{self.base_url}/chat/completions"
        response = await client.post(
            url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "temperature": 0,
                "messages": self._build_messages(request, document_text, feedback),
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": "vote_tally", "strict": True, "schema": VOTE_TALLY_JSON_SCHEMA},
                },
            }
        )
        error = classify_response(response, self.provider, url)
        if error is not None:
            raise error

        try:
            message = response.json()["choices"][0]["message"]
            if message.get("refusal"):
                raise ValueError(f"model refused: {message['refusal']}")
            return VoteTally.model_validate(json.loads(message["content"]))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MalformedDocumentError(
                "Model reply is not a valid vote tally",
                context={"document_url": request.document_url, "reason": str(e)[:500]},
                original_exception=e
            )
