"""
Pydantic schemas for source record payloads and extraction results
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import Chamber, EventType


class ChangeEvent(BaseModel):
    """
    Payload of a change-event source record.

    Written by the ingestion side (scrapers, JSON sync) and read by the
    matching engine and the notifiers.
    """

    event_type: EventType
    bill_number: Optional[str] = Field(None, max_length=50)
    bill_title: Optional[str] = None
    committee_id: Optional[int] = None
    committee_name: Optional[str] = None
    chamber: Optional[Chamber] = None
    subjects: List[str] = Field(default_factory=list)
    summary: str = ""
    event_time: Optional[datetime] = None
    is_flagged: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)

    @validator("bill_number")
    def normalize_bill_number(cls, v):
        """Bill numbers compare case-insensitively ("hb 1" == "HB1")"""
        if v is None:
            return v
        v = "".join(v.split()).upper()
        return v or None

    @validator("chamber", pre=True)
    def normalize_chamber(cls, v):
        if isinstance(v, str):
            return v.strip().lower() or None
        return v

    @validator("subjects", pre=True)
    def clean_subjects(cls, v):
        """Ensure subjects is a list of non-empty strings"""
        if v is None:
            return []
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        if isinstance(v, list):
            return [str(s).strip() for s in v if str(s).strip()]
        return []

    @validator("details", pre=True)
    def clean_details(cls, v):
        if not isinstance(v, dict):
            return {}
        return v


class ExtractionRequest(BaseModel):
    """Payload of an extraction-request source record (a scanned vote sheet)"""

    document_url: str = Field(..., min_length=1, max_length=2048)
    bill_number: Optional[str] = None
    action_id: Optional[int] = None
    chamber: Optional[Chamber] = None
    vote_type: str = "committee"

    @validator("vote_type")
    def validate_vote_type(cls, v):
        v = v.strip().lower()
        if v not in ("committee", "floor"):
            raise ValueError("vote_type must be 'committee' or 'floor'")
        return v

    @validator("document_url")
    def validate_document_url(cls, v):
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("document_url must be an http(s) URL")
        return v


# ============================================================================
# Vote Tally (extraction result)
# ============================================================================

VOTE_CHOICES = ("yes", "no", "not_voting", "excused", "absent")


class MemberVote(BaseModel):
    member_name: str = Field(..., min_length=1)
    vote: str
    legislator_id: Optional[int] = None

    @validator("vote", pre=True)
    def normalize_vote(cls, v):
        v = str(v).strip().lower().replace(" ", "_")
        aliases = {"yea": "yes", "y": "yes", "nay": "no", "n": "no", "notvoting": "not_voting", "nv": "not_voting"}
        v = aliases.get(v, v)
        if v not in VOTE_CHOICES:
            raise ValueError(f"vote must be one of: {', '.join(VOTE_CHOICES)}")
        return v


class VoteTotals(BaseModel):
    yeas: int = Field(0, ge=0)
    nays: int = Field(0, ge=0)
    not_voting: int = Field(0, ge=0)
    excused: int = Field(0, ge=0)
    absent: int = Field(0, ge=0)


def totals_from_member_votes(member_votes: List[MemberVote]) -> VoteTotals:
    counts = {"yes": 0, "no": 0, "not_voting": 0, "excused": 0, "absent": 0}
    for member_vote in member_votes:
        counts[member_vote.vote] += 1
    return VoteTotals(
        yeas=counts["yes"],
        nays=counts["no"],
        not_voting=counts["not_voting"],
        excused=counts["excused"],
        absent=counts["absent"],
    )


class VoteTally(BaseModel):
    """
    Structured result of parsing a committee or floor vote sheet.

    When the sheet has no totals row, totals are computed from the
    member votes.
    """

    date: str
    vote_type: str
    result: str = Field(..., min_length=1)
    details: str = ""
    member_votes: List[MemberVote] = Field(default_factory=list)
    totals: Optional[VoteTotals] = None

    @validator("totals", pre=True, always=True)
    def fill_totals(cls, v, values):
        if v is None:
            return totals_from_member_votes(values.get("member_votes") or [])
        return v
