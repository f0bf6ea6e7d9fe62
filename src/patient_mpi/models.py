"""MPI Data Models"""
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

MATCH_ALGORITHM_VERSION = "v1.0-jaro-soundex"


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.utcnow()


def _iso_date(value: Any) -> str | None:
    """Canonical YYYY-MM-DD; anything that is not an ISO calendar date is rejected."""
    if value is None:
        return None
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        raise ValueError("date_of_birth must be an ISO date string")
    value = value.strip()
    if not value:
        return None
    try:
        return date.fromisoformat(value).isoformat()
    except ValueError:
        raise ValueError("date_of_birth must be an ISO date (YYYY-MM-DD)") from None


IsoDate = Annotated[str | None, BeforeValidator(_iso_date)]


class MatchStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    CONFIRMED_MATCH = "confirmed_match"
    CONFIRMED_NOT_MATCH = "confirmed_not_match"
    DEFERRED = "deferred"
    MERGED = "merged"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Sort rank, higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class ReviewDecision(str, Enum):
    MERGE = "merge"
    NOT_MATCH = "not_match"
    DEFER = "defer"


class PatientDemographics(BaseModel):
    """Raw demographics as captured at intake, before normalization."""

    model_config = ConfigDict(extra="forbid")

    first_name: str
    last_name: str
    middle_name: str | None = None
    date_of_birth: IsoDate = None
    gender: str | None = None
    ssn_last_four: str | None = Field(default=None, pattern=r"^\d{4}$")
    phone: str | None = None
    email: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    mrn: str | None = None
    mrn_assigning_authority: str | None = None


class IdentityRecord(BaseModel):
    """
    Normalized identity for one patient within one tenant.

    At most one active record exists per (patient_id, tenant_id).
    """

    id: str = Field(default_factory=_new_id)
    patient_id: str
    tenant_id: str
    enterprise_mpi_id: str | None = None

    # Names
    first_name_normalized: str | None = None
    last_name_normalized: str | None = None
    middle_name_normalized: str | None = None
    first_name_soundex: str | None = None
    last_name_soundex: str | None = None

    # Demographics
    date_of_birth: IsoDate = None
    gender: str | None = None
    ssn_last_four: str | None = None

    # Contact
    phone_normalized: str | None = None
    email_normalized: str | None = None
    address_normalized: str | None = None
    city_normalized: str | None = None
    state: str | None = None
    zip_code: str | None = None

    # Medical identifiers
    mrn: str | None = None
    mrn_assigning_authority: str | None = None

    # Identity confidence
    identity_confidence_score: float = 100.0
    identity_verified_at: datetime | None = None
    identity_verified_by: str | None = None
    verification_method: str | None = None

    # Matching metadata
    match_hash: str | None = None
    last_matched_at: datetime | None = None
    match_count: int = 0

    is_golden_record: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class MatchCandidate(BaseModel):
    """A potential duplicate pair awaiting (or past) human review."""

    id: str = Field(default_factory=_new_id)
    patient_id_a: str
    patient_id_b: str
    identity_record_a: str
    identity_record_b: str
    tenant_id: str

    overall_match_score: float
    match_algorithm_version: str = MATCH_ALGORITHM_VERSION
    field_scores: dict[str, float] = Field(default_factory=dict)
    matching_fields_used: list[str] = Field(default_factory=list)
    blocking_key: str | None = None

    status: MatchStatus = MatchStatus.PENDING
    priority: Priority = Priority.NORMAL

    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    review_decision: ReviewDecision | None = None
    review_notes: str | None = None

    auto_match_eligible: bool = False
    auto_match_blocked_reason: str | None = None

    detected_at: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def pair(self) -> tuple[str, str]:
        return (self.patient_id_a, self.patient_id_b)


class MatchSearchCriteria(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: IsoDate = None
    phone: str | None = None
    mrn: str | None = None
    min_score: float | None = None

    def present_fields(self) -> list[str]:
        """Names of the criteria that carry a value (no values, no PHI)."""
        data = self.model_dump(exclude={"min_score"})
        return [k for k, v in data.items() if v]


class MPISearchOptions(BaseModel):
    tenant_id: str
    limit: int = Field(default=100, gt=0)
    offset: int = Field(default=0, ge=0)
    include_inactive: bool = False


class MatchResult(BaseModel):
    patient_id: str
    identity_record_id: str
    overall_score: float
    field_scores: dict[str, float] = Field(default_factory=dict)
    matched_fields: list[str] = Field(default_factory=list)
    is_auto_match_eligible: bool = False
    blocking_key: str | None = None


class DetectionSummary(BaseModel):
    matches_found: int = 0
    candidates_created: int = 0
    candidates_failed: int = 0


class BatchDetectionSummary(BaseModel):
    patients_processed: int = 0
    patients_failed: int = 0
    matches_found: int = 0
    candidates_created: int = 0
    candidates_failed: int = 0
    failed_patient_ids: list[str] = Field(default_factory=list)


class CandidateStats(BaseModel):
    total: int = 0
    pending: int = 0
    under_review: int = 0
    merged: int = 0
    confirmed_not_match: int = 0
    high_priority: int = 0
    urgent_priority: int = 0
