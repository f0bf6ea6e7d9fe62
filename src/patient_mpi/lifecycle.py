"""
Match Candidate Lifecycle

State machine for the duplicate review queue:

    pending ──> under_review ──> confirmed_match ──> merged
       │             │      └──> confirmed_not_match
       │             └─────────> deferred ──> under_review
       └──> (reviewer decision directly from pending)

Only a reviewer decision moves a candidate out of pending/under_review.
"""

from dataclasses import dataclass
from datetime import datetime

from patient_mpi.config import MatchingConfig
from patient_mpi.models import (
    MatchCandidate,
    MatchResult,
    MatchStatus,
    Priority,
    ReviewDecision,
)

URGENT_SCORE = 98.0
HIGH_SCORE = 95.0

REVIEW_DECISIONS = frozenset({
    MatchStatus.CONFIRMED_MATCH,
    MatchStatus.CONFIRMED_NOT_MATCH,
    MatchStatus.DEFERRED,
})

_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.PENDING: frozenset({MatchStatus.UNDER_REVIEW}) | REVIEW_DECISIONS,
    MatchStatus.UNDER_REVIEW: REVIEW_DECISIONS,
    MatchStatus.DEFERRED: frozenset({MatchStatus.UNDER_REVIEW}) | REVIEW_DECISIONS,
    MatchStatus.CONFIRMED_MATCH: frozenset({MatchStatus.MERGED}),
    MatchStatus.CONFIRMED_NOT_MATCH: frozenset(),
    MatchStatus.MERGED: frozenset(),
}

_DECISION_FOR_STATUS = {
    MatchStatus.CONFIRMED_MATCH: ReviewDecision.MERGE,
    MatchStatus.CONFIRMED_NOT_MATCH: ReviewDecision.NOT_MATCH,
    MatchStatus.DEFERRED: ReviewDecision.DEFER,
}


class InvalidTransition(Exception):
    """Raised when a candidate cannot move from its current status."""

    def __init__(self, current: MatchStatus, target: MatchStatus):
        super().__init__(f"cannot move candidate from {current.value} to {target.value}")
        self.current = current
        self.target = target


def can_transition(current: MatchStatus, target: MatchStatus) -> bool:
    return target in _TRANSITIONS[current]


def check_transition(current: MatchStatus, target: MatchStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(current, target)


def review_decision_for(status: MatchStatus) -> ReviewDecision:
    """Normalized decision recorded alongside a reviewer's status choice."""
    try:
        return _DECISION_FOR_STATUS[status]
    except KeyError:
        raise ValueError(f"{status.value} is not a review decision") from None


def assign_priority(score: float, default: Priority = Priority.NORMAL) -> Priority:
    if score >= URGENT_SCORE:
        return Priority.URGENT
    if score >= HIGH_SCORE:
        return Priority.HIGH
    return default


DAILY_LIMIT_REACHED = "daily_auto_merge_limit_reached"


@dataclass(frozen=True)
class AutoMergeLimit:
    """Daily cap on candidates cleared for automatic merge, checked by the store on write."""
    max_per_day: int
    since: datetime


def auto_merge_block_reason(config: MatchingConfig | None, match: MatchResult) -> str | None:
    """
    Why an auto-match eligible candidate may not be merged automatically.

    None means the candidate is cleared unless the daily cap, enforced
    atomically by the repository, says otherwise.
    """
    if not match.is_auto_match_eligible:
        return None
    if config is None or not config.auto_merge_enabled:
        return "auto_merge_disabled"
    if config.auto_merge_requires_mrn_match and "mrn" not in match.matched_fields:
        return "mrn_match_required"
    return None


def is_cleared_for_auto_merge(candidate: MatchCandidate) -> bool:
    return candidate.auto_match_eligible and candidate.auto_match_blocked_reason is None


def enforce_daily_limit(
    candidate: MatchCandidate,
    already_cleared: bool,
    cleared_today: int,
    max_per_day: int,
) -> MatchCandidate:
    """
    Apply the daily auto-merge cap to a candidate about to be written.

    ``cleared_today`` counts other pairs of the tenant cleared since the
    start of the day. A pair that is already cleared keeps its slot, so
    re-detecting it from the other side never consumes a second one.
    """
    if not is_cleared_for_auto_merge(candidate) or already_cleared:
        return candidate
    if cleared_today >= max_per_day:
        return candidate.model_copy(update={"auto_match_blocked_reason": DAILY_LIMIT_REACHED})
    return candidate


@dataclass(frozen=True)
class CanonicalPair:
    patient_id_a: str
    patient_id_b: str
    identity_record_a: str
    identity_record_b: str


def canonical_pair(
    patient_id_x: str,
    patient_id_y: str,
    identity_record_x: str,
    identity_record_y: str,
) -> CanonicalPair:
    """
    Order a pair so ``a`` is the lexicographically smaller patient id.

    The unordered pair {x, y} always maps to one stored row, whichever
    side discovered the other.
    """
    if patient_id_x == patient_id_y:
        raise ValueError("a patient cannot be a match candidate of itself")
    if patient_id_x < patient_id_y:
        return CanonicalPair(patient_id_x, patient_id_y, identity_record_x, identity_record_y)
    return CanonicalPair(patient_id_y, patient_id_x, identity_record_y, identity_record_x)


def build_candidate(
    pair: CanonicalPair,
    tenant_id: str,
    match: MatchResult,
    priority: Priority,
    blocked_reason: str | None = None,
) -> MatchCandidate:
    return MatchCandidate(
        patient_id_a=pair.patient_id_a,
        patient_id_b=pair.patient_id_b,
        identity_record_a=pair.identity_record_a,
        identity_record_b=pair.identity_record_b,
        tenant_id=tenant_id,
        overall_match_score=match.overall_score,
        field_scores=match.field_scores,
        matching_fields_used=match.matched_fields,
        blocking_key=match.blocking_key,
        status=MatchStatus.PENDING,
        priority=priority,
        auto_match_eligible=match.is_auto_match_eligible,
        auto_match_blocked_reason=blocked_reason if match.is_auto_match_eligible else None,
    )


def merge_rescored(existing: MatchCandidate, fresh: MatchCandidate) -> MatchCandidate:
    """
    Fold a re-detection into an existing row.

    Scores and eligibility are refreshed; id, status, review fields and
    ``detected_at`` stay as they were so a reviewed pair is not reopened.
    """
    return existing.model_copy(update={
        "identity_record_a": fresh.identity_record_a,
        "identity_record_b": fresh.identity_record_b,
        "overall_match_score": fresh.overall_match_score,
        "match_algorithm_version": fresh.match_algorithm_version,
        "field_scores": fresh.field_scores,
        "matching_fields_used": fresh.matching_fields_used,
        "blocking_key": fresh.blocking_key,
        "priority": fresh.priority,
        "auto_match_eligible": fresh.auto_match_eligible,
        "auto_match_blocked_reason": fresh.auto_match_blocked_reason,
        "updated_at": datetime.utcnow(),
    })


def apply_review(
    candidate: MatchCandidate,
    reviewer_id: str,
    decision: MatchStatus,
    notes: str | None = None,
) -> MatchCandidate:
    if decision not in REVIEW_DECISIONS:
        raise ValueError(f"{decision.value} is not a review decision")
    check_transition(candidate.status, decision)
    now = datetime.utcnow()
    return candidate.model_copy(update={
        "status": decision,
        "reviewed_by": reviewer_id,
        "reviewed_at": now,
        "review_decision": review_decision_for(decision),
        "review_notes": notes,
        "updated_at": now,
    })


def apply_status(candidate: MatchCandidate, target: MatchStatus) -> MatchCandidate:
    """Non-review transitions (start review, mark merged)."""
    check_transition(candidate.status, target)
    return candidate.model_copy(update={"status": target, "updated_at": datetime.utcnow()})
