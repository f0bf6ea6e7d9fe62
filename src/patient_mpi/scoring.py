"""Probabilistic Patient Matching - weighted field scoring"""
from dataclasses import dataclass, field
from typing import Iterable

import structlog

from patient_mpi.blocking import BlockingFilter, blocking_key_label
from patient_mpi.config import (
    DEFAULT_AUTO_MERGE_THRESHOLD,
    DEFAULT_MIN_SCORE,
    FieldWeights,
    MatchingConfig,
)
from patient_mpi.models import IdentityRecord, MatchResult, MatchSearchCriteria
from patient_mpi.normalize import normalize_name, normalize_phone
from patient_mpi.similarity import jaro_winkler_similarity

logger = structlog.get_logger(__name__)

NAME_MATCH_THRESHOLD = 85.0
ADDRESS_MATCH_THRESHOLD = 80.0


@dataclass
class FieldComparison:
    """Per-field scores and the running weighted totals."""
    field_scores: dict[str, float] = field(default_factory=dict)
    matched_fields: list[str] = field(default_factory=list)
    total_score: float = 0.0
    total_weight: float = 0.0
    dob_mismatch: bool = False

    def add(self, name: str, score: float, weight: float, matched: bool) -> None:
        self.field_scores[name] = score
        self.total_score += score * weight
        self.total_weight += weight
        if matched:
            self.matched_fields.append(name)

    @property
    def overall_score(self) -> float:
        if self.total_weight <= 0:
            return 0.0
        return self.total_score / self.total_weight


class WeightedMatchScorer:
    """
    Combines per-field similarity into one 0-100 confidence score.

    Names use Jaro-Winkler x 100; DOB, phone, SSN and MRN are exact
    (100 or 0). Each compared field contributes ``score * weight``; the
    overall score is the weighted mean over fields present on both sides.
    """

    def __init__(
        self,
        weights: FieldWeights | None = None,
        auto_merge_threshold: float = DEFAULT_AUTO_MERGE_THRESHOLD,
        name_match_threshold: float = NAME_MATCH_THRESHOLD,
        use_jaro_winkler: bool = True,
        require_dob_match: bool = False,
    ):
        self.weights = weights or FieldWeights()
        self.auto_merge_threshold = auto_merge_threshold
        self.name_match_threshold = name_match_threshold
        self.use_jaro_winkler = use_jaro_winkler
        self.require_dob_match = require_dob_match

    @classmethod
    def from_config(cls, config: MatchingConfig | None) -> "WeightedMatchScorer":
        """Scorer for a tenant; module defaults when it has no config."""
        if config is None:
            return cls()
        return cls(
            weights=config.field_weights,
            auto_merge_threshold=config.auto_merge_threshold,
            name_match_threshold=round(config.jaro_winkler_threshold * 100, 6),
            use_jaro_winkler=config.use_jaro_winkler,
            require_dob_match=config.require_dob_match,
        )

    def _name_score(self, a: str, b: str) -> float:
        if self.use_jaro_winkler:
            return jaro_winkler_similarity(a, b) * 100
        return 100.0 if a == b else 0.0

    def _compare_name(self, result: FieldComparison, name: str, a: str | None, b: str | None) -> None:
        if a and b:
            score = self._name_score(a, b)
            result.add(name, score, self.weights.weight_for(name), score >= self.name_match_threshold)

    def _compare_exact(self, result: FieldComparison, name: str, a: str | None, b: str | None) -> None:
        if a and b:
            equal = a == b
            result.add(name, 100.0 if equal else 0.0, self.weights.weight_for(name), equal)
            if name == "date_of_birth" and not equal:
                result.dob_mismatch = True

    def score(self, criteria: MatchSearchCriteria, record: IdentityRecord) -> FieldComparison:
        """Score a stored record against search criteria."""
        result = FieldComparison()
        self._compare_name(
            result, "first_name",
            normalize_name(criteria.first_name), record.first_name_normalized,
        )
        self._compare_name(
            result, "last_name",
            normalize_name(criteria.last_name), record.last_name_normalized,
        )
        self._compare_exact(result, "date_of_birth", criteria.date_of_birth, record.date_of_birth)
        self._compare_exact(result, "phone", normalize_phone(criteria.phone), record.phone_normalized)
        self._compare_exact(result, "mrn", criteria.mrn, record.mrn)
        return result

    def score_pair(self, a: IdentityRecord, b: IdentityRecord) -> FieldComparison:
        """
        Score two stored identity records against each other.

        Uses every comparable field: SSN last four and address are added,
        and MRNs are compared only when issued by the same authority.
        """
        result = FieldComparison()
        self._compare_name(result, "first_name", a.first_name_normalized, b.first_name_normalized)
        self._compare_name(result, "last_name", a.last_name_normalized, b.last_name_normalized)
        self._compare_exact(result, "date_of_birth", a.date_of_birth, b.date_of_birth)
        self._compare_exact(result, "ssn_last_four", a.ssn_last_four, b.ssn_last_four)
        self._compare_exact(result, "phone", a.phone_normalized, b.phone_normalized)

        if a.address_normalized and b.address_normalized:
            score = jaro_winkler_similarity(a.address_normalized, b.address_normalized) * 100
            result.add("address", score, self.weights.address, score >= ADDRESS_MATCH_THRESHOLD)

        if a.mrn_assigning_authority == b.mrn_assigning_authority:
            self._compare_exact(result, "mrn", a.mrn, b.mrn)
        return result

    def is_auto_match_eligible(self, overall_score: float) -> bool:
        return overall_score >= self.auto_merge_threshold

    def rank(
        self,
        criteria: MatchSearchCriteria,
        records: Iterable[IdentityRecord],
        min_score: float | None = None,
        blocking: BlockingFilter | None = None,
    ) -> list[MatchResult]:
        """
        Score every record, keep those at or above ``min_score`` and sort
        best first. Ties keep input order.
        """
        threshold = DEFAULT_MIN_SCORE if min_score is None else min_score
        matches: list[MatchResult] = []

        for record in records:
            comparison = self.score(criteria, record)
            if self.require_dob_match and comparison.dob_mismatch:
                continue
            overall = comparison.overall_score
            if overall < threshold:
                continue
            matches.append(MatchResult(
                patient_id=record.patient_id,
                identity_record_id=record.id,
                overall_score=overall,
                field_scores=comparison.field_scores,
                matched_fields=comparison.matched_fields,
                is_auto_match_eligible=self.is_auto_match_eligible(overall),
                blocking_key=blocking_key_label(blocking, record) if blocking else None,
            ))

        matches.sort(key=lambda m: m.overall_score, reverse=True)
        logger.debug("Scored blocking candidates", kept=len(matches), min_score=threshold)
        return matches
