"""
MPI Matching Service

Public operation surface of the matching engine: identity records,
blocking search with weighted scoring, the candidate review queue,
duplicate detection, per-tenant configuration and enterprise linking.

Usage:
    service = MPIMatchingService(repository)

    await service.create_identity_record("pat-1", "tenant-a", demographics)
    result = await service.run_duplicate_detection("pat-1", "tenant-a")
    if result.success:
        print(result.data.candidates_created)

Every operation returns a ServiceResult; failures are audited with ids
and counts only, never demographic values.
"""

from datetime import datetime, time
from typing import Any, Iterable

import structlog

from patient_mpi.audit import AuditedOperations, AuditLogger
from patient_mpi.blocking import build_blocking_filter
from patient_mpi.config import MatchingConfig, MPISettings, get_settings
from patient_mpi.enterprise import EnterpriseIdentityLinker
from patient_mpi.lifecycle import (
    AutoMergeLimit,
    CanonicalPair,
    apply_review,
    apply_status,
    assign_priority,
    auto_merge_block_reason,
    build_candidate,
    canonical_pair,
)
from patient_mpi.models import (
    BatchDetectionSummary,
    CandidateStats,
    DetectionSummary,
    IdentityRecord,
    MatchCandidate,
    MatchResult,
    MatchSearchCriteria,
    MatchStatus,
    MPISearchOptions,
    PatientDemographics,
    Priority,
)
from patient_mpi.normalize import (
    match_hash,
    normalize_email,
    normalize_name,
    normalize_phone,
    normalize_state,
)
from patient_mpi.phonetic import soundex
from patient_mpi.repository import MPIRepository
from patient_mpi.results import ErrorCode, ServiceResult, success
from patient_mpi.scoring import WeightedMatchScorer

logger = structlog.get_logger(__name__)


def build_identity_record(
    patient_id: str,
    tenant_id: str,
    demographics: PatientDemographics,
) -> IdentityRecord:
    """Normalize raw demographics into an identity record."""
    first = normalize_name(demographics.first_name)
    last = normalize_name(demographics.last_name)
    return IdentityRecord(
        patient_id=patient_id,
        tenant_id=tenant_id,
        first_name_normalized=first,
        last_name_normalized=last,
        middle_name_normalized=normalize_name(demographics.middle_name),
        first_name_soundex=soundex(demographics.first_name),
        last_name_soundex=soundex(demographics.last_name),
        date_of_birth=demographics.date_of_birth or None,
        gender=demographics.gender or None,
        ssn_last_four=demographics.ssn_last_four or None,
        phone_normalized=normalize_phone(demographics.phone),
        email_normalized=normalize_email(demographics.email),
        address_normalized=normalize_name(demographics.address),
        city_normalized=normalize_name(demographics.city),
        state=normalize_state(demographics.state),
        zip_code=demographics.zip_code or None,
        mrn=demographics.mrn or None,
        mrn_assigning_authority=demographics.mrn_assigning_authority or None,
        match_hash=match_hash(first, last, demographics.date_of_birth, demographics.zip_code),
    )


def criteria_from_identity(identity: IdentityRecord) -> MatchSearchCriteria:
    return MatchSearchCriteria(
        first_name=identity.first_name_normalized or None,
        last_name=identity.last_name_normalized or None,
        date_of_birth=identity.date_of_birth or None,
        phone=identity.phone_normalized or None,
        mrn=identity.mrn or None,
    )


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min)


class MPIMatchingService(AuditedOperations):
    """
    Probabilistic patient matching over a persistence port.

    Holds only its repository, audit and settings handles, so independent
    instances (per request, per test) behave identically.
    """

    def __init__(
        self,
        repository: MPIRepository,
        audit: AuditLogger | None = None,
        settings: MPISettings | None = None,
    ):
        super().__init__(audit)
        self._repo = repository
        self._settings = settings or get_settings()
        self._linker = EnterpriseIdentityLinker(repository, self._audit)

    # =========================================================================
    # Identity records
    # =========================================================================

    async def create_identity_record(
        self,
        patient_id: str,
        tenant_id: str,
        demographics: PatientDemographics | dict[str, Any],
    ) -> ServiceResult[IdentityRecord]:
        """Create or update the identity record for (patient, tenant)."""
        try:
            if not isinstance(demographics, PatientDemographics):
                demographics = PatientDemographics.model_validate(demographics)
            record = build_identity_record(patient_id, tenant_id, demographics)
            stored = await self._repo.upsert_identity_record(record)

            await self._audit.info(
                "MPI_IDENTITY_CREATED",
                patient_id=patient_id,
                tenant_id=tenant_id,
                identity_record_id=stored.id,
            )
            return success(stored)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_IDENTITY_CREATE_FAILED",
                "Failed to create identity record",
                e,
                patient_id=patient_id,
                tenant_id=tenant_id,
            )

    async def get_identity_record(self, patient_id: str, tenant_id: str) -> ServiceResult[IdentityRecord]:
        try:
            record = await self._repo.get_identity_record(patient_id, tenant_id)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_IDENTITY_GET_FAILED",
                "Failed to get identity record",
                e,
                patient_id=patient_id,
                tenant_id=tenant_id,
            )
        if record is None:
            return await self._fail(
                "MPI_IDENTITY_GET_FAILED",
                ErrorCode.NOT_FOUND,
                "Patient identity record not found",
                patient_id=patient_id,
                tenant_id=tenant_id,
            )
        return success(record)

    # =========================================================================
    # Search and scoring
    # =========================================================================

    async def _tenant_config(self, tenant_id: str) -> MatchingConfig | None:
        return await self._repo.get_matching_config(tenant_id)

    async def find_potential_matches(
        self,
        criteria: MatchSearchCriteria,
        options: MPISearchOptions,
    ) -> ServiceResult[list[MatchResult]]:
        """
        Blocking search followed by weighted scoring.

        Only records sharing a Soundex(last name), DOB, phone or MRN with
        the criteria are scored; the tenant's weights and thresholds apply
        when it has a configuration.
        """
        try:
            config = await self._tenant_config(options.tenant_id)
            scorer = WeightedMatchScorer.from_config(config)
            if criteria.min_score is not None:
                min_score = criteria.min_score
            elif config is not None:
                min_score = config.review_threshold
            else:
                min_score = self._settings.default_min_score
            if config is None:
                scorer.auto_merge_threshold = self._settings.default_auto_merge_threshold

            blocking = build_blocking_filter(
                criteria, options, use_soundex=config.use_soundex if config else True
            )
            records = await self._repo.search_identity_records(blocking)
            matches = scorer.rank(criteria, records, min_score=min_score, blocking=blocking)

            await self._audit.info(
                "MPI_SEARCH_COMPLETED",
                tenant_id=options.tenant_id,
                criteria_fields=criteria.present_fields(),
                blocking_keys=[column for column, _ in blocking.keys],
                candidate_count=len(records),
                match_count=len(matches),
            )
            return success(matches)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_SEARCH_FAILED",
                "Failed to find potential matches",
                e,
                tenant_id=options.tenant_id,
                criteria_fields=criteria.present_fields(),
            )

    async def score_identity_pair(
        self,
        patient_id_a: str,
        patient_id_b: str,
        tenant_id: str,
    ) -> ServiceResult[MatchResult]:
        """Score two stored identities of one tenant against each other."""
        context = {"patient_id_a": patient_id_a, "patient_id_b": patient_id_b, "tenant_id": tenant_id}
        try:
            record_a = await self._repo.get_identity_record(patient_id_a, tenant_id)
            record_b = await self._repo.get_identity_record(patient_id_b, tenant_id)
            if record_a is None or record_b is None:
                return await self._fail(
                    "MPI_PAIR_SCORE_FAILED",
                    ErrorCode.NOT_FOUND,
                    "Patient identity record not found",
                    **context,
                )
            scorer = WeightedMatchScorer.from_config(await self._tenant_config(tenant_id))
            comparison = scorer.score_pair(record_a, record_b)
            overall = comparison.overall_score
            return success(MatchResult(
                patient_id=record_b.patient_id,
                identity_record_id=record_b.id,
                overall_score=overall,
                field_scores=comparison.field_scores,
                matched_fields=comparison.matched_fields,
                is_auto_match_eligible=scorer.is_auto_match_eligible(overall),
            ))
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_PAIR_SCORE_FAILED", "Failed to score identity pair", e, **context
            )

    # =========================================================================
    # Match candidates
    # =========================================================================

    async def _upsert_candidate(
        self,
        pair: CanonicalPair,
        tenant_id: str,
        match: MatchResult,
        config: MatchingConfig | None,
        priority_floor: Priority | None = None,
    ) -> MatchCandidate:
        default_priority = config.default_review_priority if config else Priority.NORMAL
        priority = assign_priority(match.overall_score, default_priority)
        if priority_floor is not None and priority.rank < priority_floor.rank:
            priority = priority_floor

        blocked_reason = auto_merge_block_reason(config, match)
        limit = None
        if match.is_auto_match_eligible and blocked_reason is None:
            limit = AutoMergeLimit(config.auto_merge_max_per_day, _start_of_day(datetime.utcnow()))

        candidate = build_candidate(pair, tenant_id, match, priority, blocked_reason)
        return await self._repo.upsert_match_candidate(candidate, limit)

    async def create_match_candidate(
        self,
        patient_id_a: str,
        patient_id_b: str,
        identity_record_a: str,
        identity_record_b: str,
        tenant_id: str,
        overall_score: float,
        field_scores: dict[str, float],
        matched_fields: list[str],
        blocking_key: str | None = None,
    ) -> ServiceResult[MatchCandidate]:
        """
        Queue a potential duplicate for review.

        The pair is stored in canonical order, so (x, y) and (y, x) map to
        the same row; re-detection refreshes scores on that row.
        """
        context = {"patient_id_a": patient_id_a, "patient_id_b": patient_id_b, "tenant_id": tenant_id}
        try:
            return await self._create_candidate(
                canonical_pair(patient_id_a, patient_id_b, identity_record_a, identity_record_b),
                tenant_id,
                MatchResult(
                    patient_id=patient_id_b,
                    identity_record_id=identity_record_b,
                    overall_score=overall_score,
                    field_scores=field_scores,
                    matched_fields=matched_fields,
                    blocking_key=blocking_key,
                ),
                await self._tenant_config(tenant_id),
            )
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_CANDIDATE_CREATE_FAILED", "Failed to create match candidate", e, **context
            )

    async def _create_candidate(
        self,
        pair: CanonicalPair,
        tenant_id: str,
        match: MatchResult,
        config: MatchingConfig | None,
        priority_floor: Priority | None = None,
    ) -> ServiceResult[MatchCandidate]:
        context = {
            "patient_id_a": pair.patient_id_a,
            "patient_id_b": pair.patient_id_b,
            "tenant_id": tenant_id,
        }
        try:
            threshold = config.auto_merge_threshold if config else self._settings.default_auto_merge_threshold
            match = match.model_copy(update={"is_auto_match_eligible": match.overall_score >= threshold})
            candidate = await self._upsert_candidate(pair, tenant_id, match, config, priority_floor)

            await self._audit.info(
                "MPI_CANDIDATE_CREATED",
                candidate_id=candidate.id,
                overall_score=candidate.overall_match_score,
                priority=candidate.priority.value,
                auto_match_eligible=candidate.auto_match_eligible,
                auto_match_blocked_reason=candidate.auto_match_blocked_reason,
                **context,
            )
            return success(candidate)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_CANDIDATE_CREATE_FAILED", "Failed to create match candidate", e, **context
            )

    async def get_pending_candidates(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        priority: Priority | None = None,
    ) -> ServiceResult[list[MatchCandidate]]:
        """Review queue: priority desc, score desc, oldest detection first."""
        try:
            candidates = await self._repo.list_pending_candidates(
                tenant_id, limit=limit, offset=offset, priority=priority
            )
            return success(candidates)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_GET_CANDIDATES_FAILED",
                "Failed to get pending candidates",
                e,
                tenant_id=tenant_id,
            )

    async def _load_candidate(self, candidate_id: str, event: str, **context) -> ServiceResult[MatchCandidate]:
        candidate = await self._repo.get_match_candidate(candidate_id)
        if candidate is None:
            return await self._fail(
                event,
                ErrorCode.NOT_FOUND,
                "Match candidate not found",
                candidate_id=candidate_id,
                **context,
            )
        return success(candidate)

    async def _save_candidate(self, candidate: MatchCandidate, event: str, **context) -> ServiceResult[MatchCandidate]:
        saved = await self._repo.update_match_candidate(candidate)
        if saved is None:
            return await self._fail(
                event,
                ErrorCode.NOT_FOUND,
                "Match candidate not found",
                candidate_id=candidate.id,
                **context,
            )
        return success(saved)

    async def review_match_candidate(
        self,
        candidate_id: str,
        reviewer_id: str,
        decision: MatchStatus | str,
        notes: str | None = None,
    ) -> ServiceResult[MatchCandidate]:
        """
        Record a reviewer decision: confirmed_match, confirmed_not_match
        or deferred. Stamps the reviewer and time and the normalized
        review_decision (merge / not_match / defer).
        """
        context = {"candidate_id": candidate_id, "reviewer_id": reviewer_id, "decision": str(decision)}
        try:
            decision = MatchStatus(decision)
            context["decision"] = decision.value

            loaded = await self._load_candidate(candidate_id, "MPI_REVIEW_FAILED", reviewer_id=reviewer_id)
            if not loaded.success:
                return loaded

            reviewed = apply_review(loaded.data, reviewer_id, decision, notes)
            saved = await self._save_candidate(reviewed, "MPI_REVIEW_FAILED", reviewer_id=reviewer_id)
            if saved.success:
                await self._audit.info(
                    "MPI_CANDIDATE_REVIEWED",
                    previous_status=loaded.data.status.value,
                    review_decision=reviewed.review_decision.value,
                    **context,
                )
            return saved
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_REVIEW_FAILED", "Failed to review candidate", e, **context
            )

    async def start_review(self, candidate_id: str, reviewer_id: str) -> ServiceResult[MatchCandidate]:
        """Move a pending or deferred candidate to under_review."""
        return await self._transition(candidate_id, MatchStatus.UNDER_REVIEW, reviewer_id=reviewer_id)

    async def mark_merged(self, candidate_id: str, performed_by: str) -> ServiceResult[MatchCandidate]:
        """Record that a confirmed match has been consolidated by the merge process."""
        return await self._transition(candidate_id, MatchStatus.MERGED, performed_by=performed_by)

    async def _transition(self, candidate_id: str, target: MatchStatus, **context) -> ServiceResult[MatchCandidate]:
        context = {"candidate_id": candidate_id, "target_status": target.value, **context}
        try:
            loaded = await self._load_candidate(candidate_id, "MPI_CANDIDATE_TRANSITION_FAILED")
            if not loaded.success:
                return loaded
            updated = apply_status(loaded.data, target)
            saved = await self._save_candidate(updated, "MPI_CANDIDATE_TRANSITION_FAILED")
            if saved.success:
                await self._audit.info(
                    "MPI_CANDIDATE_STATUS_CHANGED",
                    previous_status=loaded.data.status.value,
                    **context,
                )
            return saved
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_CANDIDATE_TRANSITION_FAILED", "Failed to change candidate status", e, **context
            )

    async def get_candidate_stats(self, tenant_id: str) -> ServiceResult[CandidateStats]:
        try:
            rows = await self._repo.list_candidate_status_priority(tenant_id)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_STATS_FAILED", "Failed to get candidate stats", e, tenant_id=tenant_id
            )

        stats = CandidateStats(total=len(rows))
        for status, priority in rows:
            if status == MatchStatus.PENDING:
                stats.pending += 1
                if priority == Priority.HIGH:
                    stats.high_priority += 1
                elif priority == Priority.URGENT:
                    stats.urgent_priority += 1
            elif status == MatchStatus.UNDER_REVIEW:
                stats.under_review += 1
            elif status == MatchStatus.MERGED:
                stats.merged += 1
            elif status == MatchStatus.CONFIRMED_NOT_MATCH:
                stats.confirmed_not_match += 1
        return success(stats)

    # =========================================================================
    # Duplicate detection
    # =========================================================================

    async def run_duplicate_detection(self, patient_id: str, tenant_id: str) -> ServiceResult[DetectionSummary]:
        """
        Find and queue every likely duplicate of one patient.

        Candidate-creation failures are counted in the summary and do not
        abort the run.
        """
        context = {"patient_id": patient_id, "tenant_id": tenant_id}
        try:
            identity = await self._repo.get_identity_record(patient_id, tenant_id)
            if identity is None:
                return await self._fail(
                    "MPI_DUPLICATE_DETECTION_FAILED",
                    ErrorCode.NOT_FOUND,
                    "Patient identity record not found",
                    **context,
                )

            found = await self.find_potential_matches(
                criteria_from_identity(identity),
                MPISearchOptions(tenant_id=tenant_id, limit=self._settings.default_search_limit),
            )
            if not found.success:
                return found

            others = [m for m in found.data if m.patient_id != patient_id]
            config = await self._tenant_config(tenant_id)

            priority_floor = None
            if config and config.escalate_high_volume and len(others) >= config.high_volume_threshold:
                priority_floor = Priority.HIGH
                await self._audit.info("MPI_HIGH_VOLUME_ESCALATED", match_count=len(others), **context)

            summary = DetectionSummary(matches_found=len(others))
            for match in others:
                pair = canonical_pair(patient_id, match.patient_id, identity.id, match.identity_record_id)
                created = await self._create_candidate(pair, tenant_id, match, config, priority_floor)
                if created.success:
                    summary.candidates_created += 1
                else:
                    summary.candidates_failed += 1

            await self._record_match_run(identity, summary.candidates_created)

            await self._audit.info(
                "MPI_DUPLICATE_DETECTION_COMPLETED",
                matches_found=summary.matches_found,
                candidates_created=summary.candidates_created,
                candidates_failed=summary.candidates_failed,
                **context,
            )
            return success(summary)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_DUPLICATE_DETECTION_FAILED", "Failed to run duplicate detection", e, **context
            )

    async def _record_match_run(self, identity: IdentityRecord, candidates_created: int) -> None:
        """Bump the identity's match counter; a failure here is audited, not fatal."""
        try:
            await self._repo.increment_match_count(
                identity.patient_id,
                identity.tenant_id,
                candidates_created,
                datetime.utcnow(),
            )
        except Exception as e:
            await self._audit.error(
                "MPI_MATCH_COUNTER_UPDATE_FAILED",
                e,
                patient_id=identity.patient_id,
                tenant_id=identity.tenant_id,
            )

    async def run_batch_detection(
        self,
        patient_ids: Iterable[str],
        tenant_id: str,
    ) -> ServiceResult[BatchDetectionSummary]:
        """Run duplicate detection for many patients, one after another."""
        batch = BatchDetectionSummary()
        for patient_id in patient_ids:
            result = await self.run_duplicate_detection(patient_id, tenant_id)
            if not result.success:
                batch.patients_failed += 1
                batch.failed_patient_ids.append(patient_id)
                continue
            batch.patients_processed += 1
            batch.matches_found += result.data.matches_found
            batch.candidates_created += result.data.candidates_created
            batch.candidates_failed += result.data.candidates_failed

        await self._audit.info(
            "MPI_BATCH_DETECTION_COMPLETED",
            tenant_id=tenant_id,
            patients_processed=batch.patients_processed,
            patients_failed=batch.patients_failed,
            candidates_created=batch.candidates_created,
        )
        return success(batch)

    # =========================================================================
    # Configuration
    # =========================================================================

    async def get_matching_config(self, tenant_id: str) -> ServiceResult[MatchingConfig]:
        try:
            config = await self._tenant_config(tenant_id)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_CONFIG_GET_FAILED", "Failed to get matching config", e, tenant_id=tenant_id
            )
        if config is None:
            return await self._fail(
                "MPI_CONFIG_GET_FAILED",
                ErrorCode.NOT_FOUND,
                "Matching config not found",
                tenant_id=tenant_id,
            )
        return success(config)

    async def update_matching_config(
        self,
        tenant_id: str,
        updates: dict[str, Any],
    ) -> ServiceResult[MatchingConfig]:
        """
        Apply ``updates`` on top of the tenant's config (or the defaults
        when it has none) and store it. Unknown keys are rejected.
        """
        context = {"tenant_id": tenant_id, "updated_fields": sorted(updates)}
        try:
            current = await self._tenant_config(tenant_id) or MatchingConfig.defaults_for(tenant_id)
            config = await self._repo.upsert_matching_config(current.with_updates(updates))
            await self._audit.info("MPI_CONFIG_UPDATED", **context)
            return success(config)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_CONFIG_UPDATE_FAILED", "Failed to update matching config", e, **context
            )

    # =========================================================================
    # Enterprise MPI
    # =========================================================================

    async def link_to_enterprise_mpi(
        self,
        patient_id: str,
        tenant_id: str,
        enterprise_mpi_id: str,
    ) -> ServiceResult[IdentityRecord]:
        return await self._linker.link(patient_id, tenant_id, enterprise_mpi_id)

    async def get_enterprise_mpi_links(self, enterprise_mpi_id: str) -> ServiceResult[list[IdentityRecord]]:
        return await self._linker.links(enterprise_mpi_id)
