"""Tests for MPIMatchingService identity, search, review and config operations."""

from datetime import date

import pytest
from pydantic import ValidationError

from patient_mpi.models import (
    MatchSearchCriteria,
    MatchStatus,
    MPISearchOptions,
    Priority,
    ReviewDecision,
)
from patient_mpi.results import ErrorCode

from conftest import OTHER_TENANT, TENANT, add_patient


async def queue(service, a, b, score, tenant_id=TENANT):
    result = await service.create_match_candidate(
        a, b, f"rec-{a}", f"rec-{b}", tenant_id, score, {"date_of_birth": 100.0}, ["date_of_birth"]
    )
    assert result.success, result.error
    return result.data


class TestIdentityRecords:
    """Identity create / get."""

    @pytest.mark.asyncio
    async def test_create_normalizes(self, service, audit):
        record = await add_patient(
            service, "pat-1", first_name="  José ", last_name="O'Brien", phone="(555) 123-4567"
        )

        assert record.first_name_normalized == "jose"
        assert record.last_name_normalized == "obrien"
        assert record.last_name_soundex == "O165"
        assert record.phone_normalized == "5551234567"
        assert record.match_hash
        assert "MPI_IDENTITY_CREATED" in audit.names()

    @pytest.mark.asyncio
    async def test_create_accepts_dict(self, service):
        result = await service.create_identity_record(
            "pat-1", TENANT, {"first_name": "Ann", "last_name": "Lee"}
        )
        assert result.success
        assert result.data.last_name_soundex == "L000"

    @pytest.mark.asyncio
    async def test_recreate_updates_same_record(self, service):
        first = await add_patient(service, "pat-1")
        second = await add_patient(service, "pat-1", phone="5550001111")

        assert second.id == first.id
        assert second.phone_normalized == "5550001111"

    @pytest.mark.asyncio
    async def test_invalid_demographics(self, service, audit):
        result = await service.create_identity_record(
            "pat-1", TENANT, {"first_name": "Ann", "last_name": "Lee", "ssn_last_four": "12"}
        )

        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert audit.find("MPI_IDENTITY_CREATE_FAILED")

    @pytest.mark.asyncio
    async def test_non_iso_dob_rejected(self, service, repo, audit):
        result = await service.create_identity_record(
            "pat-1", TENANT, {"first_name": "Ann", "last_name": "Lee", "date_of_birth": "01/02/1980"}
        )

        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert (await repo.get_identity_record("pat-1", TENANT)) is None
        assert audit.find("MPI_IDENTITY_CREATE_FAILED")

    @pytest.mark.asyncio
    async def test_dob_canonicalized(self, service):
        from_date = await add_patient(service, "pat-1", date_of_birth=date(1980, 1, 1))
        blank = await add_patient(service, "pat-2", date_of_birth="  ")

        assert from_date.date_of_birth == "1980-01-01"
        assert blank.date_of_birth is None

    @pytest.mark.asyncio
    async def test_get_missing(self, service, audit):
        result = await service.get_identity_record("nobody", TENANT)

        assert result.error.code == ErrorCode.NOT_FOUND
        event = audit.find("MPI_IDENTITY_GET_FAILED")[0]
        assert event.success is False
        assert event.metadata["error_code"] == "NOT_FOUND"


class TestFindPotentialMatches:

    @pytest.mark.asyncio
    async def test_finds_similar_patient(self, service):
        await add_patient(service, "pat-2", first_name="Jon")

        result = await service.find_potential_matches(
            MatchSearchCriteria(first_name="John", last_name="Smith", date_of_birth="1980-01-01"),
            MPISearchOptions(tenant_id=TENANT),
        )

        assert result.success
        [match] = result.data
        assert match.patient_id == "pat-2"
        assert match.overall_score == pytest.approx(98.33, abs=0.01)
        assert match.is_auto_match_eligible
        assert match.blocking_key == "last_name_soundex+date_of_birth"

    @pytest.mark.asyncio
    async def test_tenant_isolation(self, service):
        await add_patient(service, "pat-2", tenant_id=OTHER_TENANT)

        result = await service.find_potential_matches(
            MatchSearchCriteria(first_name="John", last_name="Smith", date_of_birth="1980-01-01"),
            MPISearchOptions(tenant_id=TENANT),
        )

        assert result.data == []

    @pytest.mark.asyncio
    async def test_blocking_skips_unrelated_records(self, service, audit):
        await add_patient(service, "pat-2", last_name="Brown", date_of_birth="1975-03-03")

        await service.find_potential_matches(
            MatchSearchCriteria(last_name="Smith", date_of_birth="1980-01-01", min_score=0),
            MPISearchOptions(tenant_id=TENANT),
        )

        event = audit.find("MPI_SEARCH_COMPLETED")[0]
        assert event.metadata["candidate_count"] == 0
        assert event.metadata["criteria_fields"] == ["last_name", "date_of_birth"]

    def test_search_dob_must_be_iso(self):
        with pytest.raises(ValidationError):
            MatchSearchCriteria(last_name="Smith", date_of_birth="1980/01/01")
        assert MatchSearchCriteria(date_of_birth=date(1980, 1, 1)).date_of_birth == "1980-01-01"

    @pytest.mark.asyncio
    async def test_soundex_blocking_follows_config(self, service, audit):
        await add_patient(service, "pat-2", last_name="Smyth", date_of_birth="1975-03-03")
        criteria = MatchSearchCriteria(last_name="Smith", date_of_birth="1980-01-01", min_score=0)

        await service.find_potential_matches(criteria, MPISearchOptions(tenant_id=TENANT))
        await service.update_matching_config(TENANT, {"use_soundex": False})
        await service.find_potential_matches(criteria, MPISearchOptions(tenant_id=TENANT))

        counts = [e.metadata["candidate_count"] for e in audit.find("MPI_SEARCH_COMPLETED")]
        assert counts == [1, 0]

    @pytest.mark.asyncio
    async def test_inactive_only_when_requested(self, service, repo):
        await add_patient(service, "pat-2")
        await repo.update_identity_record("pat-2", TENANT, {"is_active": False})
        criteria = MatchSearchCriteria(last_name="Smith", date_of_birth="1980-01-01")

        hidden = await service.find_potential_matches(criteria, MPISearchOptions(tenant_id=TENANT))
        shown = await service.find_potential_matches(
            criteria, MPISearchOptions(tenant_id=TENANT, include_inactive=True)
        )

        assert hidden.data == []
        assert [m.patient_id for m in shown.data] == ["pat-2"]

    @pytest.mark.asyncio
    async def test_default_min_score_from_settings(self, service):
        await add_patient(service, "pat-2", phone="5559999999")

        # DOB matches, phone does not: 25 * 100 / 35 = 71.4
        result = await service.find_potential_matches(
            MatchSearchCriteria(date_of_birth="1980-01-01", phone="5551234567"),
            MPISearchOptions(tenant_id=TENANT),
        )

        assert result.data == []

    @pytest.mark.asyncio
    async def test_audit_has_no_demographics(self, service, audit):
        await service.find_potential_matches(
            MatchSearchCriteria(first_name="John", last_name="Smith"),
            MPISearchOptions(tenant_id=TENANT),
        )

        rendered = repr([e.model_dump() for e in audit.events])
        assert "John" not in rendered
        assert "Smith" not in rendered


class TestMatchCandidates:

    @pytest.mark.asyncio
    async def test_pair_stored_once_in_canonical_order(self, service, repo):
        first = await queue(service, "pat-b", "pat-a", 90)
        second = await queue(service, "pat-a", "pat-b", 92)

        assert repo.candidate_count == 1
        assert second.id == first.id
        assert (second.patient_id_a, second.patient_id_b) == ("pat-a", "pat-b")
        assert second.identity_record_a == "rec-pat-a"
        assert second.overall_match_score == 92

    @pytest.mark.asyncio
    async def test_self_pair_is_validation_error(self, service):
        result = await service.create_match_candidate(
            "pat-a", "pat-a", "rec", "rec", TENANT, 99, {}, []
        )
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_priority_and_eligibility(self, service):
        urgent = await queue(service, "p1", "p2", 99)
        high = await queue(service, "p3", "p4", 96)
        normal = await queue(service, "p5", "p6", 80)

        assert urgent.priority == Priority.URGENT
        assert urgent.auto_match_eligible
        assert urgent.auto_match_blocked_reason == "auto_merge_disabled"
        assert high.priority == Priority.HIGH
        assert not high.auto_match_eligible
        assert high.auto_match_blocked_reason is None
        assert normal.priority == Priority.NORMAL

    @pytest.mark.asyncio
    async def test_pending_queue_order(self, service):
        await queue(service, "p1", "p2", 80)
        await queue(service, "p3", "p4", 99)
        await queue(service, "p5", "p6", 96)
        await queue(service, "p7", "p8", 97)

        result = await service.get_pending_candidates(TENANT)

        assert [c.overall_match_score for c in result.data] == [99, 97, 96, 80]

    @pytest.mark.asyncio
    async def test_pending_filter_and_paging(self, service):
        await queue(service, "p1", "p2", 96)
        await queue(service, "p3", "p4", 97)
        await queue(service, "p5", "p6", 80)

        high = await service.get_pending_candidates(TENANT, priority=Priority.HIGH)
        page = await service.get_pending_candidates(TENANT, limit=1, offset=1)

        assert [c.overall_match_score for c in high.data] == [97, 96]
        assert [c.overall_match_score for c in page.data] == [96]

    @pytest.mark.asyncio
    async def test_pending_is_tenant_scoped(self, service):
        await queue(service, "p1", "p2", 90, tenant_id=OTHER_TENANT)
        result = await service.get_pending_candidates(TENANT)
        assert result.data == []


class TestReview:

    @pytest.mark.asyncio
    async def test_confirm_match(self, service, audit):
        candidate = await queue(service, "p1", "p2", 90)

        result = await service.review_match_candidate(candidate.id, "reviewer-1", "confirmed_match", "same person")

        assert result.success
        assert result.data.status == MatchStatus.CONFIRMED_MATCH
        assert result.data.review_decision == ReviewDecision.MERGE
        assert result.data.reviewed_by == "reviewer-1"
        event = audit.find("MPI_CANDIDATE_REVIEWED")[0]
        assert event.metadata["review_decision"] == "merge"
        assert "same person" not in repr(event.model_dump())

    @pytest.mark.asyncio
    async def test_defer_then_review_again(self, service):
        candidate = await queue(service, "p1", "p2", 90)

        await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.DEFERRED)
        started = await service.start_review(candidate.id, "reviewer-2")
        done = await service.review_match_candidate(candidate.id, "reviewer-2", MatchStatus.CONFIRMED_NOT_MATCH)

        assert started.data.status == MatchStatus.UNDER_REVIEW
        assert done.data.review_decision == ReviewDecision.NOT_MATCH

    @pytest.mark.asyncio
    async def test_reviewed_candidate_leaves_pending_queue(self, service):
        candidate = await queue(service, "p1", "p2", 90)
        await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.CONFIRMED_NOT_MATCH)

        result = await service.get_pending_candidates(TENANT)
        assert result.data == []

    @pytest.mark.asyncio
    async def test_terminal_state_rejects_review(self, service, audit):
        candidate = await queue(service, "p1", "p2", 90)
        await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.CONFIRMED_NOT_MATCH)

        result = await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.CONFIRMED_MATCH)

        assert result.error.code == ErrorCode.INVALID_TRANSITION
        assert audit.find("MPI_REVIEW_FAILED")

    @pytest.mark.asyncio
    async def test_unknown_decision(self, service):
        candidate = await queue(service, "p1", "p2", 90)

        bogus = await service.review_match_candidate(candidate.id, "reviewer-1", "maybe")
        not_a_decision = await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.PENDING)

        assert bogus.error.code == ErrorCode.VALIDATION_ERROR
        assert not_a_decision.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_missing_candidate(self, service):
        result = await service.review_match_candidate("nope", "reviewer-1", MatchStatus.DEFERRED)
        assert result.error.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_mark_merged_requires_confirmation(self, service):
        candidate = await queue(service, "p1", "p2", 90)

        early = await service.mark_merged(candidate.id, "merge-job")
        await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.CONFIRMED_MATCH)
        merged = await service.mark_merged(candidate.id, "merge-job")

        assert early.error.code == ErrorCode.INVALID_TRANSITION
        assert merged.data.status == MatchStatus.MERGED

    @pytest.mark.asyncio
    async def test_redetection_keeps_review(self, service):
        candidate = await queue(service, "p1", "p2", 90)
        await service.review_match_candidate(candidate.id, "reviewer-1", MatchStatus.CONFIRMED_NOT_MATCH)

        again = await queue(service, "p2", "p1", 99)

        assert again.status == MatchStatus.CONFIRMED_NOT_MATCH
        assert again.reviewed_by == "reviewer-1"


class TestCandidateStats:

    @pytest.mark.asyncio
    async def test_counts(self, service):
        await queue(service, "p1", "p2", 99)
        await queue(service, "p3", "p4", 96)
        await queue(service, "p5", "p6", 80)
        reviewed = await queue(service, "p7", "p8", 99)
        rejected = await queue(service, "p9", "p10", 90)
        await service.start_review(reviewed.id, "reviewer-1")
        await service.review_match_candidate(rejected.id, "reviewer-1", MatchStatus.CONFIRMED_NOT_MATCH)

        stats = (await service.get_candidate_stats(TENANT)).data

        assert stats.total == 5
        assert stats.pending == 3
        assert stats.under_review == 1
        assert stats.confirmed_not_match == 1
        assert stats.urgent_priority == 1
        assert stats.high_priority == 1

    @pytest.mark.asyncio
    async def test_empty_tenant(self, service):
        stats = (await service.get_candidate_stats(TENANT)).data
        assert stats.total == 0


class TestMatchingConfigOperations:

    @pytest.mark.asyncio
    async def test_missing_config(self, service):
        result = await service.get_matching_config(TENANT)
        assert result.error.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_update_creates_from_defaults(self, service, audit):
        result = await service.update_matching_config(TENANT, {"review_threshold": 60})

        assert result.success
        stored = (await service.get_matching_config(TENANT)).data
        assert stored.review_threshold == 60
        assert stored.auto_merge_threshold == 98
        assert audit.find("MPI_CONFIG_UPDATED")[0].metadata["updated_fields"] == ["review_threshold"]

    @pytest.mark.asyncio
    async def test_unknown_key_rejected(self, service):
        result = await service.update_matching_config(TENANT, {"magic": True})

        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert (await service.get_matching_config(TENANT)).error.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_review_threshold_used_as_min_score(self, service):
        await add_patient(service, "pat-2", phone="5559999999")
        await service.update_matching_config(TENANT, {"review_threshold": 70})

        result = await service.find_potential_matches(
            MatchSearchCriteria(date_of_birth="1980-01-01", phone="5551234567"),
            MPISearchOptions(tenant_id=TENANT),
        )

        assert [m.patient_id for m in result.data] == ["pat-2"]

    @pytest.mark.asyncio
    async def test_weights_change_scores(self, service):
        await add_patient(service, "pat-2", phone="5559999999")
        await service.update_matching_config(TENANT, {"field_weights": {"phone": 0}})

        result = await service.find_potential_matches(
            MatchSearchCriteria(date_of_birth="1980-01-01", phone="5551234567"),
            MPISearchOptions(tenant_id=TENANT),
        )

        assert result.data[0].overall_score == 100.0
