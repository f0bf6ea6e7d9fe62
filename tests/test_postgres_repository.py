"""Tests for the asyncpg-backed repository using a mocked pool."""

from datetime import date, datetime
from unittest.mock import AsyncMock, MagicMock
import json

import pytest

from patient_mpi.blocking import BlockingFilter
from patient_mpi.lifecycle import DAILY_LIMIT_REACHED, AutoMergeLimit
from patient_mpi.models import IdentityRecord, MatchCandidate, MatchStatus, Priority
from patient_mpi.postgres import PostgresMPIRepository, load_schema
from patient_mpi.results import ErrorCode, RepositoryError
from patient_mpi.service import MPIMatchingService


@pytest.fixture
def conn():
    conn = AsyncMock()
    conn.transaction = MagicMock()
    conn.transaction.return_value.__aexit__.return_value = False
    return conn


@pytest.fixture
def pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


@pytest.fixture
def pg_repo(pool):
    return PostgresMPIRepository(pool)


def identity_row(**overrides):
    row = IdentityRecord(
        id="rec-1",
        patient_id="pat-1",
        tenant_id="tenant-a",
        last_name_normalized="smith",
        last_name_soundex="S530",
    ).model_dump()
    row["date_of_birth"] = date(1980, 1, 1)
    row.update(overrides)
    return row


def candidate_row(**overrides):
    row = MatchCandidate(
        id="cand-1",
        patient_id_a="pat-1",
        patient_id_b="pat-2",
        identity_record_a="rec-1",
        identity_record_b="rec-2",
        tenant_id="tenant-a",
        overall_match_score=96.0,
        priority=Priority.HIGH,
    ).model_dump(mode="json")
    row["field_scores"] = json.dumps({"date_of_birth": 100.0})
    row.update(overrides)
    return row


class TestIdentityQueries:

    @pytest.mark.asyncio
    async def test_get_identity_record_maps_row(self, pg_repo, conn):
        conn.fetchrow.return_value = identity_row()

        record = await pg_repo.get_identity_record("pat-1", "tenant-a")

        assert record.date_of_birth == "1980-01-01"
        assert record.last_name_soundex == "S530"
        args = conn.fetchrow.call_args.args
        assert args[1:] == ("pat-1", "tenant-a")

    @pytest.mark.asyncio
    async def test_get_identity_record_missing(self, pg_repo, conn):
        conn.fetchrow.return_value = None
        assert await pg_repo.get_identity_record("pat-1", "tenant-a") is None

    @pytest.mark.asyncio
    async def test_search_builds_or_over_blocking_keys(self, pg_repo, conn):
        conn.fetch.return_value = [identity_row()]
        blocking = BlockingFilter(
            tenant_id="tenant-a",
            keys=(("last_name_soundex", "S530"), ("date_of_birth", "1980-01-01")),
            limit=25,
        )

        records = await pg_repo.search_identity_records(blocking)

        query, *params = conn.fetch.call_args.args
        assert "(last_name_soundex = $2 OR date_of_birth = $3)" in query
        assert "is_active = true" in query
        assert "LIMIT $4 OFFSET $5" in query
        assert params == ["tenant-a", "S530", date(1980, 1, 1), 25, 0]
        assert [r.patient_id for r in records] == ["pat-1"]

    @pytest.mark.asyncio
    async def test_search_rejects_unknown_column(self, pg_repo, conn):
        blocking = BlockingFilter(tenant_id="tenant-a", keys=(("ssn_last_four", "1234"),))

        with pytest.raises(ValueError):
            await pg_repo.search_identity_records(blocking)
        conn.fetch.assert_not_called()

    @pytest.mark.asyncio
    async def test_upsert_uses_natural_key(self, pg_repo, conn):
        conn.fetchrow.return_value = identity_row()
        record = IdentityRecord(patient_id="pat-1", tenant_id="tenant-a", date_of_birth="1980-01-01")

        await pg_repo.upsert_identity_record(record)

        query = conn.fetchrow.call_args.args[0]
        assert "ON CONFLICT (patient_id, tenant_id) DO UPDATE" in query
        assert "enterprise_mpi_id = EXCLUDED" not in query
        assert "match_count = EXCLUDED" not in query

    @pytest.mark.asyncio
    async def test_increment_match_count_is_relative(self, pg_repo, conn):
        conn.fetchrow.return_value = identity_row(match_count=3)
        matched_at = datetime(2024, 1, 1, 12, 0)

        record = await pg_repo.increment_match_count("pat-1", "tenant-a", 2, matched_at)

        query, *params = conn.fetchrow.call_args.args
        assert "match_count = match_count + $3" in query
        assert params == ["pat-1", "tenant-a", 2, matched_at]
        assert record.match_count == 3

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_columns(self, pg_repo):
        with pytest.raises(ValueError):
            await pg_repo.update_identity_record("pat-1", "tenant-a", {"favorite_color": "red"})


class TestCandidateQueries:

    @pytest.mark.asyncio
    async def test_upsert_candidate_keeps_review_columns(self, pg_repo, conn):
        conn.fetchrow.return_value = candidate_row()
        candidate = MatchCandidate.model_validate(candidate_row(field_scores={"date_of_birth": 100.0}))

        stored = await pg_repo.upsert_match_candidate(candidate)

        query = conn.fetchrow.call_args.args[0]
        assert "ON CONFLICT (tenant_id, patient_id_a, patient_id_b)" in query
        assert "status = EXCLUDED" not in query
        assert stored.field_scores == {"date_of_birth": 100.0}
        assert stored.priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_pending_ordering_and_filter(self, pg_repo, conn):
        conn.fetch.return_value = [candidate_row()]

        await pg_repo.list_pending_candidates("tenant-a", limit=10, priority=Priority.HIGH)

        query, *params = conn.fetch.call_args.args
        assert "overall_match_score DESC, detected_at ASC" in query
        assert params == ["tenant-a", "pending", "high", 10, 0]

    @pytest.mark.asyncio
    async def test_status_priority_rows(self, pg_repo, conn):
        conn.fetch.return_value = [{"status": "pending", "priority": "urgent"}]

        rows = await pg_repo.list_candidate_status_priority("tenant-a")

        assert rows == [(MatchStatus.PENDING, Priority.URGENT)]

    @pytest.mark.asyncio
    async def test_daily_cap_checked_inside_transaction(self, pg_repo, conn):
        conn.fetchrow.side_effect = [None, candidate_row()]
        conn.fetchval.return_value = 1
        candidate = MatchCandidate.model_validate(
            candidate_row(field_scores={}, auto_match_eligible=True)
        )
        since = datetime(2024, 1, 1)

        await pg_repo.upsert_match_candidate(candidate, AutoMergeLimit(max_per_day=1, since=since))

        conn.transaction.assert_called_once()
        assert "pg_advisory_xact_lock" in conn.execute.call_args.args[0]
        count_query, *count_params = conn.fetchval.call_args.args
        assert "NOT (patient_id_a = $3 AND patient_id_b = $4)" in count_query
        assert count_params == ["tenant-a", since, "pat-1", "pat-2"]
        assert DAILY_LIMIT_REACHED in conn.fetchrow.call_args.args

    @pytest.mark.asyncio
    async def test_already_cleared_pair_not_blocked_by_cap(self, pg_repo, conn):
        conn.fetchrow.side_effect = [
            {"auto_match_eligible": True, "auto_match_blocked_reason": None},
            candidate_row(),
        ]
        conn.fetchval.return_value = 5
        candidate = MatchCandidate.model_validate(
            candidate_row(field_scores={}, auto_match_eligible=True)
        )

        await pg_repo.upsert_match_candidate(
            candidate, AutoMergeLimit(max_per_day=1, since=datetime(2024, 1, 1))
        )

        assert DAILY_LIMIT_REACHED not in conn.fetchrow.call_args.args

    @pytest.mark.asyncio
    async def test_upsert_without_cap_skips_lock(self, pg_repo, conn):
        conn.fetchrow.return_value = candidate_row()
        candidate = MatchCandidate.model_validate(candidate_row(field_scores={}))

        await pg_repo.upsert_match_candidate(candidate)

        conn.execute.assert_not_called()
        conn.fetchval.assert_not_called()


class TestConfigQueries:

    @pytest.mark.asyncio
    async def test_get_config_decodes_weights(self, pg_repo, conn):
        conn.fetchrow.return_value = {
            "tenant_id": "tenant-a",
            "field_weights": json.dumps({"phone": 30}),
            "review_threshold": 70.0,
        }

        config = await pg_repo.get_matching_config("tenant-a")

        assert config.field_weights.phone == 30
        assert config.review_threshold == 70.0


class TestErrorHandling:

    @pytest.mark.asyncio
    async def test_driver_error_wrapped(self, pg_repo, conn):
        conn.fetchrow.side_effect = OSError("connection reset")

        with pytest.raises(RepositoryError) as exc_info:
            await pg_repo.get_identity_record("pat-1", "tenant-a")
        assert isinstance(exc_info.value.cause, OSError)

    @pytest.mark.asyncio
    async def test_service_reports_database_error(self, pg_repo, conn):
        from patient_mpi.audit import RecordingAuditLogger

        conn.fetchrow.side_effect = OSError("connection reset")
        audit = RecordingAuditLogger()
        service = MPIMatchingService(pg_repo, audit=audit)

        result = await service.get_identity_record("pat-1", "tenant-a")

        assert result.error.code == ErrorCode.DATABASE_ERROR
        event = audit.find("MPI_IDENTITY_GET_FAILED")[0]
        assert event.error_type == "RepositoryError"
        assert "connection reset" not in repr(event.model_dump())


class TestSchema:

    def test_schema_ships_with_package(self):
        ddl = load_schema()
        assert "mpi_identity_records" in ddl
        assert "mpi_match_candidates" in ddl
        assert "mpi_matching_config" in ddl
