"""
PostgreSQL MPI Repository

asyncpg-backed implementation of MPIRepository. Upserts use
INSERT ... ON CONFLICT on the natural keys, so concurrent writers of the
same identity, candidate pair or tenant config converge to one row.

Usage:
    pool = await create_pool(get_settings())
    repo = PostgresMPIRepository(pool)
    service = MPIMatchingService(repo)
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from importlib import resources
from typing import Any
import json

import asyncpg
import structlog

from patient_mpi.blocking import BLOCKING_COLUMNS, BlockingFilter
from patient_mpi.config import MatchingConfig, MPISettings
from patient_mpi.lifecycle import AutoMergeLimit, enforce_daily_limit
from patient_mpi.models import IdentityRecord, MatchCandidate, MatchStatus, Priority
from patient_mpi.repository import MPIRepository
from patient_mpi.results import RepositoryError

logger = structlog.get_logger(__name__)

IDENTITY_COLUMNS = tuple(IdentityRecord.model_fields)
CANDIDATE_COLUMNS = tuple(MatchCandidate.model_fields)
CONFIG_COLUMNS = tuple(MatchingConfig.model_fields)

# Columns refreshed when an identity is re-captured; link, counters and
# golden-record flag are owned by other operations.
IDENTITY_UPSERT_COLUMNS = tuple(
    c for c in IDENTITY_COLUMNS
    if c not in {
        "id", "patient_id", "tenant_id", "enterprise_mpi_id", "match_count",
        "last_matched_at", "is_golden_record", "created_at", "updated_at",
    }
)

# Columns refreshed when a pair is re-detected; status and review stay.
CANDIDATE_RESCORE_COLUMNS = (
    "identity_record_a", "identity_record_b", "overall_match_score",
    "match_algorithm_version", "field_scores", "matching_fields_used",
    "blocking_key", "priority", "auto_match_eligible", "auto_match_blocked_reason",
)

CANDIDATE_REVIEW_COLUMNS = (
    "status", "reviewed_by", "reviewed_at", "review_decision", "review_notes", "updated_at",
)

JSON_COLUMNS = {"field_scores", "field_weights"}

PRIORITY_ORDER_SQL = (
    "CASE priority WHEN 'urgent' THEN 3 WHEN 'high' THEN 2 "
    "WHEN 'normal' THEN 1 ELSE 0 END"
)

# Other pairs of the tenant cleared for automatic merge since $2
CLEARED_TODAY_SQL = (
    "SELECT COUNT(*) FROM mpi_match_candidates "
    "WHERE tenant_id = $1 AND auto_match_eligible = true "
    "AND auto_match_blocked_reason IS NULL AND detected_at >= $2 "
    "AND NOT (patient_id_a = $3 AND patient_id_b = $4)"
)


def load_schema() -> str:
    """DDL for the MPI tables, shipped with the package."""
    return resources.files("patient_mpi").joinpath("sql/schema.sql").read_text(encoding="utf-8")


async def create_pool(settings: MPISettings) -> asyncpg.Pool:
    """Create an asyncpg connection pool and verify connectivity."""
    pool = await asyncpg.create_pool(
        dsn=settings.postgres_dsn.get_secret_value(),
        min_size=settings.min_pool_size,
        max_size=settings.max_pool_size,
        command_timeout=60,
    )
    async with pool.acquire() as conn:
        await conn.fetchval("SELECT 1")
    logger.info("PostgreSQL connection pool created")
    return pool


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in JSON_COLUMNS:
        if hasattr(value, "model_dump"):
            value = value.model_dump()
        return json.dumps(value)
    if column == "date_of_birth":
        return date.fromisoformat(value)
    if hasattr(value, "value"):
        return value.value
    return value


def _from_db(row: Any) -> dict[str, Any]:
    data = dict(row)
    for column in JSON_COLUMNS & data.keys():
        if isinstance(data[column], str):
            data[column] = json.loads(data[column])
    dob = data.get("date_of_birth")
    if isinstance(dob, date) and not isinstance(dob, datetime):
        data["date_of_birth"] = dob.isoformat()
    return data


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


def _assignments(columns: tuple[str, ...]) -> str:
    return ", ".join(f"{c} = EXCLUDED.{c}" for c in columns)


class PostgresMPIRepository(MPIRepository):
    """MPIRepository over an asyncpg pool."""

    def __init__(self, pool):
        """
        Args:
            pool: asyncpg.Pool instance
        """
        self.pool = pool

    @asynccontextmanager
    async def _connection(self, operation: str):
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error("MPI store operation failed", operation=operation, error_type=type(e).__name__)
            raise RepositoryError(f"{operation} failed", cause=e) from e

    async def create_schema(self) -> None:
        async with self._connection("create_schema") as conn:
            await conn.execute(load_schema())

    # Identity records

    async def get_identity_record(self, patient_id, tenant_id):
        async with self._connection("get_identity_record") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM mpi_identity_records WHERE patient_id = $1 AND tenant_id = $2",
                patient_id, tenant_id,
            )
        return IdentityRecord.model_validate(_from_db(row)) if row else None

    async def search_identity_records(self, blocking: BlockingFilter):
        params: list[Any] = [blocking.tenant_id]
        where = ["tenant_id = $1"]
        if not blocking.include_inactive:
            where.append("is_active = true")

        ors = []
        for column, value in blocking.keys:
            if column not in BLOCKING_COLUMNS:
                raise ValueError(f"not a blocking column: {column}")
            params.append(_to_db(column, value))
            ors.append(f"{column} = ${len(params)}")
        if ors:
            where.append("(" + " OR ".join(ors) + ")")

        params.extend([blocking.limit, blocking.offset])
        query = (
            "SELECT * FROM mpi_identity_records WHERE "
            + " AND ".join(where)
            + f" ORDER BY created_at, id LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        async with self._connection("search_identity_records") as conn:
            rows = await conn.fetch(query, *params)
        return [IdentityRecord.model_validate(_from_db(r)) for r in rows]

    async def upsert_identity_record(self, record):
        data = record.model_dump()
        query = (
            f"INSERT INTO mpi_identity_records ({', '.join(IDENTITY_COLUMNS)}) "
            f"VALUES ({_placeholders(len(IDENTITY_COLUMNS))}) "
            f"ON CONFLICT (patient_id, tenant_id) DO UPDATE SET "
            f"{_assignments(IDENTITY_UPSERT_COLUMNS)}, updated_at = EXCLUDED.updated_at "
            f"RETURNING *"
        )
        async with self._connection("upsert_identity_record") as conn:
            row = await conn.fetchrow(query, *[_to_db(c, data[c]) for c in IDENTITY_COLUMNS])
        return IdentityRecord.model_validate(_from_db(row))

    async def update_identity_record(self, patient_id, tenant_id, data):
        unknown = set(data) - set(IDENTITY_COLUMNS)
        if unknown:
            raise ValueError(f"unknown identity columns: {sorted(unknown)}")
        data = {**data, "updated_at": datetime.utcnow()}
        columns = tuple(data)
        sets = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=3))
        query = (
            f"UPDATE mpi_identity_records SET {sets} "
            f"WHERE patient_id = $1 AND tenant_id = $2 RETURNING *"
        )
        async with self._connection("update_identity_record") as conn:
            row = await conn.fetchrow(query, patient_id, tenant_id, *[_to_db(c, data[c]) for c in columns])
        return IdentityRecord.model_validate(_from_db(row)) if row else None

    async def increment_match_count(self, patient_id, tenant_id, count, matched_at):
        async with self._connection("increment_match_count") as conn:
            row = await conn.fetchrow(
                "UPDATE mpi_identity_records "
                "SET match_count = match_count + $3, last_matched_at = $4, updated_at = $4 "
                "WHERE patient_id = $1 AND tenant_id = $2 RETURNING *",
                patient_id, tenant_id, count, matched_at,
            )
        return IdentityRecord.model_validate(_from_db(row)) if row else None

    async def get_identity_records_by_enterprise_id(self, enterprise_mpi_id):
        async with self._connection("get_identity_records_by_enterprise_id") as conn:
            rows = await conn.fetch(
                "SELECT * FROM mpi_identity_records "
                "WHERE enterprise_mpi_id = $1 AND is_active = true ORDER BY tenant_id, patient_id",
                enterprise_mpi_id,
            )
        return [IdentityRecord.model_validate(_from_db(r)) for r in rows]

    # Match candidates

    async def upsert_match_candidate(self, candidate, auto_merge_limit: AutoMergeLimit | None = None):
        query = (
            f"INSERT INTO mpi_match_candidates ({', '.join(CANDIDATE_COLUMNS)}) "
            f"VALUES ({_placeholders(len(CANDIDATE_COLUMNS))}) "
            f"ON CONFLICT (tenant_id, patient_id_a, patient_id_b) DO UPDATE SET "
            f"{_assignments(CANDIDATE_RESCORE_COLUMNS)}, updated_at = EXCLUDED.updated_at "
            f"RETURNING *"
        )
        async with self._connection("upsert_match_candidate") as conn:
            async with conn.transaction():
                if auto_merge_limit is not None:
                    candidate = await self._apply_daily_limit(conn, candidate, auto_merge_limit)
                data = candidate.model_dump()
                row = await conn.fetchrow(query, *[_to_db(c, data[c]) for c in CANDIDATE_COLUMNS])
        return MatchCandidate.model_validate(_from_db(row))

    async def _apply_daily_limit(self, conn, candidate: MatchCandidate, limit: AutoMergeLimit) -> MatchCandidate:
        # Serializes cap checks per tenant until the surrounding transaction ends
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", candidate.tenant_id)
        existing = await conn.fetchrow(
            "SELECT auto_match_eligible, auto_match_blocked_reason FROM mpi_match_candidates "
            "WHERE tenant_id = $1 AND patient_id_a = $2 AND patient_id_b = $3",
            candidate.tenant_id, candidate.patient_id_a, candidate.patient_id_b,
        )
        already_cleared = bool(
            existing
            and existing["auto_match_eligible"]
            and existing["auto_match_blocked_reason"] is None
        )
        cleared_today = await conn.fetchval(
            CLEARED_TODAY_SQL,
            candidate.tenant_id, limit.since, candidate.patient_id_a, candidate.patient_id_b,
        )
        return enforce_daily_limit(candidate, already_cleared, cleared_today, limit.max_per_day)

    async def get_match_candidate(self, candidate_id):
        async with self._connection("get_match_candidate") as conn:
            row = await conn.fetchrow("SELECT * FROM mpi_match_candidates WHERE id = $1", candidate_id)
        return MatchCandidate.model_validate(_from_db(row)) if row else None

    async def list_pending_candidates(self, tenant_id, limit=50, offset=0, priority=None):
        params: list[Any] = [tenant_id, MatchStatus.PENDING.value]
        where = "tenant_id = $1 AND status = $2"
        if priority is not None:
            params.append(Priority(priority).value)
            where += f" AND priority = ${len(params)}"
        params.extend([limit, offset])
        query = (
            f"SELECT * FROM mpi_match_candidates WHERE {where} "
            f"ORDER BY {PRIORITY_ORDER_SQL} DESC, overall_match_score DESC, detected_at ASC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        async with self._connection("list_pending_candidates") as conn:
            rows = await conn.fetch(query, *params)
        return [MatchCandidate.model_validate(_from_db(r)) for r in rows]

    async def update_match_candidate(self, candidate):
        data = candidate.model_dump()
        sets = ", ".join(f"{c} = ${i}" for i, c in enumerate(CANDIDATE_REVIEW_COLUMNS, start=2))
        query = f"UPDATE mpi_match_candidates SET {sets} WHERE id = $1 RETURNING *"
        async with self._connection("update_match_candidate") as conn:
            row = await conn.fetchrow(
                query, candidate.id, *[_to_db(c, data[c]) for c in CANDIDATE_REVIEW_COLUMNS]
            )
        return MatchCandidate.model_validate(_from_db(row)) if row else None

    async def list_candidate_status_priority(self, tenant_id):
        async with self._connection("list_candidate_status_priority") as conn:
            rows = await conn.fetch(
                "SELECT status, priority FROM mpi_match_candidates WHERE tenant_id = $1",
                tenant_id,
            )
        return [(MatchStatus(r["status"]), Priority(r["priority"])) for r in rows]

    # Configuration

    async def get_matching_config(self, tenant_id):
        async with self._connection("get_matching_config") as conn:
            row = await conn.fetchrow(
                "SELECT * FROM mpi_matching_config WHERE tenant_id = $1 AND is_active = true",
                tenant_id,
            )
        return MatchingConfig.model_validate(_from_db(row)) if row else None

    async def upsert_matching_config(self, config):
        data = config.model_dump()
        updatable = tuple(c for c in CONFIG_COLUMNS if c not in {"tenant_id", "created_at"})
        query = (
            f"INSERT INTO mpi_matching_config ({', '.join(CONFIG_COLUMNS)}) "
            f"VALUES ({_placeholders(len(CONFIG_COLUMNS))}) "
            f"ON CONFLICT (tenant_id) DO UPDATE SET {_assignments(updatable)} "
            f"RETURNING *"
        )
        async with self._connection("upsert_matching_config") as conn:
            row = await conn.fetchrow(query, *[_to_db(c, data[c]) for c in CONFIG_COLUMNS])
        return MatchingConfig.model_validate(_from_db(row))
