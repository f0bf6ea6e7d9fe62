"""
MPI Repository - persistence port

The matching engine talks to storage only through MPIRepository. Any
relational or document store can implement it; adapters raise
RepositoryError when the store reports a failure.
"""
from abc import ABC, abstractmethod
from datetime import datetime
import asyncio

import structlog

from patient_mpi.blocking import BlockingFilter
from patient_mpi.config import MatchingConfig
from patient_mpi.lifecycle import (
    AutoMergeLimit,
    enforce_daily_limit,
    is_cleared_for_auto_merge,
    merge_rescored,
)
from patient_mpi.models import IdentityRecord, MatchCandidate, MatchStatus, Priority

logger = structlog.get_logger(__name__)


class MPIRepository(ABC):
    """Storage operations needed by the MPI engine."""

    # Identity records

    @abstractmethod
    async def get_identity_record(self, patient_id: str, tenant_id: str) -> IdentityRecord | None:
        """Point read by (patient, tenant)."""

    @abstractmethod
    async def search_identity_records(self, blocking: BlockingFilter) -> list[IdentityRecord]:
        """Indexed OR-search over blocking keys within one tenant."""

    @abstractmethod
    async def upsert_identity_record(self, record: IdentityRecord) -> IdentityRecord:
        """Insert or update keyed on (patient_id, tenant_id)."""

    @abstractmethod
    async def update_identity_record(
        self, patient_id: str, tenant_id: str, data: dict
    ) -> IdentityRecord | None:
        """Partial update; None when no record exists."""

    @abstractmethod
    async def increment_match_count(
        self, patient_id: str, tenant_id: str, count: int, matched_at: datetime
    ) -> IdentityRecord | None:
        """Atomically add ``count`` to match_count and stamp last_matched_at."""

    @abstractmethod
    async def get_identity_records_by_enterprise_id(self, enterprise_mpi_id: str) -> list[IdentityRecord]:
        """Active records sharing an enterprise MPI id, across tenants."""

    # Match candidates

    @abstractmethod
    async def upsert_match_candidate(
        self,
        candidate: MatchCandidate,
        auto_merge_limit: AutoMergeLimit | None = None,
    ) -> MatchCandidate:
        """
        Insert or refresh keyed on (tenant_id, patient_id_a, patient_id_b).

        An existing row keeps its id, status and review fields; scores,
        priority and eligibility are updated. With ``auto_merge_limit`` the
        daily cap is applied in the same atomic write (see
        ``enforce_daily_limit``).
        """

    @abstractmethod
    async def get_match_candidate(self, candidate_id: str) -> MatchCandidate | None:
        ...

    @abstractmethod
    async def list_pending_candidates(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        priority: Priority | None = None,
    ) -> list[MatchCandidate]:
        """Pending candidates by priority desc, score desc, detected_at asc."""

    @abstractmethod
    async def update_match_candidate(self, candidate: MatchCandidate) -> MatchCandidate | None:
        """Write status/review fields back; None when the id is unknown."""

    @abstractmethod
    async def list_candidate_status_priority(self, tenant_id: str) -> list[tuple[MatchStatus, Priority]]:
        """(status, priority) of every candidate in a tenant, for statistics."""

    # Configuration

    @abstractmethod
    async def get_matching_config(self, tenant_id: str) -> MatchingConfig | None:
        """Active config for a tenant."""

    @abstractmethod
    async def upsert_matching_config(self, config: MatchingConfig) -> MatchingConfig:
        """Insert or replace keyed on tenant_id."""


def pending_sort_key(candidate: MatchCandidate) -> tuple:
    return (-candidate.priority.rank, -candidate.overall_match_score, candidate.detected_at)


class InMemoryMPIRepository(MPIRepository):
    """
    Dict-backed repository.

    Writes are serialized with an asyncio.Lock so that concurrent
    upserts of the same key converge to a single row and the daily
    auto-merge cap is counted and applied in one critical section.
    """

    def __init__(self):
        self._identities: dict[tuple[str, str], IdentityRecord] = {}
        self._candidates: dict[tuple[str, str, str], MatchCandidate] = {}
        self._configs: dict[str, MatchingConfig] = {}
        self._lock = asyncio.Lock()

    async def get_identity_record(self, patient_id, tenant_id):
        return self._identities.get((patient_id, tenant_id))

    async def search_identity_records(self, blocking):
        rows = [r for r in self._identities.values() if blocking.matches(r)]
        return rows[blocking.offset:blocking.offset + blocking.limit]

    async def upsert_identity_record(self, record):
        key = (record.patient_id, record.tenant_id)
        async with self._lock:
            existing = self._identities.get(key)
            if existing:
                record = record.model_copy(update={
                    "id": existing.id,
                    "enterprise_mpi_id": existing.enterprise_mpi_id,
                    "match_count": existing.match_count,
                    "last_matched_at": existing.last_matched_at,
                    "is_golden_record": existing.is_golden_record,
                    "created_at": existing.created_at,
                    "updated_at": datetime.utcnow(),
                })
            self._identities[key] = record
        return record

    async def update_identity_record(self, patient_id, tenant_id, data):
        key = (patient_id, tenant_id)
        async with self._lock:
            existing = self._identities.get(key)
            if existing is None:
                return None
            updated = existing.model_copy(update={**data, "updated_at": datetime.utcnow()})
            self._identities[key] = updated
        return updated

    async def increment_match_count(self, patient_id, tenant_id, count, matched_at):
        key = (patient_id, tenant_id)
        async with self._lock:
            existing = self._identities.get(key)
            if existing is None:
                return None
            updated = existing.model_copy(update={
                "match_count": existing.match_count + count,
                "last_matched_at": matched_at,
                "updated_at": datetime.utcnow(),
            })
            self._identities[key] = updated
        return updated

    async def get_identity_records_by_enterprise_id(self, enterprise_mpi_id):
        return [
            r for r in self._identities.values()
            if r.enterprise_mpi_id == enterprise_mpi_id and r.is_active
        ]

    async def upsert_match_candidate(self, candidate, auto_merge_limit=None):
        key = (candidate.tenant_id, candidate.patient_id_a, candidate.patient_id_b)
        async with self._lock:
            existing = self._candidates.get(key)
            if auto_merge_limit is not None:
                cleared_today = sum(
                    1 for other_key, c in self._candidates.items()
                    if other_key != key
                    and c.tenant_id == candidate.tenant_id
                    and is_cleared_for_auto_merge(c)
                    and c.detected_at >= auto_merge_limit.since
                )
                candidate = enforce_daily_limit(
                    candidate,
                    existing is not None and is_cleared_for_auto_merge(existing),
                    cleared_today,
                    auto_merge_limit.max_per_day,
                )
            stored = merge_rescored(existing, candidate) if existing else candidate
            self._candidates[key] = stored
        return stored

    async def get_match_candidate(self, candidate_id):
        for candidate in self._candidates.values():
            if candidate.id == candidate_id:
                return candidate
        return None

    async def list_pending_candidates(self, tenant_id, limit=50, offset=0, priority=None):
        rows = [
            c for c in self._candidates.values()
            if c.tenant_id == tenant_id
            and c.status == MatchStatus.PENDING
            and (priority is None or c.priority == priority)
        ]
        rows.sort(key=pending_sort_key)
        return rows[offset:offset + limit]

    async def update_match_candidate(self, candidate):
        key = (candidate.tenant_id, candidate.patient_id_a, candidate.patient_id_b)
        async with self._lock:
            existing = self._candidates.get(key)
            if existing is None or existing.id != candidate.id:
                return None
            self._candidates[key] = candidate
        return candidate

    async def list_candidate_status_priority(self, tenant_id):
        return [
            (c.status, c.priority)
            for c in self._candidates.values()
            if c.tenant_id == tenant_id
        ]

    async def get_matching_config(self, tenant_id):
        config = self._configs.get(tenant_id)
        return config if config and config.is_active else None

    async def upsert_matching_config(self, config):
        async with self._lock:
            self._configs[config.tenant_id] = config
        return config

    @property
    def candidate_count(self) -> int:
        return len(self._candidates)
