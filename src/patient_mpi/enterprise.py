"""
Enterprise Identity Linking

Associates a tenant-local identity with a cross-tenant enterprise MPI id.
This is the only path by which identities are correlated across tenant
boundaries, and it is always an explicit, audited write; the matching
engine never infers it.
"""

import structlog

from patient_mpi.audit import AuditedOperations, AuditLogger
from patient_mpi.models import IdentityRecord
from patient_mpi.repository import MPIRepository
from patient_mpi.results import ErrorCode, ServiceResult, success

logger = structlog.get_logger(__name__)


class EnterpriseIdentityLinker(AuditedOperations):

    def __init__(self, repository: MPIRepository, audit: AuditLogger | None = None):
        super().__init__(audit)
        self._repo = repository

    async def link(
        self,
        patient_id: str,
        tenant_id: str,
        enterprise_mpi_id: str,
    ) -> ServiceResult[IdentityRecord]:
        """Attach ``enterprise_mpi_id`` to the patient's identity in ``tenant_id``."""
        context = {
            "patient_id": patient_id,
            "tenant_id": tenant_id,
            "enterprise_mpi_id": enterprise_mpi_id,
        }
        try:
            if not enterprise_mpi_id or not enterprise_mpi_id.strip():
                return await self._fail(
                    "MPI_ENTERPRISE_LINK_FAILED",
                    ErrorCode.VALIDATION_ERROR,
                    "Enterprise MPI id is required",
                    **context,
                )

            existing = await self._repo.get_identity_record(patient_id, tenant_id)
            if existing is None:
                return await self._fail(
                    "MPI_ENTERPRISE_LINK_FAILED",
                    ErrorCode.NOT_FOUND,
                    "Patient identity record not found",
                    **context,
                )

            record = await self._repo.update_identity_record(
                patient_id, tenant_id, {"enterprise_mpi_id": enterprise_mpi_id}
            )
            if record is None:
                return await self._fail(
                    "MPI_ENTERPRISE_LINK_FAILED",
                    ErrorCode.NOT_FOUND,
                    "Patient identity record not found",
                    **context,
                )

            await self._audit.info(
                "MPI_ENTERPRISE_LINK_CREATED",
                previous_enterprise_mpi_id=existing.enterprise_mpi_id,
                **context,
            )
            return success(record)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_ENTERPRISE_LINK_FAILED", "Failed to link to enterprise MPI", e, **context
            )

    async def links(self, enterprise_mpi_id: str) -> ServiceResult[list[IdentityRecord]]:
        """All active identities sharing ``enterprise_mpi_id``, across tenants."""
        try:
            records = await self._repo.get_identity_records_by_enterprise_id(enterprise_mpi_id)
            await self._audit.info(
                "MPI_ENTERPRISE_LINKS_READ",
                enterprise_mpi_id=enterprise_mpi_id,
                record_count=len(records),
                tenant_count=len({r.tenant_id for r in records}),
            )
            return success(records)
        except Exception as e:
            return await self._fail_from_exception(
                "MPI_ENTERPRISE_LINKS_FAILED",
                "Failed to get enterprise MPI links",
                e,
                enterprise_mpi_id=enterprise_mpi_id,
            )
