import pytest

from patient_mpi.audit import RecordingAuditLogger
from patient_mpi.config import MPISettings
from patient_mpi.models import PatientDemographics
from patient_mpi.repository import InMemoryMPIRepository
from patient_mpi.service import MPIMatchingService

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


@pytest.fixture
def settings():
    return MPISettings(_env_file=None)


@pytest.fixture
def repo():
    return InMemoryMPIRepository()


@pytest.fixture
def audit():
    return RecordingAuditLogger()


@pytest.fixture
def service(repo, audit, settings):
    return MPIMatchingService(repo, audit=audit, settings=settings)


def demographics(**overrides) -> PatientDemographics:
    data = {
        "first_name": "John",
        "last_name": "Smith",
        "date_of_birth": "1980-01-01",
    }
    data.update(overrides)
    return PatientDemographics(**data)


async def add_patient(service, patient_id, tenant_id=TENANT, **overrides):
    result = await service.create_identity_record(patient_id, tenant_id, demographics(**overrides))
    assert result.success, result.error
    return result.data
