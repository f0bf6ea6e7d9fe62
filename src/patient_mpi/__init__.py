"""Patient MPI - probabilistic identity matching and duplicate review"""
from patient_mpi.config import MatchingConfig, MPISettings, get_settings
from patient_mpi.models import (
    IdentityRecord,
    MatchCandidate,
    MatchResult,
    MatchSearchCriteria,
    MatchStatus,
    MPISearchOptions,
    PatientDemographics,
    Priority,
)
from patient_mpi.normalize import normalize_name, normalize_phone
from patient_mpi.phonetic import soundex
from patient_mpi.repository import InMemoryMPIRepository, MPIRepository
from patient_mpi.results import ErrorCode, ServiceResult
from patient_mpi.service import MPIMatchingService
from patient_mpi.similarity import jaro_similarity, jaro_winkler_similarity

__version__ = "0.1.0"
__all__ = [
    "MPIMatchingService",
    "MPIRepository",
    "InMemoryMPIRepository",
    "MatchingConfig",
    "MPISettings",
    "get_settings",
    "IdentityRecord",
    "MatchCandidate",
    "MatchResult",
    "MatchSearchCriteria",
    "MatchStatus",
    "MPISearchOptions",
    "PatientDemographics",
    "Priority",
    "ErrorCode",
    "ServiceResult",
    "jaro_similarity",
    "jaro_winkler_similarity",
    "soundex",
    "normalize_name",
    "normalize_phone",
]
