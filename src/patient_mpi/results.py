"""
Service Results

Every public MPI operation returns a ServiceResult instead of raising,
so callers branch on ``result.success`` and read ``result.data`` or
``result.error``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    DATABASE_ERROR = "DATABASE_ERROR"
    OPERATION_FAILED = "OPERATION_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"


class RepositoryError(Exception):
    """Raised by persistence adapters when the store reports an error."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


@dataclass
class ServiceError:
    """
    A typed failure.

    ``cause`` keeps the raw exception for logging only; it is never meant
    to be shown to end users since store errors may echo PHI.
    """
    code: ErrorCode
    message: str
    cause: Any = None


@dataclass
class ServiceResult(Generic[T]):
    success: bool
    data: T | None = None
    error: ServiceError | None = None

    def unwrap(self) -> T:
        """Return the data or raise if this is a failure (test helper)."""
        if not self.success:
            raise RuntimeError(f"{self.error.code.value}: {self.error.message}")
        return self.data


def success(data: T) -> ServiceResult[T]:
    return ServiceResult(success=True, data=data)


def failure(code: ErrorCode, message: str, cause: Any = None) -> ServiceResult:
    return ServiceResult(success=False, error=ServiceError(code, message, cause))
