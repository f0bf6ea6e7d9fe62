"""
MPI Audit Logging

Structured, fire-and-forget audit events for every identity create,
search, candidate review and failure. Events carry identifiers and
counts only; demographic values are redacted before they are recorded.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable
import uuid

import structlog
from pydantic import BaseModel, Field, ValidationError

from patient_mpi.lifecycle import InvalidTransition
from patient_mpi.logging import PHI_KEYS, REDACTED
from patient_mpi.results import ErrorCode, RepositoryError, ServiceResult, failure

logger = structlog.get_logger(__name__)


class AuditEvent(BaseModel):
    """A single audit event."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    event: str
    success: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_type: str | None = None
    error_message: str | None = None


def scrub_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace values of demographic keys, recursing into nested dicts."""
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if key in PHI_KEYS:
            cleaned[key] = REDACTED
        elif isinstance(value, dict):
            cleaned[key] = scrub_metadata(value)
        else:
            cleaned[key] = value
    return cleaned


class AuditLogger(ABC):
    """Audit collaborator consumed by the MPI service."""

    @abstractmethod
    async def record(self, event: AuditEvent) -> None:
        """Persist or forward one event. Must not raise."""

    async def info(self, event: str, **metadata) -> AuditEvent:
        entry = AuditEvent(event=event, metadata=scrub_metadata(metadata))
        await self.record(entry)
        return entry

    async def error(self, event: str, error: Exception | None = None, **metadata) -> AuditEvent:
        # The exception message is not copied: store errors can echo row values.
        entry = AuditEvent(
            event=event,
            success=False,
            metadata=scrub_metadata(metadata),
            error_type=type(error).__name__ if error else None,
            error_message=event,
        )
        await self.record(entry)
        return entry


class StructlogAuditLogger(AuditLogger):
    """
    Writes audit events through structlog and fans out to handlers
    (e.g. a SIEM forwarder). Handler failures are logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: list[Callable[[AuditEvent], None]] = []

    def add_handler(self, handler: Callable[[AuditEvent], None]) -> None:
        self._handlers.append(handler)

    async def record(self, event: AuditEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Audit handler failed", handler=repr(handler), error_type=type(e).__name__)

        log_method = logger.info if event.success else logger.warning
        log_method(
            f"AUDIT: {event.event}",
            **{
                **event.metadata,
                "audit_id": event.id,
                "success": event.success,
                "error_type": event.error_type,
            },
        )


class RecordingAuditLogger(AuditLogger):
    """Keeps events in memory; used by tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [e.event for e in self.events]

    def find(self, name: str) -> list[AuditEvent]:
        return [e for e in self.events if e.event == name]


class AuditedOperations:
    """
    Base for services whose operations return ServiceResult.

    Maps exceptions to error codes and audits every failure with the
    operation's non-PHI context before it is returned.
    """

    def __init__(self, audit: AuditLogger | None = None):
        self._audit = audit or StructlogAuditLogger()

    async def _fail(
        self,
        event: str,
        code: ErrorCode,
        message: str,
        error: Exception | None = None,
        **context,
    ) -> ServiceResult:
        await self._audit.error(event, error, error_code=code.value, **context)
        return failure(code, message, error)

    async def _fail_from_exception(
        self,
        event: str,
        message: str,
        error: Exception,
        **context,
    ) -> ServiceResult:
        if isinstance(error, RepositoryError):
            code = ErrorCode.DATABASE_ERROR
        elif isinstance(error, InvalidTransition):
            code = ErrorCode.INVALID_TRANSITION
        elif isinstance(error, (ValidationError, ValueError)):
            code = ErrorCode.VALIDATION_ERROR
        else:
            code = ErrorCode.OPERATION_FAILED
            logger.exception("Unexpected MPI operation failure", audit_event=event)
        return await self._fail(event, code, message, error, **context)
