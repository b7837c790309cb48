"""
Tagged results for batch and cutover operations.

Every operator-facing operation (sync, verify, enable, disable) reports
its outcome as exactly one of three variants:

    Success(summary)                 the operation did its work
    Warning(reason, summary)         nothing to do, or a no-op
    Failure(kind, detail, summary)   refused or aborted

Each variant carries an OperationSummary with the number of affected
entities, the elapsed time and any entity IDs that failed, so that a
failure always enumerates the offending IDs.

Example:
    >>> result = Warning("There are no entities to sync.", OperationSummary())
    >>> result.status
    'warning'
    >>> result.exit_code
    2
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from recordsync.exceptions import (
    EntityMigrationError,
    EntityNotFoundError,
    InfiniteLoopDetectedError,
    PreconditionFailedError,
    RecordSyncError,
    SchemaMissingError,
    StoreUnavailableError,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_WARNING = 2


class FailureKind(Enum):
    """Kinds of failure a tagged result can report."""

    STORE_UNAVAILABLE = "store_unavailable"
    SCHEMA_MISSING = "schema_missing"
    ENTITY_NOT_FOUND = "entity_not_found"
    MIGRATION_FAILED = "migration_failed"
    PRECONDITION_FAILED = "precondition_failed"
    INFINITE_LOOP_DETECTED = "infinite_loop_detected"
    DIVERGENCE_FOUND = "divergence_found"
    INVALID_ARGUMENT = "invalid_argument"
    ERROR = "error"


_KIND_BY_ERROR: tuple[tuple[type[RecordSyncError], FailureKind], ...] = (
    (StoreUnavailableError, FailureKind.STORE_UNAVAILABLE),
    (SchemaMissingError, FailureKind.SCHEMA_MISSING),
    (EntityNotFoundError, FailureKind.ENTITY_NOT_FOUND),
    (EntityMigrationError, FailureKind.MIGRATION_FAILED),
    (PreconditionFailedError, FailureKind.PRECONDITION_FAILED),
    (InfiniteLoopDetectedError, FailureKind.INFINITE_LOOP_DETECTED),
)


@dataclass(frozen=True)
class OperationSummary:
    """
    What an operation touched.

    Attributes:
        affected_count: Entities processed, verified or flipped.
        elapsed_seconds: Wall-clock duration of the operation.
        message: Human-readable summary line.
        failed_ids: Entity IDs that failed, in ascending order.
    """

    affected_count: int = 0
    elapsed_seconds: float = 0.0
    message: str = ""
    failed_ids: tuple[int, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "affected_count": self.affected_count,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "message": self.message,
            "failed_ids": list(self.failed_ids),
        }


@dataclass(frozen=True)
class Success:
    """The operation completed and did its work."""

    summary: OperationSummary = field(default_factory=OperationSummary)

    status = "success"
    exit_code = EXIT_SUCCESS

    @property
    def message(self) -> str:
        return self.summary.message

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "summary": self.summary.to_dict()}


@dataclass(frozen=True)
class Warning:  # noqa: A001 - one of the three result variants
    """The operation had nothing to do or was a no-op."""

    reason: str
    summary: OperationSummary = field(default_factory=OperationSummary)

    status = "warning"
    exit_code = EXIT_WARNING

    @property
    def message(self) -> str:
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "reason": self.reason, "summary": self.summary.to_dict()}


@dataclass(frozen=True)
class Failure:
    """
    The operation was refused or aborted.

    Attributes:
        kind: Failure category.
        detail: Human-readable description; lists every reason for
            precondition failures.
        summary: Progress made before the failure, if any.
    """

    kind: FailureKind
    detail: str
    summary: OperationSummary = field(default_factory=OperationSummary)

    status = "failure"
    exit_code = EXIT_FAILURE

    @property
    def message(self) -> str:
        return self.detail

    @classmethod
    def from_error(
        cls,
        error: RecordSyncError,
        summary: OperationSummary | None = None,
    ) -> Failure:
        """
        Build a failure result from a recordsync exception.

        Args:
            error: The exception that ended the operation.
            summary: Progress made before the error.

        Returns:
            Failure whose kind matches the exception type.
        """
        kind = FailureKind.ERROR
        for error_type, candidate in _KIND_BY_ERROR:
            if isinstance(error, error_type):
                kind = candidate
                break
        if summary is None:
            summary = OperationSummary(failed_ids=tuple(error.entity_ids))
        return cls(kind=kind, detail=str(error), summary=summary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "kind": self.kind.value,
            "detail": self.detail,
            "summary": self.summary.to_dict(),
        }


OperationResult = Success | Warning | Failure


__all__ = [
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
    "EXIT_WARNING",
    "FailureKind",
    "OperationSummary",
    "Success",
    "Warning",
    "Failure",
    "OperationResult",
]
