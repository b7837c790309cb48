"""
Exceptions for the recordsync migration system.

Exception Hierarchy:
    RecordSyncError (base)
    +-- StoreUnavailableError
    +-- SchemaMissingError
    +-- EntityNotFoundError
    +-- EntityMigrationError
    |   +-- EntityTransformError
    |   +-- MalformedEntityError
    +-- PreconditionFailedError
    +-- InfiniteLoopDetectedError

Error Classification:
    Every error carries an ErrorClassification describing its severity,
    how it can be recovered from and what an operator should do next.
    The classification drives the exit code and log level chosen by the
    command line runner.

A divergence found during verification is not an exception: it is
reported as a DivergenceRecord (see recordsync.models).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """
    Severity level of sync errors.

    Attributes:
        CRITICAL: Data may be inconsistent; operator attention required.
        ERROR: Operation failed and did not complete.
        WARNING: Operation degraded but the run can continue.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for sync errors.

    Attributes:
        RECOVERABLE: Recoverable with operator action (e.g. run sync first).
        TRANSIENT: Temporary; retrying the batch is expected to succeed.
        FATAL: Do not retry automatically.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


STORE_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=500.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.2,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class RecordSyncError(Exception):
    """
    Base exception for all recordsync errors.

    Attributes:
        message: Human-readable error description.
        entity_ids: Entity IDs involved in the failure, if any.
        suggested_action: Suggested action for recovery.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RECORDSYNC_ERROR",
        category="general",
        suggested_action="Review the sync logs and retry once the cause is resolved",
    )

    def __init__(
        self,
        message: str,
        *,
        entity_ids: Iterable[int] | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.entity_ids = sorted(entity_ids) if entity_ids else []
        self.suggested_action = suggested_action or self.classification.suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        if self.entity_ids:
            return f"{self.message} entity_ids={self.entity_ids}"
        return self.message

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "entity_ids": self.entity_ids,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class StoreUnavailableError(RecordSyncError):
    """
    Raised when a backing store cannot be reached.

    Aborts the current batch. Entities already committed by per-entity
    transactions stay migrated, so retrying the batch is safe.

    Attributes:
        store: Name of the store that failed ("legacy", "normalized", ...).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STORE_UNAVAILABLE",
        category="connectivity",
        suggested_action="Check database connectivity, then re-run the batch",
        retry_config=STORE_RETRY_CONFIG,
    )

    def __init__(self, store: str, reason: str) -> None:
        self.store = store
        self.reason = reason
        super().__init__(f"{store} store unavailable: {reason}")


class SchemaMissingError(RecordSyncError):
    """Raised when the normalized schema has not been created yet."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="SCHEMA_MISSING",
        category="schema",
        suggested_action="Create the normalized tables (recordsync create-schema) and retry",
    )

    def __init__(self, message: str = "Normalized store schema does not exist") -> None:
        super().__init__(message)


class EntityNotFoundError(RecordSyncError):
    """Raised when an entity does not exist in the store that was asked."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ENTITY_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the entity ID exists in the legacy store",
    )

    def __init__(self, entity_id: int, store: str) -> None:
        self.entity_id = entity_id
        self.store = store
        super().__init__(f"Entity {entity_id} not found in {store} store", entity_ids=[entity_id])


class EntityMigrationError(RecordSyncError):
    """
    Raised when a single entity cannot be migrated.

    The batch migrator records this failure and continues with the next
    entity; it never aborts a batch.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ENTITY_MIGRATION_FAILED",
        category="migration",
        suggested_action="Inspect the legacy data of the listed entities and re-run sync",
    )

    def __init__(self, entity_id: int, reason: str) -> None:
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Entity {entity_id} could not be migrated: {reason}", entity_ids=[entity_id]
        )


class EntityTransformError(EntityMigrationError):
    """Raised when legacy data cannot be mapped onto the normalized schema."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ENTITY_MALFORMED",
        category="migration",
        suggested_action="Fix the malformed legacy attributes and re-run sync",
    )

    def __init__(self, entity_id: int, key: str, reason: str) -> None:
        self.key = key
        super().__init__(entity_id, f"attribute {key!r}: {reason}")


class MalformedEntityError(EntityMigrationError):
    """
    Raised when a stored entity row cannot be decoded.

    Attributes:
        key: Column whose stored value is unreadable.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ENTITY_UNREADABLE",
        category="migration",
        suggested_action="Repair the stored column values of the listed entities and re-run sync",
    )

    def __init__(self, entity_id: int, key: str, reason: str) -> None:
        self.key = key
        super().__init__(entity_id, f"column {key!r}: {reason}")


class PreconditionFailedError(RecordSyncError):
    """
    Raised when an operation is refused before it changes any state.

    Attributes:
        reasons: Every failed precondition, in check order.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PRECONDITION_FAILED",
        category="cutover",
        suggested_action="Resolve the listed preconditions and retry",
    )

    def __init__(self, reasons: list[str] | str) -> None:
        self.reasons = [reasons] if isinstance(reasons, str) else list(reasons)
        super().__init__("; ".join(self.reasons))


class InfiniteLoopDetectedError(RecordSyncError):
    """
    Raised when a verification range scan stops making progress.

    Attributes:
        remaining: Remaining entity count observed before and after the batch.
        range_start: Start ID of the batch that made no progress.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INFINITE_LOOP_DETECTED",
        category="verification",
        suggested_action="Check the ID range and entity type filter; do not retry automatically",
    )

    def __init__(self, remaining: int, range_start: int) -> None:
        self.remaining = remaining
        self.range_start = range_start
        super().__init__(
            f"Infinite loop detected: {remaining} entities remaining "
            f"before and after batch starting at {range_start}"
        )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "STORE_RETRY_CONFIG",
    "RecordSyncError",
    "StoreUnavailableError",
    "SchemaMissingError",
    "EntityNotFoundError",
    "EntityMigrationError",
    "EntityTransformError",
    "MalformedEntityError",
    "PreconditionFailedError",
    "InfiniteLoopDetectedError",
]
