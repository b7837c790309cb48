"""
recordsync - Resumable, verifiable migration from a key/value legacy store
to a normalized store.

This library provides:
- Attribute normalization and multiset comparison of attribute rows
- Sync backlog tracking (which entities still need copying)
- Idempotent batch migration with per-entity transactions
- Verification of both representations, with optional re-migration
- A cutover gate guarding the authoritative-store flag
- In-memory and SQLAlchemy (PostgreSQL, SQLite) stores
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("recordsync")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from recordsync.attributes import (
    AttributeMultimap,
    diff_multimaps,
    multiset_difference,
    normalize_attribute_rows,
)
from recordsync.authority import AuthoritativeStoreFlag, AuthorityWriter
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import DEFAULT_BATCH_SIZE, FieldSpec, SyncConfig, resolve_batch_size
from recordsync.cutover import CutoverGate
from recordsync.exceptions import (
    EntityMigrationError,
    EntityNotFoundError,
    EntityTransformError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    InfiniteLoopDetectedError,
    MalformedEntityError,
    PreconditionFailedError,
    RecordSyncError,
    RetryConfig,
    SchemaMissingError,
    StoreUnavailableError,
)
from recordsync.metrics import SyncMetrics, SyncMetricSnapshot
from recordsync.migrator import BatchMigrator, BatchResult
from recordsync.models import (
    AttributeRow,
    AuthoritativeStore,
    AuthoritySnapshot,
    DivergenceKind,
    DivergenceRecord,
    ExtensionCompatibility,
    ExtensionCompatibilityReport,
    LegacyEntity,
    NormalizedEntity,
)
from recordsync.results import (
    Failure,
    FailureKind,
    OperationResult,
    OperationSummary,
    Success,
    Warning,
)
from recordsync.runner import SyncProgress, SyncRunner
from recordsync.transform import EntityTransformer
from recordsync.verifier import (
    VerificationBatch,
    VerificationEngine,
    VerificationOutcome,
    VerificationReport,
    VerificationScan,
)

__all__ = [
    "__version__",
    # Models
    "AttributeRow",
    "LegacyEntity",
    "NormalizedEntity",
    "AuthoritativeStore",
    "AuthoritySnapshot",
    "DivergenceKind",
    "DivergenceRecord",
    "ExtensionCompatibility",
    "ExtensionCompatibilityReport",
    # Configuration
    "DEFAULT_BATCH_SIZE",
    "FieldSpec",
    "SyncConfig",
    "resolve_batch_size",
    # Attribute normalizer
    "AttributeMultimap",
    "normalize_attribute_rows",
    "multiset_difference",
    "diff_multimaps",
    # Components
    "SyncBacklogTracker",
    "EntityTransformer",
    "BatchMigrator",
    "BatchResult",
    "SyncRunner",
    "SyncProgress",
    "VerificationEngine",
    "VerificationReport",
    "VerificationScan",
    "VerificationBatch",
    "VerificationOutcome",
    "CutoverGate",
    "AuthoritativeStoreFlag",
    "AuthorityWriter",
    # Metrics
    "SyncMetrics",
    "SyncMetricSnapshot",
    # Results
    "Success",
    "Warning",
    "Failure",
    "FailureKind",
    "OperationSummary",
    "OperationResult",
    # Exceptions
    "RecordSyncError",
    "StoreUnavailableError",
    "SchemaMissingError",
    "EntityNotFoundError",
    "EntityMigrationError",
    "EntityTransformError",
    "MalformedEntityError",
    "PreconditionFailedError",
    "InfiniteLoopDetectedError",
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
]
