"""
Standard span and metric attributes for recordsync.

Attribute names shared by every component so that spans and metrics from
the backlog tracker, migrator, verifier and cutover gate can be filtered
consistently. Database attributes follow OpenTelemetry semantic conventions.

Example:
    >>> from recordsync.observability.attributes import ATTR_BATCH_SIZE
    >>>
    >>> with tracer.span("recordsync.migrator.process", {ATTR_BATCH_SIZE: len(ids)}):
    ...     pass
"""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_ENTITY_ID = "recordsync.entity.id"
"""Integer identifier shared by the legacy and normalized representations."""

ATTR_ENTITY_TYPES = "recordsync.entity.types"
"""Comma separated list of entity types an operation is filtered to."""

ATTR_ENTITY_COUNT = "recordsync.entity.count"
"""Number of entities involved in an operation (integer)."""

# =============================================================================
# Batch Attributes
# =============================================================================

ATTR_BATCH_SIZE = "recordsync.batch.size"
"""Requested or actual batch size (integer)."""

ATTR_BATCH_NUMBER = "recordsync.batch.number"
"""1-based ordinal of a batch within a run (integer)."""

ATTR_AFTER_ID = "recordsync.batch.after_id"
"""Exclusive lower bound used when fetching the next batch (integer)."""

ATTR_PROCESSED_COUNT = "recordsync.batch.processed"
"""Entities written successfully in a batch (integer)."""

ATTR_FAILED_COUNT = "recordsync.batch.failed"
"""Entities that failed in a batch (integer)."""

ATTR_PENDING_COUNT = "recordsync.backlog.pending"
"""Entities still pending sync (integer)."""

# =============================================================================
# Verification Attributes
# =============================================================================

ATTR_RANGE_START = "recordsync.verify.range_start"
"""Inclusive first entity ID of a verification scan (integer)."""

ATTR_RANGE_END = "recordsync.verify.range_end"
"""Inclusive last entity ID of a verification scan (integer)."""

ATTR_DIVERGENCE_COUNT = "recordsync.verify.divergences"
"""Divergence records produced by a verification pass (integer)."""

ATTR_REMIGRATE = "recordsync.verify.remigrate"
"""Whether failed entities are re-migrated during a scan (boolean)."""

# =============================================================================
# Cutover Attributes
# =============================================================================

ATTR_AUTHORITATIVE_STORE = "recordsync.cutover.authoritative_store"
"""Authoritative store before or after a cutover transition (string)."""

ATTR_FOR_NEW_INSTALL = "recordsync.cutover.for_new_install"
"""Whether enable() was requested for a fresh installation (boolean)."""

ATTR_WITH_SYNC = "recordsync.cutover.with_sync"
"""Whether the transition also toggles background sync (boolean)."""

# =============================================================================
# Database Attributes (OpenTelemetry Semantic Conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'sqlite', 'postgresql')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation name (e.g., 'SELECT', 'UPSERT')."""


__all__ = [
    "ATTR_ENTITY_ID",
    "ATTR_ENTITY_TYPES",
    "ATTR_ENTITY_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_NUMBER",
    "ATTR_AFTER_ID",
    "ATTR_PROCESSED_COUNT",
    "ATTR_FAILED_COUNT",
    "ATTR_PENDING_COUNT",
    "ATTR_RANGE_START",
    "ATTR_RANGE_END",
    "ATTR_DIVERGENCE_COUNT",
    "ATTR_REMIGRATE",
    "ATTR_AUTHORITATIVE_STORE",
    "ATTR_FOR_NEW_INSTALL",
    "ATTR_WITH_SYNC",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
