"""
Observability utilities for recordsync.

Provides the composition-based Tracer used by every component and the
standard span attribute names.

Example:
    >>> from recordsync.observability import create_tracer
    >>>
    >>> class MyStore:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from recordsync.observability.attributes import (
    ATTR_AFTER_ID,
    ATTR_AUTHORITATIVE_STORE,
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DIVERGENCE_COUNT,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_ID,
    ATTR_ENTITY_TYPES,
    ATTR_FAILED_COUNT,
    ATTR_FOR_NEW_INSTALL,
    ATTR_PENDING_COUNT,
    ATTR_PROCESSED_COUNT,
    ATTR_RANGE_END,
    ATTR_RANGE_START,
    ATTR_REMIGRATE,
    ATTR_WITH_SYNC,
)
from recordsync.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes - Entity
    "ATTR_ENTITY_ID",
    "ATTR_ENTITY_TYPES",
    "ATTR_ENTITY_COUNT",
    # Attributes - Batch
    "ATTR_BATCH_SIZE",
    "ATTR_BATCH_NUMBER",
    "ATTR_AFTER_ID",
    "ATTR_PROCESSED_COUNT",
    "ATTR_FAILED_COUNT",
    "ATTR_PENDING_COUNT",
    # Attributes - Verification
    "ATTR_RANGE_START",
    "ATTR_RANGE_END",
    "ATTR_DIVERGENCE_COUNT",
    "ATTR_REMIGRATE",
    # Attributes - Cutover
    "ATTR_AUTHORITATIVE_STORE",
    "ATTR_FOR_NEW_INSTALL",
    "ATTR_WITH_SYNC",
    # Attributes - Database
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
