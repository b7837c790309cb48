"""
Sync backlog tracker.

An entity is pending when it has no normalized row, or when its legacy
modified_at is newer than the normalized synced_at. The state is never
stored: every call recomputes it from both stores, one page of legacy
entity versions at a time, so memory stays bounded by the page size and
a result is never older than the last completed batch.

Example:
    >>> tracker = SyncBacklogTracker(legacy_store, normalized_store)
    >>> await tracker.pending_count()
    1200
    >>> await tracker.next_batch(500)
    [1, 2, 3, ...]
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from datetime import datetime

from recordsync.config import SyncConfig
from recordsync.models import ensure_utc
from recordsync.observability import (
    ATTR_AFTER_ID,
    ATTR_BATCH_SIZE,
    ATTR_ENTITY_TYPES,
    ATTR_PENDING_COUNT,
    Tracer,
    create_tracer,
)
from recordsync.stores.interface import LegacyStore, NormalizedStore

logger = logging.getLogger(__name__)


def is_pending(modified_at: datetime | None, synced_at: datetime | None) -> bool:
    """
    Whether an entity needs to be (re-)migrated.

    Args:
        modified_at: Legacy modification time, or None when it is unreadable.
        synced_at: Normalized sync time, or None when there is no normalized row.
    """
    if modified_at is None or synced_at is None:
        return True
    return ensure_utc(modified_at) > ensure_utc(synced_at)


class SyncBacklogTracker:
    """
    Computes the set of entities whose normalized representation is stale.

    All operations are read-only. If either store is unreachable they
    raise StoreUnavailableError and return nothing.

    Args:
        legacy: Legacy store to scan.
        normalized: Normalized store holding sync times.
        config: Entity types and scan page size (defaults to SyncConfig()).
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        legacy: LegacyStore,
        normalized: NormalizedStore,
        config: SyncConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._legacy = legacy
        self._normalized = normalized
        self._config = config or SyncConfig()

    async def _iter_pending(self, after_id: int) -> AsyncIterator[int]:
        entity_types = self._config.entity_types
        page_size = self._config.scan_page_size

        # without the normalized schema nothing has been migrated yet
        schema_exists = await self._normalized.schema_exists()
        cursor = after_id
        while True:
            versions = await self._legacy.list_entity_versions(entity_types, cursor, page_size)
            if not versions:
                return
            synced: dict[int, datetime] = {}
            if schema_exists:
                synced = await self._normalized.get_sync_times([v[0] for v in versions])
            for entity_id, modified_at in versions:
                if is_pending(modified_at, synced.get(entity_id)):
                    yield entity_id
            if len(versions) < page_size:
                return
            cursor = versions[-1][0]

    async def pending_count(self) -> int:
        """
        Count pending entities.

        Returns:
            Live number of entities needing sync.
        """
        with self._tracer.span(
            "recordsync.backlog.pending_count",
            {ATTR_ENTITY_TYPES: ",".join(self._config.entity_types)},
        ) as span:
            count = 0
            async with aclosing(self._iter_pending(0)) as pending:
                async for _ in pending:
                    count += 1
            if span is not None:
                span.set_attribute(ATTR_PENDING_COUNT, count)
            logger.debug("Pending count: %d", count)
            return count

    async def next_batch(self, n: int, *, after_id: int | None = None) -> list[int]:
        """
        Return up to ``n`` pending entity IDs in ascending order.

        Calling again with an unchanged backlog returns the same batch.

        Args:
            n: Maximum batch size.
            after_id: Only consider IDs greater than this. Lets one run
                move past entities it already attempted.

        Raises:
            ValueError: If n < 1.
        """
        if n < 1:
            raise ValueError(f"batch size must be >= 1, got {n}")
        with self._tracer.span(
            "recordsync.backlog.next_batch",
            {ATTR_BATCH_SIZE: n, ATTR_AFTER_ID: after_id or 0},
        ):
            batch: list[int] = []
            async with aclosing(self._iter_pending(after_id or 0)) as pending:
                async for entity_id in pending:
                    batch.append(entity_id)
                    if len(batch) >= n:
                        break
            logger.debug("Next batch: %d IDs after %s", len(batch), after_id)
            return batch

    async def total_outstanding(self) -> int:
        """Pending count used by the cutover checks. Has no side effects."""
        return await self.pending_count()


__all__ = [
    "SyncBacklogTracker",
    "is_pending",
]
