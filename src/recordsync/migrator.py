"""
Batch migrator.

Copies a batch of entities from the legacy store to the normalized store.
Each entity is read, transformed and upserted on its own, in its own
transaction, so:

- a malformed entity is recorded as failed and the batch continues,
- an interrupted batch keeps every entity written before the interruption,
- re-running on the same IDs converges to the same normalized state.

A store outage aborts the batch with StoreUnavailableError.

Example:
    >>> migrator = BatchMigrator(legacy_store, normalized_store, authority=flag)
    >>> result = await migrator.process([1, 2, 3])
    >>> result.processed_count, result.failed
    (3, {})
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.config import SyncConfig
from recordsync.exceptions import (
    EntityMigrationError,
    EntityNotFoundError,
    PreconditionFailedError,
    SchemaMissingError,
    StoreUnavailableError,
)
from recordsync.metrics import SyncMetrics
from recordsync.observability import (
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_ID,
    ATTR_FAILED_COUNT,
    ATTR_PROCESSED_COUNT,
    Tracer,
    create_tracer,
)
from recordsync.stores.interface import LegacyStore, NormalizedStore
from recordsync.transform import EntityTransformer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of one migrator batch.

    Attributes:
        processed_count: Entities written to the normalized store.
        failed: Entity ID -> failure reason for entities that were skipped.
        elapsed_seconds: Wall-clock time of the batch.
    """

    processed_count: int = 0
    failed: dict[int, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def failed_ids(self) -> list[int]:
        return sorted(self.failed)

    @property
    def attempted_count(self) -> int:
        return self.processed_count + len(self.failed)


class BatchMigrator:
    """
    Migrates batches of entities from the legacy to the normalized store.

    Args:
        legacy: Legacy store to read from.
        normalized: Normalized store to upsert into.
        authority: Authoritative-store flag. Migration is refused while the
            normalized store is authoritative. None means no flag is
            configured and the legacy store is authoritative.
        config: Promoted field specs (defaults to SyncConfig()).
        metrics: Metrics container (one is created if not given).
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        legacy: LegacyStore,
        normalized: NormalizedStore,
        authority: AuthoritativeStoreFlag | None = None,
        config: SyncConfig | None = None,
        metrics: SyncMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._legacy = legacy
        self._normalized = normalized
        self._authority = authority
        self._config = config or SyncConfig()
        self._transformer = EntityTransformer(self._config)
        self._metrics = metrics or SyncMetrics(operation="sync")

    @property
    def transformer(self) -> EntityTransformer:
        return self._transformer

    @property
    def metrics(self) -> SyncMetrics:
        return self._metrics

    async def _check_preconditions(self) -> None:
        if self._authority is not None:
            snapshot = await self._authority.snapshot()
            if snapshot.normalized_is_authoritative:
                raise PreconditionFailedError(
                    "The normalized store is authoritative; copying legacy data "
                    "would overwrite it"
                )
        if not await self._normalized.schema_exists():
            raise SchemaMissingError()

    async def _migrate_one(self, entity_id: int) -> None:
        with self._tracer.span(
            "recordsync.migrator.migrate_entity",
            {ATTR_ENTITY_ID: entity_id},
        ):
            legacy = await self._legacy.read_entity(entity_id)
            # synced_at is the legacy version this copy was taken from
            entity = self._transformer.to_normalized(legacy, synced_at=legacy.modified_at)
            await self._normalized.write_entity(entity)

    async def process(self, ids: Sequence[int]) -> BatchResult:
        """
        Migrate a batch of entities.

        Args:
            ids: Entity IDs, processed in the given order.

        Returns:
            BatchResult with the processed count, the failures and the
            elapsed time.

        Raises:
            PreconditionFailedError: If the normalized store is authoritative.
            SchemaMissingError: If the normalized schema does not exist.
            StoreUnavailableError: If a store becomes unreachable. Entities
                written before the outage stay migrated.
        """
        with self._tracer.span(
            "recordsync.migrator.process",
            {ATTR_ENTITY_COUNT: len(ids)},
        ) as span:
            start = time.perf_counter()
            await self._check_preconditions()

            processed = 0
            failed: dict[int, str] = {}
            for entity_id in ids:
                try:
                    await self._migrate_one(entity_id)
                except StoreUnavailableError:
                    logger.error(
                        "Store unavailable while migrating entity %d; aborting batch "
                        "after %d processed, %d failed",
                        entity_id,
                        processed,
                        len(failed),
                    )
                    self._metrics.record_batch(
                        processed, len(failed), time.perf_counter() - start
                    )
                    raise
                except (EntityNotFoundError, EntityMigrationError) as e:
                    logger.warning("Skipping entity %d: %s", entity_id, e)
                    failed[entity_id] = str(e)
                except ValidationError as e:
                    logger.warning("Skipping entity %d: invalid data: %s", entity_id, e)
                    failed[entity_id] = f"invalid data: {e.errors()[0]['msg']}"
                else:
                    processed += 1

            elapsed = time.perf_counter() - start
            self._metrics.record_batch(processed, len(failed), elapsed)
            if span is not None:
                span.set_attribute(ATTR_PROCESSED_COUNT, processed)
                span.set_attribute(ATTR_FAILED_COUNT, len(failed))

            logger.debug(
                "Batch done: %d processed, %d failed in %.3fs",
                processed,
                len(failed),
                elapsed,
            )
            return BatchResult(processed_count=processed, failed=failed, elapsed_seconds=elapsed)


__all__ = [
    "BatchMigrator",
    "BatchResult",
]
