"""
Verification engine and range scan.

VerificationEngine recomputes both representations of each entity and
reports every mismatch as a DivergenceRecord:

- Fields: the core columns plus the promoted columns recomputed from the
  legacy attributes, compared with the normalized row.
- Attributes: both stores' attribute rows, minus promoted and ignored
  keys, grouped per key and compared as bags. ``["a", "a", "b"]`` and
  ``["a", "b"]`` differ; ``["a", "b"]`` and ``["b", "a"]`` do not.

The engine never writes. VerificationScan walks an ID range batch by
batch and can hand diverging entities back to the BatchMigrator.

Example:
    >>> engine = VerificationEngine(legacy_store, normalized_store)
    >>> report = await engine.verify([1, 2, 3])
    >>> report.failed_ids
    [2]
    >>>
    >>> scan = VerificationScan(engine, legacy_store, migrator=migrator, authority=flag)
    >>> outcome = await scan.run(start=0, end=None, batch_size=500)
    >>> outcome.to_result().exit_code
    0
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from recordsync.attributes import diff_multimaps, normalize_attribute_rows
from recordsync.authority import AuthoritativeStoreFlag
from recordsync.config import SyncConfig, resolve_batch_size
from recordsync.exceptions import (
    EntityNotFoundError,
    EntityTransformError,
    InfiniteLoopDetectedError,
    MalformedEntityError,
    PreconditionFailedError,
    RecordSyncError,
    SchemaMissingError,
)
from recordsync.metrics import SyncMetrics
from recordsync.migrator import BatchMigrator
from recordsync.models import (
    AttributeRow,
    DivergenceKind,
    DivergenceRecord,
    LegacyEntity,
    NormalizedEntity,
    ensure_utc,
)
from recordsync.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_DIVERGENCE_COUNT,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_TYPES,
    ATTR_RANGE_END,
    ATTR_RANGE_START,
    ATTR_REMIGRATE,
    Tracer,
    create_tracer,
)
from recordsync.results import (
    Failure,
    FailureKind,
    OperationResult,
    OperationSummary,
    Success,
    Warning,
)
from recordsync.stores.interface import LegacyStore, NormalizedStore
from recordsync.transform import EntityTransformer

logger = logging.getLogger(__name__)

CORE_FIELDS = ("entity_type", "status", "created_at", "modified_at")


def _values_equal(left: Any, right: Any) -> bool:
    if isinstance(left, datetime) and isinstance(right, datetime):
        return ensure_utc(left) == ensure_utc(right)
    if isinstance(left, Decimal) or isinstance(right, Decimal):
        if left is None or right is None:
            return left is right
        try:
            return Decimal(str(left)) == Decimal(str(right))
        except ArithmeticError:
            return False
    return bool(left == right)


def _without_keys(rows: Sequence[AttributeRow], keys: Collection[str]) -> list[AttributeRow]:
    return [row for row in rows if row.key not in keys]


def _unreadable(entity_id: int, key: str, detail: str) -> DivergenceRecord:
    return DivergenceRecord(
        entity_id=entity_id,
        key=key,
        kind=DivergenceKind.UNREADABLE,
        detail=detail,
    )


def _error_location(error: ValidationError) -> str:
    loc = error.errors()[0]["loc"]
    return ".".join(str(part) for part in loc)


def _format_ids(ids: Collection[int]) -> str:
    return ", ".join(str(i) for i in sorted(ids))


@dataclass(frozen=True)
class VerificationReport:
    """
    Result of verifying one set of entities.

    Attributes:
        divergences: Entity ID -> divergence records, only for entities
            that diverge.
        verified_count: Entities checked.
        elapsed_seconds: Wall-clock time of the check.
    """

    divergences: dict[int, list[DivergenceRecord]] = field(default_factory=dict)
    verified_count: int = 0
    elapsed_seconds: float = 0.0

    @property
    def failed_ids(self) -> list[int]:
        return sorted(self.divergences)

    @property
    def divergence_count(self) -> int:
        return sum(len(records) for records in self.divergences.values())

    @property
    def is_consistent(self) -> bool:
        return not self.divergences


class VerificationEngine:
    """
    Compares the legacy and normalized representations of entities.

    Args:
        legacy: Legacy store.
        normalized: Normalized store.
        config: Promoted field specs and ignored attribute keys.
        metrics: Metrics container for divergence counts.
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        legacy: LegacyStore,
        normalized: NormalizedStore,
        config: SyncConfig | None = None,
        metrics: SyncMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._legacy = legacy
        self._normalized = normalized
        self._config = config or SyncConfig()
        self._transformer = EntityTransformer(self._config)
        self._metrics = metrics or SyncMetrics(operation="verify")

    @property
    def metrics(self) -> SyncMetrics:
        return self._metrics

    def attribute_exclusions(self, excluded_keys: Collection[str] = ()) -> frozenset[str]:
        """Attribute keys left out of the attribute comparison."""
        return (
            self._transformer.migrated_attribute_keys()
            | frozenset(self._config.ignored_attribute_keys)
            | frozenset(excluded_keys)
        )

    async def check_schema(self) -> None:
        """
        Make sure the normalized schema exists.

        Raises:
            SchemaMissingError: If the normalized schema does not exist.
        """
        if not await self._normalized.schema_exists():
            raise SchemaMissingError()

    async def verify(
        self,
        ids: Sequence[int],
        *,
        excluded_keys: Collection[str] | None = None,
    ) -> VerificationReport:
        """
        Verify a batch of entities.

        Args:
            ids: Entity IDs to check.
            excluded_keys: Extra field names or attribute keys to leave out
                of the comparison (known renames or deprecations).

        Returns:
            VerificationReport listing every divergence.

        Raises:
            SchemaMissingError: If the normalized schema does not exist.
            StoreUnavailableError: If a store cannot be reached.
        """
        excluded = frozenset(excluded_keys or ())
        with self._tracer.span(
            "recordsync.verifier.verify",
            {ATTR_ENTITY_COUNT: len(ids)},
        ):
            start = time.perf_counter()
            await self.check_schema()

            attribute_exclusions = self.attribute_exclusions(excluded)
            legacy_attrs = normalize_attribute_rows(
                _without_keys(await self._legacy.read_attribute_rows(ids), attribute_exclusions)
            )
            normalized_attrs = normalize_attribute_rows(
                _without_keys(
                    await self._normalized.read_attribute_rows(ids), attribute_exclusions
                )
            )

            divergences: dict[int, list[DivergenceRecord]] = {}
            for entity_id in ids:
                records, comparable = await self._check_entity(entity_id, excluded)
                if comparable:
                    records.extend(
                        DivergenceRecord(
                            entity_id=entity_id,
                            key=key,
                            kind=DivergenceKind.ATTRIBUTE,
                            legacy_values=legacy_values,
                            normalized_values=normalized_values,
                        )
                        for key, (legacy_values, normalized_values) in diff_multimaps(
                            legacy_attrs.get(entity_id, {}),
                            normalized_attrs.get(entity_id, {}),
                        ).items()
                    )
                if records:
                    divergences[entity_id] = records

            elapsed = time.perf_counter() - start
            self._record_metrics(divergences)
            if divergences:
                logger.debug(
                    "Verified %d entities, %d diverge",
                    len(ids),
                    len(divergences),
                )
            return VerificationReport(
                divergences=divergences,
                verified_count=len(ids),
                elapsed_seconds=elapsed,
            )

    async def _check_entity(
        self,
        entity_id: int,
        excluded: frozenset[str],
    ) -> tuple[list[DivergenceRecord], bool]:
        """
        Field-level check of one entity.

        Returns the field divergences and whether the attributes can be
        compared. A missing or unreadable entity yields a single record
        and no attribute comparison.
        """
        loaded = await self._load(entity_id)
        if isinstance(loaded, DivergenceRecord):
            return [loaded], False
        legacy, normalized = loaded
        try:
            return self._compare_fields(legacy, normalized, excluded), True
        except EntityTransformError as e:
            return [_unreadable(entity_id, e.key, e.reason)], False

    async def _load(
        self,
        entity_id: int,
    ) -> tuple[LegacyEntity, NormalizedEntity] | DivergenceRecord:
        try:
            legacy = await self._legacy.read_entity(entity_id)
        except EntityNotFoundError:
            return DivergenceRecord(
                entity_id=entity_id,
                key="",
                kind=DivergenceKind.MISSING,
                detail="entity missing from legacy store",
            )
        except MalformedEntityError as e:
            return _unreadable(entity_id, e.key, f"legacy {e.reason}")
        except ValidationError as e:
            return _unreadable(entity_id, _error_location(e), f"legacy {e.errors()[0]['msg']}")
        try:
            normalized = await self._normalized.read_entity(entity_id)
        except EntityNotFoundError:
            return DivergenceRecord(
                entity_id=entity_id,
                key="",
                kind=DivergenceKind.MISSING,
                detail="no normalized row",
            )
        except MalformedEntityError as e:
            return _unreadable(entity_id, e.key, f"normalized {e.reason}")
        except ValidationError as e:
            return _unreadable(
                entity_id, _error_location(e), f"normalized {e.errors()[0]['msg']}"
            )
        return legacy, normalized

    def _compare_fields(
        self,
        legacy: LegacyEntity,
        normalized: NormalizedEntity,
        excluded: frozenset[str],
    ) -> list[DivergenceRecord]:
        pairs: list[tuple[str, Any, Any]] = [
            (name, getattr(legacy, name), getattr(normalized, name))
            for name in CORE_FIELDS
            if name not in excluded
        ]
        canonical = self._transformer.canonical_fields(legacy)
        pairs.extend(
            (spec.column, canonical.get(spec.column), normalized.columns.get(spec.column))
            for spec in self._config.field_specs
            if spec.column not in excluded and spec.legacy_key not in excluded
        )
        return [
            DivergenceRecord(
                entity_id=legacy.id,
                key=name,
                kind=DivergenceKind.FIELD,
                legacy_values=[legacy_value],
                normalized_values=[normalized_value],
            )
            for name, legacy_value, normalized_value in pairs
            if not _values_equal(legacy_value, normalized_value)
        ]

    def _record_metrics(self, divergences: dict[int, list[DivergenceRecord]]) -> None:
        counts: dict[str, int] = {}
        for records in divergences.values():
            for record in records:
                counts[record.kind.value] = counts.get(record.kind.value, 0) + 1
        for kind, count in counts.items():
            self._metrics.record_divergences(count, kind)


@dataclass(frozen=True)
class VerificationBatch:
    """
    Per-batch report passed to the scan callback.

    Attributes:
        batch_number: 1-based batch number.
        start_id: Lowest ID of the batch.
        end_id: Highest ID of the batch.
        verified: Entities verified in this batch.
        failures: Divergences found in this batch.
        remigrated: IDs handed back to the migrator.
        remigration_failures: Divergences left after re-migration.
        remaining: Entities left in the range after this batch.
    """

    batch_number: int
    start_id: int
    end_id: int
    verified: int
    failures: dict[int, list[DivergenceRecord]] = field(default_factory=dict)
    remigrated: tuple[int, ...] = ()
    remigration_failures: dict[int, list[DivergenceRecord]] = field(default_factory=dict)
    remaining: int = 0


@dataclass(frozen=True)
class VerificationOutcome:
    """
    Result of a range scan.

    In verbose mode failures are reported per batch and not kept in
    ``failures``; ``failed_ids`` always lists every entity that diverged.

    Attributes:
        verified: Entities verified.
        failures: Divergences by entity (non-verbose runs only).
        remigrated: Entities handed back to the migrator.
        remigration_failures: Divergences left after re-migration.
        elapsed: Wall-clock duration in seconds.
        failed_ids: Every entity that diverged, ascending.
        verbose: Whether the scan ran in verbose mode.
        remigrate: Whether divergent entities were re-migrated.
    """

    verified: int = 0
    failures: dict[int, list[DivergenceRecord]] = field(default_factory=dict)
    remigrated: tuple[int, ...] = ()
    remigration_failures: dict[int, list[DivergenceRecord]] = field(default_factory=dict)
    elapsed: float = 0.0
    failed_ids: tuple[int, ...] = ()
    verbose: bool = False
    remigrate: bool = False

    @property
    def unrepaired_ids(self) -> tuple[int, ...]:
        """Entities that still diverge at the end of the scan."""
        if self.remigrate:
            return tuple(sorted(self.remigration_failures))
        return self.failed_ids

    def to_result(self) -> OperationResult:
        """
        Summarize the scan as a tagged result.

        Returns:
            Warning if there was nothing to verify or if a verbose run
            left divergences, Failure if a non-verbose run found any,
            Success otherwise.
        """
        if self.verified == 0:
            return Warning(
                "There are no entities to verify, aborting.",
                OperationSummary(elapsed_seconds=self.elapsed),
            )
        unrepaired = self.unrepaired_ids
        if self.verbose:
            if unrepaired:
                message = (
                    f"Verification completed; {len(unrepaired)} entities still diverge: "
                    f"{_format_ids(unrepaired)}"
                )
                return Warning(message, self._summary(message, unrepaired))
            message = f"Verification completed: {self.verified} entities verified."
            return Success(self._summary(message, ()))
        if unrepaired:
            message = (
                f"Verification failed for {len(unrepaired)} entities: {_format_ids(unrepaired)}"
            )
            return Failure(
                kind=FailureKind.DIVERGENCE_FOUND,
                detail=message,
                summary=self._summary(message, unrepaired),
            )
        message = f"{self.verified} entities were verified in {self.elapsed:.1f} seconds."
        return Success(self._summary(message, ()))

    def _summary(self, message: str, failed_ids: tuple[int, ...]) -> OperationSummary:
        return OperationSummary(
            affected_count=self.verified,
            elapsed_seconds=self.elapsed,
            message=message,
            failed_ids=failed_ids,
        )


class VerificationScan:
    """
    Verifies an ID range batch by batch.

    Each batch lists up to ``batch_size`` IDs starting at the current
    start ID, verifies them and moves the start past the highest ID seen.
    The scan stops when the range is exhausted and raises
    InfiniteLoopDetectedError if a batch leaves the remaining count
    unchanged.

    Args:
        engine: Verification engine.
        legacy: Legacy store to list IDs from.
        migrator: Batch migrator used for re-migration.
        authority: Authoritative-store flag checked before re-migration.
        config: Default batch size and entity types.
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        engine: VerificationEngine,
        legacy: LegacyStore,
        migrator: BatchMigrator | None = None,
        authority: AuthoritativeStoreFlag | None = None,
        config: SyncConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._engine = engine
        self._legacy = legacy
        self._migrator = migrator
        self._authority = authority
        self._config = config or SyncConfig()

    def resolve_entity_types(self, entity_types: Sequence[str] | None) -> tuple[str, ...]:
        """
        Restrict a requested type list to the configured entity types.

        Raises:
            PreconditionFailedError: If none of the requested types is configured.
        """
        if not entity_types:
            return self._config.entity_types
        requested = {t.strip() for t in entity_types if t.strip()}
        types = tuple(t for t in self._config.entity_types if t in requested)
        if not types:
            raise PreconditionFailedError(
                f"None of the entity types {sorted(requested)} are verifiable; "
                f"expected some of {list(self._config.entity_types)}"
            )
        return types

    async def _check_remigrate(self, verbose: bool) -> None:
        if not verbose:
            raise PreconditionFailedError("Re-migration requires verbose mode")
        if self._migrator is None:
            raise PreconditionFailedError("Re-migration requires a batch migrator")
        if self._authority is not None:
            snapshot = await self._authority.snapshot()
            if snapshot.normalized_is_authoritative:
                raise PreconditionFailedError(
                    "Re-migration is only possible while the legacy store is authoritative"
                )

    async def run(
        self,
        start: int = 0,
        end: int | None = None,
        batch_size: int | None = None,
        *,
        verbose: bool = False,
        remigrate: bool = False,
        entity_types: Sequence[str] | None = None,
        excluded_keys: Collection[str] | None = None,
        callback: Callable[[VerificationBatch], None] | None = None,
    ) -> VerificationOutcome:
        """
        Verify every entity with start <= id <= end.

        Args:
            start: First ID of the range.
            end: Last ID of the range; None or a negative value is unbounded.
            batch_size: Entities per batch; None or 0 means the configured default.
            verbose: Report failures per batch through the callback instead
                of accumulating them.
            remigrate: Re-migrate diverging entities and verify them again.
                Requires verbose.
            entity_types: Restrict the scan to these types.
            excluded_keys: Field names or attribute keys to leave out.
            callback: Called with a VerificationBatch after every batch.

        Returns:
            VerificationOutcome for the whole range.

        Raises:
            PreconditionFailedError: On an invalid argument combination, an
                empty type filter or an authoritative normalized store.
            SchemaMissingError: If the normalized schema does not exist.
            InfiniteLoopDetectedError: If a batch makes no progress.
        """
        if start < 0:
            raise PreconditionFailedError(f"start must be >= 0, got {start}")
        if end is not None and end < 0:
            end = None
        size = resolve_batch_size(batch_size or self._config.batch_size)
        types = self.resolve_entity_types(entity_types)
        if remigrate:
            await self._check_remigrate(verbose)

        with self._tracer.span(
            "recordsync.verifier.scan",
            {
                ATTR_RANGE_START: start,
                ATTR_RANGE_END: -1 if end is None else end,
                ATTR_ENTITY_TYPES: ",".join(types),
                ATTR_REMIGRATE: remigrate,
            },
        ):
            started = time.monotonic()
            await self._engine.check_schema()

            remaining = await self._legacy.count_entities_in_range(types, start, end)
            if remaining == 0:
                logger.warning("There are no entities to verify, aborting.")
                return VerificationOutcome(
                    elapsed=time.monotonic() - started, verbose=verbose, remigrate=remigrate
                )
            logger.info("There are %d entities to verify", remaining)

            verified = 0
            failures: dict[int, list[DivergenceRecord]] = {}
            failed_ids: list[int] = []
            remigrated: list[int] = []
            remigration_failures: dict[int, list[DivergenceRecord]] = {}
            cursor = start
            batch_number = 0

            while remaining > 0:
                ids = await self._legacy.list_entity_ids_in_range(types, cursor, end, size)
                if not ids:
                    break
                batch_number += 1
                batch = await self._verify_batch(
                    batch_number, ids, verbose, remigrate, excluded_keys
                )

                verified += batch.verified
                failed_ids.extend(batch.failures)
                remigrated.extend(batch.remigrated)
                remigration_failures.update(batch.remigration_failures)
                if not verbose:
                    failures.update(batch.failures)

                batch_start = cursor
                cursor = max(ids) + 1
                left = await self._legacy.count_entities_in_range(types, cursor, end)
                if left == remaining:
                    logger.critical("Infinite loop detected, aborting.")
                    raise InfiniteLoopDetectedError(remaining, batch_start)
                remaining = left

                if callback:
                    callback(replace(batch, remaining=remaining))

            elapsed = time.monotonic() - started
            logger.info(
                "Verification completed: %d verified, %d diverging in %.1fs",
                verified,
                len(failed_ids),
                elapsed,
            )
            return VerificationOutcome(
                verified=verified,
                failures=failures,
                remigrated=tuple(sorted(remigrated)),
                remigration_failures=remigration_failures,
                elapsed=elapsed,
                failed_ids=tuple(sorted(failed_ids)),
                verbose=verbose,
                remigrate=remigrate,
            )

    async def _verify_batch(
        self,
        batch_number: int,
        ids: list[int],
        verbose: bool,
        remigrate: bool,
        excluded_keys: Collection[str] | None,
    ) -> VerificationBatch:
        with self._tracer.span(
            "recordsync.verifier.scan_batch",
            {ATTR_BATCH_NUMBER: batch_number, ATTR_ENTITY_COUNT: len(ids)},
        ) as span:
            report = await self._engine.verify(ids, excluded_keys=excluded_keys)
            if span is not None:
                span.set_attribute(ATTR_DIVERGENCE_COUNT, report.divergence_count)

            remigrated: tuple[int, ...] = ()
            remigration_failures: dict[int, list[DivergenceRecord]] = {}
            if report.divergences and verbose:
                for records in report.divergences.values():
                    for record in records:
                        logger.warning("Verification failed: %s", record)
                if remigrate and self._migrator is not None:
                    remigrated = tuple(report.failed_ids)
                    await self._migrator.process(list(remigrated))
                    recheck = await self._engine.verify(
                        list(remigrated), excluded_keys=excluded_keys
                    )
                    remigration_failures = recheck.divergences
                    if remigration_failures:
                        logger.warning(
                            "Re-migration failed for entities: %s",
                            _format_ids(remigration_failures),
                        )
                    else:
                        logger.info("Re-migration successful")

            logger.debug(
                "Verified batch %d (%d..%d): %d diverging",
                batch_number,
                ids[0],
                ids[-1],
                len(report.divergences),
            )
            return VerificationBatch(
                batch_number=batch_number,
                start_id=min(ids),
                end_id=max(ids),
                verified=report.verified_count,
                failures=report.divergences,
                remigrated=remigrated,
                remigration_failures=remigration_failures,
            )

    async def verify_range(
        self,
        start: int = 0,
        end: int | None = None,
        batch_size: int | None = None,
        *,
        verbose: bool = False,
        remigrate: bool = False,
        entity_types: Sequence[str] | None = None,
        excluded_keys: Collection[str] | None = None,
        callback: Callable[[VerificationBatch], None] | None = None,
    ) -> OperationResult:
        """Run a scan and summarize it as a tagged result."""
        try:
            outcome = await self.run(
                start,
                end,
                batch_size,
                verbose=verbose,
                remigrate=remigrate,
                entity_types=entity_types,
                excluded_keys=excluded_keys,
                callback=callback,
            )
        except RecordSyncError as e:
            logger.log(e.severity.log_level, "Verification aborted: %s", e)
            return Failure.from_error(e)
        result = outcome.to_result()
        if isinstance(result, Failure):
            logger.error("%s", result.message)
        return result


__all__ = [
    "CORE_FIELDS",
    "VerificationBatch",
    "VerificationEngine",
    "VerificationOutcome",
    "VerificationReport",
    "VerificationScan",
]
