"""
Sync runner.

Drives the backlog tracker and the batch migrator until the backlog is
empty, yielding a SyncProgress heartbeat after every batch so an
operator can see that the run is moving. Cancel and pause take effect
between batches; everything committed before that stays migrated, and a
later run picks up from the live backlog.

Example:
    >>> runner = SyncRunner(tracker, migrator, authority=flag)
    >>> async for progress in runner.run(batch_size=500):
    ...     print(f"batch {progress.batch_number}: {progress.remaining} remaining")
    >>>
    >>> result = await runner.sync_all(batch_size=500)
    >>> result.exit_code
    0
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import SyncConfig, resolve_batch_size
from recordsync.exceptions import RecordSyncError, RetryConfig
from recordsync.migrator import BatchMigrator, BatchResult
from recordsync.observability import (
    ATTR_BATCH_NUMBER,
    ATTR_BATCH_SIZE,
    Tracer,
    create_tracer,
)
from recordsync.results import Failure, OperationResult, OperationSummary, Success, Warning

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncProgress:
    """
    Heartbeat emitted after each batch.

    Attributes:
        batch_number: 1-based number of the batch just finished.
        processed: Entities migrated so far in this run.
        failed: Entities that failed so far in this run.
        remaining: Pending entities after this batch, derived from the count
            taken when the run started.
        elapsed_seconds: Time since the run started.
        failed_ids: Every entity ID that failed so far, ascending.
    """

    batch_number: int
    processed: int
    failed: int
    remaining: int
    elapsed_seconds: float
    failed_ids: tuple[int, ...] = ()

    @property
    def rate(self) -> float:
        """Entities migrated per second."""
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.processed / self.elapsed_seconds


class SyncRunner:
    """
    Batch loop around SyncBacklogTracker and BatchMigrator.

    Within one run the next batch starts after the highest ID of the
    previous batch, so entities that failed are not retried forever.
    Entities modified behind that point are picked up by the next run.

    A batch aborted by a transient error (a store outage) is retried with
    exponential backoff. Migrated entities are upserted again, which
    converges to the same state.

    Args:
        tracker: Backlog tracker.
        migrator: Batch migrator.
        authority: Authoritative-store flag, read by run_background().
        config: Batch size and background interval (defaults to SyncConfig()).
        retry_config: Backoff for transient batch failures. None uses the
            retry config of the error that aborted the batch.
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    def __init__(
        self,
        tracker: SyncBacklogTracker,
        migrator: BatchMigrator,
        authority: AuthoritativeStoreFlag | None = None,
        config: SyncConfig | None = None,
        retry_config: RetryConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._tracker = tracker
        self._migrator = migrator
        self._authority = authority
        self._config = config or SyncConfig()
        self._retry_config = retry_config

        self._is_cancelled = False
        self._is_paused = False
        self._pause_event = asyncio.Event()
        self._pause_event.set()  # Not paused initially
        self._stop_event = asyncio.Event()

    async def run(
        self,
        batch_size: int | None = None,
        progress_callback: Callable[[SyncProgress], None] | None = None,
    ) -> AsyncIterator[SyncProgress]:
        """
        Migrate the backlog batch by batch.

        Args:
            batch_size: Entities per batch; None or 0 means the configured
                default.
            progress_callback: Optional callback for progress updates.

        Yields:
            SyncProgress after every batch.

        Raises:
            StoreUnavailableError: If a store becomes unreachable. The
                current batch is aborted; committed entities stay migrated.
            PreconditionFailedError: If the normalized store is authoritative.
            SchemaMissingError: If the normalized schema does not exist.
        """
        size = resolve_batch_size(batch_size or self._config.batch_size)
        self._is_cancelled = False
        start_time = time.monotonic()
        processed = 0
        failed_ids: list[int] = []
        cursor: int | None = None
        batch_number = 0
        # counted once; later heartbeats subtract what this run migrated
        initial_pending = await self._tracker.pending_count()

        logger.info("Starting sync with batch size %d", size)
        while True:
            await self._wait_if_paused()
            if self._is_cancelled:
                logger.info("Sync cancelled after %d batches", batch_number)
                return

            ids = await self._tracker.next_batch(size, after_id=cursor)
            if not ids:
                break

            batch_number += 1
            with self._tracer.span(
                "recordsync.runner.batch",
                {ATTR_BATCH_NUMBER: batch_number, ATTR_BATCH_SIZE: len(ids)},
            ):
                result = await self._process_with_retry(ids, batch_number)
                processed += result.processed_count
                failed_ids.extend(result.failed_ids)
                cursor = ids[-1]

                remaining = max(initial_pending - processed, 0)
                self._migrator.metrics.record_pending(remaining)

            progress = SyncProgress(
                batch_number=batch_number,
                processed=processed,
                failed=len(failed_ids),
                remaining=remaining,
                elapsed_seconds=time.monotonic() - start_time,
                failed_ids=tuple(sorted(failed_ids)),
            )
            logger.debug(
                "Batch %d: %d processed, %d failed, %d remaining (%.1f entities/s)",
                batch_number,
                result.processed_count,
                len(result.failed),
                remaining,
                progress.rate,
            )
            if progress_callback:
                progress_callback(progress)
            yield progress

        logger.info(
            "Sync finished: %d processed, %d failed in %.1fs",
            processed,
            len(failed_ids),
            time.monotonic() - start_time,
        )

    async def _process_with_retry(self, ids: list[int], batch_number: int) -> BatchResult:
        attempt = 0
        while True:
            try:
                return await self._migrator.process(ids)
            except RecordSyncError as e:
                retry = self._retry_config or e.retry_config
                if (
                    not e.recoverability.should_retry
                    or retry is None
                    or attempt + 1 >= retry.max_attempts
                    or self._is_cancelled
                ):
                    raise
                delay = retry.get_delay_ms(attempt) / 1000.0
                logger.warning(
                    "Batch %d failed (attempt %d/%d): %s; retrying in %.1f seconds",
                    batch_number,
                    attempt + 1,
                    retry.max_attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def sync_all(
        self,
        batch_size: int | None = None,
        progress_callback: Callable[[SyncProgress], None] | None = None,
    ) -> OperationResult:
        """
        Run a full sync and summarize it as a tagged result.

        Args:
            batch_size: Entities per batch; None or 0 means the configured
                default.
            progress_callback: Optional callback for progress updates.

        Returns:
            Warning if nothing was pending or nothing could be synced,
            Warning listing failed IDs if some entities failed,
            Success otherwise, Failure if the run was aborted.
        """
        start = time.monotonic()
        with self._tracer.span("recordsync.runner.sync_all", {}):
            try:
                pending = await self._tracker.pending_count()
            except RecordSyncError as e:
                logger.log(e.severity.log_level, "Could not count pending entities: %s", e)
                return Failure.from_error(e)

            if pending == 0:
                return Warning(
                    "There are no entities to sync.",
                    OperationSummary(elapsed_seconds=time.monotonic() - start),
                )
            logger.info("There are %d entities to be synced", pending)

            last: SyncProgress | None = None
            try:
                async for progress in self.run(batch_size, progress_callback):
                    last = progress
            except RecordSyncError as e:
                logger.log(e.severity.log_level, "Sync aborted: %s", e)
                return Failure.from_error(e, self._summary(last, start, f"Sync aborted: {e}"))

            processed = last.processed if last else 0
            failed_ids = last.failed_ids if last else ()
            elapsed = time.monotonic() - start

            if failed_ids:
                message = (
                    f"{processed} entities were synced in {elapsed:.1f} seconds; "
                    f"{len(failed_ids)} could not be synced: "
                    f"{', '.join(str(i) for i in failed_ids)}"
                )
                return Warning(message, self._summary(last, start, message))
            if processed == 0:
                return Warning("No entities were synced.", self._summary(last, start, ""))
            message = f"{processed} entities were synced in {elapsed:.1f} seconds."
            return Success(self._summary(last, start, message))

    @staticmethod
    def _summary(last: SyncProgress | None, start: float, message: str) -> OperationSummary:
        return OperationSummary(
            affected_count=last.processed if last else 0,
            elapsed_seconds=time.monotonic() - start,
            message=message,
            failed_ids=last.failed_ids if last else (),
        )

    async def run_background(
        self,
        interval_seconds: float | None = None,
        max_iterations: int | None = None,
    ) -> None:
        """
        Keep syncing while background sync is switched on.

        The sync_enabled setting is re-read on every iteration. Nothing is
        copied while it is off or while the normalized store is
        authoritative. Errors are logged and the loop continues.

        Args:
            interval_seconds: Sleep between passes (default from config).
            max_iterations: Stop after this many passes (None = until stop()).
        """
        interval = interval_seconds or self._config.background_sync_interval_seconds
        self._stop_event.clear()
        iterations = 0
        logger.info("Background sync started (interval %.1fs)", interval)
        while not self._stop_event.is_set():
            iterations += 1
            try:
                await self._background_pass()
            except RecordSyncError as e:
                logger.log(e.severity.log_level, "Background sync pass failed: %s", e)

            if max_iterations is not None and iterations >= max_iterations:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("Background sync stopped after %d passes", iterations)

    async def _background_pass(self) -> None:
        if self._authority is None:
            logger.debug("No authoritative-store flag configured, background sync idle")
            return
        snapshot = await self._authority.snapshot()
        if not snapshot.sync_enabled:
            logger.debug("Background sync disabled, skipping pass")
            return
        if snapshot.normalized_is_authoritative:
            logger.debug("Normalized store is authoritative, skipping pass")
            return
        with self._tracer.span("recordsync.runner.background_pass", {}):
            result = await self.sync_all()
            logger.info("Background sync pass: %s", result.message)

    def stop(self) -> None:
        """Stop run_background() after the current pass."""
        self._stop_event.set()
        self.cancel()

    def cancel(self) -> None:
        """
        Cancel the current run.

        The run stops before the next batch. Committed entities stay
        migrated and the next run resumes from the live backlog.
        """
        self._is_cancelled = True
        self._pause_event.set()
        logger.info("Sync cancellation requested")

    def pause(self) -> None:
        """Pause before the next batch until resume() is called."""
        self._is_paused = True
        self._pause_event.clear()
        logger.info("Sync paused")

    def resume(self) -> None:
        """Resume a paused run."""
        self._is_paused = False
        self._pause_event.set()
        logger.info("Sync resumed")

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    async def _wait_if_paused(self) -> None:
        if self._is_paused:
            await self._pause_event.wait()


__all__ = [
    "SyncProgress",
    "SyncRunner",
]
