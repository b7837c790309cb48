"""
Cutover gate.

The only component allowed to change which store is authoritative. It
claims the AuthorityWriter when constructed and flips the flag only after
every precondition holds:

    LEGACY_AUTHORITATIVE --enable()--> NORMALIZED_AUTHORITATIVE
    NORMALIZED_AUTHORITATIVE --disable()--> LEGACY_AUTHORITATIVE

A refused transition changes nothing: the flag, the sync setting and the
schema are left as they were and the result lists every failed check.

Example:
    >>> gate = CutoverGate(flag, tracker, legacy_store, normalized_store, extensions)
    >>> result = await gate.enable(with_sync=True)
    >>> result.status
    'success'
"""

from __future__ import annotations

import logging
import time

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import SyncConfig
from recordsync.exceptions import RecordSyncError
from recordsync.models import AuthoritativeStore, AuthoritySnapshot
from recordsync.observability import (
    ATTR_AUTHORITATIVE_STORE,
    ATTR_FOR_NEW_INSTALL,
    ATTR_WITH_SYNC,
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
from recordsync.stores.interface import ExtensionRegistry, LegacyStore, NormalizedStore

logger = logging.getLogger(__name__)

SYNC_COMMAND_HINT = "run `recordsync sync` first"


class CutoverGate:
    """
    Guards transitions of the authoritative-store flag.

    Args:
        flag: Authoritative-store flag; its writer is claimed here.
        tracker: Backlog tracker used to count outstanding entities.
        legacy: Legacy store, to tell a fresh install from a populated one.
        normalized: Normalized store whose schema may be created on enable.
        extensions: Extension registry consulted before enabling.
        config: Entity types and whether uncertain extensions block.
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)

    Raises:
        RuntimeError: If another component already holds the writer.
    """

    def __init__(
        self,
        flag: AuthoritativeStoreFlag,
        tracker: SyncBacklogTracker,
        legacy: LegacyStore,
        normalized: NormalizedStore,
        extensions: ExtensionRegistry | None = None,
        config: SyncConfig | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._writer = flag.claim_writer()
        self._tracker = tracker
        self._legacy = legacy
        self._normalized = normalized
        self._extensions = extensions
        self._config = config or SyncConfig()

    def close(self) -> None:
        """Release the writer."""
        self._writer.release()

    async def enable(
        self,
        *,
        for_new_install: bool = False,
        with_sync: bool = False,
    ) -> OperationResult:
        """
        Make the normalized store authoritative.

        Args:
            for_new_install: Assert that the legacy store holds no entities.
                Allows creating the normalized schema unconditionally.
            with_sync: Also switch background sync on, in the same write.

        Returns:
            Success when the flag was flipped, Warning when it already was,
            Failure listing every failed precondition otherwise.
        """
        start = time.monotonic()
        with self._tracer.span(
            "recordsync.cutover.enable",
            {ATTR_FOR_NEW_INSTALL: for_new_install, ATTR_WITH_SYNC: with_sync},
        ):
            logger.info("Running pre-enable checks")
            try:
                reasons = await self._enable_preconditions(for_new_install)
                if reasons:
                    for reason in reasons:
                        logger.warning("[Failed] %s", reason)
                    return Failure(
                        kind=FailureKind.PRECONDITION_FAILED,
                        detail="Pre-enable checks failed: " + "; ".join(reasons),
                        summary=OperationSummary(elapsed_seconds=time.monotonic() - start),
                    )

                current = await self._writer.snapshot()
                target = AuthoritySnapshot(
                    store=AuthoritativeStore.NORMALIZED_AUTHORITATIVE,
                    sync_enabled=current.sync_enabled or with_sync,
                )
                notes = []
                if with_sync:
                    notes.append(
                        "Sync is already enabled." if current.sync_enabled else "Sync enabled."
                    )
                if current == target:
                    return Warning(
                        " ".join(["The normalized store is already authoritative.", *notes]),
                        OperationSummary(elapsed_seconds=time.monotonic() - start),
                    )
                if current.normalized_is_authoritative:
                    headline = "The normalized store is already authoritative."
                else:
                    headline = "The normalized store is now authoritative."
                message = " ".join([headline, *notes])
                return await self._transition(current, target, message, start)
            except RecordSyncError as e:
                logger.log(e.severity.log_level, "Enable aborted: %s", e)
                return Failure.from_error(e)

    async def _enable_preconditions(self, for_new_install: bool) -> list[str]:
        reasons: list[str] = []

        legacy_count = await self._legacy.count_entities(self._config.entity_types)
        fresh_install = legacy_count == 0
        if for_new_install and not fresh_install:
            reasons.append(
                f"This is not a new install ({legacy_count} legacy entities exist), "
                "but for_new_install was requested"
            )

        if self._extensions is not None:
            report = await self._extensions.compatibility_report()
            blocking = report.blocking(self._config.allow_uncertain_extensions)
            if blocking:
                reasons.append(
                    "Extensions incompatible with or undeclared for the normalized store: "
                    + ", ".join(blocking)
                )

        outstanding = await self._tracker.total_outstanding()
        if not await self._normalized.schema_exists():
            if not (fresh_install or outstanding == 0):
                reasons.append(
                    "The normalized schema does not exist and this is not a new install; "
                    "run `recordsync create-schema` and `recordsync sync` first"
                )
            elif reasons:
                reasons.append("The normalized schema does not exist and was not created")
            else:
                logger.warning("Normalized schema does not exist, creating")
                await self._normalized.create_schema()
                if await self._normalized.schema_exists():
                    logger.info("Normalized schema created")
                else:
                    reasons.append("The normalized schema could not be created")

        if outstanding > 0:
            reasons.append(f"{outstanding} entities are pending sync; {SYNC_COMMAND_HINT}")
        return reasons

    async def disable(self, *, with_sync: bool = False) -> OperationResult:
        """
        Make the legacy store authoritative again.

        Args:
            with_sync: Also switch background sync off, in the same write.

        Returns:
            Success when something changed, Warning when already in the
            requested state, Failure when entities are still pending.
        """
        start = time.monotonic()
        with self._tracer.span("recordsync.cutover.disable", {ATTR_WITH_SYNC: with_sync}):
            logger.info("Running pre-disable checks")
            try:
                outstanding = await self._tracker.total_outstanding()
                if outstanding > 0:
                    detail = f"{outstanding} entities are pending sync; {SYNC_COMMAND_HINT}"
                    logger.warning("[Failed] %s", detail)
                    return Failure(
                        kind=FailureKind.PRECONDITION_FAILED,
                        detail=detail,
                        summary=OperationSummary(elapsed_seconds=time.monotonic() - start),
                    )

                current = await self._writer.snapshot()
                target = AuthoritySnapshot(
                    store=AuthoritativeStore.LEGACY_AUTHORITATIVE,
                    sync_enabled=current.sync_enabled and not with_sync,
                )
                if current.normalized_is_authoritative:
                    headline = "The legacy store is now authoritative."
                else:
                    headline = "The legacy store is already authoritative."
                notes = []
                if with_sync:
                    notes.append(
                        "Sync disabled." if current.sync_enabled else "Sync is already disabled."
                    )
                message = " ".join([headline, *notes])
                if current == target:
                    return Warning(
                        message, OperationSummary(elapsed_seconds=time.monotonic() - start)
                    )
                return await self._transition(current, target, message, start)
            except RecordSyncError as e:
                logger.log(e.severity.log_level, "Disable aborted: %s", e)
                return Failure.from_error(e)

    async def _transition(
        self,
        current: AuthoritySnapshot,
        target: AuthoritySnapshot,
        message: str,
        start: float,
    ) -> OperationResult:
        with self._tracer.span(
            "recordsync.cutover.write_flag",
            {ATTR_AUTHORITATIVE_STORE: target.store.value, ATTR_WITH_SYNC: target.sync_enabled},
        ):
            observed = await self._writer.write(target)
            if observed != target:
                logger.error(
                    "Flag read back as %s after writing %s, restoring %s",
                    observed,
                    target,
                    current,
                )
                await self._writer.write(current)
                return Failure(
                    kind=FailureKind.ERROR,
                    detail=(
                        f"The authoritative store could not be set to {target.store.value}; "
                        "previous settings restored"
                    ),
                    summary=OperationSummary(elapsed_seconds=time.monotonic() - start),
                )
            logger.info("%s", message)
            return Success(
                OperationSummary(elapsed_seconds=time.monotonic() - start, message=message)
            )


__all__ = [
    "CutoverGate",
]
