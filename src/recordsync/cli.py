"""
Command line interface.

Usage:
    recordsync count-pending
    recordsync sync [--batch-size N]
    recordsync verify [--batch-size N] [--start ID] [--end ID] [--verbose] [--remigrate]
                      [--types a,b] [--exclude key,key]
    recordsync enable [--for-new-install] [--with-sync]
    recordsync disable [--with-sync]
    recordsync create-schema

The database is taken from --database-url, else from the
RECORDSYNC_DATABASE_URL environment variable. Exit codes: 0 success,
1 failure, 2 warning.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import AsyncEngine

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import DEFAULT_BATCH_SIZE, SyncConfig
from recordsync.cutover import CutoverGate
from recordsync.exceptions import RecordSyncError
from recordsync.metrics import SyncMetrics
from recordsync.migrator import BatchMigrator
from recordsync.results import (
    Failure,
    FailureKind,
    OperationResult,
    OperationSummary,
    Success,
    Warning,
)
from recordsync.runner import SyncProgress, SyncRunner
from recordsync.stores import (
    SQLExtensionRegistry,
    SQLLegacyStore,
    SQLNormalizedStore,
    SQLSettingsStore,
    create_engine,
)
from recordsync.verifier import VerificationBatch, VerificationEngine, VerificationScan

logger = logging.getLogger(__name__)

DATABASE_URL_ENV = "RECORDSYNC_DATABASE_URL"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///recordsync.db"

_PREFIXES = {"success": "Success", "warning": "Warning", "failure": "Error"}


@dataclass
class Components:
    """Everything one command needs, wired to a single engine."""

    engine: AsyncEngine
    config: SyncConfig
    legacy: SQLLegacyStore
    normalized: SQLNormalizedStore
    settings: SQLSettingsStore
    extensions: SQLExtensionRegistry
    flag: AuthoritativeStoreFlag
    tracker: SyncBacklogTracker
    migrator: BatchMigrator
    enable_tracing: bool

    def runner(self) -> SyncRunner:
        return SyncRunner(
            self.tracker,
            self.migrator,
            authority=self.flag,
            config=self.config,
            enable_tracing=self.enable_tracing,
        )

    def scan(self) -> VerificationScan:
        engine = VerificationEngine(
            self.legacy,
            self.normalized,
            config=self.config,
            metrics=SyncMetrics(operation="verify"),
            enable_tracing=self.enable_tracing,
        )
        return VerificationScan(
            engine,
            self.legacy,
            migrator=self.migrator,
            authority=self.flag,
            config=self.config,
            enable_tracing=self.enable_tracing,
        )

    def gate(self) -> CutoverGate:
        return CutoverGate(
            self.flag,
            self.tracker,
            self.legacy,
            self.normalized,
            self.extensions,
            config=self.config,
            enable_tracing=self.enable_tracing,
        )


def build_components(
    engine: AsyncEngine,
    config: SyncConfig | None = None,
    enable_tracing: bool = True,
) -> Components:
    """Wire the SQL stores and components onto one engine."""
    config = config or SyncConfig()
    legacy = SQLLegacyStore(engine, enable_tracing=enable_tracing)
    normalized = SQLNormalizedStore(
        engine, field_specs=config.field_specs, enable_tracing=enable_tracing
    )
    settings = SQLSettingsStore(engine, enable_tracing=enable_tracing)
    flag = AuthoritativeStoreFlag(settings)
    return Components(
        engine=engine,
        config=config,
        legacy=legacy,
        normalized=normalized,
        settings=settings,
        extensions=SQLExtensionRegistry(engine, enable_tracing=enable_tracing),
        flag=flag,
        tracker=SyncBacklogTracker(
            legacy, normalized, config=config, enable_tracing=enable_tracing
        ),
        migrator=BatchMigrator(
            legacy,
            normalized,
            authority=flag,
            config=config,
            metrics=SyncMetrics(operation="sync"),
            enable_tracing=enable_tracing,
        ),
        enable_tracing=enable_tracing,
    )


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {number}")
    return number


def _entity_types(value: str) -> list[str]:
    types = [t.strip() for t in value.split(",") if t.strip()]
    if not types:
        raise argparse.ArgumentTypeError("expected a comma separated list of entity types")
    return types


def _key_list(value: str) -> list[str]:
    keys = [k.strip() for k in value.split(",") if k.strip()]
    if not keys:
        raise argparse.ArgumentTypeError("expected a comma separated list of keys")
    return keys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recordsync",
        description="Migrate entities from the legacy store to the normalized store.",
    )
    parser.add_argument(
        "--database-url",
        default=os.environ.get(DATABASE_URL_ENV, DEFAULT_DATABASE_URL),
        help=f"SQLAlchemy async database URL (default: ${DATABASE_URL_ENV} or "
        f"{DEFAULT_DATABASE_URL})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--no-tracing",
        action="store_true",
        help="Disable OpenTelemetry tracing",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("count-pending", help="Count entities waiting to be synced")

    sync = commands.add_parser("sync", help="Sync pending entities to the normalized store")
    sync.add_argument(
        "--batch-size",
        type=_non_negative_int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Entities per batch, 0 means {DEFAULT_BATCH_SIZE} (default: {DEFAULT_BATCH_SIZE})",
    )

    commands.add_parser("migrate", help="Deprecated, use sync")

    verify = commands.add_parser("verify", help="Compare legacy and normalized entities")
    verify.add_argument(
        "--batch-size",
        type=_non_negative_int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Entities per batch, 0 means {DEFAULT_BATCH_SIZE} (default: {DEFAULT_BATCH_SIZE})",
    )
    verify.add_argument(
        "--start", type=_non_negative_int, default=0, help="First entity ID (default: 0)"
    )
    verify.add_argument(
        "--end", type=int, default=-1, help="Last entity ID, -1 for no limit (default: -1)"
    )
    verify.add_argument(
        "--verbose",
        action="store_true",
        help="Report divergences after every batch instead of at the end",
    )
    verify.add_argument(
        "--remigrate",
        action="store_true",
        help="Re-migrate diverging entities and verify them again (requires --verbose)",
    )
    verify.add_argument(
        "--types",
        type=_entity_types,
        default=None,
        help="Comma separated entity types to verify (default: all configured types)",
    )
    verify.add_argument(
        "--exclude",
        type=_key_list,
        default=None,
        help="Comma separated field names or attribute keys to leave out of the comparison",
    )

    enable = commands.add_parser("enable", help="Make the normalized store authoritative")
    enable.add_argument(
        "--for-new-install",
        action="store_true",
        help="Fail unless the legacy store is empty; creates the schema if needed",
    )
    enable.add_argument("--with-sync", action="store_true", help="Also enable background sync")

    disable = commands.add_parser("disable", help="Make the legacy store authoritative")
    disable.add_argument("--with-sync", action="store_true", help="Also disable background sync")

    commands.add_parser("create-schema", help="Create the normalized and bookkeeping tables")
    return parser


async def count_pending(components: Components, args: argparse.Namespace) -> OperationResult:
    count = await components.tracker.pending_count()
    return Success(
        OperationSummary(
            affected_count=count, message=f"There are {count} entities to be synced."
        )
    )


def _print_progress(progress: SyncProgress) -> None:
    print(
        f"Batch {progress.batch_number}: {progress.processed} synced, "
        f"{progress.failed} failed, {progress.remaining} remaining "
        f"({progress.rate:.1f} entities/s)"
    )


async def sync(components: Components, args: argparse.Namespace) -> OperationResult:
    if not await components.normalized.schema_exists():
        print("Warning: Normalized tables do not exist, creating...")
        await components.normalized.create_schema()
        if not await components.normalized.schema_exists():
            return Failure(
                kind=FailureKind.SCHEMA_MISSING,
                detail="Normalized tables could not be created.",
            )
        print("Success: Normalized tables were created.")
    runner = components.runner()
    return await runner.sync_all(args.batch_size, progress_callback=_print_progress)


async def migrate(components: Components, args: argparse.Namespace) -> OperationResult:
    return Warning("The migrate command is deprecated. Please use `recordsync sync` instead.")


def _print_batch(batch: VerificationBatch) -> None:
    print(
        f"Verified batch {batch.batch_number} (IDs {batch.start_id}-{batch.end_id}): "
        f"{batch.verified} verified, {len(batch.failures)} diverging, "
        f"{batch.remaining} remaining"
    )
    for records in batch.failures.values():
        for record in records:
            print(f"  {record}")
    if batch.remigrated:
        if batch.remigration_failures:
            print(
                "  Re-migration failed for: "
                + ", ".join(str(i) for i in sorted(batch.remigration_failures))
            )
        else:
            print("  Re-migration successful.")


async def verify(components: Components, args: argparse.Namespace) -> OperationResult:
    scan = components.scan()
    return await scan.verify_range(
        args.start,
        None if args.end < 0 else args.end,
        args.batch_size,
        verbose=args.verbose,
        remigrate=args.remigrate,
        entity_types=args.types,
        excluded_keys=args.exclude,
        callback=_print_batch if args.verbose else None,
    )


async def enable(components: Components, args: argparse.Namespace) -> OperationResult:
    gate = components.gate()
    try:
        return await gate.enable(for_new_install=args.for_new_install, with_sync=args.with_sync)
    finally:
        gate.close()


async def disable(components: Components, args: argparse.Namespace) -> OperationResult:
    gate = components.gate()
    try:
        return await gate.disable(with_sync=args.with_sync)
    finally:
        gate.close()


async def create_schema(components: Components, args: argparse.Namespace) -> OperationResult:
    await components.normalized.create_schema()
    await components.settings.create_schema()
    await components.extensions.create_schema()
    return Success(OperationSummary(message="Normalized and bookkeeping tables created."))


COMMANDS: dict[str, Callable[[Components, argparse.Namespace], Awaitable[OperationResult]]] = {
    "count-pending": count_pending,
    "sync": sync,
    "migrate": migrate,
    "verify": verify,
    "enable": enable,
    "disable": disable,
    "create-schema": create_schema,
}


async def run_command(args: argparse.Namespace) -> OperationResult:
    """
    Run the parsed command against the configured database.

    Every recordsync error is turned into a Failure result; the engine is
    disposed of afterwards.
    """
    engine = create_engine(args.database_url)
    try:
        components = build_components(engine, enable_tracing=not args.no_tracing)
        return await COMMANDS[args.command](components, args)
    except RecordSyncError as e:
        logger.log(e.severity.log_level, "%s failed: %s", args.command, e)
        return Failure.from_error(e)
    finally:
        await engine.dispose()


def report(result: OperationResult) -> None:
    """Print the result line; failures go to stderr."""
    prefix = _PREFIXES[result.status]
    stream = sys.stderr if isinstance(result, Failure) else sys.stdout
    print(f"{prefix}: {result.message}" if result.message else prefix, file=stream)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the recordsync console script."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(run_command(args))
    except (ArgumentError, ValueError) as e:
        result = Failure(kind=FailureKind.INVALID_ARGUMENT, detail=str(e))
    report(result)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
