"""
Shared pytest fixtures for the recordsync tests.

This module provides:
- In-memory store fixtures (legacy_store, normalized_store, settings_store, extensions)
- Component fixtures (authority_flag, tracker, migrator, verification_engine)
- OpenTelemetry metrics fixtures (metric_reader, meter)
- SQLite fixtures (sqlite_engine)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from recordsync.authority import AuthoritativeStoreFlag
from recordsync.backlog import SyncBacklogTracker
from recordsync.config import SyncConfig
from recordsync.metrics import SyncMetrics
from recordsync.migrator import BatchMigrator
from recordsync.stores.in_memory import (
    InMemoryExtensionRegistry,
    InMemoryLegacyStore,
    InMemoryNormalizedStore,
    InMemorySettingsStore,
)
from recordsync.verifier import VerificationEngine

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def sync_config() -> SyncConfig:
    """Default configuration."""
    return SyncConfig()


@pytest.fixture
def legacy_store() -> InMemoryLegacyStore:
    return InMemoryLegacyStore(enable_tracing=False)


@pytest.fixture
def normalized_store() -> InMemoryNormalizedStore:
    return InMemoryNormalizedStore(enable_tracing=False)


@pytest.fixture
def settings_store() -> InMemorySettingsStore:
    return InMemorySettingsStore(enable_tracing=False)


@pytest.fixture
def extensions() -> InMemoryExtensionRegistry:
    return InMemoryExtensionRegistry(enable_tracing=False)


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
def authority_flag(settings_store: InMemorySettingsStore) -> AuthoritativeStoreFlag:
    return AuthoritativeStoreFlag(settings_store)


@pytest.fixture
def tracker(
    legacy_store: InMemoryLegacyStore,
    normalized_store: InMemoryNormalizedStore,
    sync_config: SyncConfig,
) -> SyncBacklogTracker:
    return SyncBacklogTracker(
        legacy_store, normalized_store, config=sync_config, enable_tracing=False
    )


@pytest.fixture
def migrator(
    legacy_store: InMemoryLegacyStore,
    normalized_store: InMemoryNormalizedStore,
    authority_flag: AuthoritativeStoreFlag,
    sync_config: SyncConfig,
) -> BatchMigrator:
    return BatchMigrator(
        legacy_store,
        normalized_store,
        authority=authority_flag,
        config=sync_config,
        metrics=SyncMetrics(enable_metrics=False),
        enable_tracing=False,
    )


@pytest.fixture
def verification_engine(
    legacy_store: InMemoryLegacyStore,
    normalized_store: InMemoryNormalizedStore,
    sync_config: SyncConfig,
) -> VerificationEngine:
    return VerificationEngine(
        legacy_store,
        normalized_store,
        config=sync_config,
        metrics=SyncMetrics(operation="verify", enable_metrics=False),
        enable_tracing=False,
    )


# ============================================================================
# OpenTelemetry Metrics Fixtures
# ============================================================================


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """Fresh in-memory metric reader."""
    return InMemoryMetricReader()


@pytest.fixture
def meter(metric_reader: InMemoryMetricReader) -> Any:
    """
    Meter from a private MeterProvider wired to metric_reader.

    The global meter provider is left untouched.
    """
    provider = MeterProvider(metric_readers=[metric_reader])
    return provider.get_meter("recordsync-test")


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """
    Provide an AsyncEngine on a temporary SQLite file.

    The engine is disposed of after the test.
    """
    from recordsync.stores import create_engine

    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'recordsync.db'}")
    yield engine
    await engine.dispose()
