"""
Shared pytest fixtures for integration tests.

This module provides an AsyncEngine per supported dialect plus the SQL
stores wired onto it. SQLite runs on a temporary file; PostgreSQL runs
only when RECORDSYNC_TEST_POSTGRES_URL points at a database the tests may
drop tables in.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from recordsync.stores import (
    SQLExtensionRegistry,
    SQLLegacyStore,
    SQLNormalizedStore,
    SQLSettingsStore,
    create_engine,
)
from recordsync.stores.schema import (
    EXTENSIONS_TABLE,
    LEGACY_ATTRIBUTES_TABLE,
    LEGACY_ENTITIES_TABLE,
    NORMALIZED_ATTRIBUTES_TABLE,
    NORMALIZED_ENTITIES_TABLE,
    SETTINGS_TABLE,
)

POSTGRES_URL_ENV = "RECORDSYNC_TEST_POSTGRES_URL"
POSTGRES_URL = os.environ.get(POSTGRES_URL_ENV)

ALL_TABLES = (
    LEGACY_ATTRIBUTES_TABLE,
    LEGACY_ENTITIES_TABLE,
    NORMALIZED_ATTRIBUTES_TABLE,
    NORMALIZED_ENTITIES_TABLE,
    SETTINGS_TABLE,
    EXTENSIONS_TABLE,
)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for integration tests."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "postgres: marks tests that require PostgreSQL")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark everything under tests/integration as an integration test."""
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Engine Fixtures
# ============================================================================


async def _drop_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for table in ALL_TABLES:
            await conn.execute(text(f"DROP TABLE IF EXISTS {table}"))


@pytest_asyncio.fixture(
    params=[
        pytest.param("sqlite", marks=pytest.mark.sqlite),
        pytest.param(
            "postgresql",
            marks=[
                pytest.mark.postgres,
                pytest.mark.skipif(POSTGRES_URL is None, reason=f"{POSTGRES_URL_ENV} not set"),
            ],
        ),
    ]
)
async def sql_engine(
    request: pytest.FixtureRequest, tmp_path: Path
) -> AsyncGenerator[AsyncEngine, None]:
    """
    Provide an empty database for each test.

    PostgreSQL tables are dropped before and after the test.
    """
    if request.param == "sqlite":
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'integration.db'}")
        yield engine
        await engine.dispose()
        return

    assert POSTGRES_URL is not None
    engine = create_engine(POSTGRES_URL)
    await _drop_tables(engine)
    yield engine
    await _drop_tables(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_legacy_store(sql_engine: AsyncEngine) -> SQLLegacyStore:
    """Legacy store with its tables created."""
    store = SQLLegacyStore(sql_engine, enable_tracing=False)
    await store.create_schema()
    return store


@pytest.fixture
def sql_normalized_store(sql_engine: AsyncEngine) -> SQLNormalizedStore:
    """Normalized store; the schema is left to the test."""
    return SQLNormalizedStore(sql_engine, enable_tracing=False)


@pytest.fixture
def sql_settings_store(sql_engine: AsyncEngine) -> SQLSettingsStore:
    return SQLSettingsStore(sql_engine, enable_tracing=False)


@pytest.fixture
def sql_extensions(sql_engine: AsyncEngine) -> SQLExtensionRegistry:
    return SQLExtensionRegistry(sql_engine, enable_tracing=False)
