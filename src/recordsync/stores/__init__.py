"""
Store protocols and implementations.

- interface: LegacyStore, NormalizedStore, SettingsStore, ExtensionRegistry
- in_memory: In-memory implementations for tests and dry runs
- sql: SQLAlchemy async implementations for PostgreSQL and SQLite
"""

from recordsync.stores._connection import create_engine, execute_with_connection
from recordsync.stores.in_memory import (
    InMemoryExtensionRegistry,
    InMemoryLegacyStore,
    InMemoryNormalizedStore,
    InMemorySettingsStore,
)
from recordsync.stores.interface import (
    SETTING_AUTHORITATIVE_STORE,
    SETTING_SYNC_ENABLED,
    ExtensionRegistry,
    LegacyStore,
    NormalizedStore,
    SettingsStore,
)
from recordsync.stores.sql import (
    SQLExtensionRegistry,
    SQLLegacyStore,
    SQLNormalizedStore,
    SQLSettingsStore,
)

__all__ = [
    # Protocols
    "LegacyStore",
    "NormalizedStore",
    "SettingsStore",
    "ExtensionRegistry",
    "SETTING_AUTHORITATIVE_STORE",
    "SETTING_SYNC_ENABLED",
    # In-memory
    "InMemoryLegacyStore",
    "InMemoryNormalizedStore",
    "InMemorySettingsStore",
    "InMemoryExtensionRegistry",
    # SQL
    "SQLLegacyStore",
    "SQLNormalizedStore",
    "SQLSettingsStore",
    "SQLExtensionRegistry",
    "create_engine",
    "execute_with_connection",
]
