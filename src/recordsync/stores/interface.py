"""
Store protocols consumed by the recordsync components.

The components never talk to a database directly; they depend on these
protocols, which the in-memory and SQL stores implement.

Protocols:
- LegacyStore: The legacy ("wide") entity + attribute tables
- NormalizedStore: The normalized entity + attribute tables
- SettingsStore: Key/value settings holding the authoritative-store flag
- ExtensionRegistry: Installed extensions and their declared compatibility

Every method raises StoreUnavailableError when the backing store cannot
be reached.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from recordsync.models import (
    AttributeRow,
    ExtensionCompatibilityReport,
    LegacyEntity,
    NormalizedEntity,
)

SETTING_AUTHORITATIVE_STORE = "authoritative_store"
SETTING_SYNC_ENABLED = "sync_enabled"


@runtime_checkable
class LegacyStore(Protocol):
    """Read access to the legacy representation (plus writes for live traffic)."""

    async def read_entity(self, entity_id: int) -> LegacyEntity:
        """
        Read an entity with all of its attribute rows.

        Raises:
            EntityNotFoundError: If the entity does not exist.
        """
        ...

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        """
        Read the attribute rows of several entities.

        Rows come back ordered by entity ID, then key, then insertion order.
        """
        ...

    async def list_entity_versions(
        self,
        entity_types: Sequence[str],
        after_id: int,
        limit: int,
    ) -> list[tuple[int, datetime | None]]:
        """
        List (id, modified_at) pairs with id > after_id, ascending by ID.

        modified_at is None when the stored value cannot be decoded.

        Args:
            entity_types: Entity types to include.
            after_id: Exclusive lower bound.
            limit: Maximum number of pairs.
        """
        ...

    async def list_entity_ids_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
        limit: int,
    ) -> list[int]:
        """
        List entity IDs with start <= id <= end, ascending.

        ``end=None`` means unbounded.
        """
        ...

    async def count_entities_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
    ) -> int:
        """Count entities with start <= id <= end (``end=None`` is unbounded)."""
        ...

    async def count_entities(self, entity_types: Sequence[str] | None = None) -> int:
        """Count entities, optionally restricted to some types."""
        ...

    async def save_entity(self, entity: LegacyEntity) -> None:
        """Insert or replace an entity and all of its attribute rows."""
        ...


@runtime_checkable
class NormalizedStore(Protocol):
    """Read/write access to the normalized representation."""

    async def write_entity(self, entity: NormalizedEntity) -> None:
        """
        Upsert an entity.

        Replaces the entity row and all of its attribute rows in one
        transaction, so repeating the write converges to the same state.

        Raises:
            SchemaMissingError: If the normalized schema does not exist.
        """
        ...

    async def read_entity(self, entity_id: int) -> NormalizedEntity:
        """
        Read an entity.

        Raises:
            EntityNotFoundError: If no normalized row exists.
        """
        ...

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        """Read attribute rows ordered by entity ID, then key, then insertion order."""
        ...

    async def get_sync_times(self, entity_ids: Sequence[int]) -> dict[int, datetime]:
        """Return synced_at for each ID that has a normalized row."""
        ...

    async def schema_exists(self) -> bool:
        """Check whether the normalized tables exist."""
        ...

    async def create_schema(self) -> None:
        """Create the normalized tables (no-op if they exist)."""
        ...


@runtime_checkable
class SettingsStore(Protocol):
    """Process-wide settings."""

    async def get_settings(self) -> dict[str, str]:
        """Return every stored setting."""
        ...

    async def put_settings(self, values: Mapping[str, str]) -> None:
        """Write several settings atomically: all of them or none."""
        ...


@runtime_checkable
class ExtensionRegistry(Protocol):
    """Installed extensions and their compatibility with the normalized store."""

    async def compatibility_report(self) -> ExtensionCompatibilityReport:
        """Group installed extensions by declared compatibility."""
        ...


__all__ = [
    "SETTING_AUTHORITATIVE_STORE",
    "SETTING_SYNC_ENABLED",
    "LegacyStore",
    "NormalizedStore",
    "SettingsStore",
    "ExtensionRegistry",
]
