"""
In-memory store implementations.

Used by the unit tests and for dry runs. All data is lost when the
process terminates. Each store has an ``available`` switch: setting it to
False makes every operation raise StoreUnavailableError, which is how
outages are simulated.

Example:
    >>> legacy = InMemoryLegacyStore()
    >>> normalized = InMemoryNormalizedStore()
    >>> await legacy.save_entity(entity)
    >>> normalized.available = False
    >>> await normalized.get_sync_times([entity.id])  # raises StoreUnavailableError
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import datetime

from recordsync.exceptions import EntityNotFoundError, SchemaMissingError, StoreUnavailableError
from recordsync.models import (
    AttributeRow,
    ExtensionCompatibility,
    ExtensionCompatibilityReport,
    LegacyEntity,
    NormalizedEntity,
)
from recordsync.observability import (
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_ID,
    Tracer,
    create_tracer,
)


class _InMemoryStore:
    """Availability switch and lock shared by the in-memory stores."""

    store_name = "in-memory"

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._lock = asyncio.Lock()
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError(self.store_name, "store is offline")


def _in_range(entity_id: int, start: int, end: int | None) -> bool:
    return entity_id >= start and (end is None or entity_id <= end)


def _sorted_rows(rows: list[AttributeRow]) -> list[AttributeRow]:
    # sort is stable: duplicates of a key keep their insertion order
    return sorted(rows, key=lambda row: (row.entity_id, row.key))


class InMemoryLegacyStore(_InMemoryStore):
    """
    In-memory legacy store.

    Entities are kept by ID; attribute rows keep the order they were
    saved in.
    """

    store_name = "legacy"

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        super().__init__(tracer, enable_tracing)
        self._entities: dict[int, LegacyEntity] = {}

    async def read_entity(self, entity_id: int) -> LegacyEntity:
        with self._tracer.span(
            "recordsync.legacy_store.read_entity",
            {ATTR_ENTITY_ID: entity_id},
        ):
            self._check_available()
            entity = self._entities.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id, self.store_name)
            return entity

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        self._check_available()
        rows: list[AttributeRow] = []
        for entity_id in sorted(set(entity_ids)):
            entity = self._entities.get(entity_id)
            if entity is not None:
                rows.extend(entity.attributes)
        return _sorted_rows(rows)

    async def list_entity_versions(
        self,
        entity_types: Sequence[str],
        after_id: int,
        limit: int,
    ) -> list[tuple[int, datetime | None]]:
        self._check_available()
        versions = [
            (entity_id, entity.modified_at)
            for entity_id, entity in sorted(self._entities.items())
            if entity_id > after_id and entity.entity_type in entity_types
        ]
        return versions[:limit]

    async def list_entity_ids_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
        limit: int,
    ) -> list[int]:
        self._check_available()
        ids = [
            entity_id
            for entity_id, entity in sorted(self._entities.items())
            if _in_range(entity_id, start, end) and entity.entity_type in entity_types
        ]
        return ids[:limit]

    async def count_entities_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
    ) -> int:
        self._check_available()
        return sum(
            1
            for entity_id, entity in self._entities.items()
            if _in_range(entity_id, start, end) and entity.entity_type in entity_types
        )

    async def count_entities(self, entity_types: Sequence[str] | None = None) -> int:
        self._check_available()
        if entity_types is None:
            return len(self._entities)
        return sum(1 for entity in self._entities.values() if entity.entity_type in entity_types)

    async def save_entity(self, entity: LegacyEntity) -> None:
        with self._tracer.span(
            "recordsync.legacy_store.save_entity",
            {ATTR_ENTITY_ID: entity.id},
        ):
            self._check_available()
            async with self._lock:
                self._entities[entity.id] = entity

    async def clear(self) -> None:
        """Remove every entity."""
        async with self._lock:
            self._entities.clear()


class InMemoryNormalizedStore(_InMemoryStore):
    """
    In-memory normalized store.

    Args:
        with_schema: Whether the normalized schema exists from the start.
            A fresh installation starts without it.
    """

    store_name = "normalized"

    def __init__(
        self,
        with_schema: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(tracer, enable_tracing)
        self._schema_created = with_schema
        self._entities: dict[int, NormalizedEntity] = {}
        self._write_count = 0

    @property
    def write_count(self) -> int:
        """Number of successful entity writes since creation."""
        return self._write_count

    def _check_schema(self) -> None:
        if not self._schema_created:
            raise SchemaMissingError()

    async def write_entity(self, entity: NormalizedEntity) -> None:
        with self._tracer.span(
            "recordsync.normalized_store.write_entity",
            {ATTR_ENTITY_ID: entity.id},
        ):
            self._check_available()
            self._check_schema()
            async with self._lock:
                # entity row and attribute rows are replaced together
                self._entities[entity.id] = entity
                self._write_count += 1

    async def read_entity(self, entity_id: int) -> NormalizedEntity:
        with self._tracer.span(
            "recordsync.normalized_store.read_entity",
            {ATTR_ENTITY_ID: entity_id},
        ):
            self._check_available()
            self._check_schema()
            entity = self._entities.get(entity_id)
            if entity is None:
                raise EntityNotFoundError(entity_id, self.store_name)
            return entity

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        self._check_available()
        self._check_schema()
        rows: list[AttributeRow] = []
        for entity_id in sorted(set(entity_ids)):
            entity = self._entities.get(entity_id)
            if entity is not None:
                rows.extend(entity.attributes)
        return _sorted_rows(rows)

    async def get_sync_times(self, entity_ids: Sequence[int]) -> dict[int, datetime]:
        with self._tracer.span(
            "recordsync.normalized_store.get_sync_times",
            {ATTR_ENTITY_COUNT: len(entity_ids)},
        ):
            self._check_available()
            self._check_schema()
            return {
                entity_id: self._entities[entity_id].synced_at
                for entity_id in entity_ids
                if entity_id in self._entities
            }

    async def schema_exists(self) -> bool:
        self._check_available()
        return self._schema_created

    async def create_schema(self) -> None:
        self._check_available()
        self._schema_created = True

    async def delete_entity(self, entity_id: int) -> None:
        """Remove a normalized row, making the entity pending again."""
        async with self._lock:
            self._entities.pop(entity_id, None)


class InMemorySettingsStore(_InMemoryStore):
    """In-memory settings; put_settings replaces all given keys at once."""

    store_name = "settings"

    def __init__(
        self,
        initial: Mapping[str, str] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(tracer, enable_tracing)
        self._settings: dict[str, str] = dict(initial or {})

    async def get_settings(self) -> dict[str, str]:
        self._check_available()
        return dict(self._settings)

    async def put_settings(self, values: Mapping[str, str]) -> None:
        self._check_available()
        async with self._lock:
            self._settings = {**self._settings, **values}


class InMemoryExtensionRegistry(_InMemoryStore):
    """
    In-memory extension registry.

    Example:
        >>> registry = InMemoryExtensionRegistry()
        >>> registry.register("legacy-reports", ExtensionCompatibility.INCOMPATIBLE)
    """

    store_name = "extensions"

    def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True) -> None:
        super().__init__(tracer, enable_tracing)
        self._extensions: dict[str, ExtensionCompatibility] = {}

    def register(
        self,
        name: str,
        compatibility: ExtensionCompatibility = ExtensionCompatibility.UNCERTAIN,
    ) -> None:
        self._extensions[name] = compatibility

    def unregister(self, name: str) -> None:
        self._extensions.pop(name, None)

    async def compatibility_report(self) -> ExtensionCompatibilityReport:
        self._check_available()
        grouped: dict[ExtensionCompatibility, list[str]] = {c: [] for c in ExtensionCompatibility}
        for name, compatibility in sorted(self._extensions.items()):
            grouped[compatibility].append(name)
        return ExtensionCompatibilityReport(
            compatible=tuple(grouped[ExtensionCompatibility.COMPATIBLE]),
            uncertain=tuple(grouped[ExtensionCompatibility.UNCERTAIN]),
            incompatible=tuple(grouped[ExtensionCompatibility.INCOMPATIBLE]),
        )


__all__ = [
    "InMemoryLegacyStore",
    "InMemoryNormalizedStore",
    "InMemorySettingsStore",
    "InMemoryExtensionRegistry",
]
