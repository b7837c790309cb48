"""
Legacy to normalized entity transformation.

Promoted attributes (see FieldSpec) become typed columns; every other
attribute row is carried over unchanged, keeping its order and its
duplicates.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from recordsync.config import SyncConfig
from recordsync.exceptions import EntityTransformError
from recordsync.models import AttributeRow, LegacyEntity, NormalizedEntity


class EntityTransformer:
    """
    Maps a LegacyEntity onto the normalized schema.

    Args:
        config: Supplies the promoted field specs.

    Example:
        >>> transformer = EntityTransformer(SyncConfig())
        >>> normalized = transformer.to_normalized(legacy, synced_at=legacy.modified_at)
        >>> normalized.columns["total_amount"]
        Decimal('19.99')
    """

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or SyncConfig()
        self._specs_by_key = {spec.legacy_key: spec for spec in self._config.field_specs}

    def migrated_attribute_keys(self) -> frozenset[str]:
        """Legacy attribute keys that become columns and leave the attribute table."""
        return frozenset(self._specs_by_key)

    def canonical_fields(self, legacy: LegacyEntity) -> dict[str, Any]:
        """
        Compute the typed column values for an entity.

        Promoted keys that are absent map to None.

        Raises:
            EntityTransformError: If a promoted key appears more than once
                or its value cannot be converted.
        """
        values: dict[str, list[str | None]] = {}
        for row in legacy.attributes:
            if row.key in self._specs_by_key:
                values.setdefault(row.key, []).append(row.value)

        fields: dict[str, Any] = {}
        for spec in self._config.field_specs:
            found = values.get(spec.legacy_key, [])
            if len(found) > 1:
                raise EntityTransformError(
                    legacy.id, spec.legacy_key, f"expected one value, found {len(found)}"
                )
            raw = found[0] if found else None
            if raw is None or raw == "":
                fields[spec.column] = None
                continue
            try:
                fields[spec.column] = spec.convert(raw)
            except (ValueError, TypeError, OverflowError) as e:
                raise EntityTransformError(legacy.id, spec.legacy_key, str(e)) from e
        return fields

    def remaining_attributes(self, legacy: LegacyEntity) -> list[AttributeRow]:
        """Attribute rows that stay in the attribute table, in stored order."""
        return [row for row in legacy.attributes if row.key not in self._specs_by_key]

    def to_normalized(self, legacy: LegacyEntity, synced_at: datetime) -> NormalizedEntity:
        """
        Build the normalized entity.

        Args:
            legacy: Entity as read from the legacy store.
            synced_at: Legacy modified_at observed during this migration.

        Raises:
            EntityTransformError: If the legacy data is malformed.
        """
        return NormalizedEntity(
            id=legacy.id,
            entity_type=legacy.entity_type,
            status=legacy.status,
            created_at=legacy.created_at,
            modified_at=legacy.modified_at,
            columns=self.canonical_fields(legacy),
            attributes=self.remaining_attributes(legacy),
            synced_at=synced_at,
        )


__all__ = ["EntityTransformer"]
