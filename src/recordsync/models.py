"""
Data models shared by the recordsync components.

Records:
    - AttributeRow: One (entity_id, key, value) attribute row
    - LegacyEntity: Entity row plus its generic attribute rows
    - NormalizedEntity: Entity with promoted typed fields plus remaining attributes

Enums:
    - AuthoritativeStore: Which representation is the source of truth
    - DivergenceKind: What part of an entity a divergence was found in
    - ExtensionCompatibility: Compatibility of an extension with the normalized store

Value objects:
    - AuthoritySnapshot: Immutable view of the authoritative-store settings
    - DivergenceRecord: One detected mismatch between the two representations
    - ExtensionCompatibilityReport: Extensions grouped by compatibility
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

AttributeValue = str | None


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Naive datetimes are taken to already be in UTC, which is how both
    stores persist them.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class AttributeRow:
    """
    A single key/value attribute row.

    A key may repeat for the same entity; each repetition is its own row.

    Attributes:
        entity_id: Owning entity.
        key: Attribute key.
        value: Attribute value as stored (string or None).
    """

    entity_id: int
    key: str
    value: AttributeValue


class LegacyEntity(BaseModel):
    """
    Legacy ("wide") representation of an entity.

    Attributes:
        id: Stable entity ID shared with the normalized representation
        entity_type: Entity type (e.g. 'shop_order')
        status: Entity status
        created_at: Creation timestamp
        modified_at: Last modification of the entity or any of its attributes
        attributes: Attribute rows in insertion order, duplicates allowed
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    entity_type: str
    status: str
    created_at: datetime
    modified_at: datetime
    attributes: list[AttributeRow] = Field(default_factory=list)

    @field_validator("created_at", "modified_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    def attribute_values(self, key: str) -> list[AttributeValue]:
        """Return every value stored under ``key`` in insertion order."""
        return [row.value for row in self.attributes if row.key == key]


class NormalizedEntity(BaseModel):
    """
    Normalized representation of an entity.

    Attributes:
        id: Stable entity ID shared with the legacy representation
        entity_type: Entity type
        status: Entity status
        created_at: Creation timestamp
        modified_at: Legacy modification time copied at migration
        columns: Promoted first-class columns, already converted to their types
        attributes: Attribute rows that were not promoted
        synced_at: Legacy modified_at observed by the migration that wrote this row
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    entity_type: str
    status: str
    created_at: datetime
    modified_at: datetime
    columns: dict[str, Any] = Field(default_factory=dict)
    attributes: list[AttributeRow] = Field(default_factory=list)
    synced_at: datetime

    @field_validator("created_at", "modified_at", "synced_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class AuthoritativeStore(Enum):
    """
    Which representation external collaborators read and write.

    Attributes:
        LEGACY_AUTHORITATIVE: Legacy store is the source of truth.
        NORMALIZED_AUTHORITATIVE: Normalized store is the source of truth.
    """

    LEGACY_AUTHORITATIVE = "legacy"
    NORMALIZED_AUTHORITATIVE = "normalized"


@dataclass(frozen=True)
class AuthoritySnapshot:
    """
    Authoritative-store settings as read at the start of one operation.

    Attributes:
        store: The authoritative representation.
        sync_enabled: Whether continuous background sync is switched on.
    """

    store: AuthoritativeStore = AuthoritativeStore.LEGACY_AUTHORITATIVE
    sync_enabled: bool = False

    @property
    def normalized_is_authoritative(self) -> bool:
        return self.store == AuthoritativeStore.NORMALIZED_AUTHORITATIVE


class DivergenceKind(Enum):
    """
    Where a divergence was detected.

    Attributes:
        FIELD: A core column or promoted field differs.
        ATTRIBUTE: The value bags of one attribute key differ.
        MISSING: The entity has no normalized row.
        UNREADABLE: The legacy data could not be canonicalized.
    """

    FIELD = "field"
    ATTRIBUTE = "attribute"
    MISSING = "missing"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class DivergenceRecord:
    """
    One mismatch between the legacy and normalized representations.

    Attributes:
        entity_id: Entity the mismatch belongs to.
        key: Field name or attribute key ("" for whole-entity kinds).
        kind: Where the mismatch was found.
        legacy_values: Values on the legacy side, in stored order.
        normalized_values: Values on the normalized side, in stored order.
        detail: Extra context (e.g. the transform error message).
    """

    entity_id: int
    key: str
    kind: DivergenceKind
    legacy_values: list[Any] = field(default_factory=list)
    normalized_values: list[Any] = field(default_factory=list)
    detail: str | None = None

    def __str__(self) -> str:
        parts = [f"[{self.kind.value}]", f"entity={self.entity_id}"]
        if self.key:
            parts.append(f"key={self.key}")
        if self.kind in (DivergenceKind.FIELD, DivergenceKind.ATTRIBUTE):
            parts.append(f"legacy={self.legacy_values!r}, normalized={self.normalized_values!r}")
        if self.detail:
            parts.append(f"({self.detail})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "entity_id": self.entity_id,
            "key": self.key,
            "kind": self.kind.value,
            "legacy_values": [_jsonable(v) for v in self.legacy_values],
            "normalized_values": [_jsonable(v) for v in self.normalized_values],
            "detail": self.detail,
        }


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class ExtensionCompatibility(Enum):
    """Compatibility of an installed extension with the normalized store."""

    COMPATIBLE = "compatible"
    UNCERTAIN = "uncertain"
    INCOMPATIBLE = "incompatible"


@dataclass(frozen=True)
class ExtensionCompatibilityReport:
    """
    Installed extensions grouped by compatibility.

    Attributes:
        compatible: Extensions known to work with the normalized store.
        uncertain: Extensions that have not declared compatibility.
        incompatible: Extensions known to break with the normalized store.
    """

    compatible: tuple[str, ...] = ()
    uncertain: tuple[str, ...] = ()
    incompatible: tuple[str, ...] = ()

    def blocking(self, allow_uncertain: bool = False) -> tuple[str, ...]:
        """
        Extensions that prevent a cutover.

        Args:
            allow_uncertain: Whether undeclared extensions are tolerated.

        Returns:
            Sorted names of blocking extensions.
        """
        names = set(self.incompatible)
        if not allow_uncertain:
            names.update(self.uncertain)
        return tuple(sorted(names))


__all__ = [
    "AttributeValue",
    "AttributeRow",
    "LegacyEntity",
    "NormalizedEntity",
    "AuthoritativeStore",
    "AuthoritySnapshot",
    "DivergenceKind",
    "DivergenceRecord",
    "ExtensionCompatibility",
    "ExtensionCompatibilityReport",
    "ensure_utc",
]
