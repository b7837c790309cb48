"""
Configuration for recordsync.

SyncConfig is immutable (frozen) so that a running batch loop can never
observe a configuration change half way through. It round-trips through
plain dictionaries for storage in JSON files or settings tables.

Example:
    >>> config = SyncConfig(batch_size=250, entity_types=("shop_order",))
    >>> config.batch_size
    250
    >>> SyncConfig.from_dict(config.to_dict()) == config
    True
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from recordsync.models import ensure_utc

DEFAULT_BATCH_SIZE = 500
"""Batch size used when none, or zero, is requested."""

DEFAULT_ENTITY_TYPES: tuple[str, ...] = ("shop_order", "shop_order_refund")

DEFAULT_IGNORED_ATTRIBUTE_KEYS: tuple[str, ...] = (
    "_paid_date",  # replaced by _date_paid
    "_completed_date",  # replaced by _date_completed
    "_edit_lock",
)


def resolve_batch_size(value: int | None) -> int:
    """
    Turn a requested batch size into the one that will be used.

    ``None`` and ``0`` both mean "use the default" (500). Zero never means
    "unbounded": loading every pending entity at once would break the
    O(batch) memory guarantee of the migrator.

    Args:
        value: Requested batch size.

    Returns:
        Effective batch size.

    Raises:
        ValueError: If value is negative.
    """
    if value is None or value == 0:
        return DEFAULT_BATCH_SIZE
    if value < 0:
        raise ValueError(f"batch size must be >= 0, got {value}")
    return value


# =============================================================================
# Column converters
# =============================================================================


def to_text(value: str) -> str:
    return value


def to_int(value: str) -> int:
    return int(value.strip())


def to_decimal(value: str) -> Decimal:
    try:
        result = Decimal(value.strip())
    except InvalidOperation as e:
        raise ValueError(f"invalid decimal literal {value!r}") from e
    # NaN never compares equal to itself and DECIMAL columns reject both
    if not result.is_finite():
        raise ValueError(f"non-finite decimal {value!r}")
    return result


def to_timestamp(value: str) -> datetime:
    """Parse a unix timestamp or an ISO 8601 string into aware UTC."""
    value = value.strip()
    if value.isdigit():
        return datetime.fromtimestamp(int(value), tz=UTC)
    return ensure_utc(datetime.fromisoformat(value))


CONVERTERS: dict[str, Callable[[str], Any]] = {
    "text": to_text,
    "int": to_int,
    "decimal": to_decimal,
    "timestamp": to_timestamp,
}

# Core columns of the normalized entity table
RESERVED_COLUMNS = frozenset(
    {"id", "entity_type", "status", "created_at", "modified_at", "synced_at"}
)


@dataclass(frozen=True)
class FieldSpec:
    """
    Promotion of one legacy attribute key to a first-class column.

    Attributes:
        column: Column name in the normalized entity table.
        legacy_key: Attribute key holding the value in the legacy store.
        kind: Converter name (text, int, decimal, timestamp).
    """

    column: str
    legacy_key: str
    kind: str = "text"

    def __post_init__(self) -> None:
        # Column names are interpolated into DDL and queries
        if not self.column.isidentifier() or self.column.lower() in RESERVED_COLUMNS:
            raise ValueError(f"Invalid column name {self.column!r}")
        if self.kind not in CONVERTERS:
            raise ValueError(
                f"Unknown field kind {self.kind!r} for column {self.column!r}; "
                f"expected one of {sorted(CONVERTERS)}"
            )

    def convert(self, value: str) -> Any:
        return CONVERTERS[self.kind](value)


DEFAULT_FIELD_SPECS: tuple[FieldSpec, ...] = (
    FieldSpec("currency", "_order_currency"),
    FieldSpec("total_amount", "_order_total", "decimal"),
    FieldSpec("customer_id", "_customer_user", "int"),
    FieldSpec("billing_email", "_billing_email"),
    FieldSpec("payment_method", "_payment_method"),
    FieldSpec("date_paid", "_date_paid", "timestamp"),
    FieldSpec("date_completed", "_date_completed", "timestamp"),
)


@dataclass(frozen=True)
class SyncConfig:
    """
    Configuration for sync, verification and cutover.

    Attributes:
        batch_size: Entities per batch (default 500).
        scan_page_size: Legacy rows read per page while scanning the backlog.
        entity_types: Entity types in scope for migration.
        ignored_attribute_keys: Legacy keys never compared during verification.
        field_specs: Legacy attribute keys promoted to typed columns.
        allow_uncertain_extensions: Let extensions without a declared
            compatibility pass the cutover check.
        background_sync_interval_seconds: Sleep between background sync passes.
    """

    batch_size: int = DEFAULT_BATCH_SIZE
    scan_page_size: int = 1000
    entity_types: tuple[str, ...] = DEFAULT_ENTITY_TYPES
    ignored_attribute_keys: tuple[str, ...] = DEFAULT_IGNORED_ATTRIBUTE_KEYS
    field_specs: tuple[FieldSpec, ...] = DEFAULT_FIELD_SPECS
    allow_uncertain_extensions: bool = False
    background_sync_interval_seconds: float = 30.0

    # Derived lookups, not part of equality
    _columns: frozenset[str] = field(default=frozenset(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.scan_page_size < 1:
            raise ValueError(f"scan_page_size must be >= 1, got {self.scan_page_size}")
        if not self.entity_types:
            raise ValueError("entity_types must not be empty")
        if self.background_sync_interval_seconds <= 0:
            raise ValueError(
                "background_sync_interval_seconds must be > 0, "
                f"got {self.background_sync_interval_seconds}"
            )

        columns = [spec.column for spec in self.field_specs]
        if len(set(columns)) != len(columns):
            raise ValueError(f"field_specs contains duplicate columns: {columns}")
        keys = [spec.legacy_key for spec in self.field_specs]
        if len(set(keys)) != len(keys):
            raise ValueError(f"field_specs contains duplicate legacy keys: {keys}")
        object.__setattr__(self, "_columns", frozenset(columns))

    @property
    def promoted_columns(self) -> frozenset[str]:
        """Names of the promoted columns."""
        return self._columns

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "batch_size": self.batch_size,
            "scan_page_size": self.scan_page_size,
            "entity_types": list(self.entity_types),
            "ignored_attribute_keys": list(self.ignored_attribute_keys),
            "field_specs": [
                {"column": s.column, "legacy_key": s.legacy_key, "kind": s.kind}
                for s in self.field_specs
            ],
            "allow_uncertain_extensions": self.allow_uncertain_extensions,
            "background_sync_interval_seconds": self.background_sync_interval_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """
        Create from dictionary. Missing keys take their defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            SyncConfig instance.
        """
        specs = data.get("field_specs")
        return cls(
            batch_size=data.get("batch_size", DEFAULT_BATCH_SIZE),
            scan_page_size=data.get("scan_page_size", 1000),
            entity_types=tuple(data.get("entity_types", DEFAULT_ENTITY_TYPES)),
            ignored_attribute_keys=tuple(
                data.get("ignored_attribute_keys", DEFAULT_IGNORED_ATTRIBUTE_KEYS)
            ),
            field_specs=(
                tuple(FieldSpec(**spec) for spec in specs)
                if specs is not None
                else DEFAULT_FIELD_SPECS
            ),
            allow_uncertain_extensions=data.get("allow_uncertain_extensions", False),
            background_sync_interval_seconds=data.get("background_sync_interval_seconds", 30.0),
        )


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_ENTITY_TYPES",
    "DEFAULT_IGNORED_ATTRIBUTE_KEYS",
    "DEFAULT_FIELD_SPECS",
    "CONVERTERS",
    "RESERVED_COLUMNS",
    "FieldSpec",
    "SyncConfig",
    "resolve_batch_size",
]
