"""
DDL for the SQL stores.

Generates CREATE TABLE / CREATE INDEX statements for PostgreSQL and
SQLite. The normalized entity table gets one typed column per promoted
field, so its DDL is derived from the configured FieldSpecs.

Example:
    >>> from recordsync.config import FieldSpec
    >>> for statement in normalized_schema("sqlite", (FieldSpec("currency", "_order_currency"),)):
    ...     print(statement)
    CREATE TABLE IF NOT EXISTS normalized_entities (
        id INTEGER PRIMARY KEY,
        entity_type TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        modified_at TEXT NOT NULL,
        synced_at TEXT NOT NULL,
        currency TEXT
    );
    ...
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Literal

from recordsync.config import FieldSpec

Dialect = Literal["postgresql", "sqlite"]

LEGACY_ENTITIES_TABLE = "legacy_entities"
LEGACY_ATTRIBUTES_TABLE = "legacy_attributes"
NORMALIZED_ENTITIES_TABLE = "normalized_entities"
NORMALIZED_ATTRIBUTES_TABLE = "normalized_attributes"
SETTINGS_TABLE = "sync_settings"
EXTENSIONS_TABLE = "sync_extensions"

# Column types per field kind
POSTGRESQL_TYPE_MAP: dict[str, str] = {
    "text": "TEXT",
    "int": "BIGINT",
    "decimal": "DECIMAL(18, 6)",
    "timestamp": "TIMESTAMP WITH TIME ZONE",
}

SQLITE_TYPE_MAP: dict[str, str] = {
    "text": "TEXT",
    "int": "INTEGER",
    # Kept as text so values round-trip exactly
    "decimal": "TEXT",
    "timestamp": "TEXT",
}


def _type_map(dialect: Dialect) -> dict[str, str]:
    return POSTGRESQL_TYPE_MAP if dialect == "postgresql" else SQLITE_TYPE_MAP


def _row_id(dialect: Dialect) -> str:
    if dialect == "postgresql":
        return "row_id BIGSERIAL PRIMARY KEY"
    return "row_id INTEGER PRIMARY KEY AUTOINCREMENT"


def _entity_columns(dialect: Dialect) -> list[str]:
    id_type = "BIGINT" if dialect == "postgresql" else "INTEGER"
    ts = _type_map(dialect)["timestamp"]
    return [
        f"id {id_type} PRIMARY KEY",
        "entity_type TEXT NOT NULL",
        "status TEXT NOT NULL",
        f"created_at {ts} NOT NULL",
        f"modified_at {ts} NOT NULL",
    ]


def _attribute_table(table: str, dialect: Dialect) -> list[str]:
    id_type = "BIGINT" if dialect == "postgresql" else "INTEGER"
    return [
        f"""CREATE TABLE IF NOT EXISTS {table} (
    {_row_id(dialect)},
    entity_id {id_type} NOT NULL,
    attr_key TEXT NOT NULL,
    attr_value TEXT
);""",
        f"CREATE INDEX IF NOT EXISTS idx_{table}_entity_key ON {table}(entity_id, attr_key);",
    ]


def _create_table(table: str, columns: Sequence[str]) -> str:
    columns_sql = ",\n    ".join(columns)
    return f"""CREATE TABLE IF NOT EXISTS {table} (
    {columns_sql}
);"""


def legacy_schema(dialect: Dialect = "postgresql") -> list[str]:
    """
    DDL for the legacy entity and attribute tables.

    The legacy tables normally belong to the live application; this is
    used for fresh installs and tests.
    """
    return [
        _create_table(LEGACY_ENTITIES_TABLE, _entity_columns(dialect)),
        f"CREATE INDEX IF NOT EXISTS idx_{LEGACY_ENTITIES_TABLE}_type "
        f"ON {LEGACY_ENTITIES_TABLE}(entity_type, id);",
        *_attribute_table(LEGACY_ATTRIBUTES_TABLE, dialect),
    ]


def normalized_schema(
    dialect: Dialect = "postgresql",
    field_specs: Sequence[FieldSpec] = (),
) -> list[str]:
    """
    DDL for the normalized entity and attribute tables.

    Args:
        dialect: Database dialect ('postgresql' or 'sqlite')
        field_specs: Promoted fields; each becomes a nullable typed column.

    Returns:
        Statements to execute in order.
    """
    type_map = _type_map(dialect)
    columns = [
        *_entity_columns(dialect),
        f"synced_at {type_map['timestamp']} NOT NULL",
        *(f"{spec.column} {type_map[spec.kind]}" for spec in field_specs),
    ]
    return [
        _create_table(NORMALIZED_ENTITIES_TABLE, columns),
        *_attribute_table(NORMALIZED_ATTRIBUTES_TABLE, dialect),
    ]


def bookkeeping_schema(dialect: Dialect = "postgresql") -> list[str]:
    """DDL for the settings and extension registry tables."""
    return [
        _create_table(SETTINGS_TABLE, ["name TEXT PRIMARY KEY", "value TEXT NOT NULL"]),
        _create_table(
            EXTENSIONS_TABLE,
            ["name TEXT PRIMARY KEY", "compatibility TEXT NOT NULL DEFAULT 'uncertain'"],
        ),
    ]


__all__ = [
    "Dialect",
    "LEGACY_ENTITIES_TABLE",
    "LEGACY_ATTRIBUTES_TABLE",
    "NORMALIZED_ENTITIES_TABLE",
    "NORMALIZED_ATTRIBUTES_TABLE",
    "SETTINGS_TABLE",
    "EXTENSIONS_TABLE",
    "POSTGRESQL_TYPE_MAP",
    "SQLITE_TYPE_MAP",
    "legacy_schema",
    "normalized_schema",
    "bookkeeping_schema",
]
