"""
SQL store implementations (SQLAlchemy async, PostgreSQL and SQLite).

All stores accept either an AsyncEngine or an AsyncConnection. With an
engine every write runs in its own transaction, which gives the migrator
its one-transaction-per-entity guarantee. Queries are plain ``text()``
statements that work on both dialects; only value encoding differs:

- PostgreSQL: timestamps are TIMESTAMPTZ, decimals are DECIMAL
- SQLite: timestamps are ISO 8601 TEXT, decimals are TEXT

Driver connectivity errors surface as StoreUnavailableError.

Example:
    >>> engine = create_engine("sqlite+aiosqlite:///recordsync.db")
    >>> legacy = SQLLegacyStore(engine)
    >>> normalized = SQLNormalizedStore(engine, field_specs=config.field_specs)
    >>> await normalized.create_schema()
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import bindparam, inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from recordsync.config import DEFAULT_FIELD_SPECS, FieldSpec
from recordsync.exceptions import EntityNotFoundError, MalformedEntityError, SchemaMissingError
from recordsync.models import (
    AttributeRow,
    ExtensionCompatibility,
    ExtensionCompatibilityReport,
    LegacyEntity,
    NormalizedEntity,
    ensure_utc,
)
from recordsync.observability import (
    ATTR_AFTER_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ENTITY_COUNT,
    ATTR_ENTITY_ID,
    ATTR_RANGE_END,
    ATTR_RANGE_START,
    Tracer,
    create_tracer,
)
from recordsync.stores._connection import dialect_of, execute_with_connection, translate_errors
from recordsync.stores.schema import (
    EXTENSIONS_TABLE,
    LEGACY_ATTRIBUTES_TABLE,
    LEGACY_ENTITIES_TABLE,
    NORMALIZED_ATTRIBUTES_TABLE,
    NORMALIZED_ENTITIES_TABLE,
    SETTINGS_TABLE,
    bookkeeping_schema,
    legacy_schema,
    normalized_schema,
)

logger = logging.getLogger(__name__)


async def _has_table(conn: AsyncConnection, table: str) -> bool:
    return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table(table))


class _SQLStore:
    """Connection, dialect and value encoding shared by the SQL stores."""

    store_name = "sql"

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self.conn = conn
        self._dialect = dialect_of(conn)

    @property
    def dialect(self) -> str:
        return self._dialect

    def _span_attributes(self, operation: str, **extra: Any) -> dict[str, Any]:
        return {ATTR_DB_SYSTEM: self._dialect, ATTR_DB_OPERATION: operation, **extra}

    def _encode_timestamp(self, value: datetime | None) -> Any:
        if value is None:
            return None
        value = ensure_utc(value)
        if self._dialect == "postgresql":
            return value
        return value.isoformat()

    @staticmethod
    def _decode_timestamp(value: Any) -> datetime | None:
        if value is None:
            return None
        if isinstance(value, str):
            return ensure_utc(datetime.fromisoformat(value))
        return ensure_utc(value)

    def _decode_entity_timestamp(self, entity_id: int, key: str, value: Any) -> datetime | None:
        try:
            return self._decode_timestamp(value)
        except ValueError as e:
            raise MalformedEntityError(entity_id, key, str(e)) from e

    def _decode_version(self, value: Any) -> datetime | None:
        # unreadable versions stay pending until the migrator reports them
        try:
            return self._decode_timestamp(value)
        except ValueError:
            return None

    async def _execute_statements(self, statements: Sequence[str]) -> None:
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn) as conn:
                for statement in statements:
                    await conn.execute(text(statement))


def _attribute_rows(rows: Sequence[Any]) -> list[AttributeRow]:
    return [AttributeRow(entity_id=row[0], key=row[1], value=row[2]) for row in rows]


class SQLLegacyStore(_SQLStore):
    """
    Legacy store backed by the ``legacy_entities`` / ``legacy_attributes`` tables.

    Attribute insertion order is the ``row_id`` order.
    """

    store_name = "legacy"

    async def create_schema(self) -> None:
        """Create the legacy tables (fresh installs and tests)."""
        await self._execute_statements(legacy_schema(self._dialect))

    async def read_entity(self, entity_id: int) -> LegacyEntity:
        with self._tracer.span(
            "recordsync.legacy_store.read_entity",
            self._span_attributes("SELECT", **{ATTR_ENTITY_ID: entity_id}),
        ):
            async with translate_errors(self.store_name):
                # entity row and attributes come from one snapshot
                async with execute_with_connection(self.conn) as conn:
                    result = await conn.execute(
                        text(f"""
                            SELECT id, entity_type, status, created_at, modified_at
                            FROM {LEGACY_ENTITIES_TABLE}
                            WHERE id = :id
                        """),
                        {"id": entity_id},
                    )
                    row = result.fetchone()
                    if row is None:
                        raise EntityNotFoundError(entity_id, self.store_name)
                    attrs = await conn.execute(
                        text(f"""
                            SELECT entity_id, attr_key, attr_value
                            FROM {LEGACY_ATTRIBUTES_TABLE}
                            WHERE entity_id = :id
                            ORDER BY row_id
                        """),
                        {"id": entity_id},
                    )
                    attribute_rows = _attribute_rows(attrs.fetchall())

            return LegacyEntity(
                id=row[0],
                entity_type=row[1],
                status=row[2],
                created_at=self._decode_entity_timestamp(entity_id, "created_at", row[3]),
                modified_at=self._decode_entity_timestamp(entity_id, "modified_at", row[4]),
                attributes=attribute_rows,
            )

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        if not entity_ids:
            return []
        query = text(f"""
            SELECT entity_id, attr_key, attr_value
            FROM {LEGACY_ATTRIBUTES_TABLE}
            WHERE entity_id IN :ids
            ORDER BY entity_id, attr_key, row_id
        """).bindparams(bindparam("ids", expanding=True))
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, {"ids": list(entity_ids)})
                return _attribute_rows(result.fetchall())

    async def list_entity_versions(
        self,
        entity_types: Sequence[str],
        after_id: int,
        limit: int,
    ) -> list[tuple[int, datetime | None]]:
        with self._tracer.span(
            "recordsync.legacy_store.list_entity_versions",
            self._span_attributes("SELECT", **{ATTR_AFTER_ID: after_id}),
        ):
            query = text(f"""
                SELECT id, modified_at
                FROM {LEGACY_ENTITIES_TABLE}
                WHERE entity_type IN :types AND id > :after_id
                ORDER BY id
                LIMIT :limit
            """).bindparams(bindparam("types", expanding=True))
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(
                        query,
                        {"types": list(entity_types), "after_id": after_id, "limit": limit},
                    )
                    rows = result.fetchall()
            return [(row[0], self._decode_version(row[1])) for row in rows]

    def _range_clause(self, end: int | None) -> str:
        clause = "entity_type IN :types AND id >= :start"
        if end is not None:
            clause += " AND id <= :end"
        return clause

    async def list_entity_ids_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
        limit: int,
    ) -> list[int]:
        with self._tracer.span(
            "recordsync.legacy_store.list_entity_ids_in_range",
            self._span_attributes(
                "SELECT", **{ATTR_RANGE_START: start, ATTR_RANGE_END: -1 if end is None else end}
            ),
        ):
            query = text(f"""
                SELECT id
                FROM {LEGACY_ENTITIES_TABLE}
                WHERE {self._range_clause(end)}
                ORDER BY id
                LIMIT :limit
            """).bindparams(bindparam("types", expanding=True))
            params: dict[str, Any] = {"types": list(entity_types), "start": start, "limit": limit}
            if end is not None:
                params["end"] = end
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query, params)
                    return [row[0] for row in result.fetchall()]

    async def count_entities_in_range(
        self,
        entity_types: Sequence[str],
        start: int,
        end: int | None,
    ) -> int:
        query = text(f"""
            SELECT COUNT(*)
            FROM {LEGACY_ENTITIES_TABLE}
            WHERE {self._range_clause(end)}
        """).bindparams(bindparam("types", expanding=True))
        params: dict[str, Any] = {"types": list(entity_types), "start": start}
        if end is not None:
            params["end"] = end
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query, params)
                return int(result.scalar_one())

    async def count_entities(self, entity_types: Sequence[str] | None = None) -> int:
        if entity_types is None:
            query = text(f"SELECT COUNT(*) FROM {LEGACY_ENTITIES_TABLE}")
            params: dict[str, Any] = {}
        else:
            query = text(
                f"SELECT COUNT(*) FROM {LEGACY_ENTITIES_TABLE} WHERE entity_type IN :types"
            ).bindparams(bindparam("types", expanding=True))
            params = {"types": list(entity_types)}
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                if not await _has_table(conn, LEGACY_ENTITIES_TABLE):
                    return 0
                result = await conn.execute(query, params)
                return int(result.scalar_one())

    async def save_entity(self, entity: LegacyEntity) -> None:
        with self._tracer.span(
            "recordsync.legacy_store.save_entity",
            self._span_attributes("UPSERT", **{ATTR_ENTITY_ID: entity.id}),
        ):
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn) as conn:
                    await conn.execute(
                        text(f"""
                            INSERT INTO {LEGACY_ENTITIES_TABLE}
                                (id, entity_type, status, created_at, modified_at)
                            VALUES (:id, :entity_type, :status, :created_at, :modified_at)
                            ON CONFLICT (id) DO UPDATE
                            SET entity_type = excluded.entity_type,
                                status = excluded.status,
                                created_at = excluded.created_at,
                                modified_at = excluded.modified_at
                        """),
                        {
                            "id": entity.id,
                            "entity_type": entity.entity_type,
                            "status": entity.status,
                            "created_at": self._encode_timestamp(entity.created_at),
                            "modified_at": self._encode_timestamp(entity.modified_at),
                        },
                    )
                    await _replace_attributes(
                        conn, LEGACY_ATTRIBUTES_TABLE, entity.id, entity.attributes
                    )


async def _replace_attributes(
    conn: AsyncConnection,
    table: str,
    entity_id: int,
    rows: Sequence[AttributeRow],
) -> None:
    await conn.execute(
        text(f"DELETE FROM {table} WHERE entity_id = :id"),
        {"id": entity_id},
    )
    if rows:
        await conn.execute(
            text(f"""
                INSERT INTO {table} (entity_id, attr_key, attr_value)
                VALUES (:entity_id, :attr_key, :attr_value)
            """),
            [
                {"entity_id": entity_id, "attr_key": row.key, "attr_value": row.value}
                for row in rows
            ],
        )


class SQLNormalizedStore(_SQLStore):
    """
    Normalized store backed by ``normalized_entities`` / ``normalized_attributes``.

    Promoted fields are real typed columns on ``normalized_entities``.

    Args:
        conn: Database connection or engine
        field_specs: Promoted fields (must match the ones used to create the schema)
        tracer: Optional tracer for tracing (if not provided, one will be created)
        enable_tracing: Whether to enable OpenTelemetry tracing (default True)
    """

    store_name = "normalized"

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        field_specs: Sequence[FieldSpec] = DEFAULT_FIELD_SPECS,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        super().__init__(conn, tracer, enable_tracing)
        self._field_specs = tuple(field_specs)
        self._schema_verified = False

    def _encode_column(self, spec: FieldSpec, value: Any) -> Any:
        if value is None:
            return None
        if spec.kind == "timestamp":
            return self._encode_timestamp(value)
        if spec.kind == "decimal" and self._dialect == "sqlite":
            return str(value)
        return value

    def _decode_column(self, spec: FieldSpec, value: Any) -> Any:
        if value is None:
            return None
        if spec.kind == "timestamp":
            return self._decode_timestamp(value)
        if spec.kind == "decimal":
            return Decimal(str(value))
        if spec.kind == "int":
            return int(value)
        return value

    async def _require_schema(self, conn: AsyncConnection) -> None:
        if self._schema_verified:
            return
        if not await _has_table(conn, NORMALIZED_ENTITIES_TABLE):
            raise SchemaMissingError()
        self._schema_verified = True

    async def schema_exists(self) -> bool:
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                exists = await _has_table(conn, NORMALIZED_ENTITIES_TABLE) and await _has_table(
                    conn, NORMALIZED_ATTRIBUTES_TABLE
                )
        if not exists:
            self._schema_verified = False
        return exists

    async def create_schema(self) -> None:
        with self._tracer.span(
            "recordsync.normalized_store.create_schema",
            self._span_attributes("CREATE"),
        ):
            await self._execute_statements(
                normalized_schema(self._dialect, self._field_specs)
            )
            logger.info("Created normalized schema (%s)", self._dialect)

    async def write_entity(self, entity: NormalizedEntity) -> None:
        with self._tracer.span(
            "recordsync.normalized_store.write_entity",
            self._span_attributes("UPSERT", **{ATTR_ENTITY_ID: entity.id}),
        ):
            core = ["id", "entity_type", "status", "created_at", "modified_at", "synced_at"]
            promoted = [spec.column for spec in self._field_specs]
            columns = core + promoted
            params: dict[str, Any] = {
                "id": entity.id,
                "entity_type": entity.entity_type,
                "status": entity.status,
                "created_at": self._encode_timestamp(entity.created_at),
                "modified_at": self._encode_timestamp(entity.modified_at),
                "synced_at": self._encode_timestamp(entity.synced_at),
            }
            for spec in self._field_specs:
                params[spec.column] = self._encode_column(spec, entity.columns.get(spec.column))

            updates = ",\n    ".join(f"{column} = excluded.{column}" for column in columns[1:])
            query = text(f"""
                INSERT INTO {NORMALIZED_ENTITIES_TABLE} ({", ".join(columns)})
                VALUES ({", ".join(f":{column}" for column in columns)})
                ON CONFLICT (id) DO UPDATE
                SET {updates}
            """)
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn) as conn:
                    await self._require_schema(conn)
                    await conn.execute(query, params)
                    await _replace_attributes(
                        conn, NORMALIZED_ATTRIBUTES_TABLE, entity.id, entity.attributes
                    )

    async def read_entity(self, entity_id: int) -> NormalizedEntity:
        with self._tracer.span(
            "recordsync.normalized_store.read_entity",
            self._span_attributes("SELECT", **{ATTR_ENTITY_ID: entity_id}),
        ):
            promoted = "".join(f", {spec.column}" for spec in self._field_specs)
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn) as conn:
                    await self._require_schema(conn)
                    result = await conn.execute(
                        text(f"""
                            SELECT id, entity_type, status, created_at, modified_at,
                                   synced_at{promoted}
                            FROM {NORMALIZED_ENTITIES_TABLE}
                            WHERE id = :id
                        """),
                        {"id": entity_id},
                    )
                    row = result.fetchone()
                    if row is None:
                        raise EntityNotFoundError(entity_id, self.store_name)
                    attrs = await conn.execute(
                        text(f"""
                            SELECT entity_id, attr_key, attr_value
                            FROM {NORMALIZED_ATTRIBUTES_TABLE}
                            WHERE entity_id = :id
                            ORDER BY row_id
                        """),
                        {"id": entity_id},
                    )
                    attribute_rows = _attribute_rows(attrs.fetchall())

            mapping = row._mapping
            columns: dict[str, Any] = {}
            for spec in self._field_specs:
                try:
                    columns[spec.column] = self._decode_column(spec, mapping[spec.column])
                except (ValueError, ArithmeticError) as e:
                    raise MalformedEntityError(entity_id, spec.column, str(e)) from e
            return NormalizedEntity(
                id=mapping["id"],
                entity_type=mapping["entity_type"],
                status=mapping["status"],
                created_at=self._decode_entity_timestamp(
                    entity_id, "created_at", mapping["created_at"]
                ),
                modified_at=self._decode_entity_timestamp(
                    entity_id, "modified_at", mapping["modified_at"]
                ),
                synced_at=self._decode_entity_timestamp(
                    entity_id, "synced_at", mapping["synced_at"]
                ),
                columns=columns,
                attributes=attribute_rows,
            )

    async def read_attribute_rows(self, entity_ids: Sequence[int]) -> list[AttributeRow]:
        if not entity_ids:
            return []
        query = text(f"""
            SELECT entity_id, attr_key, attr_value
            FROM {NORMALIZED_ATTRIBUTES_TABLE}
            WHERE entity_id IN :ids
            ORDER BY entity_id, attr_key, row_id
        """).bindparams(bindparam("ids", expanding=True))
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                await self._require_schema(conn)
                result = await conn.execute(query, {"ids": list(entity_ids)})
                return _attribute_rows(result.fetchall())

    async def get_sync_times(self, entity_ids: Sequence[int]) -> dict[int, datetime]:
        if not entity_ids:
            return {}
        with self._tracer.span(
            "recordsync.normalized_store.get_sync_times",
            self._span_attributes("SELECT", **{ATTR_ENTITY_COUNT: len(entity_ids)}),
        ):
            query = text(f"""
                SELECT id, synced_at
                FROM {NORMALIZED_ENTITIES_TABLE}
                WHERE id IN :ids
            """).bindparams(bindparam("ids", expanding=True))
            async with translate_errors(self.store_name):
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    await self._require_schema(conn)
                    result = await conn.execute(query, {"ids": list(entity_ids)})
                    rows = result.fetchall()
            return {row[0]: self._decode_timestamp(row[1]) for row in rows}  # type: ignore[misc]


class SQLSettingsStore(_SQLStore):
    """
    Settings kept in the ``sync_settings`` table.

    A database without the table reads as having no settings; the first
    write creates it.
    """

    store_name = "settings"

    async def create_schema(self) -> None:
        await self._execute_statements(bookkeeping_schema(self._dialect))

    async def get_settings(self) -> dict[str, str]:
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                if not await _has_table(conn, SETTINGS_TABLE):
                    return {}
                result = await conn.execute(text(f"SELECT name, value FROM {SETTINGS_TABLE}"))
                return {row[0]: row[1] for row in result.fetchall()}

    async def put_settings(self, values: Mapping[str, str]) -> None:
        if not values:
            return
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn) as conn:
                for statement in bookkeeping_schema(self._dialect):
                    await conn.execute(text(statement))
                await conn.execute(
                    text(f"""
                        INSERT INTO {SETTINGS_TABLE} (name, value)
                        VALUES (:name, :value)
                        ON CONFLICT (name) DO UPDATE SET value = excluded.value
                    """),
                    [{"name": name, "value": value} for name, value in values.items()],
                )


class SQLExtensionRegistry(_SQLStore):
    """Extension registry kept in the ``sync_extensions`` table."""

    store_name = "extensions"

    async def create_schema(self) -> None:
        await self._execute_statements(bookkeeping_schema(self._dialect))

    async def register(
        self,
        name: str,
        compatibility: ExtensionCompatibility = ExtensionCompatibility.UNCERTAIN,
    ) -> None:
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn) as conn:
                await conn.execute(
                    text(f"""
                        INSERT INTO {EXTENSIONS_TABLE} (name, compatibility)
                        VALUES (:name, :compatibility)
                        ON CONFLICT (name) DO UPDATE SET compatibility = excluded.compatibility
                    """),
                    {"name": name, "compatibility": compatibility.value},
                )

    async def compatibility_report(self) -> ExtensionCompatibilityReport:
        async with translate_errors(self.store_name):
            async with execute_with_connection(self.conn, transactional=False) as conn:
                if not await _has_table(conn, EXTENSIONS_TABLE):
                    return ExtensionCompatibilityReport()
                result = await conn.execute(
                    text(f"SELECT name, compatibility FROM {EXTENSIONS_TABLE} ORDER BY name")
                )
                rows = result.fetchall()

        grouped: dict[ExtensionCompatibility, list[str]] = {c: [] for c in ExtensionCompatibility}
        for name, value in rows:
            try:
                compatibility = ExtensionCompatibility(value)
            except ValueError:
                logger.warning(
                    "Extension %s has unknown compatibility %r, treating as uncertain", name, value
                )
                compatibility = ExtensionCompatibility.UNCERTAIN
            grouped[compatibility].append(name)
        return ExtensionCompatibilityReport(
            compatible=tuple(grouped[ExtensionCompatibility.COMPATIBLE]),
            uncertain=tuple(grouped[ExtensionCompatibility.UNCERTAIN]),
            incompatible=tuple(grouped[ExtensionCompatibility.INCOMPATIBLE]),
        )


__all__ = [
    "SQLLegacyStore",
    "SQLNormalizedStore",
    "SQLSettingsStore",
    "SQLExtensionRegistry",
]
