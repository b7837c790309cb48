"""
Connection handling helpers for the SQL stores.

- ``execute_with_connection`` accepts either an AsyncEngine or an
  AsyncConnection and yields a connection ready for ``execute()``.
- ``translate_errors`` turns driver-level connectivity failures into
  StoreUnavailableError so callers only ever see recordsync errors.
- ``create_engine`` builds an AsyncEngine from a database URL.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, cast

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from recordsync.exceptions import StoreUnavailableError
from recordsync.stores.schema import Dialect

logger = logging.getLogger(__name__)

SUPPORTED_DIALECTS = ("sqlite", "postgresql")


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Context manager for executing database operations.

    Args:
        conn: Database connection or engine
        transactional: If True, wrap in a transaction (begin).
                       If False, use a bare connection (connect).
                       Only applies when conn is an AsyncEngine.

    Yields:
        AsyncConnection ready for execute() calls

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, params)

    Note:
        When an AsyncConnection is passed, the caller owns the transaction.
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn


@asynccontextmanager
async def translate_errors(store: str) -> AsyncIterator[None]:
    """
    Re-raise connectivity failures as StoreUnavailableError.

    Args:
        store: Store name reported in the error ("legacy", "normalized", ...)
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.warning("%s store unavailable: %s", store, e.orig or e)
        raise StoreUnavailableError(store, str(e.orig or e)) from e
    except DBAPIError as e:
        if not e.connection_invalidated:
            raise
        logger.warning("%s store connection invalidated: %s", store, e.orig or e)
        raise StoreUnavailableError(store, "connection invalidated") from e
    except OSError as e:
        logger.warning("%s store unreachable: %s", store, e)
        raise StoreUnavailableError(store, str(e)) from e


def dialect_of(conn: AsyncConnection | AsyncEngine) -> Dialect:
    """
    Return the dialect name of an engine or connection.

    Raises:
        ValueError: If the dialect is not supported.
    """
    name = conn.dialect.name
    if name not in SUPPORTED_DIALECTS:
        raise ValueError(
            f"Unsupported database dialect {name!r}; expected one of {SUPPORTED_DIALECTS}"
        )
    return cast(Dialect, name)


def create_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an AsyncEngine for a sqlite+aiosqlite or postgresql+asyncpg URL.

    Args:
        database_url: SQLAlchemy database URL.
        **kwargs: Passed through to create_async_engine.

    Returns:
        The engine. Nothing is connected until first use.
    """
    engine = create_async_engine(database_url, **kwargs)
    dialect_of(engine)
    return engine


__all__ = [
    "SUPPORTED_DIALECTS",
    "execute_with_connection",
    "translate_errors",
    "dialect_of",
    "create_engine",
]
