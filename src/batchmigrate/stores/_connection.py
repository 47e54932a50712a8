"""
Connection handling helper for the SQLAlchemy stores.

Stores accept either an AsyncEngine or an AsyncConnection. With an engine,
each operation opens its own connection (or transaction); with a connection,
the caller owns transaction management and the connection is used as is.
"""

import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection for one store operation.

    Writes (inserts, deletes, audit appends) pass ``transactional=True`` so
    the statement commits when the block exits; lookups and counts pass
    False. A caller-owned AsyncConnection is yielded unchanged either way.

    Example:
        >>> async with execute_with_connection(self.conn, transactional=False) as conn:
        ...     result = await conn.execute(text("SELECT COUNT(*) FROM trades"))
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


def validate_identifier(name: str) -> str:
    """
    Check that a table or column name is a plain SQL identifier.

    Identifiers are interpolated into SQL text, so anything else is refused.

    Raises:
        ValueError: If the name is not a plain identifier
    """
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def dialect_name(conn: AsyncConnection | AsyncEngine) -> str:
    """Name of the database dialect behind a connection or engine."""
    return conn.dialect.name
