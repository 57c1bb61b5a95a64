"""
SQLite connection setup for the Catalog Service.

Every pooled connection goes through configure_connection() so pragmas
and SQL functions never drift between connections.

Usage:
    from storage.sqlite_pragmas import configure_connection

    conn = await aiosqlite.connect(path, isolation_level=None)
    await configure_connection(conn, wal=True, busy_timeout_ms=5000)
"""

import logging

import aiosqlite

from utils.similarity import trigram_similarity

logger = logging.getLogger(__name__)


async def configure_connection(
    conn: aiosqlite.Connection,
    wal: bool = True,
    busy_timeout_ms: int = 5000,
    foreign_keys: bool = True,
) -> None:
    """
    Apply pragmas and register SQL functions on a fresh connection.

    Args:
        conn: aiosqlite connection (autocommit mode)
        wal: Enable WAL mode; ignored for in-memory databases
        busy_timeout_ms: How long a writer waits for the write lock before
            SQLite raises "database is locked"
        foreign_keys: Enforce referential integrity

    Registered functions:
        similarity(a, b): pg_trgm-compatible trigram similarity
    """
    conn.row_factory = aiosqlite.Row

    if foreign_keys:
        await conn.execute("PRAGMA foreign_keys = ON")

    if wal:
        await conn.execute("PRAGMA journal_mode = WAL")

    if busy_timeout_ms > 0:
        await conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")

    await conn.create_function("similarity", 2, trigram_similarity, deterministic=True)

    logger.debug(
        f"Configured SQLite connection: WAL={wal}, busy_timeout={busy_timeout_ms}ms, "
        f"foreign_keys={foreign_keys}"
    )
