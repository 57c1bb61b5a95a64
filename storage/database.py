"""
Database handle for the Catalog Service

One process-scoped handle owns a small pool of aiosqlite connections and
is passed explicitly to every store/service (no module-level globals).

Provides:
- Versioned schema migrations
- Scoped connection acquisition (each connection released exactly once)
- Write transactions via BEGIN IMMEDIATE, the lock every
  lock-then-decide sequence relies on
- Bounded operation timeouts (timeout => rollback, never a half-update)
- Retry policy for transient store errors (tenacity)

Tables:
  - collectables / media: canonical catalog + cached cover media
  - event_aggregates / event_logs: windowed feed rollups + raw actions
  - users / shelves / friendships / user_collections: visibility + profiles
  - event_likes / event_comments: social counters
  - news_items / user_news_seen: personalized discovery
  - schema_migrations: applied migrations

Usage:
    async with database("catalog.db") as db:
        async with db.transaction() as conn:
            await conn.execute(...)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Sequence, TypeVar, Union

import aiosqlite
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from storage.sqlite_pragmas import configure_connection

logger = logging.getLogger(__name__)

T = TypeVar("T")

Params = Union[Sequence[Any], dict]


# =============================================================================
# SCHEMA VERSION
# =============================================================================

CURRENT_SCHEMA_VERSION = 2

MIGRATIONS = {
    1: """
    -- Canonical catalog
    CREATE TABLE IF NOT EXISTS collectables (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint TEXT UNIQUE,
        lightweight_fingerprint TEXT,
        kind TEXT,
        title TEXT NOT NULL,
        subtitle TEXT,
        description TEXT,
        primary_creator TEXT,
        creators TEXT NOT NULL DEFAULT '[]',      -- JSON array
        publishers TEXT NOT NULL DEFAULT '[]',    -- JSON array
        year INTEGER,
        formats TEXT NOT NULL DEFAULT '[]',       -- JSON array
        tags TEXT NOT NULL DEFAULT '[]',          -- JSON array
        identifiers TEXT NOT NULL DEFAULT '{}',   -- JSON object
        images TEXT NOT NULL DEFAULT '[]',        -- JSON array of objects
        cover_url TEXT,
        cover_media_id INTEGER,
        sources TEXT NOT NULL DEFAULT '[]',       -- JSON array, append-only
        fuzzy_fingerprints TEXT NOT NULL DEFAULT '[]',
        external_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_collectables_lwf ON collectables(lightweight_fingerprint);
    CREATE INDEX IF NOT EXISTS idx_collectables_kind ON collectables(kind);
    CREATE INDEX IF NOT EXISTS idx_collectables_external_id ON collectables(external_id);

    -- Cached cover media
    CREATE TABLE IF NOT EXISTS media (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        collectable_id INTEGER NOT NULL,
        kind TEXT NOT NULL,
        provider TEXT,
        source_url TEXT NOT NULL,
        local_path TEXT,
        content_type TEXT,
        size_bytes INTEGER,
        checksum TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        UNIQUE(collectable_id, source_url),
        FOREIGN KEY (collectable_id) REFERENCES collectables(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_media_collectable ON media(collectable_id);

    -- Windowed rollups of user actions
    CREATE TABLE IF NOT EXISTS event_aggregates (
        id TEXT PRIMARY KEY,  -- UUID
        user_id TEXT,
        shelf_id INTEGER,
        collectable_id INTEGER,
        manual_id INTEGER,
        event_type TEXT NOT NULL,
        window_start_utc TEXT NOT NULL,
        window_end_utc TEXT NOT NULL,
        item_count INTEGER NOT NULL DEFAULT 0,
        preview_payloads TEXT NOT NULL DEFAULT '[]',  -- JSON array, capped

        -- Check-in fields
        checkin_status TEXT,
        visibility TEXT,
        note TEXT,

        created_at TEXT NOT NULL,
        last_activity_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_event_aggregates_scope_window
        ON event_aggregates(user_id, shelf_id, event_type, window_end_utc);
    CREATE INDEX IF NOT EXISTS idx_event_aggregates_last_activity
        ON event_aggregates(last_activity_at);

    -- One immutable row per raw action
    CREATE TABLE IF NOT EXISTS event_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT,
        shelf_id INTEGER,
        aggregate_id TEXT,
        event_type TEXT,
        payload TEXT NOT NULL DEFAULT '{}',  -- JSON
        created_at TEXT NOT NULL,

        FOREIGN KEY (aggregate_id) REFERENCES event_aggregates(id) ON DELETE SET NULL
    );

    CREATE INDEX IF NOT EXISTS idx_event_logs_aggregate ON event_logs(aggregate_id);
    CREATE INDEX IF NOT EXISTS idx_event_logs_user ON event_logs(user_id);
    CREATE INDEX IF NOT EXISTS idx_event_logs_created ON event_logs(created_at);

    -- Schema migrations tracking
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        applied_at TEXT NOT NULL,
        description TEXT
    );
    """,
    2: """
    -- Profiles cached from the auth layer
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        username TEXT,
        first_name TEXT,
        last_name TEXT,
        picture TEXT,
        city TEXT,
        state TEXT,
        country TEXT,
        created_at TEXT NOT NULL
    );

    -- Shelves are the aggregation context and carry visibility
    CREATE TABLE IF NOT EXISTS shelves (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        type TEXT,
        description TEXT,
        visibility TEXT NOT NULL DEFAULT 'private'
            CHECK (visibility IN ('public', 'friends', 'private')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_shelves_owner ON shelves(owner_id);

    CREATE TABLE IF NOT EXISTS friendships (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        requester_id TEXT NOT NULL,
        addressee_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'accepted', 'rejected', 'blocked')),
        message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,

        UNIQUE(requester_id, addressee_id)
    );

    CREATE INDEX IF NOT EXISTS idx_friendships_requester_status ON friendships(requester_id, status);
    CREATE INDEX IF NOT EXISTS idx_friendships_addressee_status ON friendships(addressee_id, status);

    CREATE TABLE IF NOT EXISTS user_collections (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        shelf_id INTEGER NOT NULL,
        collectable_id INTEGER,
        format TEXT,
        created_at TEXT NOT NULL,

        FOREIGN KEY (shelf_id) REFERENCES shelves(id) ON DELETE CASCADE,
        FOREIGN KEY (collectable_id) REFERENCES collectables(id) ON DELETE SET NULL
    );

    CREATE INDEX IF NOT EXISTS idx_user_collections_user ON user_collections(user_id);

    -- Social counters on aggregates
    CREATE TABLE IF NOT EXISTS event_likes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        created_at TEXT NOT NULL,

        UNIQUE(event_id, user_id),
        FOREIGN KEY (event_id) REFERENCES event_aggregates(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS event_comments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,

        FOREIGN KEY (event_id) REFERENCES event_aggregates(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_event_comments_event ON event_comments(event_id, created_at);

    -- Personalized discovery
    CREATE TABLE IF NOT EXISTS news_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        category TEXT NOT NULL,
        item_type TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT,
        cover_image_url TEXT,
        release_date TEXT,
        physical_release_date TEXT,
        creators TEXT NOT NULL DEFAULT '[]',  -- JSON array
        genres TEXT NOT NULL DEFAULT '[]',    -- JSON array
        external_id TEXT,
        source_api TEXT,
        source_url TEXT,
        payload TEXT NOT NULL DEFAULT '{}',   -- JSON
        collectable_id INTEGER,
        fetched_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,

        FOREIGN KEY (collectable_id) REFERENCES collectables(id) ON DELETE SET NULL
    );

    CREATE INDEX IF NOT EXISTS idx_news_items_category ON news_items(category, item_type);
    CREATE INDEX IF NOT EXISTS idx_news_items_expires ON news_items(expires_at);

    CREATE TABLE IF NOT EXISTS user_news_seen (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        news_item_id INTEGER NOT NULL,
        seen_at TEXT NOT NULL,

        UNIQUE(user_id, news_item_id),
        FOREIGN KEY (news_item_id) REFERENCES news_items(id) ON DELETE CASCADE
    );
    """,
}


# =============================================================================
# TIME HELPERS
# =============================================================================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Serialize a datetime for storage.

    Fixed-width microsecond format so ISO strings compare in time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, always returning a tz-aware datetime."""
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# =============================================================================
# TRANSIENT ERRORS
# =============================================================================

def is_transient_store_error(error: BaseException) -> bool:
    """
    Lock timeouts and operation timeouts are retryable; everything else
    (constraint violations, SQL errors) is not. Both are raised before
    COMMIT (see Database.run_in_transaction), so a retry never re-applies
    a committed write.
    """
    if isinstance(error, asyncio.TimeoutError):
        return True
    if isinstance(error, aiosqlite.OperationalError):
        message = str(error).lower()
        return "locked" in message or "busy" in message
    return False


# Retry a single store operation on transient errors
store_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
    retry=retry_if_exception(is_transient_store_error),
    reraise=True,
)


# =============================================================================
# DATABASE
# =============================================================================

class Database:
    """
    Process-scoped pool of aiosqlite connections.

    Features:
    - Connection pool (forced to one connection for ":memory:")
    - Automatic schema migrations
    - Write transactions with BEGIN IMMEDIATE
    - Bounded timeouts on pool acquisition and transactions
    """

    def __init__(
        self,
        db_path: Union[str, Path] = "catalog.db",
        pool_size: int = 4,
        busy_timeout_ms: int = 5000,
        operation_timeout_seconds: float = 10.0,
    ):
        """
        Args:
            db_path: SQLite database file, or ":memory:"
            pool_size: Number of pooled connections
            busy_timeout_ms: SQLite lock wait before "database is locked"
            operation_timeout_seconds: Upper bound for acquiring a connection
                and for the body of a transaction (COMMIT is not bounded)
        """
        self.db_path = str(db_path)
        self.in_memory = self.db_path == ":memory:"
        self.pool_size = 1 if self.in_memory else max(1, pool_size)
        self.busy_timeout_ms = busy_timeout_ms
        self.operation_timeout_seconds = operation_timeout_seconds
        self._connections: List[aiosqlite.Connection] = []
        self._pool: Optional[asyncio.Queue] = None

    @property
    def is_initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """
        Open the pool and apply migrations.
        Should be called once at startup.
        """
        if self._pool is not None:
            return

        if not self.in_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        pool: asyncio.Queue = asyncio.Queue()
        for _ in range(self.pool_size):
            conn = await self._open_connection()
            self._connections.append(conn)
            pool.put_nowait(conn)
        self._pool = pool

        await self._apply_migrations()

        logger.info(f"Database initialized: {self.db_path} (pool_size={self.pool_size})")

    async def close(self) -> None:
        """Drain the pool and close every connection."""
        if self._pool is None:
            return

        # Wait for in-flight operations to hand their connections back
        for _ in range(len(self._connections)):
            await self._pool.get()

        for conn in self._connections:
            await conn.close()

        self._connections = []
        self._pool = None
        logger.info(f"Database closed: {self.db_path}")

    # =========================================================================
    # CONNECTIONS AND TRANSACTIONS
    # =========================================================================

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Borrow a pooled connection for the duration of the block.

        The connection goes back to the pool exactly once, on every exit path.
        A connection still holding a transaction is replaced, never reused.
        """
        if self._pool is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        pool = self._pool
        conn = await asyncio.wait_for(pool.get(), timeout=self.operation_timeout_seconds)
        try:
            yield conn
        finally:
            if conn.in_transaction:
                conn = await self._replace_connection(conn)
            pool.put_nowait(conn)

    async def _open_connection(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        await configure_connection(
            conn,
            wal=not self.in_memory,
            busy_timeout_ms=self.busy_timeout_ms,
        )
        return conn

    async def _replace_connection(self, conn: aiosqlite.Connection) -> aiosqlite.Connection:
        """Close a connection left inside a transaction and open a fresh one."""
        if self.in_memory:
            # Reopening ":memory:" would lose the database; ending the
            # transaction is the only option
            await conn.rollback()
            return conn

        logger.warning(f"Replacing pooled connection left in a transaction: {self.db_path}")
        try:
            await conn.close()
        except Exception as e:
            logger.warning(f"Error closing stale connection: {e}")

        fresh = await self._open_connection()
        self._connections = [fresh if c is conn else c for c in self._connections]
        return fresh

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Write transaction.

        BEGIN IMMEDIATE takes SQLite's write lock up front, so a concurrent
        writer blocks (up to busy_timeout) until this transaction ends and
        then re-reads committed state.

        Usage:
            async with db.transaction() as conn:
                await conn.execute(...)
                # Commits on success, rolls back on any exception or cancellation
        """
        async with self.acquire() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                yield conn
                await conn.commit()
            except BaseException:
                # A cancelled statement keeps running on the connection's
                # worker thread; the rollback queues behind it, and is a
                # no-op when BEGIN never took the lock
                await conn.rollback()
                raise

    async def run_in_transaction(
        self,
        fn: Callable[[aiosqlite.Connection], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run fn(conn) inside one transaction.

        The lock wait is bounded by busy_timeout ("database is locked") and
        fn by the operation timeout. On either, the transaction is rolled
        back and nothing fn wrote is kept. COMMIT runs outside the timeout,
        so a TimeoutError always means the transaction did not commit.
        """
        async with self.transaction() as conn:
            return await asyncio.wait_for(
                fn(conn), timeout=timeout or self.operation_timeout_seconds
            )

    # =========================================================================
    # QUERY HELPERS
    # =========================================================================

    async def fetch_one(self, sql: str, params: Params = ()) -> Optional[aiosqlite.Row]:
        async with self.acquire() as conn:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, params: Params = ()) -> List[aiosqlite.Row]:
        async with self.acquire() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return list(rows)

    async def execute(self, sql: str, params: Params = ()) -> int:
        """Run one write statement in its own transaction; returns rowcount."""
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            return cursor.rowcount

    async def insert(self, sql: str, params: Params = ()) -> int:
        """Run one INSERT in its own transaction; returns lastrowid."""
        async with self.transaction() as conn:
            cursor = await conn.execute(sql, params)
            return cursor.lastrowid

    # =========================================================================
    # MIGRATIONS
    # =========================================================================

    async def _apply_migrations(self) -> None:
        """Apply pending schema migrations."""
        async with self.acquire() as conn:
            try:
                cursor = await conn.execute("SELECT MAX(version) FROM schema_migrations")
                row = await cursor.fetchone()
                current_version = row[0] if row and row[0] else 0
            except aiosqlite.OperationalError:
                # Table doesn't exist yet
                current_version = 0

            for version in sorted(MIGRATIONS.keys()):
                if version <= current_version:
                    continue

                logger.info(f"Applying migration v{version}...")

                # executescript manages its own statements; wrap them so the
                # schema change and its bookkeeping row commit together
                script = (
                    "BEGIN IMMEDIATE;\n"
                    f"{MIGRATIONS[version]}\n"
                    "INSERT INTO schema_migrations (version, applied_at, description) "
                    f"VALUES ({version}, '{to_iso(utc_now())}', 'Schema version {version}');\n"
                    "COMMIT;"
                )
                try:
                    await conn.executescript(script)
                except Exception:
                    if conn.in_transaction:
                        await conn.rollback()
                    raise

                logger.info(f"Migration v{version} applied successfully")

    async def get_schema_version(self) -> int:
        row = await self.fetch_one("SELECT MAX(version) FROM schema_migrations")
        return row[0] if row and row[0] else 0


# =============================================================================
# CONTEXT MANAGER FOR EASY USAGE
# =============================================================================

@asynccontextmanager
async def database(
    db_path: Union[str, Path] = "catalog.db",
    **kwargs,
) -> AsyncIterator[Database]:
    """
    Context manager for Database that handles initialization and shutdown.

    Usage:
        async with database("catalog.db") as db:
            store = CollectableStore(db)
    """
    db = Database(db_path, **kwargs)
    await db.initialize()
    try:
        yield db
    finally:
        await db.close()
