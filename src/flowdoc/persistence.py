"""SQLite persistence layer for the FlowDoc node catalog."""

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite

from .models import (
    CacheRecord,
    CatalogSnapshot,
    CatalogStats,
    NodeDescriptor,
    SyncMetadata,
    SyncResult,
    utcnow,
)

logger = logging.getLogger("flowdoc.persistence")

SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    name TEXT NOT NULL UNIQUE,
    metadata JSON NOT NULL,
    category TEXT NOT NULL,
    last_updated TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nodes_category ON nodes(category);
CREATE INDEX IF NOT EXISTS idx_nodes_name ON nodes(name);

CREATE TABLE IF NOT EXISTS sync_metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    revision TEXT NOT NULL,
    last_sync TEXT NOT NULL
);
"""

# Milliseconds a connection waits on a locked database before failing
BUSY_TIMEOUT_MS = 5000


def _like_pattern(query: str) -> str:
    escaped = query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class KnowledgeStore:
    """Async SQLite storage for node descriptors with atomic catalog replacement.

    Each instance owns its own connection pool, so tests can build isolated
    stores per case. The database runs in WAL mode: a sync() holds the only
    write transaction while readers keep seeing the previous catalog until
    commit.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._max_pool_size = 5

    @asynccontextmanager
    async def _connection(self, *, commit: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        """Get a database connection with automatic cleanup and optional commit.

        Args:
            commit: If True, commit on success, rollback on error.
        """
        conn = await self._acquire_conn()
        try:
            yield conn
            if commit:
                await conn.commit()
                logger.debug("Transaction committed")
        except BaseException as e:
            if commit or conn.in_transaction:
                await conn.rollback()
                logger.warning(f"Transaction rolled back due to error: {e!r}")
            raise
        finally:
            await self._release_conn(conn)

    async def _acquire_conn(self) -> aiosqlite.Connection:
        """Acquire a connection from pool or create new one."""
        async with self._pool_lock:
            if self._pool:
                return self._pool.pop()

        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")

        async with self._init_lock:
            if not self._initialized:
                logger.info(f"Initializing database at {self.db_path}")
                await conn.execute("PRAGMA journal_mode = WAL")
                await conn.executescript(SCHEMA)
                await conn.commit()
                self._initialized = True

        return conn

    async def _release_conn(self, conn: aiosqlite.Connection) -> None:
        """Return connection to pool or close if pool is full."""
        async with self._pool_lock:
            if len(self._pool) < self._max_pool_size:
                self._pool.append(conn)
                return

        await conn.close()

    async def close_pool(self) -> None:
        """Close all pooled connections. Call on shutdown."""
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            count = len(self._pool)
            self._pool.clear()
            logger.info(f"Closed {count} pooled connections")

    # =========================================================================
    # Sync
    # =========================================================================

    async def sync(self, descriptors: Sequence[NodeDescriptor], revision: str) -> SyncResult:
        """Replace the whole catalog in one transaction.

        Deletes every record, bulk-inserts the new set keyed by name and updates
        the sync metadata row. On any failure the transaction is rolled back and
        the previous catalog is left untouched; the failure is reported in the
        returned SyncResult. Re-syncing identical content under the same
        revision changes nothing, including the last sync time.
        """
        now = utcnow()
        payloads = sorted(
            (d.name, d.model_dump_json(by_alias=True, exclude={"last_updated"}), d.category,
             (d.last_updated or now).isoformat())
            for d in descriptors
        )

        try:
            async with self._connection(commit=True) as conn:
                await conn.execute("BEGIN IMMEDIATE")

                if await self._is_unchanged(conn, payloads, revision):
                    logger.info(f"Catalog revision {revision} already current, nothing to sync")
                    return SyncResult(ok=True, revision=revision, count=len(payloads), changed=False)

                await conn.execute("DELETE FROM nodes")
                await conn.executemany(
                    "INSERT INTO nodes (name, metadata, category, last_updated) VALUES (?, ?, ?, ?)",
                    payloads,
                )
                await conn.execute(
                    """
                    INSERT INTO sync_metadata (id, revision, last_sync) VALUES (1, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        revision = excluded.revision,
                        last_sync = excluded.last_sync
                    """,
                    (revision, now.isoformat()),
                )
        except sqlite3.Error as e:
            logger.error(f"Sync to revision {revision} failed, previous catalog kept: {e}")
            return SyncResult(ok=False, revision=revision, error=str(e), retryable=True)

        logger.info(f"Synced {len(payloads)} nodes at revision {revision}")
        return SyncResult(ok=True, revision=revision, count=len(payloads), changed=True)

    async def _is_unchanged(self, conn: aiosqlite.Connection, payloads: list[tuple], revision: str) -> bool:
        cursor = await conn.execute("SELECT revision FROM sync_metadata WHERE id = 1")
        row = await cursor.fetchone()
        if not row or row["revision"] != revision:
            return False
        cursor = await conn.execute("SELECT name, metadata FROM nodes ORDER BY name")
        current = [(r["name"], r["metadata"]) for r in await cursor.fetchall()]
        return current == [(name, metadata) for name, metadata, _, _ in payloads]

    async def clear(self) -> None:
        """Remove every record and the sync metadata."""
        async with self._connection(commit=True) as conn:
            await conn.execute("BEGIN IMMEDIATE")
            await conn.execute("DELETE FROM nodes")
            await conn.execute("DELETE FROM sync_metadata")
        logger.info("Catalog cache cleared")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, name: str) -> NodeDescriptor | None:
        """Get a descriptor by name; exact match wins over a case-insensitive one."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT metadata FROM nodes
                WHERE name = ? OR LOWER(name) = LOWER(?)
                ORDER BY name = ? DESC, name
                LIMIT 1
                """,
                (name, name, name),
            )
            row = await cursor.fetchone()
            return self._row_to_descriptor(row) if row else None

    async def get_record(self, name: str) -> CacheRecord | None:
        """Get a descriptor together with its last update time and revision."""
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT n.metadata, n.last_updated, m.revision
                FROM nodes n LEFT JOIN sync_metadata m ON m.id = 1
                WHERE n.name = ? OR LOWER(n.name) = LOWER(?)
                ORDER BY n.name = ? DESC, n.name
                LIMIT 1
                """,
                (name, name, name),
            )
            row = await cursor.fetchone()
            if not row:
                return None
            return CacheRecord(
                descriptor=self._row_to_descriptor(row),
                last_updated=datetime.fromisoformat(row["last_updated"]),
                revision=row["revision"] or "",
            )

    async def search(self, query: str, limit: int = 50) -> list[NodeDescriptor]:
        """Substring search over name, display name and description."""
        pattern = _like_pattern(query)
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                SELECT metadata FROM nodes
                WHERE LOWER(name) LIKE ? ESCAPE '\\'
                   OR LOWER(json_extract(metadata, '$.displayName')) LIKE ? ESCAPE '\\'
                   OR LOWER(json_extract(metadata, '$.description')) LIKE ? ESCAPE '\\'
                ORDER BY name
                LIMIT ?
                """,
                (pattern, pattern, pattern, limit),
            )
            rows = await cursor.fetchall()
            return [self._row_to_descriptor(row) for row in rows]

    async def by_category(self, category: str) -> list[NodeDescriptor]:
        async with self._connection() as conn:
            cursor = await conn.execute(
                "SELECT metadata FROM nodes WHERE category = ? ORDER BY name", (category,)
            )
            rows = await cursor.fetchall()
            return [self._row_to_descriptor(row) for row in rows]

    async def get_all(self) -> list[NodeDescriptor]:
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT metadata FROM nodes ORDER BY name")
            rows = await cursor.fetchall()
            return [self._row_to_descriptor(row) for row in rows]

    async def get_sync_metadata(self) -> SyncMetadata | None:
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT revision, last_sync FROM sync_metadata WHERE id = 1")
            row = await cursor.fetchone()
            if not row:
                return None
            return SyncMetadata(revision=row["revision"], last_sync=datetime.fromisoformat(row["last_sync"]))

    async def get_revision(self) -> str | None:
        meta = await self.get_sync_metadata()
        return meta.revision if meta else None

    async def is_empty(self) -> bool:
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT EXISTS (SELECT 1 FROM nodes)")
            row = await cursor.fetchone()
            return not row[0]

    async def stats(self) -> CatalogStats:
        """Total count, per-category counts, revision and last sync time."""
        async with self._connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM nodes")
            total = (await cursor.fetchone())[0]

            cursor = await conn.execute(
                "SELECT category, COUNT(*) AS count FROM nodes GROUP BY category ORDER BY count DESC, category"
            )
            per_category = {row["category"]: row["count"] for row in await cursor.fetchall()}

            cursor = await conn.execute("SELECT revision, last_sync FROM sync_metadata WHERE id = 1")
            meta = await cursor.fetchone()

        return CatalogStats(
            total_count=total,
            per_category=per_category,
            revision=meta["revision"] if meta else None,
            last_sync=datetime.fromisoformat(meta["last_sync"]) if meta else None,
        )

    async def snapshot(self) -> CatalogSnapshot:
        """Read the metadata row and every descriptor inside one read transaction."""
        async with self._connection() as conn:
            await conn.execute("BEGIN")
            try:
                cursor = await conn.execute("SELECT revision, last_sync FROM sync_metadata WHERE id = 1")
                meta = await cursor.fetchone()
                cursor = await conn.execute("SELECT metadata FROM nodes ORDER BY name")
                rows = await cursor.fetchall()
            finally:
                await conn.rollback()

        return CatalogSnapshot(
            revision=meta["revision"] if meta else None,
            last_sync=datetime.fromisoformat(meta["last_sync"]) if meta else None,
            descriptors=tuple(self._row_to_descriptor(row) for row in rows),
        )

    def _row_to_descriptor(self, row: aiosqlite.Row) -> NodeDescriptor:
        return NodeDescriptor.model_validate(json.loads(row["metadata"]))
