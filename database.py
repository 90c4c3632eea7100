"""
database.py — async SQLite persistence via aiosqlite.

Tables:
  result_cache      — ResultCache entries (key → JSON payload, created_at, ttl)
  analysis_history  — AnalysisHistory entries, position 0 = most recent

The DB file is created automatically on first use.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Optional

import aiosqlite

from errors import StorageQuotaExceeded
from history import HistoryEntry, HistoryStore
from result_cache import CacheEntry, CacheStorage

logger = logging.getLogger(__name__)

# Keep the DB in a dedicated data/ directory so a volume mount (./data:/app/data)
# survives restarts. set_data_dir() points it elsewhere (Settings.data_dir).
_DATA_DIR = Path("data")
DB_PATH = str(_DATA_DIR / "search_cache.db")
_lock = asyncio.Lock()          # serialise schema creation


def set_data_dir(data_dir: str) -> str:
    """Point DB_PATH at <data_dir>/search_cache.db. Returns the new path."""
    global _DATA_DIR, DB_PATH
    _DATA_DIR = Path(data_dir)
    DB_PATH = str(_DATA_DIR / "search_cache.db")
    return DB_PATH


# ── Schema ────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS result_cache (
    key        TEXT PRIMARY KEY,
    payload    TEXT NOT NULL,
    created_at REAL NOT NULL,
    ttl        REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_result_cache_created ON result_cache (created_at);

CREATE TABLE IF NOT EXISTS analysis_history (
    id           TEXT    PRIMARY KEY,
    position     INTEGER NOT NULL,
    timestamp    REAL    NOT NULL,
    fingerprint  TEXT    NOT NULL,
    object_count INTEGER NOT NULL DEFAULT 0,
    provider     TEXT    NOT NULL DEFAULT ''
);
"""


async def init_db(db_path: Optional[str] = None) -> None:
    """Create tables if they don't exist. Safe to call multiple times."""
    path = db_path or DB_PATH
    async with _lock:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(path) as db:
            await db.executescript(_SCHEMA)
            await db.commit()
    logger.info("Database initialised at %s", path)


def _is_disk_full(exc: sqlite3.Error) -> bool:
    return "full" in str(exc).lower()


# ── Result cache storage ──────────────────────────────────────────────────────

class SQLiteCacheStorage(CacheStorage):
    """
    CacheStorage over the result_cache table. `max_bytes` caps the total
    key + payload size; exceeding it (or SQLite reporting a full disk) raises
    StorageQuotaExceeded so ResultCache can evict and retry.
    """

    def __init__(self, db_path: Optional[str] = None, max_bytes: Optional[int] = None) -> None:
        self._db_path = db_path
        self._max_bytes = max_bytes
        self._ready = False

    @property
    def path(self) -> str:
        return self._db_path or DB_PATH

    async def _ensure_schema(self) -> None:
        if not self._ready:
            await init_db(self.path)
            self._ready = True

    async def get(self, key: str) -> Optional[CacheEntry]:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            async with db.execute(
                "SELECT key, payload, created_at, ttl FROM result_cache WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
        if not row:
            return None
        return CacheEntry(key=row[0], payload=row[1], created_at=row[2], ttl=row[3])

    async def put(self, entry: CacheEntry) -> None:
        await self._ensure_schema()
        try:
            async with aiosqlite.connect(self.path) as db:
                if self._max_bytes is not None:
                    async with db.execute(
                        "SELECT COALESCE(SUM(LENGTH(key) + LENGTH(payload)), 0) "
                        "FROM result_cache WHERE key != ?",
                        (entry.key,),
                    ) as cursor:
                        (current,) = await cursor.fetchone()
                    if current + entry.size > self._max_bytes:
                        raise StorageQuotaExceeded(
                            f"sqlite cache full ({current} + {entry.size} > {self._max_bytes} bytes)"
                        )
                await db.execute(
                    """INSERT OR REPLACE INTO result_cache (key, payload, created_at, ttl)
                       VALUES (?, ?, ?, ?)""",
                    (entry.key, entry.payload, entry.created_at, entry.ttl),
                )
                await db.commit()
        except sqlite3.OperationalError as exc:
            if _is_disk_full(exc):
                raise StorageQuotaExceeded(str(exc)) from exc
            raise

    async def delete(self, key: str) -> None:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM result_cache WHERE key = ?", (key,))
            await db.commit()

    async def keys(self) -> list[str]:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            async with db.execute("SELECT key FROM result_cache ORDER BY created_at, rowid") as cursor:
                rows = await cursor.fetchall()
        return [r[0] for r in rows]

    async def evict_oldest(self, n: int) -> int:
        """Delete the n oldest entries (created_at, then insertion order)."""
        if n <= 0:
            return 0
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                """DELETE FROM result_cache WHERE key IN (
                       SELECT key FROM result_cache ORDER BY created_at, rowid LIMIT ?
                   )""",
                (n,),
            )
            await db.commit()
            return cursor.rowcount

    async def count(self) -> int:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            async with db.execute("SELECT COUNT(*) FROM result_cache") as cursor:
                (total,) = await cursor.fetchone()
        return total

    async def clear(self) -> None:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM result_cache")
            await db.commit()


# ── Analysis history storage ──────────────────────────────────────────────────

class SQLiteHistoryStore(HistoryStore):

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path
        self._ready = False

    @property
    def path(self) -> str:
        return self._db_path or DB_PATH

    async def _ensure_schema(self) -> None:
        if not self._ready:
            await init_db(self.path)
            self._ready = True

    async def load(self) -> list[HistoryEntry]:
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM analysis_history ORDER BY position"
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            HistoryEntry(
                id=r["id"],
                timestamp=r["timestamp"],
                fingerprint=r["fingerprint"],
                object_count=r["object_count"],
                provider=r["provider"],
            )
            for r in rows
        ]

    async def save(self, entries: list[HistoryEntry]) -> None:
        """Replace the stored list with `entries` in one transaction."""
        await self._ensure_schema()
        async with aiosqlite.connect(self.path) as db:
            await db.execute("DELETE FROM analysis_history")
            await db.executemany(
                """INSERT INTO analysis_history
                   (id, position, timestamp, fingerprint, object_count, provider)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (e.id, i, e.timestamp, e.fingerprint, e.object_count, e.provider)
                    for i, e in enumerate(entries)
                ],
            )
            await db.commit()
