"""
result_cache.py — best-effort, content-addressed result cache.

Keys are derived from the inputs that determine a result (image fingerprint,
provider, crop, query, ...) so a hit is always a result for the same request.
Entries expire after a TTL and the cache is capped at max_entries; the oldest
entries (by created_at) go first.

The cache never breaks a search:
  - write failures are logged and reported as False
  - a storage quota error evicts `evict_batch` oldest entries and retries once
  - anything undecodable on read is purged and treated as a miss

Storage is pluggable (CacheStorage). MemoryCacheStorage lives here;
database.SQLiteCacheStorage persists across restarts.
"""
from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from errors import CacheReadCorrupt, CacheWriteFailure, StorageQuotaExceeded

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECS = 24 * 60 * 60
_SAMPLE_CHARS = 1000


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: str                # JSON text
    created_at: float           # epoch seconds
    ttl: float                  # seconds

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl

    @property
    def size(self) -> int:
        return len(self.key) + len(self.payload)


# ── Keys ──────────────────────────────────────────────────────────────────────

def fingerprint(data: Union[str, bytes]) -> str:
    """
    Identify an image or query without hashing all of it: the first and last
    1000 characters plus the total length. Two inputs that agree on all three
    share a fingerprint.
    """
    if isinstance(data, bytes):
        data = base64.b64encode(data).decode()
    sample = f"{data[:_SAMPLE_CHARS]}|{data[-_SAMPLE_CHARS:]}|{len(data)}"
    return hashlib.sha256(sample.encode()).hexdigest()[:32]


def _normalise(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    if isinstance(value, float):
        return round(value, 4)
    if isinstance(value, dict):
        return {k: _normalise(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    if hasattr(value, "value") and not isinstance(value, (str, int)):
        return value.value          # Enum
    return value


def make_cache_key(namespace: str, fp: str, **params: Any) -> str:
    """
    "namespace:fingerprint:digest" where digest covers every discriminating
    parameter (None values are ignored, floats rounded to 4 decimals).
    """
    material = {k: _normalise(v) for k, v in params.items() if v is not None}
    digest = hashlib.sha256(
        json.dumps(material, sort_keys=True, default=str).encode()
    ).hexdigest()[:24]
    return f"{namespace}:{fp}:{digest}"


# ── Storage contract ──────────────────────────────────────────────────────────

class CacheStorage(ABC):
    """
    Raw key/value storage. put() raises StorageQuotaExceeded when full;
    evict_oldest() removes by created_at (ties: oldest write first).
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    @abstractmethod
    async def evict_oldest(self, n: int) -> int: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    async def clear(self) -> None: ...


class MemoryCacheStorage(CacheStorage):

    def __init__(self, max_bytes: Optional[int] = None) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._max_bytes = max_bytes

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> None:
        if self._max_bytes is not None:
            current = sum(e.size for k, e in self._entries.items() if k != entry.key)
            if current + entry.size > self._max_bytes:
                raise StorageQuotaExceeded(
                    f"memory cache full ({current} + {entry.size} > {self._max_bytes} bytes)"
                )
        # Re-inserting moves the key to the end so ties on created_at evict it last
        self._entries.pop(entry.key, None)
        self._entries[entry.key] = entry

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._entries)

    async def evict_oldest(self, n: int) -> int:
        if n <= 0:
            return 0
        oldest = sorted(self._entries.values(), key=lambda e: e.created_at)[:n]
        for entry in oldest:
            del self._entries[entry.key]
        return len(oldest)

    async def count(self) -> int:
        return len(self._entries)

    async def clear(self) -> None:
        self._entries.clear()


# ── Cache ─────────────────────────────────────────────────────────────────────

class ResultCache:

    def __init__(
        self,
        storage: CacheStorage,
        ttl: float = DEFAULT_TTL_SECS,
        max_entries: int = 50,
        evict_batch: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage     = storage
        self.ttl          = ttl
        self.max_entries  = max_entries
        self.evict_batch  = evict_batch
        self._clock       = clock
        self._hits = self._misses = self._write_failures = 0

    async def get(self, key: str) -> Optional[Any]:
        """The cached payload, or None on miss / expiry / corruption."""
        try:
            entry = await self._storage.get(key)
        except Exception as exc:
            await self._purge_corrupt(key, exc)
            return None

        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(self._clock()):
            logger.debug("Cache entry expired: %s", key)
            await self._delete_quietly(key)
            self._misses += 1
            return None

        try:
            payload = json.loads(entry.payload)
        except (TypeError, ValueError) as exc:
            await self._purge_corrupt(key, exc)
            return None

        self._hits += 1
        return payload

    async def put(self, key: str, payload: Any, ttl: Optional[float] = None) -> bool:
        """Store `payload` (JSON-serialisable). Returns False if it could not be stored."""
        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as exc:
            return self._write_failed(key, exc)

        entry = CacheEntry(
            key=key,
            payload=encoded,
            created_at=self._clock(),
            ttl=self.ttl if ttl is None else ttl,
        )
        try:
            await self._sweep_expired()
            await self._write(entry)
        except StorageQuotaExceeded as exc:
            try:
                evicted = await self._storage.evict_oldest(self.evict_batch)
                logger.warning("Cache quota exceeded (%s), evicted %d oldest, retrying", exc, evicted)
                await self._write(entry)
            except Exception as retry_exc:
                return self._write_failed(key, retry_exc)
        except Exception as exc:
            return self._write_failed(key, exc)
        return True

    async def invalidate(self, key: str) -> None:
        await self._delete_quietly(key)

    async def invalidate_fingerprint(self, fp: str) -> int:
        """Drop every entry derived from fingerprint `fp`. Returns how many went."""
        marker = f":{fp}:"
        removed = 0
        for key in await self._storage.keys():
            if marker in key:
                await self._storage.delete(key)
                removed += 1
        if removed:
            logger.info("Invalidated %d cache entries for %s", removed, fp[:12])
        return removed

    async def clear(self) -> None:
        await self._storage.clear()

    async def stats(self) -> dict:
        return {
            "entries":        await self._storage.count(),
            "max_entries":    self.max_entries,
            "ttl_secs":       self.ttl,
            "hits":           self._hits,
            "misses":         self._misses,
            "write_failures": self._write_failures,
        }

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _write(self, entry: CacheEntry) -> None:
        await self._storage.put(entry)
        overflow = await self._storage.count() - self.max_entries
        if overflow > 0:
            await self._storage.evict_oldest(overflow)
            logger.debug("Cache over capacity, evicted %d oldest", overflow)

    async def _sweep_expired(self) -> None:
        now = self._clock()
        for key in await self._storage.keys():
            try:
                entry = await self._storage.get(key)
            except Exception:
                entry = None
            if entry is None or entry.is_expired(now):
                await self._storage.delete(key)

    async def _purge_corrupt(self, key: str, exc: Exception) -> None:
        err = CacheReadCorrupt(f"unreadable cache entry {key}: {exc}")
        logger.warning("%s, purged", err)
        self._misses += 1
        await self._delete_quietly(key)

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self._storage.delete(key)
        except Exception as exc:
            logger.warning("Could not delete cache entry %s: %s", key, exc)

    def _write_failed(self, key: str, exc: Exception) -> bool:
        err = CacheWriteFailure(f"could not cache {key}: {exc}")
        logger.warning("%s", err)
        self._write_failures += 1
        return False
