"""
history.py — bounded log of recent analyses, independent of the cache.

Most-recent-first, capped at max_entries, one entry per fingerprint: analysing
the same image again moves its entry to the front instead of adding a second.
History is read by callers only; the orchestrator never consults it.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 20


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    timestamp: float            # epoch seconds
    fingerprint: str
    object_count: int
    provider: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "fingerprint": self.fingerprint,
            "object_count": self.object_count,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryEntry":
        return cls(
            id=data["id"],
            timestamp=float(data["timestamp"]),
            fingerprint=data["fingerprint"],
            object_count=int(data["object_count"]),
            provider=data["provider"],
        )


class HistoryStore(ABC):
    """Persists the whole (already ordered, already capped) entry list."""

    @abstractmethod
    async def load(self) -> list[HistoryEntry]: ...

    @abstractmethod
    async def save(self, entries: list[HistoryEntry]) -> None: ...


class MemoryHistoryStore(HistoryStore):

    def __init__(self) -> None:
        self._entries: list[HistoryEntry] = []

    async def load(self) -> list[HistoryEntry]:
        return list(self._entries)

    async def save(self, entries: list[HistoryEntry]) -> None:
        self._entries = list(entries)


class AnalysisHistory:

    def __init__(
        self,
        store: HistoryStore,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_entries = max_entries
        self._clock = clock
        # load → modify → save must not interleave between concurrent callers
        self._lock = asyncio.Lock()

    async def record(
        self,
        fp: str,
        provider: str,
        object_count: Optional[int] = None,
    ) -> HistoryEntry:
        """
        Add or re-touch the entry for `fp`. A re-touch keeps the entry id,
        refreshes timestamp and provider, and updates object_count only when
        one is given. New entries without a count record 1 (a single search).
        """
        async with self._lock:
            return await self._record(fp, provider, object_count)

    async def _record(self, fp: str, provider: str, object_count: Optional[int]) -> HistoryEntry:
        entries = await self._store.load()
        now = self._clock()

        existing = next((e for e in entries if e.fingerprint == fp), None)
        if existing is not None:
            entries.remove(existing)
            entry = replace(
                existing,
                timestamp=now,
                provider=provider,
                object_count=existing.object_count if object_count is None else object_count,
            )
        else:
            entry = HistoryEntry(
                id=str(uuid.uuid4()),
                timestamp=now,
                fingerprint=fp,
                object_count=1 if object_count is None else object_count,
                provider=provider,
            )

        entries.insert(0, entry)
        await self._store.save(entries[: self.max_entries])
        return entry

    async def entries(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        entries = await self._store.load()
        return entries if limit is None else entries[:limit]

    async def remove(self, entry_id: str) -> bool:
        async with self._lock:
            entries = await self._store.load()
            kept = [e for e in entries if e.id != entry_id]
            if len(kept) == len(entries):
                return False
            await self._store.save(kept)
            return True

    async def clear(self) -> None:
        async with self._lock:
            await self._store.save([])
