"""
Base class for size-bounded LRU blob caches.

BlobCache owns the index (BlobId -> CacheEntry in recency order), the byte
accounting and eviction. Backends only move bytes:

- _read(blob_id) -> bytes | None
- _write(blob_id, data)
- _remove(blob_id)

Index updates happen under one short-held lock; backend reads, writes and
removals run outside it. Writes and removals of the same id are serialized
by a striped I/O lock so a late removal never deletes freshly written bytes.
Readers pin the entry they are reading, and pinned entries are never evicted.

A blob larger than the whole bound is not cached at all.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from blobgate.exceptions import CacheFullError
from blobgate.logging import get_logger
from blobgate.types import BlobId, CacheEntry, utc_now

logger = get_logger(__name__)

IO_LOCK_STRIPES = 64


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache counters."""

    hits: int
    misses: int
    evictions: int
    entries: int
    bytes_used: int
    max_bytes: int

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from the cache."""
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class BlobCache(ABC):
    """Size-bounded, least-recently-used cache of blobs keyed by BlobId."""

    def __init__(self, max_bytes: int) -> None:
        """Initialize the cache.

        Args:
            max_bytes: Total payload bytes kept before eviction starts.
        """
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        self._max_bytes = max_bytes
        self._entries: OrderedDict[BlobId, CacheEntry] = OrderedDict()
        self._bytes_used = 0
        self._lock = threading.Lock()
        self._io_locks = tuple(threading.Lock() for _ in range(IO_LOCK_STRIPES))
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @abstractmethod
    def _read(self, blob_id: BlobId) -> bytes | None:
        """Return stored bytes, or None if the backend lost them."""
        ...

    @abstractmethod
    def _write(self, blob_id: BlobId, data: bytes) -> None:
        """Persist bytes for blob_id."""
        ...

    @abstractmethod
    def _remove(self, blob_id: BlobId) -> None:
        """Discard bytes for blob_id. Must tolerate missing data."""
        ...

    @property
    def max_bytes(self) -> int:
        """Configured size bound."""
        return self._max_bytes

    @property
    def bytes_used(self) -> int:
        """Payload bytes currently accounted for."""
        with self._lock:
            return self._bytes_used

    def put(self, blob_id: BlobId, data: bytes) -> None:
        """Insert a blob, or refresh it if already present.

        Idempotent: equal ids always carry equal bytes, so an existing entry
        is only marked as recently used. A blob larger than ``max_bytes`` is
        skipped and the current entries are left alone.

        Raises:
            ValueError: If ``data`` does not hash to ``blob_id``.
        """
        data = bytes(data)
        if not blob_id.matches(data):
            raise ValueError(f"Refusing to cache data under foreign id {blob_id}")
        if len(data) > self._max_bytes:
            logger.debug(
                "Blob larger than cache bound, not cached",
                size=len(data),
                max_bytes=self._max_bytes,
            )
            return

        with self._lock:
            entry = self._entries.get(blob_id)
            if entry is not None and not entry.doomed:
                self._touch_locked(blob_id)
                return

        with self._io_lock(blob_id):
            self._write(blob_id, data)
            with self._lock:
                if not self._touch_locked(blob_id):
                    self._register_locked(blob_id, len(data))
                victims = self._enforce_bound_locked()

        self._discard(victims)

    def get(self, blob_id: BlobId) -> bytes | None:
        """Return cached bytes or None. Never raises for a missing id."""
        with self.reading(blob_id) as data:
            return data

    @contextmanager
    def reading(self, blob_id: BlobId) -> Iterator[bytes | None]:
        """Pin an entry for the duration of a read.

        Yields:
            The cached bytes, or None on a miss.
        """
        with self._lock:
            entry = self._entries.get(blob_id)
            if entry is None or entry.doomed:
                self._misses += 1
                entry = None
            else:
                entry.pins += 1
                entry.last_accessed_at = utc_now()
                self._entries.move_to_end(blob_id)

        if entry is None:
            yield None
            return

        try:
            data = self._read(blob_id)
            with self._lock:
                if data is None:
                    # Backend lost the bytes; forget the entry once unpinned
                    self._misses += 1
                    entry.doomed = True
                else:
                    self._hits += 1
            yield data
        finally:
            self._discard(self._release(entry))

    def contains(self, blob_id: BlobId) -> bool:
        """Check presence without touching recency."""
        with self._lock:
            entry = self._entries.get(blob_id)
            return entry is not None and not entry.doomed

    def __contains__(self, blob_id: object) -> bool:
        return isinstance(blob_id, BlobId) and self.contains(blob_id)

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if not entry.doomed)

    def delete(self, blob_id: BlobId) -> bool:
        """Remove an entry. Pinned entries go away when their last reader finishes.

        Returns:
            True if the entry was present.
        """
        with self._lock:
            entry = self._entries.get(blob_id)
            if entry is None or entry.doomed:
                return False
            if entry.pins:
                entry.doomed = True
                return True
            self._drop_locked(entry)

        self._discard([blob_id])
        return True

    def clear(self) -> None:
        """Remove every unpinned entry."""
        dropped: list[BlobId] = []
        with self._lock:
            for entry in list(self._entries.values()):
                if entry.pins:
                    entry.doomed = True
                else:
                    self._drop_locked(entry)
                    dropped.append(entry.blob_id)

        self._discard(dropped)

    def keys(self) -> list[BlobId]:
        """Ids in eviction order, least recently used first."""
        with self._lock:
            return [blob_id for blob_id, entry in self._entries.items() if not entry.doomed]

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                entries=sum(1 for entry in self._entries.values() if not entry.doomed),
                bytes_used=self._bytes_used,
                max_bytes=self._max_bytes,
            )

    def close(self) -> None:
        """Release backend resources."""
        pass

    def _touch_locked(self, blob_id: BlobId) -> bool:
        entry = self._entries.get(blob_id)
        if entry is None:
            return False
        entry.doomed = False
        entry.last_accessed_at = utc_now()
        self._entries.move_to_end(blob_id)
        return True

    def _register_locked(self, blob_id: BlobId, size: int) -> None:
        self._entries[blob_id] = CacheEntry(blob_id=blob_id, size=size)
        self._bytes_used += size

    def _io_lock(self, blob_id: BlobId) -> threading.Lock:
        return self._io_locks[hash(blob_id) % len(self._io_locks)]

    def _drop_locked(self, entry: CacheEntry) -> None:
        # Index only; the caller passes the id to _discard once unlocked
        del self._entries[entry.blob_id]
        self._bytes_used -= entry.size

    def _discard(self, blob_ids: list[BlobId]) -> None:
        """Remove backend bytes for ids already dropped from the index."""
        for blob_id in blob_ids:
            with self._io_lock(blob_id):
                with self._lock:
                    if blob_id in self._entries:
                        # Put again since it was dropped
                        continue
                self._remove(blob_id)

    def _release(self, entry: CacheEntry) -> list[BlobId]:
        with self._lock:
            entry.pins -= 1
            dropped: list[BlobId] = []
            if entry.pins == 0 and entry.doomed and self._entries.get(entry.blob_id) is entry:
                self._drop_locked(entry)
                dropped.append(entry.blob_id)
            return dropped + self._enforce_bound_locked()

    def _select_victim_locked(self) -> CacheEntry:
        for entry in self._entries.values():
            if entry.pins == 0:
                return entry
        raise CacheFullError(
            "Every cached entry is pinned by a reader",
            context={"bytes_used": self._bytes_used, "max_bytes": self._max_bytes},
        )

    def _enforce_bound_locked(self) -> list[BlobId]:
        """Evict least recently used entries until the bound holds.

        Returns:
            Evicted ids, for the caller to _discard after unlocking.
        """
        victims: list[BlobId] = []
        while self._bytes_used > self._max_bytes:
            try:
                victim = self._select_victim_locked()
            except CacheFullError as e:
                # Retried from _release once a reader lets go
                logger.debug("Eviction deferred", reason=str(e))
                break
            self._drop_locked(victim)
            self._evictions += 1
            victims.append(victim.blob_id)
            logger.debug("Evicted blob", evicted=str(victim.blob_id), size=victim.size)
        return victims
