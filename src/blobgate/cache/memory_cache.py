"""
In-memory blob cache.

Bytes live in a plain dict; the LRU index and bound are handled by BlobCache.
"""

from __future__ import annotations

from blobgate.cache.base import BlobCache
from blobgate.types import BlobId


class MemoryBlobCache(BlobCache):
    """Process-local LRU cache. Contents are lost on restart."""

    def __init__(self, max_bytes: int) -> None:
        super().__init__(max_bytes)
        self._data: dict[BlobId, bytes] = {}

    def _read(self, blob_id: BlobId) -> bytes | None:
        return self._data.get(blob_id)

    def _write(self, blob_id: BlobId, data: bytes) -> None:
        self._data[blob_id] = data

    def _remove(self, blob_id: BlobId) -> None:
        self._data.pop(blob_id, None)
