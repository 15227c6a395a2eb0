"""
Cache package for local blob storage.

This package provides size-bounded LRU caches keyed by BlobId:
- Memory cache (memory_cache.py): process-local dict storage
- File cache (file_cache.py): persistent storage under a directory
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from blobgate.cache.base import BlobCache, CacheStats
from blobgate.cache.file_cache import FileBlobCache
from blobgate.cache.memory_cache import MemoryBlobCache

if TYPE_CHECKING:
    from blobgate.config import Settings

__all__ = [
    "BlobCache",
    "CacheStats",
    "FileBlobCache",
    "MemoryBlobCache",
    "create_cache",
]


def create_cache(settings: Settings) -> BlobCache:
    """Build the cache backend selected by CACHE_BACKEND."""
    if settings.CACHE_BACKEND == "file":
        return FileBlobCache(settings.CACHE_DIR, max_bytes=settings.CACHE_MAX_BYTES)
    return MemoryBlobCache(max_bytes=settings.CACHE_MAX_BYTES)
