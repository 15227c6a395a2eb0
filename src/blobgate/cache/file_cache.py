"""
File-based blob cache.

Stores each blob as ``{root}/{digest[:2]}/{blob_id}`` so the cache survives
restarts. Features:
- Atomic writes (temp file + os.replace) to prevent torn files
- Index rebuilt from disk on start, oldest mtime first
- Content verified against the id on every read; corrupted files are dropped
- Files larger than the bound are deleted on load
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from blobgate.cache.base import BlobCache
from blobgate.exceptions import InvalidIdError
from blobgate.logging import get_logger
from blobgate.types import BlobId

logger = get_logger(__name__)

_TEMP_PREFIX = ".tmp-"


class FileBlobCache(BlobCache):
    """LRU cache persisted under a root directory."""

    def __init__(self, root: str | Path, max_bytes: int) -> None:
        """Initialize the cache and load whatever is already on disk.

        Args:
            root: Cache directory, created if needed.
            max_bytes: Total payload bytes kept before eviction starts.
        """
        super().__init__(max_bytes)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._load_index()

    def _path(self, blob_id: BlobId) -> Path:
        """Get the path for a blob file.

        Uses the first 2 hex chars of the digest as subdirectory for better
        filesystem performance.
        """
        return self.root / blob_id.digest.hex()[:2] / str(blob_id)

    def _load_index(self) -> None:
        """Register files found on disk, least recently modified first."""
        found: list[tuple[float, BlobId, int]] = []

        for path in self.root.glob("*/*"):
            if not path.is_file():
                continue
            if path.name.startswith(_TEMP_PREFIX):
                # Left behind by a crash mid-write
                path.unlink(missing_ok=True)
                continue
            try:
                blob_id = BlobId.parse(path.name)
            except InvalidIdError:
                continue
            if path != self._path(blob_id):
                continue
            stat = path.stat()
            if stat.st_size > self._max_bytes:
                logger.info("Removing cache file larger than the bound", path=str(path), size=stat.st_size)
                path.unlink(missing_ok=True)
                continue
            found.append((stat.st_mtime, blob_id, stat.st_size))

        found.sort(key=lambda item: item[0])
        with self._lock:
            for _, blob_id, size in found:
                self._register_locked(blob_id, size)
            victims = self._enforce_bound_locked()
        self._discard(victims)

        if found:
            logger.info(
                "Loaded file cache",
                root=str(self.root),
                entries=len(found),
                bytes_used=self._bytes_used,
            )

    def _read(self, blob_id: BlobId) -> bytes | None:
        path = self._path(blob_id)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None

        if not blob_id.matches(data):
            # Unlinked once the entry is dropped and unpinned
            logger.warning("Dropping corrupted cache file", path=str(path))
            return None

        # mtime carries recency across restarts
        try:
            os.utime(path)
        except FileNotFoundError:
            pass
        return data

    def _write(self, blob_id: BlobId, data: bytes) -> None:
        path = self._path(blob_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=_TEMP_PREFIX)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _remove(self, blob_id: BlobId) -> None:
        self._path(blob_id).unlink(missing_ok=True)
