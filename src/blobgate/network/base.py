"""
Base class for storage network clients.

A StorageNetwork replicates blobs to, and retrieves them from, a remote
content-addressed network. Implementations have an explicit lifecycle:
open() before use, close() at shutdown.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from types import TracebackType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blobgate.types import BlobId, PushResult


class StorageNetwork(ABC):
    """Abstract client for a remote blob network."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name of this network for logs."""
        ...

    @abstractmethod
    async def open(self) -> StorageNetwork:
        """Acquire connections. Safe to call twice."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        ...

    @abstractmethod
    async def push(self, blob_id: BlobId, data: bytes) -> PushResult:
        """Replicate a blob. Network failures are reported in the result, not raised."""
        ...

    @abstractmethod
    async def fetch(self, blob_id: BlobId, deadline: float | None = None) -> bytes:
        """Retrieve a blob.

        Raises:
            NotFoundError: If the network has no blob under blob_id.
            NetworkError: If retries are exhausted or the deadline expires.
        """
        ...

    async def __aenter__(self) -> StorageNetwork:
        return await self.open()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
