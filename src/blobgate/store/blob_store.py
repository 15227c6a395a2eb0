"""
BlobStore: the put/get facade over addresser, cache and storage network.

put() caches the blob and returns its id at once; replication to the network
runs as a background task. get() serves from the cache, then from the payload
of a push still in flight, then from the network.

Error asymmetry: get() propagates every NetworkError to its caller. A failed
background push cannot be reported to the put() caller, who already has the
id, so it is logged and recorded in ``failed_pushes`` instead.

The payload of a failed push is kept in memory until a later put() of the
same bytes replicates it, so get() keeps working after the cache evicts it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from types import TracebackType
from typing import TYPE_CHECKING

from blobgate.addressing import ContentAddresser
from blobgate.cache import BlobCache, CacheStats, create_cache
from blobgate.logging import get_logger, log_context
from blobgate.network import KuboClient, StorageNetwork
from blobgate.types import Blob, BlobId, BlobState, PushResult

if TYPE_CHECKING:
    import httpx

    from blobgate.config import Settings

logger = get_logger(__name__)


@dataclass
class _PendingPush:
    """A blob waiting for, or undergoing, replication."""

    blob: Blob
    task: asyncio.Task[PushResult] | None = None
    sent: bool = False


@dataclass(frozen=True)
class StoreStats:
    """Snapshot of BlobStore state."""

    cache: CacheStats
    pending: int
    replicated: int
    failed: int


class BlobStore:
    """Content-addressed blob store with local caching and background replication.

    Lifecycle: open() (or ``async with``) before use, close() at shutdown.
    """

    def __init__(
        self,
        cache: BlobCache,
        network: StorageNetwork,
        addresser: ContentAddresser | None = None,
        push_concurrency: int = 4,
    ) -> None:
        """Initialize the store.

        Args:
            cache: Local cache for blob bytes.
            network: Client for the remote storage network.
            addresser: Computes ids for new blobs (sha2-256 by default).
            push_concurrency: Background pushes allowed in flight at once.
        """
        if push_concurrency < 1:
            raise ValueError("push_concurrency must be >= 1")
        self.cache = cache
        self.network = network
        self.addresser = addresser or ContentAddresser()
        self.failed_pushes: dict[BlobId, PushResult] = {}
        self._push_slots = asyncio.Semaphore(push_concurrency)
        self._pending: dict[BlobId, _PendingPush] = {}
        self._replicated: set[BlobId] = set()
        self._unreplicated: dict[BlobId, Blob] = {}
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> BlobStore:
        """Wire a store from application settings."""
        settings.ensure_directories()
        return cls(
            cache=create_cache(settings),
            network=KuboClient.from_settings(settings, transport=transport),
            addresser=ContentAddresser(settings.HASH_ALGORITHM),
            push_concurrency=settings.PUSH_CONCURRENCY,
        )

    async def open(self) -> BlobStore:
        """Open the network client."""
        if self._closed:
            raise RuntimeError("BlobStore is closed")
        await self.network.open()
        return self

    async def close(self, drain: bool = True) -> None:
        """Shut down.

        Args:
            drain: Wait for pending pushes (True) or cancel them (False).
        """
        if self._closed:
            return
        self._closed = True

        if drain:
            await self.flush()
        else:
            tasks = [p.task for p in self._pending.values() if p.task is not None]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if self._pending:
                logger.warning("Cancelled pending pushes", count=len(self._pending))
            self._pending.clear()

        await self.network.close()
        self.cache.close()
        logger.info(
            "Blob store closed",
            replicated=len(self._replicated),
            failed=len(self.failed_pushes),
        )

    async def __aenter__(self) -> BlobStore:
        return await self.open()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def put(self, data: bytes) -> BlobId:
        """Store bytes and return their id without waiting for the network.

        The blob is readable through get() as soon as this returns. Network
        durability comes later; see state() and flush().
        """
        if self._closed:
            raise RuntimeError("BlobStore is closed")

        blob = self.addresser.blob(data)
        with log_context(blob_id=str(blob.id), operation="put"):
            self.cache.put(blob.id, blob.data)

            if blob.id in self._replicated or blob.id in self._pending:
                logger.debug("Blob already replicated or queued")
                return blob.id

            pending = _PendingPush(blob=blob)
            self._pending[blob.id] = pending
            pending.task = asyncio.create_task(self._replicate(pending), name=f"push-{blob.id}")
            pending.task.add_done_callback(self._on_push_done)
            logger.info("Stored blob", size=blob.size)

        return blob.id

    async def get(self, blob_id: BlobId | str, deadline: float | None = None) -> bytes:
        """Return the bytes stored under blob_id.

        Args:
            blob_id: BlobId or its string form.
            deadline: Optional bound on a network fetch, in seconds.

        Raises:
            InvalidIdError: If a string id is malformed.
            NotFoundError: If neither the cache nor the network has the blob.
            NetworkError: If the network could not be reached in time.
        """
        blob_id = BlobId.parse(blob_id)

        with log_context(blob_id=str(blob_id), operation="get"):
            data = self.cache.get(blob_id)
            if data is not None:
                return data

            pending = self._pending.get(blob_id)
            if pending is not None:
                logger.debug("Serving evicted blob from pending push")
                return pending.blob.data

            unreplicated = self._unreplicated.get(blob_id)
            if unreplicated is not None:
                logger.debug("Serving evicted blob whose push failed")
                return unreplicated.data

            data = await self.network.fetch(blob_id, deadline=deadline)
            self._replicated.add(blob_id)
            self.cache.put(blob_id, data)
            return data

    def state(self, blob_id: BlobId | str) -> BlobState:
        """Report where a blob currently lives."""
        blob_id = BlobId.parse(blob_id)
        pending = self._pending.get(blob_id)
        if pending is not None and pending.sent:
            return BlobState.PENDING
        if pending is not None or blob_id in self._unreplicated or self.cache.contains(blob_id):
            return BlobState.LOCAL
        if blob_id in self._replicated:
            return BlobState.REMOTE
        return BlobState.UNKNOWN

    async def flush(self) -> list[PushResult]:
        """Wait for every pending push and return their results."""
        tasks = [p.task for p in self._pending.values() if p.task is not None]
        if not tasks:
            return []
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [result for result in results if isinstance(result, PushResult)]

    def stats(self) -> StoreStats:
        """Snapshot of cache and replication counters."""
        return StoreStats(
            cache=self.cache.stats(),
            pending=len(self._pending),
            replicated=len(self._replicated),
            failed=len(self.failed_pushes),
        )

    async def _replicate(self, pending: _PendingPush) -> PushResult:
        blob = pending.blob
        try:
            async with self._push_slots:
                pending.sent = True
                result = await self.network.push(blob.id, blob.data)
        finally:
            self._pending.pop(blob.id, None)

        if result.ok:
            self._replicated.add(blob.id)
            self.failed_pushes.pop(blob.id, None)
            self._unreplicated.pop(blob.id, None)
            logger.info("Blob replicated", attempts=result.attempts)
        else:
            self.failed_pushes[blob.id] = result
            self._unreplicated[blob.id] = blob
            logger.warning(
                "Replication failed, blob is only held locally",
                error=result.error,
                attempts=result.attempts,
            )
        return result

    def _on_push_done(self, task: asyncio.Task[PushResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Replication task crashed", task=task.get_name(), error=repr(exc))
