"""
Tests for the BlobStore put/get facade.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from blobgate.addressing import ContentAddresser, compute_blob_id
from blobgate.cache import FileBlobCache, MemoryBlobCache
from blobgate.config import Settings
from blobgate.exceptions import InvalidIdError, NetworkError, NotFoundError
from blobgate.network import KuboClient
from blobgate.store import BlobStore
from blobgate.types import BlobState
from conftest import TEST_API_URL, FakeKubo

HELLO_ID = "QmRN6wdp1S2A5EtjW9A3M1vKSBuQQGcgvuhoMUoEz4iiT5"


def _make_store(fake_kubo: FakeKubo, max_bytes: int = 1024, **kwargs) -> BlobStore:
    network = KuboClient(
        TEST_API_URL,
        request_timeout=2.0,
        lookup_timeout=1.0,
        deadline=5.0,
        max_attempts=3,
        backoff_initial=0.01,
        backoff_max=0.05,
        transport=fake_kubo.transport,
    )
    return BlobStore(cache=MemoryBlobCache(max_bytes=max_bytes), network=network, **kwargs)


class TestPutGet:
    """Tests for the basic round trip."""

    @pytest.mark.asyncio
    async def test_put_returns_content_id(self, blob_store: BlobStore) -> None:
        """Test that put returns the well-known id for 'hello'."""
        blob_id = await blob_store.put(b"hello")

        assert str(blob_id) == HELLO_ID
        assert await blob_store.get(blob_id) == b"hello"

    @pytest.mark.asyncio
    async def test_get_by_string_id(self, blob_store: BlobStore, fake_kubo: FakeKubo) -> None:
        """Test that get accepts the string form and serves from the cache."""
        await blob_store.put(b"hello")

        assert await blob_store.get(HELLO_ID) == b"hello"
        assert fake_kubo.requests_to("/block/get") == []

    @pytest.mark.asyncio
    async def test_round_trip_empty(self, blob_store: BlobStore) -> None:
        """Test that empty content round-trips."""
        blob_id = await blob_store.put(b"")

        assert await blob_store.get(str(blob_id)) == b""

    @pytest.mark.asyncio
    async def test_put_is_idempotent(self, blob_store: BlobStore, fake_kubo: FakeKubo) -> None:
        """Test that storing the same bytes twice yields one id and one push."""
        first = await blob_store.put(b"same")
        second = await blob_store.put(b"same")
        await blob_store.flush()
        third = await blob_store.put(b"same")
        await blob_store.flush()

        assert first == second == third
        assert len(fake_kubo.requests_to("/block/put")) == 1
        assert len(blob_store.cache) == 1

    @pytest.mark.asyncio
    async def test_put_replicates_in_background(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test that flush() waits for the push and reports it."""
        blob_id = await blob_store.put(b"replicate me")

        results = await blob_store.flush()

        assert [r.blob_id for r in results] == [blob_id]
        assert results[0].ok
        assert fake_kubo.blocks[blob_id.cid] == b"replicate me"
        assert blob_store.stats().replicated == 1

    @pytest.mark.asyncio
    async def test_get_fetches_from_network(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test that a blob only the network has is fetched and then cached."""
        blob_id = compute_blob_id(b"remote only")
        fake_kubo.blocks[blob_id.cid] = b"remote only"

        assert await blob_store.get(blob_id) == b"remote only"
        assert await blob_store.get(blob_id) == b"remote only"

        assert len(fake_kubo.requests_to("/block/get")) == 1
        assert blob_id in blob_store.cache

    @pytest.mark.asyncio
    async def test_custom_addresser(self, fake_kubo: FakeKubo) -> None:
        """Test that the store hashes with the configured algorithm."""
        async with _make_store(fake_kubo, addresser=ContentAddresser("sha3-256")) as store:
            blob_id = await store.put(b"hello")
            await store.flush()

        assert blob_id.algorithm.name == "sha3-256"
        assert fake_kubo.requests_to("/block/put")[0].url.params["mhtype"] == "sha3-256"


class TestErrors:
    """Tests for get() failures."""

    @pytest.mark.asyncio
    async def test_invalid_id(self, blob_store: BlobStore, fake_kubo: FakeKubo) -> None:
        """Test that a malformed id fails before any network traffic."""
        with pytest.raises(InvalidIdError):
            await blob_store.get("not-a-blob-id")

        assert fake_kubo.requests == []

    @pytest.mark.asyncio
    async def test_not_found(self, blob_store: BlobStore) -> None:
        """Test that a valid id nobody has raises NotFoundError."""
        blob_id = compute_blob_id(b"never stored anywhere")

        with pytest.raises(NotFoundError):
            await blob_store.get(blob_id)

        assert blob_store.state(blob_id) is BlobState.UNKNOWN

    @pytest.mark.asyncio
    async def test_network_error_propagates(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test that get() surfaces network failures to its caller."""
        fake_kubo.fail_next(*[httpx.ConnectError("refused") for _ in range(3)])

        with pytest.raises(NetworkError):
            await blob_store.get(compute_blob_id(b"unreachable"))

    @pytest.mark.asyncio
    async def test_deadline_propagates(self, blob_store: BlobStore, fake_kubo: FakeKubo) -> None:
        """Test that a caller deadline bounds the fetch and nothing is cached."""
        blob_id = compute_blob_id(b"slow")
        fake_kubo.blocks[blob_id.cid] = b"slow"
        fake_kubo.delay = 1.0

        with pytest.raises(NetworkError):
            await blob_store.get(blob_id, deadline=0.05)

        assert blob_id not in blob_store.cache


class TestReplicationState:
    """Tests for the per-blob state machine."""

    @pytest.mark.asyncio
    async def test_local_then_pending(self, blob_store: BlobStore, fake_kubo: FakeKubo) -> None:
        """Test that a blob is Local before its push is sent and Pending while in flight."""
        fake_kubo.delay = 0.2
        blob_id = await blob_store.put(b"in flight")

        assert blob_store.state(blob_id) is BlobState.LOCAL

        await asyncio.sleep(0.05)
        assert blob_store.state(blob_id) is BlobState.PENDING
        assert await blob_store.get(blob_id) == b"in flight"

        await blob_store.flush()
        assert blob_store.state(blob_id) is BlobState.LOCAL
        assert blob_store.stats().pending == 0

    @pytest.mark.asyncio
    async def test_remote_after_eviction(self, fake_kubo: FakeKubo) -> None:
        """Test that an acknowledged blob reports Remote once evicted, and is fetched back."""
        async with _make_store(fake_kubo, max_bytes=20) as store:
            first = await store.put(b"a" * 15)
            await store.flush()
            await store.put(b"b" * 15)

            assert first not in store.cache
            assert store.state(first) is BlobState.REMOTE
            assert await store.get(first) == b"a" * 15
            assert len(fake_kubo.requests_to("/block/get")) == 1

    @pytest.mark.asyncio
    async def test_get_before_push_completes_when_evicted(self, fake_kubo: FakeKubo) -> None:
        """Test that a blob bigger than the cache is served from the pending push."""
        fake_kubo.delay = 0.2
        data = bytes(range(256)) * 4

        async with _make_store(fake_kubo, max_bytes=16) as store:
            blob_id = await store.put(data)
            assert blob_id not in store.cache

            assert await store.get(blob_id) == data
            assert fake_kubo.requests_to("/block/get") == []

            await store.flush()
            fake_kubo.delay = 0.0
            assert await store.get(blob_id) == data
            assert len(fake_kubo.requests_to("/block/get")) == 1

    @pytest.mark.asyncio
    async def test_failed_push_is_recorded_not_raised(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test that a failed push stays local and shows up in failed_pushes."""
        fake_kubo.fail_next(httpx.Response(400, json={"Message": "bad request"}))

        blob_id = await blob_store.put(b"stays local")
        results = await blob_store.flush()

        assert not results[0].ok
        assert blob_id in blob_store.failed_pushes
        assert blob_store.state(blob_id) is BlobState.LOCAL
        assert await blob_store.get(blob_id) == b"stays local"
        assert blob_store.stats().failed == 1

    @pytest.mark.asyncio
    async def test_reput_retries_failed_push(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test that putting a blob again after a failed push replicates it."""
        fake_kubo.fail_next(*[httpx.ConnectError("down") for _ in range(3)])
        blob_id = await blob_store.put(b"second chance")
        await blob_store.flush()
        assert blob_id in blob_store.failed_pushes

        await blob_store.put(b"second chance")
        results = await blob_store.flush()

        assert results[0].ok
        assert blob_id not in blob_store.failed_pushes
        assert blob_id.cid in fake_kubo.blocks

    @pytest.mark.asyncio
    async def test_failed_push_keeps_payload_after_eviction(self, fake_kubo: FakeKubo) -> None:
        """Test that a blob the cache cannot hold is still readable when its push fails."""
        fake_kubo.fail_next(httpx.Response(400, json={"Message": "rejected"}))
        data = b"z" * 100

        async with _make_store(fake_kubo, max_bytes=16) as store:
            blob_id = await store.put(data)
            await store.flush()

            assert blob_id not in store.cache
            assert blob_id in store.failed_pushes
            assert store.state(blob_id) is BlobState.LOCAL
            assert await store.get(blob_id) == data
            assert fake_kubo.requests_to("/block/get") == []

            await store.put(data)
            await store.flush()

            assert blob_id.cid in fake_kubo.blocks
            assert store.state(blob_id) is BlobState.REMOTE


class TestConcurrency:
    """Tests for concurrent use of one store."""

    @pytest.mark.asyncio
    async def test_concurrent_puts_and_gets(
        self, blob_store: BlobStore, fake_kubo: FakeKubo
    ) -> None:
        """Test many interleaved puts and gets on different ids."""
        payloads = [f"payload-{i}".encode() for i in range(25)]

        ids = await asyncio.gather(*(blob_store.put(p) for p in payloads))
        fetched = await asyncio.gather(*(blob_store.get(i) for i in ids))
        await blob_store.flush()

        assert fetched == payloads
        assert len(fake_kubo.blocks) == 25

    @pytest.mark.asyncio
    async def test_push_concurrency_is_bounded(self, fake_kubo: FakeKubo) -> None:
        """Test that no more than push_concurrency pushes are in flight."""
        fake_kubo.delay = 0.02

        async with _make_store(fake_kubo, push_concurrency=2) as store:
            for i in range(8):
                await store.put(f"blob-{i}".encode())
            await store.flush()

        assert fake_kubo.max_in_flight == 2
        assert len(fake_kubo.blocks) == 8


class TestLifecycle:
    """Tests for open/close behaviour."""

    @pytest.mark.asyncio
    async def test_close_drains_pending_pushes(self, fake_kubo: FakeKubo) -> None:
        """Test that close() waits for replication by default."""
        fake_kubo.delay = 0.05
        store = _make_store(fake_kubo)
        await store.open()

        blob_id = await store.put(b"drain me")
        await store.close()

        assert blob_id.cid in fake_kubo.blocks
        assert not store.network.is_open

    @pytest.mark.asyncio
    async def test_close_without_drain_cancels(self, fake_kubo: FakeKubo) -> None:
        """Test that close(drain=False) abandons pushes still in flight."""
        fake_kubo.delay = 1.0
        store = _make_store(fake_kubo)
        await store.open()

        await store.put(b"abandoned")
        await asyncio.sleep(0.01)
        await store.close(drain=False)

        assert fake_kubo.blocks == {}
        assert store.stats().pending == 0

    @pytest.mark.asyncio
    async def test_put_after_close(self, fake_kubo: FakeKubo) -> None:
        """Test that a closed store refuses new blobs."""
        store = _make_store(fake_kubo)
        await store.open()
        await store.close()

        with pytest.raises(RuntimeError):
            await store.put(b"too late")

    def test_rejects_zero_concurrency(self, fake_kubo: FakeKubo) -> None:
        """Test that push_concurrency must be positive."""
        with pytest.raises(ValueError):
            _make_store(fake_kubo, push_concurrency=0)


class TestFromSettings:
    """Tests for wiring a store from configuration."""

    @pytest.mark.asyncio
    async def test_from_settings(self, mock_settings: Settings, fake_kubo: FakeKubo) -> None:
        """Test that settings pick the cache, network and algorithm."""
        store = BlobStore.from_settings(mock_settings, transport=fake_kubo.transport)

        assert isinstance(store.cache, MemoryBlobCache)
        assert store.cache.max_bytes == 1048576
        assert store.addresser.algorithm == "sha2-256"

        async with store:
            blob_id = await store.put(b"configured")

        assert blob_id.cid in fake_kubo.blocks

    @pytest.mark.asyncio
    async def test_file_cache_survives_restart(self, temp_dir: Path, fake_kubo: FakeKubo) -> None:
        """Test that a file-backed store serves earlier blobs without the network."""
        settings = Settings(
            _env_file=None,
            IPFS_API_URL=TEST_API_URL,
            CACHE_BACKEND="file",
            CACHE_DIR=temp_dir / "blobs",
            BACKOFF_INITIAL=0.01,
            BACKOFF_MAX=0.05,
        )

        async with BlobStore.from_settings(settings, transport=fake_kubo.transport) as store:
            assert isinstance(store.cache, FileBlobCache)
            blob_id = await store.put(b"persistent")

        fake_kubo.blocks.clear()
        async with BlobStore.from_settings(settings, transport=fake_kubo.transport) as store:
            assert await store.get(blob_id) == b"persistent"

        assert fake_kubo.requests_to("/block/get") == []
