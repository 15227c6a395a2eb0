"""
Pytest configuration and fixtures for blobgate tests.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import AsyncGenerator, Generator
from unittest.mock import patch

import httpx
import pytest

from blobgate.addressing import compute_blob_id
from blobgate.cache import MemoryBlobCache
from blobgate.config import Settings, clear_settings_cache
from blobgate.exceptions import InvalidIdError
from blobgate.network import KuboClient
from blobgate.store import BlobStore
from blobgate.types import BlobId

TEST_API_URL = "http://kubo.test:5001"


class FakeKubo:
    """In-memory stand-in for a Kubo node's RPC API.

    Blocks are keyed by their CIDv1 (raw codec, base32), the way the node
    answers block/put and resolves block/get.

    Queue failures with fail_next(); each queued item is either an exception
    to raise or a response to return instead of the normal answer.
    """

    def __init__(self) -> None:
        self.blocks: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.failures: list[Exception | httpx.Response] = []
        self.delay: float = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def fail_next(self, *failures: Exception | httpx.Response) -> None:
        self.failures.extend(failures)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == f"/api/v0{path}"]

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self._answer(request)
        finally:
            self.in_flight -= 1

    def _answer(self, request: httpx.Request) -> httpx.Response:
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        path = request.url.path
        if path == "/api/v0/version":
            return httpx.Response(200, json={"Version": "0.29.0", "Commit": "test"})
        if path == "/api/v0/block/put":
            data = self._multipart_payload(request)
            blob_id = compute_blob_id(data, request.url.params["mhtype"])
            self.blocks[blob_id.cid] = data
            return httpx.Response(200, json={"Key": blob_id.cid, "Size": len(data)})
        if path == "/api/v0/block/get":
            arg = request.url.params["arg"]
            try:
                BlobId.from_cid(arg)
            except InvalidIdError:
                return httpx.Response(
                    500,
                    json={"Message": f"invalid path \"{arg}\": invalid cid", "Code": 0, "Type": "error"},
                )
            if arg in self.blocks:
                return httpx.Response(200, content=self.blocks[arg])
            return httpx.Response(
                500,
                json={
                    "Message": f"block was not found locally (offline): ipld: could not find {arg}",
                    "Code": 0,
                    "Type": "error",
                },
            )
        return httpx.Response(404, text="404 page not found")

    @staticmethod
    def _multipart_payload(request: httpx.Request) -> bytes:
        boundary = request.headers["content-type"].split("boundary=", 1)[1].encode()
        part = request.content.split(b"--" + boundary)[1]
        _, _, payload = part.partition(b"\r\n\r\n")
        return payload[:-2]


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def fake_kubo() -> FakeKubo:
    """Provide a fresh fake storage node."""
    return FakeKubo()


@pytest.fixture
async def kubo_client(fake_kubo: FakeKubo) -> AsyncGenerator[KuboClient, None]:
    """Provide an opened client with fast backoff, wired to the fake node."""
    client = KuboClient(
        TEST_API_URL,
        request_timeout=2.0,
        lookup_timeout=1.0,
        deadline=5.0,
        max_attempts=3,
        backoff_initial=0.01,
        backoff_max=0.05,
        transport=fake_kubo.transport,
    )
    await client.open()
    yield client
    await client.close()


@pytest.fixture
async def blob_store(fake_kubo: FakeKubo) -> AsyncGenerator[BlobStore, None]:
    """Provide an opened BlobStore with a 1 KiB memory cache."""
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
    store = BlobStore(cache=MemoryBlobCache(max_bytes=1024), network=network)
    await store.open()
    yield store
    await store.close(drain=False)


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "IPFS_API_URL": TEST_API_URL,
        "HASH_ALGORITHM": "sha2-256",
        "CACHE_BACKEND": "memory",
        "CACHE_MAX_BYTES": "1048576",
        "REQUEST_TIMEOUT": "2.0",
        "LOOKUP_TIMEOUT": "1.0",
        "OPERATION_DEADLINE": "5.0",
        "MAX_ATTEMPTS": "3",
        "BACKOFF_INITIAL": "0.01",
        "BACKOFF_MAX": "0.05",
        "PUSH_CONCURRENCY": "2",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with the cache directory under temp_dir."""
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from blobgate.config import get_settings

        settings = get_settings()
        yield settings
        clear_settings_cache()


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
