"""
Kubo RPC client for pushing and fetching raw blocks.

Talks to an IPFS node's HTTP RPC API (``/api/v0``):
- block/put stores bytes as a raw block hashed with the BlobId's algorithm
- block/get retrieves the block by its CIDv1
- version doubles as a connectivity check

Transient failures (timeouts, connection resets, 429/502/503/504) are retried
with exponential backoff; everything else fails on the first attempt.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from blobgate.exceptions import (
    BlobGateError,
    IntegrityError,
    InvalidIdError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from blobgate.logging import get_logger, log_context
from blobgate.network.base import StorageNetwork
from blobgate.types import BlobId, PushResult

if TYPE_CHECKING:
    from blobgate.config import Settings

logger = get_logger(__name__)

API_PREFIX = "/api/v0"
USER_AGENT = "blobgate/1.0"

# Statuses a healthy node returns while overloaded or restarting
TRANSIENT_STATUS_CODES = frozenset({429, 502, 503, 504})

# Kubo reports a missing block as HTTP 500 with one of these messages
MISSING_BLOCK_MARKERS = ("not found", "could not find", "context deadline exceeded")


class TransientResponseError(Exception):
    """Retryable HTTP status from the node."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientResponseError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def _is_missing_block(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in MISSING_BLOCK_MARKERS)


def _error_message(response: httpx.Response) -> str:
    """Extract Kubo's error text, falling back to the raw body."""
    try:
        payload = orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return response.text[:200]
    if isinstance(payload, dict) and isinstance(payload.get("Message"), str):
        return payload["Message"]
    return response.text[:200]


class KuboClient(StorageNetwork):
    """Client for an IPFS (Kubo) node's RPC API.

    Must be opened before use; an unopened client raises RuntimeError
    instead of connecting lazily.
    """

    def __init__(
        self,
        api_url: str = "http://127.0.0.1:5001",
        *,
        request_timeout: float = 30.0,
        lookup_timeout: float = 20.0,
        deadline: float = 120.0,
        max_attempts: int = 5,
        backoff_initial: float = 0.5,
        backoff_max: float = 8.0,
        pin: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_url: Base URL of the node (scheme, address, port).
            request_timeout: Timeout for one HTTP attempt in seconds.
            lookup_timeout: How long the node may search the network for a block.
            deadline: Bound on one operation including every retry.
            max_attempts: Attempts per operation.
            backoff_initial: First retry delay; doubles each retry.
            backoff_max: Largest retry delay.
            pin: Whether pushed blocks are pinned on the node.
            transport: Optional httpx transport (used by tests).
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self.lookup_timeout = lookup_timeout
        self.deadline = deadline
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.pin = pin
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> KuboClient:
        """Build a client from application settings."""
        return cls(
            settings.IPFS_API_URL,
            request_timeout=settings.REQUEST_TIMEOUT,
            lookup_timeout=settings.LOOKUP_TIMEOUT,
            deadline=settings.OPERATION_DEADLINE,
            max_attempts=settings.MAX_ATTEMPTS,
            backoff_initial=settings.BACKOFF_INITIAL,
            backoff_max=settings.BACKOFF_MAX,
            pin=settings.PIN_ON_PUSH,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "kubo"

    @property
    def is_open(self) -> bool:
        """Whether open() has been called and close() has not."""
        return self._client is not None

    async def open(self) -> KuboClient:
        """Create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.api_url}{API_PREFIX}",
                headers={"User-Agent": USER_AGENT},
                timeout=self.request_timeout,
                transport=self._transport,
            )
            logger.info("Opened storage network client", api_url=self.api_url)
        return self

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("KuboClient not opened. Call open() first.")
        return self._client

    def _log_retry(self, retry_state: RetryCallState) -> None:
        """Log each backoff before tenacity sleeps."""
        error = retry_state.outcome.exception() if retry_state.outcome else None
        sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Transient failure, backing off",
            attempt=retry_state.attempt_number,
            sleep_seconds=round(sleep, 3),
            error=str(error),
        )

    def _raise_for_status(
        self,
        operation: str,
        response: httpx.Response,
        blob_id: BlobId | None = None,
    ) -> None:
        """Classify a non-200 response.

        Raises:
            TransientResponseError: For retryable statuses.
            NotFoundError: When a fetch names a block the network does not have.
            ProtocolError: For anything else.
        """
        status = response.status_code
        if status == 200:
            return

        message = _error_message(response)
        if status in TRANSIENT_STATUS_CODES:
            raise TransientResponseError(status, message)

        if blob_id is not None and (status == 404 or (status == 500 and _is_missing_block(message))):
            raise NotFoundError(
                f"Blob {blob_id} not found on the storage network",
                context={"blob_id": str(blob_id)},
            )

        raise ProtocolError(
            f"Unexpected response to {operation}",
            context={"status": status, "message": message[:200]},
        )

    async def _call(
        self,
        operation: str,
        path: str,
        params: dict[str, Any],
        *,
        files: dict[str, Any] | None = None,
        deadline: float | None = None,
        blob_id: BlobId | None = None,
    ) -> tuple[httpx.Response, int]:
        """Run one RPC, retrying transient failures within the deadline.

        Args:
            operation: Name used in errors and logs.
            path: RPC path below /api/v0.
            params: Query parameters.
            files: Multipart payload.
            deadline: Caller deadline; can only shorten the configured one.
            blob_id: Block the call is about, enables not-found detection.

        Returns:
            Tuple of (successful response, attempts made).

        Raises:
            NotFoundError: If the node reports the block as missing.
            ProtocolError: For non-retryable responses.
            NetworkError: When retries or the deadline run out.
        """
        client = self._require_client()
        budget = self.deadline if deadline is None else min(deadline, self.deadline)
        attempts = 0

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            stop=stop_after_attempt(self.max_attempts) | stop_after_delay(budget),
            wait=wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async with asyncio.timeout(budget):
                async for attempt in retrying:
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        response = await client.post(path, params=params, files=files)
                        self._raise_for_status(operation, response, blob_id)
        except TimeoutError as e:
            raise NetworkError(
                f"{operation} exceeded its deadline",
                context={"operation": operation, "attempts": attempts, "deadline": budget},
            ) from e
        except TRANSIENT_ERRORS as e:
            raise NetworkError(
                f"{operation} failed after {attempts} attempts",
                context={"operation": operation, "attempts": attempts, "error": str(e)},
            ) from e
        except BlobGateError as e:
            e.context.setdefault("attempts", attempts)
            raise

        return response, attempts

    def _json(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise ProtocolError(
                f"Malformed JSON in {operation} response",
                context={"body": response.text[:200]},
            ) from e
        if not isinstance(payload, dict):
            raise ProtocolError(
                f"Expected a JSON object in {operation} response",
                context={"body": response.text[:200]},
            )
        return payload

    async def version(self) -> str:
        """Return the node's version string."""
        response, _ = await self._call("version", "/version", {})
        payload = self._json("version", response)
        version = payload.get("Version")
        if not isinstance(version, str):
            raise ProtocolError("version response has no Version field", context={"payload": payload})
        return version

    def _check_stored_key(self, blob_id: BlobId, key: str) -> None:
        """Ensure the node filed the block under the multihash we computed."""
        try:
            stored = BlobId.from_cid(key)
        except InvalidIdError as e:
            raise ProtocolError("push response Key is not a CID", context={"key": key[:80]}) from e
        if stored != blob_id:
            raise ProtocolError(
                "Node stored the block under a different hash",
                context={"expected": blob_id.cid, "stored": key[:120]},
            )

    async def push(self, blob_id: BlobId, data: bytes) -> PushResult:
        """Store a blob on the node as a raw block.

        Never raises for network conditions: failures come back as a
        PushResult with ok=False so background replication can record them.
        """
        start = time.monotonic()
        attempts = 0
        params = {
            "cid-codec": "raw",
            "mhtype": blob_id.algorithm.name,
            "mhlen": blob_id.algorithm.digest_size,
            "pin": "true" if self.pin else "false",
            "allow-big-block": "true",
        }
        files = {"data": ("blob", data, "application/octet-stream")}

        with log_context(blob_id=str(blob_id), operation="push"):
            try:
                response, attempts = await self._call("push", "/block/put", params, files=files)
                payload = self._json("push", response)
                if not isinstance(payload.get("Key"), str):
                    raise ProtocolError("push response has no Key", context={"payload": payload})
                if payload.get("Size") != len(data):
                    raise ProtocolError(
                        "Node stored a different number of bytes",
                        context={"expected": len(data), "stored": payload.get("Size")},
                    )
                self._check_stored_key(blob_id, payload["Key"])
            except NetworkError as e:
                logger.warning("Push failed", error=str(e), transient=e.transient)
                return PushResult(
                    blob_id=blob_id,
                    ok=False,
                    attempts=e.context.get("attempts", attempts),
                    elapsed_seconds=time.monotonic() - start,
                    error=str(e),
                    transient=e.transient,
                )

            logger.debug("Pushed blob", size=len(data), attempts=attempts, key=payload["Key"])
            return PushResult(
                blob_id=blob_id,
                ok=True,
                attempts=attempts,
                elapsed_seconds=time.monotonic() - start,
            )

    async def fetch(self, blob_id: BlobId, deadline: float | None = None) -> bytes:
        """Fetch a blob's bytes and verify them against the id.

        The body is only used once fully received, so a cancelled or timed-out
        download leaves nothing behind.

        Raises:
            NotFoundError: If no reachable peer has the block.
            IntegrityError: If the bytes do not hash to blob_id.
            NetworkError: If retries or the deadline run out.
        """
        params = {"arg": blob_id.cid, "timeout": f"{self.lookup_timeout:g}s"}

        with log_context(blob_id=str(blob_id), operation="fetch"):
            response, attempts = await self._call(
                "fetch", "/block/get", params, deadline=deadline, blob_id=blob_id
            )
            data = response.content
            if not blob_id.matches(data):
                actual = BlobId(code=blob_id.code, digest=blob_id.algorithm.digest(data))
                raise IntegrityError(
                    "Fetched bytes do not match the requested id",
                    context={"blob_id": str(blob_id), "actual": str(actual)},
                )
            logger.debug("Fetched blob", size=len(data), attempts=attempts)
            return data
