"""
Custom exception hierarchy for blobgate.

All exceptions inherit from BlobGateError, which provides optional context
for structured error handling and logging.
"""

from __future__ import annotations

from typing import Any


class BlobGateError(Exception):
    """Base exception for all blobgate errors.

    Attributes:
        message: Human-readable error message.
        context: Optional structured context for logging/debugging.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, context={self.context!r})"


class ConfigurationError(BlobGateError):
    """Raised when configuration is invalid or missing.

    Examples:
        - IPFS_API_URL is not an http(s) URL
        - Unknown HASH_ALGORITHM
    """

    pass


class InvalidIdError(BlobGateError):
    """Raised when a string is not a well-formed BlobId.

    Context should include:
        - value: The rejected string (truncated)
        - reason: Which check failed (alphabet, varint, code, length)
    """

    pass


class NotFoundError(BlobGateError):
    """Raised when a valid BlobId is absent from every reachable store.

    Context should include:
        - blob_id: The requested id
    """

    pass


class NetworkError(BlobGateError):
    """Raised when talking to the storage network fails.

    Transient failures (timeouts, connection resets) are retried before this
    is raised; ``transient`` tells callers which kind of failure ended the
    operation.

    Context should include:
        - operation: push or fetch
        - attempts: Number of attempts made
        - error: The underlying error text
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        transient: bool = True,
    ) -> None:
        super().__init__(message, context)
        self.transient = transient


class ProtocolError(NetworkError):
    """Raised when the node answers with something we cannot use.

    Malformed JSON, unexpected status codes, short writes. Never retried.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message, context, transient=False)


class IntegrityError(ProtocolError):
    """Raised when fetched bytes do not hash to the requested BlobId.

    Context should include:
        - blob_id: The requested id
        - actual: The id the received bytes hash to
    """

    pass


class CacheFullError(BlobGateError):
    """Raised inside the cache when every over-budget entry is pinned.

    Never escapes the cache: eviction is retried once readers release
    their pins.
    """

    pass
