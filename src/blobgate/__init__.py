"""blobgate: content-addressed blob store with local caching and resilient network access."""

import importlib.metadata as importlib_metadata

from blobgate.addressing import ContentAddresser, compute_blob_id
from blobgate.cache import BlobCache, FileBlobCache, MemoryBlobCache
from blobgate.exceptions import (
    BlobGateError,
    CacheFullError,
    ConfigurationError,
    IntegrityError,
    InvalidIdError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from blobgate.network import KuboClient, StorageNetwork
from blobgate.store import BlobStore
from blobgate.types import Blob, BlobId, BlobState, PushResult


def _detect_version() -> str:
    """Return installed package version or a local fallback when metadata is unavailable."""
    try:
        return importlib_metadata.version("blobgate")
    except importlib_metadata.PackageNotFoundError:
        return "0.0.0+unknown"


__version__ = _detect_version()

__all__ = [
    "Blob",
    "BlobCache",
    "BlobGateError",
    "BlobId",
    "BlobState",
    "BlobStore",
    "CacheFullError",
    "ConfigurationError",
    "ContentAddresser",
    "FileBlobCache",
    "IntegrityError",
    "InvalidIdError",
    "KuboClient",
    "MemoryBlobCache",
    "NetworkError",
    "NotFoundError",
    "ProtocolError",
    "PushResult",
    "StorageNetwork",
    "compute_blob_id",
]
