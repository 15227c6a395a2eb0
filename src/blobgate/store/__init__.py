"""
Blob store facade.

BlobStore composes the content addresser, local cache and storage network
into put(bytes) -> BlobId and get(BlobId) -> bytes.
"""

from blobgate.store.blob_store import BlobStore, StoreStats

__all__ = ["BlobStore", "StoreStats"]
