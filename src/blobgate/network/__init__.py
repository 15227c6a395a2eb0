"""
Storage network clients.

- StorageNetwork (base.py): contract used by the BlobStore
- KuboClient (kubo_client.py): IPFS node RPC client with retries
"""

from blobgate.network.base import StorageNetwork
from blobgate.network.kubo_client import KuboClient

__all__ = ["KuboClient", "StorageNetwork"]
