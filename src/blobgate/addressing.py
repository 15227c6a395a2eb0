"""
Content addressing: bytes in, BlobId out.

compute() depends only on the input bytes and the configured algorithm, so
ids are stable across processes and machines.
"""

from __future__ import annotations

from blobgate import multihash
from blobgate.types import Blob, BlobId


class ContentAddresser:
    """Computes BlobIds with one multihash algorithm."""

    def __init__(self, algorithm: str = multihash.DEFAULT_ALGORITHM) -> None:
        """Initialize the addresser.

        Args:
            algorithm: Multihash table name (e.g. "sha2-256").

        Raises:
            KeyError: If the algorithm is not supported.
        """
        self._algorithm = multihash.get_algorithm(algorithm)

    @property
    def algorithm(self) -> str:
        """Name of the algorithm used for new ids."""
        return self._algorithm.name

    def compute(self, data: bytes) -> BlobId:
        """Compute the BlobId of ``data``. Total over all byte strings."""
        return BlobId(code=self._algorithm.code, digest=self._algorithm.digest(bytes(data)))

    def blob(self, data: bytes) -> Blob:
        """Wrap ``data`` together with its computed id."""
        data = bytes(data)
        return Blob(id=self.compute(data), data=data)


def compute_blob_id(data: bytes, algorithm: str = multihash.DEFAULT_ALGORITHM) -> BlobId:
    """Compute a BlobId without keeping an addresser around."""
    return ContentAddresser(algorithm).compute(data)
