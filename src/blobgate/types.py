"""
Core types for blobgate.

This module defines the fundamental data structures used throughout the system:
- BlobId: self-describing multihash identifier with a base58btc string form
- Blob: immutable bytes paired with their BlobId
- BlobState: replication state of a blob as seen by the BlobStore
- CacheEntry: cache-side bookkeeping for one blob
- PushResult: outcome of replicating one blob to the storage network
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import cached_property

import base58

from blobgate import multihash
from blobgate.exceptions import InvalidIdError

# CIDv1 header for a block with the raw codec: varint(1) || varint(0x55)
CID_V1_RAW_PREFIX = b"\x01\x55"
CID_V1 = 1
CID_V0_LENGTH = 46


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BlobId:
    """Content-derived identifier: a multihash rendered in base58btc.

    Equality and hashing use the (code, digest) pair, so two ids are equal
    exactly when they name the same content under the same algorithm.
    """

    code: int
    digest: bytes

    @classmethod
    def from_multihash(cls, raw: bytes) -> BlobId:
        """Build a BlobId from multihash bytes.

        Raises:
            InvalidIdError: If the bytes are not a supported multihash.
        """
        try:
            algorithm, digest = multihash.decode(raw)
        except multihash.MultihashError as e:
            raise InvalidIdError(
                "Not a valid multihash",
                context={"reason": str(e)},
            ) from e
        return cls(code=algorithm.code, digest=digest)

    @classmethod
    def parse(cls, value: object) -> BlobId:
        """Parse the string form returned by ``str(blob_id)``.

        Only the canonical encoding is accepted, so ``str(BlobId.parse(s)) == s``
        holds for every string this returns for.

        Raises:
            InvalidIdError: If ``value`` is not a canonical BlobId string.
        """
        if isinstance(value, BlobId):
            return value
        if not isinstance(value, str) or not value:
            raise InvalidIdError(
                "BlobId must be a non-empty string",
                context={"value": repr(value)[:80]},
            )
        if value != value.strip():
            raise InvalidIdError(
                "BlobId must not contain surrounding whitespace",
                context={"value": value[:80]},
            )

        try:
            raw = base58.b58decode(value)
        except ValueError as e:
            raise InvalidIdError(
                "BlobId is not valid base58btc",
                context={"value": value[:80], "reason": str(e)},
            ) from e

        blob_id = cls.from_multihash(raw)
        if str(blob_id) != value:
            raise InvalidIdError(
                "BlobId is not canonically encoded",
                context={"value": value[:80]},
            )
        return blob_id

    @classmethod
    def from_cid(cls, value: str) -> BlobId:
        """Recover the BlobId from the CID a node reports for one of our blocks.

        Accepts CIDv0 (``Qm...``) and base32 CIDv1 (``b...``) with any codec.

        Raises:
            InvalidIdError: If ``value`` is not such a CID.
        """
        if not isinstance(value, str) or not value:
            raise InvalidIdError(
                "CID must be a non-empty string",
                context={"value": repr(value)[:80]},
            )
        if len(value) == CID_V0_LENGTH and value.startswith("Qm"):
            return cls.parse(value)
        if not value.startswith("b"):
            raise InvalidIdError(
                "Only CIDv0 and base32 CIDv1 are supported",
                context={"value": value[:80]},
            )

        text = value[1:]
        try:
            raw = base64.b32decode(text + "=" * (-len(text) % 8), casefold=True)
        except binascii.Error as e:
            raise InvalidIdError(
                "CID is not valid base32",
                context={"value": value[:80], "reason": str(e)},
            ) from e

        try:
            version, offset = multihash.decode_varint(raw)
            _, offset = multihash.decode_varint(raw, offset)
        except multihash.MultihashError as e:
            raise InvalidIdError(
                "Malformed CID header",
                context={"value": value[:80], "reason": str(e)},
            ) from e
        if version != CID_V1:
            raise InvalidIdError(
                "Unsupported CID version",
                context={"value": value[:80], "version": version},
            )
        return cls.from_multihash(raw[offset:])

    @property
    def algorithm(self) -> multihash.HashAlgorithm:
        """Hash algorithm this id was computed with."""
        return multihash.ALGORITHMS_BY_CODE[self.code]

    @cached_property
    def multihash_bytes(self) -> bytes:
        """Binary multihash."""
        return multihash.encode(self.algorithm, self.digest)

    @cached_property
    def cid(self) -> str:
        """CIDv1 (raw codec, base32) naming the block that holds this blob."""
        encoded = base64.b32encode(CID_V1_RAW_PREFIX + self.multihash_bytes).decode("ascii")
        return "b" + encoded.lower().rstrip("=")

    @cached_property
    def _text(self) -> str:
        return base58.b58encode(self.multihash_bytes).decode("ascii")

    def matches(self, data: bytes) -> bool:
        """Check whether ``data`` hashes to this id."""
        return self.algorithm.digest(data) == self.digest

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"BlobId({self._text!r})"


class BlobState(str, Enum):
    """Replication state of a blob as tracked by the BlobStore."""

    LOCAL = "local"  # In the local cache, not (yet) acknowledged by the network
    PENDING = "pending"  # Push to the network in flight
    REMOTE = "remote"  # Acknowledged by the network, no longer cached
    UNKNOWN = "unknown"  # Never seen by this process


@dataclass(frozen=True)
class Blob:
    """Immutable byte sequence with its identifier."""

    id: BlobId
    data: bytes

    @property
    def size(self) -> int:
        """Size in bytes."""
        return len(self.data)


@dataclass
class CacheEntry:
    """Cache-side metadata for one stored blob.

    ``pins`` counts readers currently holding the entry; pinned entries
    are never chosen for eviction.
    """

    blob_id: BlobId
    size: int
    last_accessed_at: datetime = field(default_factory=utc_now)
    pins: int = 0
    doomed: bool = False


@dataclass(frozen=True)
class PushResult:
    """Outcome of replicating one blob to the storage network."""

    blob_id: BlobId
    ok: bool
    attempts: int
    elapsed_seconds: float
    error: str | None = None
    transient: bool = False
