"""
Multihash encoding.

A multihash is ``varint(code) || varint(digest length) || digest``. The code
names the hash function, so an identifier carries enough information to be
re-verified without any out-of-band agreement on the algorithm.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class HashAlgorithm:
    """One entry of the multihash code table."""

    name: str
    code: int
    digest_size: int
    factory: Callable[[bytes], bytes]

    def digest(self, data: bytes) -> bytes:
        """Hash ``data`` with this algorithm."""
        return self.factory(data)


def _blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


SHA2_256 = HashAlgorithm("sha2-256", 0x12, 32, lambda data: hashlib.sha256(data).digest())
SHA2_512 = HashAlgorithm("sha2-512", 0x13, 64, lambda data: hashlib.sha512(data).digest())
SHA3_256 = HashAlgorithm("sha3-256", 0x16, 32, lambda data: hashlib.sha3_256(data).digest())
BLAKE2B_256 = HashAlgorithm("blake2b-256", 0xB220, 32, _blake2b_256)

DEFAULT_ALGORITHM = SHA2_256.name

ALGORITHMS_BY_NAME: dict[str, HashAlgorithm] = {
    alg.name: alg for alg in (SHA2_256, SHA2_512, SHA3_256, BLAKE2B_256)
}
ALGORITHMS_BY_CODE: dict[int, HashAlgorithm] = {
    alg.code: alg for alg in ALGORITHMS_BY_NAME.values()
}

# Unsigned varints in multiformats are capped at 9 bytes (63 bits)
MAX_VARINT_BYTES = 9


class MultihashError(ValueError):
    """Raised for byte strings that are not a supported multihash."""


def get_algorithm(name: str) -> HashAlgorithm:
    """Look up an algorithm by its multihash table name.

    Raises:
        KeyError: If the algorithm is not supported.
    """
    try:
        return ALGORITHMS_BY_NAME[name]
    except KeyError:
        supported = ", ".join(sorted(ALGORITHMS_BY_NAME))
        raise KeyError(f"Unsupported hash algorithm {name!r} (supported: {supported})") from None


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned LEB128 varint."""
    if value < 0:
        raise ValueError("varint value must be >= 0")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buf: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode one unsigned varint.

    Args:
        buf: Buffer to read from.
        offset: Position of the first varint byte.

    Returns:
        Tuple of (value, offset just past the varint).

    Raises:
        MultihashError: If the varint is truncated, too long, or not minimal.
    """
    value = 0
    shift = 0
    for i in range(MAX_VARINT_BYTES):
        pos = offset + i
        if pos >= len(buf):
            raise MultihashError("truncated varint")
        byte = buf[pos]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            if byte == 0 and i > 0:
                raise MultihashError("varint is not minimally encoded")
            return value, pos + 1
        shift += 7
    raise MultihashError("varint too long")


def encode(algorithm: HashAlgorithm, digest: bytes) -> bytes:
    """Build the multihash bytes for a digest."""
    if len(digest) != algorithm.digest_size:
        raise MultihashError(
            f"{algorithm.name} digest must be {algorithm.digest_size} bytes, got {len(digest)}"
        )
    return encode_varint(algorithm.code) + encode_varint(len(digest)) + digest


def decode(raw: bytes) -> tuple[HashAlgorithm, bytes]:
    """Split multihash bytes into (algorithm, digest).

    Raises:
        MultihashError: On unknown codes, length mismatches or trailing bytes.
    """
    code, offset = decode_varint(raw)
    algorithm = ALGORITHMS_BY_CODE.get(code)
    if algorithm is None:
        raise MultihashError(f"unsupported multihash code 0x{code:x}")

    length, offset = decode_varint(raw, offset)
    if length != algorithm.digest_size:
        raise MultihashError(
            f"{algorithm.name} digest length must be {algorithm.digest_size}, header says {length}"
        )

    digest = raw[offset:]
    if len(digest) != length:
        raise MultihashError(f"expected {length} digest bytes, found {len(digest)}")
    return algorithm, digest
