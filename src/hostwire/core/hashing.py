"""Digests used to check transferred data.

Whole transfers and file reads are identified by a hex SHA-256 string.
Each bulk CHUNK frame carries the raw 32-byte SHA-256 of its data.
"""

import hashlib
import hmac


HEX_ALGORITHMS = ("sha256", "sha384", "sha512")

CHUNK_DIGEST_SIZE = hashlib.sha256().digest_size


def calculate_bytes_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Hex digest of ``data``.

    >>> calculate_bytes_hash(b"hello")
    '2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'

    Raises:
        ValueError: ``algorithm`` is not in HEX_ALGORITHMS.
    """
    if algorithm not in HEX_ALGORITHMS:
        raise ValueError(
            f"Unsupported hash algorithm {algorithm!r}; use one of {', '.join(HEX_ALGORITHMS)}"
        )
    return hashlib.new(algorithm, data).hexdigest()


def chunk_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def verify_chunk(data: bytes, checksum: bytes) -> bool:
    """Compare in constant time."""
    return hmac.compare_digest(chunk_digest(data), checksum)
