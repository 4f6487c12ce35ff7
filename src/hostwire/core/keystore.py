"""Key derivation and record sealing for transport channels.

Provides PBKDF2-HMAC-SHA256 key derivation from a host's auth token,
the HMAC proof used in the channel handshake, and AES-256-GCM
authenticated encryption of every record after the handshake.

Security Notes:
- The auth token is never sent on the wire; only an HMAC proof over the
  agent's fresh nonce is.
- Each record uses a fresh random 96-bit nonce.
- The channel name is bound as associated data, so a record sealed for
  the bulk channel does not open on the control channel.

Usage:
    from hostwire.core.keystore import ChannelCipher, derive_key, auth_proof

    key = derive_key(token, salt, iterations)
    proof = auth_proof(key, "control", nonce)
    cipher = ChannelCipher(key, "control")
    record = cipher.seal(b"frame bytes")
    frame = cipher.open(record)
"""

import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hostwire.core.exceptions import DecryptionError

# Constants
DEFAULT_ITERATIONS = 100_000
MIN_ITERATIONS = 1_000
MAX_ITERATIONS = 10 * DEFAULT_ITERATIONS
KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 16  # 128 bits minimum
NONCE_LENGTH = 12  # 96 bits for GCM
CHALLENGE_LENGTH = 16
TAG_LENGTH = 16
SEAL_OVERHEAD = NONCE_LENGTH + TAG_LENGTH


def generate_salt(length: int = SALT_LENGTH) -> bytes:
    """Generate cryptographically secure random salt."""
    return os.urandom(length)


def generate_challenge(length: int = CHALLENGE_LENGTH) -> bytes:
    """Generate a fresh handshake nonce."""
    return os.urandom(length)


def derive_key(
    token: str,
    salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
) -> bytes:
    """Derive AES-256 key from an auth token using PBKDF2-HMAC-SHA256.

    Args:
        token: The host's shared auth token.
        salt: Random salt bytes chosen by the agent.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte key suitable for AES-256 encryption.

    Raises:
        ValueError: If token is empty or salt is empty.
    """
    if not token:
        raise ValueError("Token cannot be empty")
    if not salt:
        raise ValueError("Salt cannot be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(token.encode("utf-8"))


def auth_proof(key: bytes, channel: str, challenge: bytes) -> bytes:
    """Compute the handshake proof HMAC-SHA256(key, channel || challenge)."""
    return hmac.new(key, channel.encode("utf-8") + challenge, hashlib.sha256).digest()


def verify_proof(key: bytes, channel: str, challenge: bytes, proof: bytes) -> bool:
    """Check a handshake proof in constant time."""
    return hmac.compare_digest(auth_proof(key, channel, challenge), proof)


class ChannelCipher:
    """AES-256-GCM sealing bound to one channel.

    Sealed record layout: ``nonce (12 bytes) || ciphertext || tag (16 bytes)``.
    """

    def __init__(self, key: bytes, channel: str) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._aead: AESGCM | None = AESGCM(key)
        self._aad = channel.encode("utf-8")

    def seal(self, plaintext: bytes) -> bytes:
        """Encrypt one record.

        Raises:
            RuntimeError: If the cipher has been cleared.
        """
        if self._aead is None:
            raise RuntimeError("Channel cipher is closed/cleared")

        nonce = os.urandom(NONCE_LENGTH)
        return nonce + self._aead.encrypt(nonce, plaintext, self._aad)

    def open(self, record: bytes) -> bytes:
        """Decrypt and authenticate one record.

        Raises:
            DecryptionError: If the record is truncated or fails authentication.
            RuntimeError: If the cipher has been cleared.
        """
        if self._aead is None:
            raise RuntimeError("Channel cipher is closed/cleared")
        if len(record) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("record too short")

        nonce, ciphertext = record[:NONCE_LENGTH], record[NONCE_LENGTH:]
        try:
            return self._aead.decrypt(nonce, ciphertext, self._aad)
        except InvalidTag as e:
            raise DecryptionError("invalid tag (wrong key or tampered data)") from e

    def clear(self) -> None:
        """Drop the key material reference."""
        self._aead = None
