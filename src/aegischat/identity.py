"""
Aegis - Identity management.

Holds the device's X25519 keypair for the lifetime of the process.
Identities are regenerated on every start; there is deliberately no
save or load path, and private key bytes live only in a mutable buffer
that is overwritten when the identity is torn down.
"""

import contextlib
import hashlib
import hmac
import logging
import secrets
from typing import Iterator, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from .constants import FINGERPRINT_GROUP_SIZE, FINGERPRINT_LENGTH, KEY_SIZE
from .errors import CryptoError, EntropyUnavailable, ErrorCode

logger = logging.getLogger(__name__)


def zeroize(buffer: bytearray) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    for i in range(len(buffer)):
        buffer[i] = 0


def secure_random(length: int) -> bytes:
    """Read ``length`` bytes from the OS CSPRNG.

    Raises:
        EntropyUnavailable: If the random source cannot be read
    """
    try:
        return secrets.token_bytes(length)
    except (NotImplementedError, OSError) as e:
        logger.critical("Secure random source unavailable")
        raise EntropyUnavailable(details={"error": type(e).__name__}) from e


class Identity:
    """An X25519 keypair held in volatile memory only.

    Attributes:
        public_key: 32-byte raw public key
    """

    __slots__ = ("public_key", "_private_key", "_zeroized")

    def __init__(self, private_key: bytearray, public_key: bytes):
        if len(private_key) != KEY_SIZE or len(public_key) != KEY_SIZE:
            raise CryptoError(ErrorCode.E002_INVALID_ARGUMENT, f"Keys must be {KEY_SIZE} bytes")
        self._private_key = private_key
        self.public_key = public_key
        self._zeroized = False

    @property
    def is_zeroized(self) -> bool:
        return self._zeroized

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.public_key)

    def zeroize(self) -> None:
        """Overwrite the private key. The identity is unusable afterwards."""
        if not self._zeroized:
            zeroize(self._private_key)
            self._zeroized = True

    def __repr__(self) -> str:
        state = "zeroized" if self._zeroized else "live"
        return f"Identity(fingerprint={fingerprint(self.public_key)!r}, {state})"

    def __reduce__(self):
        raise TypeError("Identity objects cannot be serialized")


def generate() -> Identity:
    """Create a fresh keypair from the OS random source.

    Raises:
        EntropyUnavailable: If no secure randomness is available
    """
    private_bytes = bytearray(secure_random(KEY_SIZE))
    private_key = x25519.X25519PrivateKey.from_private_bytes(bytes(private_bytes))
    public_key = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )
    return Identity(private_bytes, public_key)


@contextlib.contextmanager
def private_key_material(identity: Identity) -> Iterator[x25519.X25519PrivateKey]:
    """Lend the private key object for the duration of one operation.

    Raises:
        CryptoError: If the identity has already been zeroized
    """
    if identity.is_zeroized:
        raise CryptoError(ErrorCode.E100_CRYPTO_ERROR, "Identity key material has been zeroized")
    key = x25519.X25519PrivateKey.from_private_bytes(bytes(identity._private_key))
    try:
        yield key
    finally:
        del key


def format_fingerprint(digest_hex: str) -> str:
    """Group a hex digest in blocks of four for display."""
    return " ".join(
        digest_hex[i : i + FINGERPRINT_GROUP_SIZE]
        for i in range(0, len(digest_hex), FINGERPRINT_GROUP_SIZE)
    )


def fingerprint(key: Union[Identity, bytes], length: int = FINGERPRINT_LENGTH) -> str:
    """Short SHA-256 digest of a public key for out-of-band comparison.

    Args:
        key: Identity or raw 32-byte public key
        length: Number of hex characters to display (16-64)

    Returns:
        Grouped lowercase hex string, e.g. ``"3f2a 91c0 ..."``
    """
    if not 16 <= length <= 64:
        raise CryptoError(
            ErrorCode.E002_INVALID_ARGUMENT, f"Fingerprint length out of range: {length}"
        )
    public_key = key.public_key if isinstance(key, Identity) else bytes(key)
    digest = hashlib.sha256(b"aegis-fingerprint-v1" + public_key).hexdigest()
    return format_fingerprint(digest[:length])


def fingerprints_match(displayed: str, expected: str) -> bool:
    """Compare two fingerprints ignoring spacing and case, in constant time."""
    left = "".join(displayed.split()).lower().encode("ascii", "ignore")
    right = "".join(expected.split()).lower().encode("ascii", "ignore")
    return hmac.compare_digest(left, right)
