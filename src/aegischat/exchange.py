"""
Aegis - Key exchange.

X25519 Diffie-Hellman between a local identity and a remote public key,
followed immediately by HKDF so that the raw DH output never leaves this
module. Remote keys are validated before use: wrong sizes, the small-order
points of Curve25519 and their non-canonical encodings are all rejected
as ``InvalidPeerKey``.
"""

import hmac
import logging
from typing import Union

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import hmac as crypto_hmac
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import KDF_LABEL_SHARED, KEY_SIZE, PUBLIC_KEY_SIZE
from .errors import CryptoError, ErrorCode, InvalidPeerKey
from .identity import Identity, private_key_material

logger = logging.getLogger(__name__)

# u-coordinates of small-order points, with the top bit cleared
LOW_ORDER_POINTS = frozenset(
    bytes.fromhex(h)
    for h in (
        # 0 (order 4)
        "0000000000000000000000000000000000000000000000000000000000000000",
        # 1 (order 1)
        "0100000000000000000000000000000000000000000000000000000000000000",
        # order 8
        "e0eb7a7c3b41b8ae1656e3faf19fc46ada098deb9c32b1fd866205165f49b800",
        # order 8
        "5f9c95bca3508c24b1d0b1559c83ef5b04445cc4581c8e86d8224eddd09f1157",
        # p - 1 (order 2)
        "ecffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff7f",
        # p, non-canonical 0
        "edffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff7f",
        # p + 1, non-canonical 1
        "eeffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff7f",
    )
)


def validate_public_key(data: Union[bytes, bytearray]) -> bytes:
    """Check that a remote X25519 public key is safe to use.

    Args:
        data: Raw public key received from the peer

    Returns:
        The key as immutable bytes

    Raises:
        InvalidPeerKey: If the key is malformed or a small-order point
    """
    if not isinstance(data, (bytes, bytearray)):
        raise InvalidPeerKey("Public key must be bytes", {"type": type(data).__name__})

    if len(data) != PUBLIC_KEY_SIZE:
        raise InvalidPeerKey(
            f"Public key must be {PUBLIC_KEY_SIZE} bytes",
            {"length": len(data), "expected": PUBLIC_KEY_SIZE},
        )

    masked = bytes(data[:-1]) + bytes([data[-1] & 0x7F])
    if masked in LOW_ORDER_POINTS:
        logger.warning("Rejected small-order peer public key")
        raise InvalidPeerKey("Public key is a small-order point")

    return bytes(data)


def derive_key(secret: bytes, info: bytes, salt: bytes = b"", length: int = KEY_SIZE) -> bytes:
    """HKDF-SHA256 helper used for every key in the session core."""
    try:
        return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt or None, info=info).derive(
            bytes(secret)
        )
    except (TypeError, ValueError) as e:
        raise CryptoError(
            ErrorCode.E108_KEY_DERIVATION_FAILED, f"Key derivation failed: {e}"
        ) from e


def raw_exchange(local: Identity, remote_public_key: bytes) -> bytes:
    """Run X25519 without derivation. Only for callers that derive immediately."""
    peer_key = validate_public_key(remote_public_key)

    with private_key_material(local) as private_key:
        try:
            return private_key.exchange(x25519.X25519PublicKey.from_public_bytes(peer_key))
        except ValueError as e:
            # OpenSSL refuses an all-zero shared secret
            logger.warning("Rejected peer public key producing a degenerate shared secret")
            raise InvalidPeerKey("Peer public key produced a degenerate shared secret") from e


def exchange(local: Identity, remote_public_key: bytes) -> bytes:
    """Derive the pairwise shared secret between ``local`` and a peer.

    Both sides obtain the same value: the HKDF salt is the two public keys
    in sorted order.

    Args:
        local: Local identity (or ephemeral keypair)
        remote_public_key: Peer's raw 32-byte public key

    Returns:
        32-byte shared secret

    Raises:
        InvalidPeerKey: If the remote key is malformed or unsafe
    """
    dh_output = raw_exchange(local, remote_public_key)
    low, high = sorted((local.public_key, bytes(remote_public_key)))
    shared = derive_key(dh_output, KDF_LABEL_SHARED, salt=low + high)
    del dh_output
    return shared


def confirmation_tag(key: bytes, transcript: bytes) -> bytes:
    """HMAC-SHA256 over a handshake transcript."""
    mac = crypto_hmac.HMAC(bytes(key), hashes.SHA256())
    mac.update(transcript)
    return mac.finalize()


def verify_confirmation(key: bytes, transcript: bytes, tag: bytes) -> bool:
    """Constant-time check of a confirmation tag."""
    return hmac.compare_digest(confirmation_tag(key, transcript), bytes(tag))
