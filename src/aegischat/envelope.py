"""
Aegis - Cipher envelope.

Authenticated encryption of a single message or file chunk with
ChaCha20-Poly1305. Nonces are never random: they are the big-endian
generation number followed by the big-endian counter, so a key can only
repeat a nonce if the caller repeats a counter, which the session ratchet
never does.

Frame layout (``CipherFrame.to_bytes``):

- Version: 1 byte
- Kind: 1 byte
- Generation: 4 bytes
- Counter: 8 bytes
- Sender id: 32 bytes
- Context length: 2 bytes, then context
- Nonce: 12 bytes
- Tag: 16 bytes
- Ciphertext: remainder
"""

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .constants import (
    KEY_SIZE,
    MAX_COUNTER,
    MAX_GENERATION,
    NONCE_SIZE,
    PROTOCOL_VERSION,
    PUBLIC_KEY_SIZE,
    TAG_SIZE,
)
from .errors import AuthenticationFailure, CryptoError, ErrorCode

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("!BBIQ")
_CONTEXT_LEN = struct.Struct("!H")
_NONCE = struct.Struct("!IQ")


class FrameKind(IntEnum):
    """What a cipher frame carries."""

    MESSAGE = 1
    CHUNK = 2


def derive_nonce(generation: int, counter: int) -> bytes:
    """Deterministic 96-bit nonce from (generation, counter).

    Raises:
        CryptoError: If either value does not fit its field
    """
    if not 0 <= generation <= MAX_GENERATION or not 0 <= counter <= MAX_COUNTER:
        raise CryptoError(
            ErrorCode.E101_ENCRYPTION_FAILED,
            "Generation or counter out of range",
            {"generation": generation, "counter": counter},
        )
    return _NONCE.pack(generation, counter)


@dataclass(frozen=True)
class AssociatedData:
    """Authenticated but unencrypted frame metadata.

    Attributes:
        sender_id: Sender's 32-byte identity public key
        generation: Message-key generation the frame belongs to
        kind: Message or file chunk
        context: Extra bound bytes (the file id for chunks)
    """

    sender_id: bytes
    generation: int
    kind: FrameKind = FrameKind.MESSAGE
    context: bytes = b""

    def pack(self) -> bytes:
        return (
            struct.pack("!BBI", PROTOCOL_VERSION, int(self.kind), self.generation)
            + self.sender_id
            + _CONTEXT_LEN.pack(len(self.context))
            + self.context
        )


@dataclass(frozen=True)
class CipherFrame:
    """One encrypted message or chunk. Immutable once created."""

    associated_data: AssociatedData
    counter: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    @property
    def sender_id(self) -> bytes:
        return self.associated_data.sender_id

    @property
    def generation(self) -> int:
        return self.associated_data.generation

    @property
    def kind(self) -> FrameKind:
        return self.associated_data.kind

    @property
    def context(self) -> bytes:
        return self.associated_data.context

    def to_bytes(self) -> bytes:
        """Serialize for the transport."""
        ad = self.associated_data
        return (
            _HEADER.pack(PROTOCOL_VERSION, int(ad.kind), ad.generation, self.counter)
            + ad.sender_id
            + _CONTEXT_LEN.pack(len(ad.context))
            + ad.context
            + self.nonce
            + self.tag
            + self.ciphertext
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "CipherFrame":
        """Parse a serialized frame.

        Raises:
            AuthenticationFailure: If the frame is truncated or malformed
        """
        data = bytes(data)
        fixed = _HEADER.size + PUBLIC_KEY_SIZE + _CONTEXT_LEN.size
        if len(data) < fixed + NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailure(
                "Frame too short", {"length": len(data)}, ErrorCode.E109_MALFORMED_FRAME
            )

        version, kind, generation, counter = _HEADER.unpack_from(data, 0)
        if version != PROTOCOL_VERSION:
            raise AuthenticationFailure(
                f"Unsupported frame version: {version}",
                {"version": version},
                ErrorCode.E109_MALFORMED_FRAME,
            )
        try:
            frame_kind = FrameKind(kind)
        except ValueError as e:
            raise AuthenticationFailure(
                f"Unknown frame kind: {kind}", {"kind": kind}, ErrorCode.E109_MALFORMED_FRAME
            ) from e

        offset = _HEADER.size
        sender_id = data[offset : offset + PUBLIC_KEY_SIZE]
        offset += PUBLIC_KEY_SIZE
        (context_len,) = _CONTEXT_LEN.unpack_from(data, offset)
        offset += _CONTEXT_LEN.size

        if len(data) < offset + context_len + NONCE_SIZE + TAG_SIZE:
            raise AuthenticationFailure(
                "Frame context truncated", {"length": len(data)}, ErrorCode.E109_MALFORMED_FRAME
            )

        context = data[offset : offset + context_len]
        offset += context_len
        nonce = data[offset : offset + NONCE_SIZE]
        offset += NONCE_SIZE
        tag = data[offset : offset + TAG_SIZE]
        offset += TAG_SIZE

        return cls(
            associated_data=AssociatedData(sender_id, generation, frame_kind, context),
            counter=counter,
            nonce=nonce,
            ciphertext=data[offset:],
            tag=tag,
        )


def _check_key(key: bytes) -> bytes:
    if len(key) != KEY_SIZE:
        raise CryptoError(ErrorCode.E002_INVALID_ARGUMENT, f"Key must be {KEY_SIZE} bytes")
    return bytes(key)


def encrypt(
    key: bytes, plaintext: bytes, associated_data: AssociatedData, counter: int
) -> CipherFrame:
    """Encrypt ``plaintext`` under ``key`` at position ``counter``.

    Args:
        key: 32-byte message key
        plaintext: Data to protect
        associated_data: Metadata bound by the tag
        counter: Message counter (or chunk index) within the generation

    Returns:
        A new CipherFrame
    """
    nonce = derive_nonce(associated_data.generation, counter)
    sealed = ChaCha20Poly1305(_check_key(key)).encrypt(
        nonce, bytes(plaintext), associated_data.pack()
    )
    return CipherFrame(
        associated_data=associated_data,
        counter=counter,
        nonce=nonce,
        ciphertext=sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:],
    )


def decrypt(key: bytes, frame: CipherFrame) -> bytes:
    """Verify and decrypt a frame.

    Raises:
        AuthenticationFailure: If the tag does not verify or the nonce does
            not match the frame's generation and counter
    """
    try:
        expected_nonce = derive_nonce(frame.generation, frame.counter)
    except CryptoError as e:
        raise AuthenticationFailure("Frame position out of range") from e

    if frame.nonce != expected_nonce:
        raise AuthenticationFailure(
            "Frame nonce does not match its position",
            {"generation": frame.generation, "counter": frame.counter},
        )

    try:
        return ChaCha20Poly1305(_check_key(key)).decrypt(
            frame.nonce, frame.ciphertext + frame.tag, frame.associated_data.pack()
        )
    except InvalidTag as e:
        logger.debug(
            f"Tag verification failed (generation={frame.generation}, counter={frame.counter})"
        )
        raise AuthenticationFailure(
            "Frame authentication failed",
            {"generation": frame.generation, "counter": frame.counter},
        ) from e
