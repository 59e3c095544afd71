"""
Aegis - Wire protocol definitions.

This module defines the messages a session exchanges with its peer.
The transport delivers each message whole; every message starts with:
- Protocol version (1 byte)
- Message type (2 bytes)
- Payload length (4 bytes)

Total header size: 7 bytes

Control messages (handshake, rekey, close) carry a JSON payload with
base64 fields. Cipher frames carry the binary ``CipherFrame`` encoding.
"""

import base64
import binascii
import json
import struct
from enum import IntEnum
from typing import Any, Dict, Tuple

from .constants import MAX_MESSAGE_SIZE, PROTOCOL_VERSION
from .envelope import CipherFrame
from .errors import ErrorCode, ProtocolError


class MessageType(IntEnum):
    """Message type definitions."""

    # Handshake
    HELLO = 1
    CONFIRM = 2

    # Session teardown
    CLOSE = 5

    # Encrypted payloads
    CIPHER_FRAME = 10

    # Rekeying
    REKEY_REQUEST = 20
    REKEY_RESPONSE = 21


# Fields each control message must carry
REQUIRED_FIELDS: Dict[MessageType, Tuple[str, ...]] = {
    MessageType.HELLO: ("public_key",),
    MessageType.CONFIRM: ("tag",),
    MessageType.CLOSE: ("reason",),
    MessageType.REKEY_REQUEST: ("generation", "public_key", "mac"),
    MessageType.REKEY_RESPONSE: ("generation", "public_key", "mac"),
}


def b64encode(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64field(payload: Dict[str, Any], name: str) -> bytes:
    """Decode a base64 field from a control payload.

    Raises:
        ProtocolError: If the field is not valid base64
    """
    try:
        return base64.b64decode(payload[name], validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise ProtocolError(
            ErrorCode.E206_INVALID_MESSAGE, f"Invalid base64 field: {name}", {"field": name}
        ) from e


class Protocol:
    """Wire protocol handler."""

    VERSION = PROTOCOL_VERSION
    HEADER = struct.Struct("!BHI")
    HEADER_SIZE = HEADER.size
    MAX_PAYLOAD_SIZE = MAX_MESSAGE_SIZE

    @staticmethod
    def pack_message(msg_type: MessageType, payload: bytes) -> bytes:
        """Prefix a payload with the protocol header.

        Raises:
            ProtocolError: If the payload is too large
        """
        if len(payload) > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {len(payload)} bytes",
                {"size": len(payload), "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )
        return Protocol.HEADER.pack(Protocol.VERSION, int(msg_type), len(payload)) + payload

    @staticmethod
    def unpack_message(data: bytes) -> Tuple[MessageType, bytes]:
        """Split a received message into type and payload.

        Raises:
            ProtocolError: If the header is invalid or the length is wrong
        """
        if len(data) < Protocol.HEADER_SIZE:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, "Message shorter than header", {"length": len(data)}
            )

        version, msg_type_int, length = Protocol.HEADER.unpack_from(data, 0)

        if version != Protocol.VERSION:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Unsupported protocol version: {version}",
                {"version": version, "expected": Protocol.VERSION},
            )

        if length > Protocol.MAX_PAYLOAD_SIZE:
            raise ProtocolError(
                ErrorCode.E207_MESSAGE_TOO_LARGE,
                f"Payload too large: {length} bytes",
                {"size": length, "max_size": Protocol.MAX_PAYLOAD_SIZE},
            )

        if len(data) != Protocol.HEADER_SIZE + length:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                "Payload length does not match header",
                {"declared": length, "actual": len(data) - Protocol.HEADER_SIZE},
            )

        try:
            msg_type = MessageType(msg_type_int)
        except ValueError as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"Invalid message type: {msg_type_int}",
                {"type": msg_type_int},
            ) from e

        return msg_type, bytes(data[Protocol.HEADER_SIZE :])

    @staticmethod
    def pack_control(msg_type: MessageType, payload: Dict[str, Any]) -> bytes:
        """Pack a JSON control message."""
        Protocol.validate_control(msg_type, payload)
        return Protocol.pack_message(msg_type, json.dumps(payload).encode("utf-8"))

    @staticmethod
    def parse_control(msg_type: MessageType, payload: bytes) -> Dict[str, Any]:
        """Decode and validate a JSON control payload.

        Raises:
            ProtocolError: If the payload is not a valid control message
        """
        try:
            data = json.loads(payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"Failed to parse message: {e}", {"error": str(e)}
            ) from e

        Protocol.validate_control(msg_type, data)
        return data

    @staticmethod
    def validate_control(msg_type: MessageType, payload: Any) -> None:
        """Check that a control payload carries its required fields.

        Raises:
            ProtocolError: If a field is missing or the type has no JSON form
        """
        if msg_type not in REQUIRED_FIELDS:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"{msg_type.name} is not a control message",
                {"type": int(msg_type)},
            )
        if not isinstance(payload, dict):
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "Control payload must be an object")

        missing = [name for name in REQUIRED_FIELDS[msg_type] if name not in payload]
        if missing:
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE,
                f"{msg_type.name} missing fields: {', '.join(missing)}",
                {"missing": missing},
            )

        generation = payload.get("generation")
        if "generation" in REQUIRED_FIELDS[msg_type] and (
            not isinstance(generation, int) or isinstance(generation, bool) or generation < 0
        ):
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, "Generation must be a non-negative integer"
            )

    @staticmethod
    def create_hello(public_key: bytes) -> bytes:
        """Create handshake hello message."""
        return Protocol.pack_control(MessageType.HELLO, {"public_key": b64encode(public_key)})

    @staticmethod
    def create_confirm(tag: bytes) -> bytes:
        """Create handshake key-confirmation message."""
        return Protocol.pack_control(MessageType.CONFIRM, {"tag": b64encode(tag)})

    @staticmethod
    def create_close(reason: str) -> bytes:
        """Create session close message."""
        return Protocol.pack_control(MessageType.CLOSE, {"reason": reason})

    @staticmethod
    def create_rekey(msg_type: MessageType, generation: int, public_key: bytes, mac: bytes) -> bytes:
        """Create rekey request or response message."""
        return Protocol.pack_control(
            msg_type,
            {"generation": generation, "public_key": b64encode(public_key), "mac": b64encode(mac)},
        )

    @staticmethod
    def create_frame(frame: CipherFrame) -> bytes:
        """Wrap a cipher frame for the transport."""
        return Protocol.pack_message(MessageType.CIPHER_FRAME, frame.to_bytes())
