"""
Aegis - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Aegis session core. Each error has a unique code for logging and
debugging. Error details never carry key material.

Author: aegischat contributors
Version: 0.3.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Aegis error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_AUTHENTICATION_FAILED = "E102"
    E103_INVALID_PEER_KEY = "E103"
    E104_ENTROPY_UNAVAILABLE = "E104"
    E106_CONFIRMATION_FAILED = "E106"
    E107_REPLAY_OR_DESYNC = "E107"
    E108_KEY_DERIVATION_FAILED = "E108"
    E109_MALFORMED_FRAME = "E109"
    E110_REKEY_IN_PROGRESS = "E110"
    E111_SESSION_TERMINATED = "E111"
    E112_INVALID_STATE = "E112"

    # Protocol Errors (E200-E299)
    E206_INVALID_MESSAGE = "E206"
    E207_MESSAGE_TOO_LARGE = "E207"

    # Room Errors (E500-E599)
    E500_ROOM_ERROR = "E500"
    E501_ROOM_NOT_FOUND = "E501"
    E502_ROOM_ALREADY_EXISTS = "E502"
    E503_MEMBER_NOT_FOUND = "E503"
    E504_MEMBER_ALREADY_JOINED = "E504"

    # File Transfer Errors (E600-E699)
    E600_FILE_TRANSFER_ERROR = "E600"
    E601_FILE_TOO_LARGE = "E601"
    E603_DIGEST_MISMATCH = "E603"
    E606_INVALID_CHUNK = "E606"
    E607_UNKNOWN_TRANSFER = "E607"
    E608_DUPLICATE_TRANSFER = "E608"
    E609_TRANSFER_RETIRED = "E609"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class AegisError(Exception):
    """Base exception class for all Aegis errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize an Aegis error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(AegisError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class InvalidPeerKey(CryptoError):
    """Remote public key is malformed or a known low-order point.

    The session must not be established.
    """

    def __init__(
        self,
        message: str = "Invalid peer public key",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E103_INVALID_PEER_KEY,
    ):
        super().__init__(code, message, details)


class AuthenticationFailure(CryptoError):
    """Tag verification failed on a frame.

    The frame is discarded. Repeated failures on one session count toward
    the session's abuse threshold.
    """

    def __init__(
        self,
        message: str = "Frame authentication failed",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E102_AUTHENTICATION_FAILED,
    ):
        super().__init__(code, message, details)


class ReplayOrDesync(CryptoError):
    """A frame's generation or counter regressed. The session is terminated."""

    def __init__(
        self,
        message: str = "Replayed or out-of-sequence frame",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E107_REPLAY_OR_DESYNC,
    ):
        super().__init__(code, message, details)


class EntropyUnavailable(CryptoError):
    """The operating system random source is unavailable. Fatal."""

    def __init__(
        self,
        message: str = "Secure random source unavailable",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E104_ENTROPY_UNAVAILABLE,
    ):
        super().__init__(code, message, details)


class SessionError(AegisError):
    """Exception raised when an operation is not allowed in the session state."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E112_INVALID_STATE,
        message: str = "Session operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(AegisError):
    """Exception raised for malformed or unexpected wire messages."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E206_INVALID_MESSAGE,
        message: str = "Invalid protocol message",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RoomError(AegisError):
    """Exception raised for room membership failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_ROOM_ERROR,
        message: str = "Room operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransferError(AegisError):
    """Exception raised for file transfer failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_FILE_TRANSFER_ERROR,
        message: str = "File transfer operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DigestMismatch(TransferError):
    """Whole-file digest did not match, or chunks are missing.

    The partial file has been discarded.
    """

    def __init__(
        self,
        message: str = "File digest mismatch",
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.E603_DIGEST_MISMATCH,
    ):
        super().__init__(code, message, details)


class ConfigError(AegisError):
    """Exception raised for configuration failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
