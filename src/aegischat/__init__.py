"""
Aegis - Secure chat session core

Pairwise end-to-end encrypted sessions with periodic rekeying, mesh room
key management and integrity-checked file transfer. The core takes bytes
from a transport and returns bytes, plaintexts and lifecycle events; it
does no I/O of its own.

Author: aegischat contributors
Version: 0.3.0
License: MIT
"""

__version__ = "0.3.0"
__author__ = "aegischat contributors"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config, setup_logging
from .constants import APP_NAME, VERSION
from .envelope import AssociatedData, CipherFrame, FrameKind
from .errors import (
    AegisError,
    AuthenticationFailure,
    ConfigError,
    CryptoError,
    DigestMismatch,
    EntropyUnavailable,
    ErrorCode,
    InvalidPeerKey,
    ProtocolError,
    ReplayOrDesync,
    RoomError,
    SessionError,
    TransferError,
)
from .identity import Identity, fingerprint, generate
from .ratchet import (
    ReceiveResult,
    SecurityEvent,
    Session,
    SessionLifecycleEvent,
    SessionState,
)
from .room import MembershipEvent, MembershipState, RoomKeyCoordinator
from .transfer import TransferIntegrityModule, TransferOffer, TransferProgress, TransferSender

__all__ = [
    "APP_NAME",
    "VERSION",
    "AegisError",
    "AssociatedData",
    "AuthenticationFailure",
    "CipherFrame",
    "Config",
    "ConfigError",
    "CryptoError",
    "DigestMismatch",
    "EntropyUnavailable",
    "ErrorCode",
    "FrameKind",
    "Identity",
    "InvalidPeerKey",
    "MembershipEvent",
    "MembershipState",
    "ProtocolError",
    "ReceiveResult",
    "ReplayOrDesync",
    "RoomError",
    "RoomKeyCoordinator",
    "SecurityEvent",
    "Session",
    "SessionError",
    "SessionLifecycleEvent",
    "SessionState",
    "TransferError",
    "TransferIntegrityModule",
    "TransferOffer",
    "TransferProgress",
    "TransferSender",
    "fingerprint",
    "generate",
    "setup_logging",
    "__author__",
    "__license__",
    "__version__",
]
