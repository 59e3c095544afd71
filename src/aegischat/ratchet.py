"""
Aegis - Session ratchet.

A pairwise session between the local identity and one peer, driven by an
explicit finite state machine:

    HANDSHAKING -> ESTABLISHED <-> REKEYING
         \\             |             /
          +------> TERMINATED <------+

Key schedule:
- generation 0 secret = HKDF(shared secret from the identity exchange)
- message key = HKDF(generation secret, direction, generation, counter)
- generation n+1 secret = HKDF(fresh ephemeral DH output, salt = generation n)

Each direction has its own keys; the side whose identity public key sorts
lower is ``Direction.LOW``. After ``rekey_threshold`` messages sent in one
generation the session stops encrypting, emits a REKEY_REQUEST and waits
for the peer's REKEY_RESPONSE. The previous generation secret and the
ephemeral private key are zeroed as soon as the new generation is
installed. If both sides request a rekey at once, the side with the lower
identity public key keeps its request and the other side answers it.

The session performs no I/O. Everything it wants sent to the peer is
returned to the caller as bytes.
"""

import logging
import struct
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Dict, List, Optional, Tuple

from . import envelope
from .config import Config
from .constants import (
    KDF_LABEL_CONFIRM,
    KDF_LABEL_CONTROL,
    KDF_LABEL_FILE,
    KDF_LABEL_GENERATION,
    KDF_LABEL_MESSAGE,
    KDF_LABEL_REKEY,
    MAX_FILE_ID_LENGTH,
    STATE_HISTORY_SIZE,
)
from .envelope import AssociatedData, CipherFrame, FrameKind
from .errors import (
    AuthenticationFailure,
    ErrorCode,
    InvalidPeerKey,
    ProtocolError,
    ReplayOrDesync,
    SessionError,
)
from .exchange import confirmation_tag, derive_key, exchange, validate_public_key, verify_confirmation
from .identity import Identity, fingerprint, fingerprints_match, generate, zeroize
from .protocol import MessageType, Protocol, b64field

logger = logging.getLogger(__name__)

_GENERATION_PAIR = struct.Struct("!II")


class SessionState(Enum):
    """Lifecycle states of a pairwise session."""

    HANDSHAKING = auto()  # Exchanging HELLO / CONFIRM
    ESTABLISHED = auto()  # Normal traffic
    REKEYING = auto()  # Waiting for the next generation
    TERMINATED = auto()  # Key material zeroed


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    HANDSHAKE_CONFIRMED = auto()
    HANDSHAKE_FAILED = auto()
    REKEY_STARTED = auto()
    REKEY_COMPLETED = auto()
    CLOSE_REQUESTED = auto()
    PEER_CLOSED = auto()
    DESYNC_DETECTED = auto()
    AUTH_FAILURES_EXCEEDED = auto()


class Direction(Enum):
    """Which side of the pair sent a message."""

    LOW = b"low"
    HIGH = b"high"

    @staticmethod
    def of(sender_public_key: bytes, other_public_key: bytes) -> "Direction":
        return Direction.LOW if sender_public_key < other_public_key else Direction.HIGH


# Reason strings reported to the display layer
TERMINATION_REASONS: Dict[SessionEvent, str] = {
    SessionEvent.HANDSHAKE_FAILED: "handshake_failed",
    SessionEvent.CLOSE_REQUESTED: "closed",
    SessionEvent.PEER_CLOSED: "peer_closed",
    SessionEvent.DESYNC_DETECTED: "replay_or_desync",
    SessionEvent.AUTH_FAILURES_EXCEEDED: "authentication_failures",
}

_TERMINATING_EVENTS = {event: SessionState.TERMINATED for event in TERMINATION_REASONS}


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SessionLifecycleEvent:
    """Reported to the display layer on every state change."""

    peer_id: str
    from_state: SessionState
    to_state: SessionState
    event: SessionEvent
    reason: Optional[str] = None


@dataclass(frozen=True)
class SecurityEvent:
    """Reported to the display layer when a peer misbehaves."""

    peer_id: str
    kind: str
    failures: int = 0
    terminated: bool = False


@dataclass
class ReceiveResult:
    """What a received message produced.

    Attributes:
        plaintexts: Decrypted messages, in send order
        outbound: Messages to hand to the transport, in order
    """

    plaintexts: List[bytes] = field(default_factory=list)
    outbound: List[bytes] = field(default_factory=list)


def derive_message_key(
    generation_secret: bytes, generation: int, counter: int, direction: Direction
) -> bytes:
    """Message key for one (generation, counter, direction).

    Pure: both peers derive the same key without negotiation.
    """
    info = KDF_LABEL_MESSAGE + direction.value + struct.pack("!IQ", generation, counter)
    return derive_key(generation_secret, info)


class Session:
    """Pairwise secure session with one peer.

    Attributes:
        identity: Local identity (owned by the caller, not zeroed on close)
        peer_id: Transport-level peer identifier
        remote_public_key: Peer identity key, known after HELLO
        generation: Current message-key generation
        send_counter: Messages sent in the current generation
        recv_counter: Next expected counter from the peer
        verified: Whether the peer fingerprint was confirmed out of band
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.HANDSHAKING: {
            SessionEvent.HANDSHAKE_CONFIRMED: SessionState.ESTABLISHED,
            **_TERMINATING_EVENTS,
        },
        SessionState.ESTABLISHED: {
            SessionEvent.REKEY_STARTED: SessionState.REKEYING,
            **_TERMINATING_EVENTS,
        },
        SessionState.REKEYING: {
            SessionEvent.REKEY_COMPLETED: SessionState.ESTABLISHED,
            **_TERMINATING_EVENTS,
        },
        SessionState.TERMINATED: {},
    }

    def __init__(self, identity: Identity, peer_id: str, config: Optional[Config] = None):
        self.identity = identity
        self.peer_id = peer_id
        self.config = config or Config.defaults()

        self.state = SessionState.HANDSHAKING
        self.remote_public_key: Optional[bytes] = None
        self.generation = 0
        self.send_counter = 0
        self.recv_counter = 0
        self.auth_failures = 0
        self.verified = False
        self.termination_reason: Optional[str] = None
        self.transition_history: List[StateTransition] = []

        self._secret: Optional[bytearray] = None
        self._pending_rekey: Optional[Identity] = None
        self._pending_generation: Optional[int] = None
        self._reorder: Dict[int, bytes] = {}
        self._outbound: List[bytes] = []
        self._file_ids: set = set()
        self._file_keys: List[bytearray] = []
        self._hello_sent = False
        self._confirm_sent = False
        self._confirm_received = False

        self._lock = threading.RLock()
        self._events: List[Tuple[str, object]] = []

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionLifecycleEvent], None]] = None
        self.on_security_event: Optional[Callable[[SecurityEvent], None]] = None

    def __repr__(self) -> str:
        return (
            f"Session(peer_id={self.peer_id!r}, state={self.state.name}, "
            f"generation={self.generation}, send={self.send_counter}, recv={self.recv_counter})"
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, event: SessionEvent, reason: Optional[str] = None) -> None:
        """Apply a state transition. Caller holds the lock.

        Raises:
            SessionError: If the event is not valid in the current state
        """
        targets = self.TRANSITIONS[self.state]
        if event not in targets:
            raise SessionError(
                ErrorCode.E112_INVALID_STATE,
                f"Invalid transition: {self.state.name} + {event.name}",
                {"state": self.state.name, "event": event.name},
            )

        old_state = self.state
        self.state = targets[event]

        self.transition_history.append(StateTransition(old_state, event, self.state))
        if len(self.transition_history) > STATE_HISTORY_SIZE:
            self.transition_history = self.transition_history[-STATE_HISTORY_SIZE:]

        reason = reason or TERMINATION_REASONS.get(event)
        logger.info(
            f"Session {self.peer_id}: {old_state.name} -> {self.state.name} (event: {event.name})"
        )
        self._events.append(
            (
                "state",
                SessionLifecycleEvent(self.peer_id, old_state, self.state, event, reason),
            )
        )

    def _dispatch_events(self) -> None:
        """Deliver queued events to callbacks outside the session lock."""
        with self._lock:
            events, self._events = self._events, []

        for kind, event in events:
            callback = self.on_state_change if kind == "state" else self.on_security_event
            if callback is None:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Session {self.peer_id} event callback error: {e}")

    def _terminate(self, event: SessionEvent, reason: Optional[str] = None) -> None:
        """Zero all key material and enter TERMINATED. Caller holds the lock."""
        if self.state == SessionState.TERMINATED:
            return

        if self._secret is not None:
            zeroize(self._secret)
            self._secret = None
        if self._pending_rekey is not None:
            self._pending_rekey.zeroize()
            self._pending_rekey = None
        self._pending_generation = None
        self._reorder.clear()
        self._outbound.clear()
        self._retire_file_keys()

        self.termination_reason = reason or TERMINATION_REASONS.get(event)
        self._transition(event, self.termination_reason)

    def record_auth_failure(self, error: AuthenticationFailure) -> AuthenticationFailure:
        """Count a failure detected outside the session (e.g. a file chunk).

        Returns:
            The error, with failure count details added, for re-raising
        """
        try:
            with self._lock:
                if self.state == SessionState.TERMINATED:
                    return error
                return self._record_auth_failure(error)
        finally:
            self._dispatch_events()

    def _require_open(self) -> None:
        if self.state == SessionState.TERMINATED:
            raise SessionError(
                ErrorCode.E111_SESSION_TERMINATED,
                "Session is terminated",
                {"peer_id": self.peer_id, "reason": self.termination_reason},
            )

    def _desync(self, message: str, details: Dict) -> ReplayOrDesync:
        logger.error(f"Session {self.peer_id}: {message}; terminating")
        self._terminate(SessionEvent.DESYNC_DETECTED)
        return ReplayOrDesync(message, details)

    def _record_auth_failure(self, error: AuthenticationFailure) -> AuthenticationFailure:
        """Count a failed frame; terminate past the threshold. Caller holds the lock."""
        self.auth_failures += 1
        limit = self.config.max_auth_failures
        terminated = self.auth_failures >= limit

        logger.warning(
            f"Session {self.peer_id}: authentication failure {self.auth_failures}/{limit}"
        )
        self._events.append(
            (
                "security",
                SecurityEvent(self.peer_id, "authentication_failure", self.auth_failures, terminated),
            )
        )
        if terminated:
            logger.error(f"Session {self.peer_id}: repeated authentication failures")
            self._terminate(SessionEvent.AUTH_FAILURES_EXCEEDED)

        error.details.update({"failures": self.auth_failures, "terminated": terminated})
        return error

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_established(self) -> bool:
        return self.state == SessionState.ESTABLISHED

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    @property
    def has_key_material(self) -> bool:
        return self._secret is not None

    @property
    def authenticated(self) -> bool:
        """Encrypted and verified out of band."""
        return self.verified and self.state in (SessionState.ESTABLISHED, SessionState.REKEYING)

    @property
    def local_direction(self) -> Direction:
        self._require_remote()
        return Direction.of(self.identity.public_key, self.remote_public_key)

    @property
    def remote_direction(self) -> Direction:
        self._require_remote()
        return Direction.of(self.remote_public_key, self.identity.public_key)

    @property
    def remote_fingerprint(self) -> Optional[str]:
        if self.remote_public_key is None:
            return None
        return fingerprint(self.remote_public_key, self.config.fingerprint_length)

    def _require_remote(self) -> None:
        if self.remote_public_key is None:
            raise SessionError(ErrorCode.E112_INVALID_STATE, "Peer key not known yet")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def set_verified(self, verified: bool) -> None:
        """Record the out-of-band verification result."""
        with self._lock:
            self.verified = bool(verified) and self.remote_public_key is not None
            logger.info(f"Session {self.peer_id}: verified={self.verified}")

    def mark_verified(self, remote_fingerprint: str) -> bool:
        """Compare an out-of-band fingerprint with the peer key.

        Returns:
            True if the fingerprint matches and the session is now verified
        """
        try:
            with self._lock:
                expected = self.remote_fingerprint
                if expected is None or not remote_fingerprint:
                    return False

                if fingerprints_match(remote_fingerprint, expected):
                    self.verified = True
                    logger.info(f"Session {self.peer_id}: fingerprint verified")
                    return True

                self.verified = False
                logger.warning(f"Session {self.peer_id}: fingerprint mismatch")
                self._events.append(("security", SecurityEvent(self.peer_id, "fingerprint_mismatch")))
                return False
        finally:
            self._dispatch_events()

    # ------------------------------------------------------------------
    # Key schedule
    # ------------------------------------------------------------------

    def _confirm_key(self, direction: Direction) -> bytes:
        return derive_key(self._secret, KDF_LABEL_CONFIRM + direction.value)

    def _control_key(self, direction: Direction) -> bytes:
        return derive_key(
            self._secret, KDF_LABEL_CONTROL + direction.value + struct.pack("!I", self.generation)
        )

    def _message_key(self, direction: Direction, counter: int) -> bytes:
        return derive_message_key(self._secret, self.generation, counter, direction)

    def _transcript(self) -> bytes:
        low, high = sorted((self.identity.public_key, self.remote_public_key))
        return b"aegis-handshake" + low + high

    def _install_generation(self, new_secret: bytes, generation: int) -> None:
        """Replace the generation secret and zero the old one. Caller holds the lock."""
        if self._reorder:
            raise self._desync(
                "Frames missing at generation boundary",
                {"generation": self.generation, "buffered": len(self._reorder)},
            )

        old_secret = self._secret
        self._secret = bytearray(new_secret)
        if old_secret is not None:
            zeroize(old_secret)

        self.generation = generation
        self.send_counter = 0
        self.recv_counter = 0
        self._file_ids.clear()
        self._retire_file_keys()
        logger.debug(f"Session {self.peer_id}: installed generation {generation}")

    def derive_file_key(self, file_id: str, sending: bool) -> Tuple[int, bytearray]:
        """Per-file chunk key for the current generation.

        Outbound file ids must be unique per generation, so chunk nonces
        (generation, index) never repeat under one key. The returned buffer
        stays owned by the session: it is zeroed when the generation is
        replaced or the session terminates.

        Returns:
            Tuple of (generation, 32-byte key buffer)

        Raises:
            SessionError: If the session cannot encrypt or the id was reused
        """
        with self._lock:
            self._require_open()
            if self._secret is None:
                raise SessionError(ErrorCode.E112_INVALID_STATE, "Session not established")

            encoded = file_id.encode("utf-8")
            if not encoded or len(encoded) > MAX_FILE_ID_LENGTH:
                raise SessionError(
                    ErrorCode.E002_INVALID_ARGUMENT, "Invalid file id", {"length": len(encoded)}
                )

            if sending:
                if file_id in self._file_ids:
                    raise SessionError(
                        ErrorCode.E002_INVALID_ARGUMENT,
                        "File id already used in this generation",
                        {"file_id": file_id},
                    )
                self._file_ids.add(file_id)
                direction = self.local_direction
            else:
                direction = self.remote_direction

            key = derive_key(
                self._secret,
                KDF_LABEL_FILE + direction.value + struct.pack("!I", self.generation) + encoded,
            )
            buffer = bytearray(key)
            self._file_keys.append(buffer)
            return self.generation, buffer

    def file_key_material(self, key: bytearray) -> Optional[bytes]:
        """Copy of a file key, or None once it has been retired."""
        with self._lock:
            if any(k is key for k in self._file_keys):
                return bytes(key)
            return None

    def release_file_key(self, key: bytearray) -> None:
        """Zero a file key the caller is done with."""
        with self._lock:
            zeroize(key)
            self._file_keys = [k for k in self._file_keys if k is not key]

    def _retire_file_keys(self) -> None:
        """Zero every file key of the current generation. Caller holds the lock."""
        for key in self._file_keys:
            zeroize(key)
        self._file_keys = []

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def hello(self) -> bytes:
        """HELLO message carrying the local identity public key.

        Raises:
            SessionError: If the handshake is already over
        """
        with self._lock:
            self._require_open()
            if self.state != SessionState.HANDSHAKING:
                raise SessionError(ErrorCode.E112_INVALID_STATE, "Handshake already complete")
            self._hello_sent = True
            return Protocol.create_hello(self.identity.public_key)

    def _handle_hello(self, payload: Dict, result: ReceiveResult) -> None:
        remote_key = b64field(payload, "public_key")

        if self.state != SessionState.HANDSHAKING:
            if remote_key == self.remote_public_key:
                logger.debug(f"Session {self.peer_id}: ignoring repeated HELLO")
                return
            raise self._desync("Unexpected HELLO on open session", {"state": self.state.name})

        if self.remote_public_key is not None:
            if remote_key != self.remote_public_key:
                self._terminate(SessionEvent.HANDSHAKE_FAILED)
                raise InvalidPeerKey("Peer changed its key during the handshake")
            return

        try:
            remote_key = validate_public_key(remote_key)
            if remote_key == self.identity.public_key:
                raise InvalidPeerKey("Peer presented our own public key")
            shared = exchange(self.identity, remote_key)
        except InvalidPeerKey:
            self._terminate(SessionEvent.HANDSHAKE_FAILED, "invalid_peer_key")
            raise

        self.remote_public_key = remote_key
        self._secret = bytearray(derive_key(shared, KDF_LABEL_GENERATION))
        del shared

        if not self._hello_sent:
            self._hello_sent = True
            result.outbound.append(Protocol.create_hello(self.identity.public_key))

        tag = confirmation_tag(self._confirm_key(self.local_direction), self._transcript())
        result.outbound.append(Protocol.create_confirm(tag))
        self._confirm_sent = True
        self._maybe_establish()

    def _handle_confirm(self, payload: Dict) -> None:
        if self.state != SessionState.HANDSHAKING:
            raise self._desync("Unexpected CONFIRM on open session", {"state": self.state.name})
        if self._secret is None:
            raise ProtocolError(ErrorCode.E206_INVALID_MESSAGE, "CONFIRM before HELLO")

        tag = b64field(payload, "tag")
        if not verify_confirmation(self._confirm_key(self.remote_direction), self._transcript(), tag):
            logger.warning(f"Session {self.peer_id}: handshake confirmation failed")
            self._terminate(SessionEvent.HANDSHAKE_FAILED)
            raise AuthenticationFailure(
                "Handshake confirmation failed", code=ErrorCode.E106_CONFIRMATION_FAILED
            )

        self._confirm_received = True
        self._maybe_establish()

    def _maybe_establish(self) -> None:
        if self._confirm_sent and self._confirm_received:
            self._transition(SessionEvent.HANDSHAKE_CONFIRMED)

    # ------------------------------------------------------------------
    # Rekeying
    # ------------------------------------------------------------------

    def _rekey_transcript(self, label: bytes, generation: int, public_key: bytes) -> bytes:
        return label + _GENERATION_PAIR.pack(self.generation, generation) + public_key

    def _rekey_mac(self, label: bytes, direction: Direction, generation: int, public_key: bytes) -> bytes:
        return confirmation_tag(
            self._control_key(direction), self._rekey_transcript(label, generation, public_key)
        )

    def _start_rekey(self) -> bytes:
        """Enter REKEYING and build a REKEY_REQUEST. Caller holds the lock."""
        self._pending_rekey = generate()
        self._pending_generation = self.generation + 1
        mac = self._rekey_mac(
            b"REQ", self.local_direction, self._pending_generation, self._pending_rekey.public_key
        )
        self._transition(SessionEvent.REKEY_STARTED)
        logger.info(f"Session {self.peer_id}: requesting generation {self._pending_generation}")
        return Protocol.create_rekey(
            MessageType.REKEY_REQUEST, self._pending_generation, self._pending_rekey.public_key, mac
        )

    def request_rekey(self) -> bytes:
        """Start a rekey explicitly.

        Raises:
            SessionError: Unless the session is ESTABLISHED
        """
        try:
            with self._lock:
                self._require_open()
                if self.state != SessionState.ESTABLISHED:
                    raise SessionError(
                        ErrorCode.E112_INVALID_STATE, f"Cannot rekey in state {self.state.name}"
                    )
                return self._start_rekey()
        finally:
            self._dispatch_events()

    def _check_rekey_message(self, label: bytes, payload: Dict, expected_generation: int) -> bytes:
        generation = payload["generation"]
        if generation != expected_generation:
            raise self._desync(
                "Rekey generation out of sequence",
                {"generation": generation, "expected": expected_generation},
            )

        public_key = b64field(payload, "public_key")
        mac = b64field(payload, "mac")
        transcript = self._rekey_transcript(label, generation, public_key)
        if not verify_confirmation(self._control_key(self.remote_direction), transcript, mac):
            raise self._record_auth_failure(
                AuthenticationFailure("Rekey message authentication failed")
            )

        try:
            return validate_public_key(public_key)
        except InvalidPeerKey:
            self._terminate(SessionEvent.HANDSHAKE_FAILED, "invalid_peer_key")
            raise

    def _handle_rekey_request(self, payload: Dict, result: ReceiveResult) -> None:
        if self.state not in (SessionState.ESTABLISHED, SessionState.REKEYING):
            raise ProtocolError(
                ErrorCode.E206_INVALID_MESSAGE, f"REKEY_REQUEST in state {self.state.name}"
            )

        remote_ephemeral = self._check_rekey_message(b"REQ", payload, self.generation + 1)

        if self.state == SessionState.REKEYING:
            if self.identity.public_key < self.remote_public_key:
                logger.info(f"Session {self.peer_id}: simultaneous rekey, keeping our request")
                return
            logger.info(f"Session {self.peer_id}: simultaneous rekey, answering peer request")
            self._pending_rekey.zeroize()
            self._pending_rekey = None
            self._pending_generation = None
        else:
            self._transition(SessionEvent.REKEY_STARTED)

        ephemeral = generate()
        try:
            new_generation = self.generation + 1
            mac = self._rekey_mac(b"RSP", self.local_direction, new_generation, ephemeral.public_key)
            dh_secret = exchange(ephemeral, remote_ephemeral)
            new_secret = derive_key(dh_secret, KDF_LABEL_REKEY, salt=bytes(self._secret))
            response = Protocol.create_rekey(
                MessageType.REKEY_RESPONSE, new_generation, ephemeral.public_key, mac
            )
            self._install_generation(new_secret, new_generation)
        finally:
            ephemeral.zeroize()

        result.outbound.append(response)
        self._transition(SessionEvent.REKEY_COMPLETED)

    def _handle_rekey_response(self, payload: Dict) -> None:
        if self.state != SessionState.REKEYING or self._pending_rekey is None:
            raise self._desync("Unexpected REKEY_RESPONSE", {"state": self.state.name})

        remote_ephemeral = self._check_rekey_message(b"RSP", payload, self._pending_generation)

        try:
            dh_secret = exchange(self._pending_rekey, remote_ephemeral)
            new_secret = derive_key(dh_secret, KDF_LABEL_REKEY, salt=bytes(self._secret))
            self._install_generation(new_secret, self._pending_generation)
        finally:
            if self._pending_rekey is not None:
                self._pending_rekey.zeroize()
            self._pending_rekey = None
            self._pending_generation = None

        self._transition(SessionEvent.REKEY_COMPLETED)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: bytes) -> CipherFrame:
        """Encrypt one message for the peer.

        When this message reaches the rekey threshold the session enters
        REKEYING and queues a REKEY_REQUEST (see ``pending_outbound``).

        Raises:
            SessionError: If the session is not ESTABLISHED
        """
        try:
            with self._lock:
                self._require_open()
                if self.state == SessionState.REKEYING:
                    raise SessionError(
                        ErrorCode.E110_REKEY_IN_PROGRESS,
                        "Rekey in progress",
                        {"generation": self.generation},
                    )
                if self.state != SessionState.ESTABLISHED:
                    raise SessionError(ErrorCode.E112_INVALID_STATE, "Session not established")

                counter = self.send_counter
                key = self._message_key(self.local_direction, counter)
                frame = envelope.encrypt(
                    key, plaintext, AssociatedData(self.identity.public_key, self.generation), counter
                )
                self.send_counter = counter + 1
                logger.debug(
                    f"Session {self.peer_id}: encrypted message "
                    f"{self.generation}/{counter}"
                )

                if self.send_counter >= self.config.rekey_threshold:
                    self._outbound.append(self._start_rekey())

                return frame
        finally:
            self._dispatch_events()

    def pending_outbound(self) -> List[bytes]:
        """Control messages queued for the peer (e.g. a REKEY_REQUEST)."""
        with self._lock:
            outbound, self._outbound = self._outbound, []
            return outbound

    def send(self, plaintext: bytes) -> List[bytes]:
        """Encrypt a message and return everything to transmit, in order."""
        frame = self.encrypt(plaintext)
        return [Protocol.create_frame(frame)] + self.pending_outbound()

    def decrypt(self, frame: CipherFrame) -> List[bytes]:
        """Authenticate and decrypt a message frame.

        Frames are released strictly in counter order; an early frame is
        authenticated and held until the gap before it is filled.

        Returns:
            Plaintexts now deliverable, possibly empty

        Raises:
            AuthenticationFailure: If the frame does not verify
            ReplayOrDesync: If the frame regresses; the session is terminated
            SessionError: If the session cannot receive messages
        """
        try:
            with self._lock:
                return self._decrypt_locked(frame)
        finally:
            self._dispatch_events()

    def _decrypt_locked(self, frame: CipherFrame) -> List[bytes]:
        self._require_open()
        if self._secret is None or self.state == SessionState.HANDSHAKING:
            raise SessionError(ErrorCode.E112_INVALID_STATE, "Session not established")

        if frame.kind != FrameKind.MESSAGE or frame.sender_id != self.remote_public_key:
            raise self._record_auth_failure(
                AuthenticationFailure("Frame is not a message from this peer")
            )

        if frame.generation != self.generation:
            raise self._desync(
                "Frame generation out of sequence",
                {"generation": frame.generation, "expected": self.generation},
            )

        counter = frame.counter
        if counter < self.recv_counter or counter in self._reorder:
            raise self._desync(
                "Replayed or regressed frame counter",
                {"counter": counter, "expected": self.recv_counter},
            )

        if counter - self.recv_counter > self.config.max_reorder_buffer:
            raise self._desync(
                "Frame too far ahead of expected counter",
                {"counter": counter, "expected": self.recv_counter},
            )

        try:
            plaintext = envelope.decrypt(self._message_key(self.remote_direction, counter), frame)
        except AuthenticationFailure as e:
            raise self._record_auth_failure(e)

        if counter != self.recv_counter:
            self._reorder[counter] = plaintext
            logger.debug(f"Session {self.peer_id}: holding early frame {counter}")
            return []

        delivered = [plaintext]
        self.recv_counter += 1
        while self.recv_counter in self._reorder:
            delivered.append(self._reorder.pop(self.recv_counter))
            self.recv_counter += 1
        return delivered

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------

    def receive(self, data: bytes) -> ReceiveResult:
        """Process one message from the peer.

        Returns:
            Plaintexts to display and messages to send back

        Raises:
            ProtocolError: If the message is malformed
            InvalidPeerKey: If the peer key is unusable; session terminated
            AuthenticationFailure: If a frame or handshake does not verify
            ReplayOrDesync: On counter or generation regression; session terminated
            SessionError: If the session is terminated
        """
        result = ReceiveResult()
        try:
            with self._lock:
                self._require_open()
                msg_type, payload = Protocol.unpack_message(data)

                if msg_type == MessageType.CIPHER_FRAME:
                    try:
                        frame = CipherFrame.from_bytes(payload)
                    except AuthenticationFailure as e:
                        raise self._record_auth_failure(e)
                    result.plaintexts.extend(self._decrypt_locked(frame))
                    return result

                fields = Protocol.parse_control(msg_type, payload)

                if msg_type == MessageType.HELLO:
                    self._handle_hello(fields, result)
                elif msg_type == MessageType.CONFIRM:
                    self._handle_confirm(fields)
                elif msg_type == MessageType.REKEY_REQUEST:
                    self._handle_rekey_request(fields, result)
                elif msg_type == MessageType.REKEY_RESPONSE:
                    self._handle_rekey_response(fields)
                elif msg_type == MessageType.CLOSE:
                    logger.info(f"Session {self.peer_id}: peer closed ({fields['reason']})")
                    self._terminate(SessionEvent.PEER_CLOSED)

                return result
        finally:
            self._dispatch_events()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def close(self, reason: str = "closed") -> Optional[bytes]:
        """Terminate the session and zero its key material.

        Waits for any in-flight operation on this session. Idempotent.

        Returns:
            CLOSE message for the peer, or None if nothing needs sending
        """
        try:
            with self._lock:
                if self.state == SessionState.TERMINATED:
                    return None
                message = Protocol.create_close(reason) if self._hello_sent else None
                self._terminate(SessionEvent.CLOSE_REQUESTED, reason)
                return message
        finally:
            self._dispatch_events()

    def get_statistics(self) -> Dict:
        """Session counters and state, without key material."""
        with self._lock:
            return {
                "peer_id": self.peer_id,
                "state": self.state.name,
                "generation": self.generation,
                "send_counter": self.send_counter,
                "recv_counter": self.recv_counter,
                "auth_failures": self.auth_failures,
                "buffered_frames": len(self._reorder),
                "verified": self.verified,
                "authenticated": self.authenticated,
                "remote_fingerprint": self.remote_fingerprint,
                "termination_reason": self.termination_reason,
            }
