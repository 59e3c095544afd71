"""
Aegis - Room key coordination.

Manages the local participant's side of every room it belongs to. A room is
a full mesh of pairwise sessions: there is no shared room key, and every
broadcast is encrypted once per member under that member's own session.
Members start PENDING and only receive room traffic once their session is
established.
"""

import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .config import Config
from .envelope import CipherFrame
from .errors import ErrorCode, RoomError, SessionError
from .identity import Identity
from .protocol import MessageType, Protocol
from .ratchet import (
    ReceiveResult,
    SecurityEvent,
    Session,
    SessionLifecycleEvent,
    SessionState,
)

logger = logging.getLogger(__name__)


class MembershipState(Enum):
    """Membership state of a remote participant."""

    PENDING = "pending"
    ACTIVE = "active"


@dataclass
class RoomMember:
    """A remote participant and the session shared with it."""

    participant_id: str
    session: Session
    state: MembershipState = MembershipState.PENDING
    joined_at: float = field(default_factory=time.time)
    backlog: List[bytes] = field(default_factory=list)  # Plaintexts held during rekey


@dataclass(frozen=True)
class MembershipEvent:
    """Reported when a member joins, activates, leaves or is removed."""

    room_id: str
    participant_id: str
    kind: str
    reason: Optional[str] = None


class Room:
    """One room: remote members keyed by participant id."""

    def __init__(self, room_id: str):
        self.room_id = room_id
        self.members: Dict[str, RoomMember] = {}
        self.created_at = time.time()

    def get_member(self, participant_id: str) -> Optional[RoomMember]:
        return self.members.get(participant_id)

    def active_members(self) -> List[RoomMember]:
        return [m for m in self.members.values() if m.state == MembershipState.ACTIVE]

    def pending_members(self) -> List[RoomMember]:
        return [m for m in self.members.values() if m.state == MembershipState.PENDING]


class RoomKeyCoordinator:
    """Fan-out and fan-in of room traffic over pairwise sessions.

    Attributes:
        identity: Local identity shared by every session
        participant_id: Local participant id, never a member of its own rooms
        rooms: Room id to Room
    """

    def __init__(
        self,
        identity: Identity,
        config: Optional[Config] = None,
        participant_id: Optional[str] = None,
    ):
        self.identity = identity
        self.config = config or Config.defaults()
        self.participant_id = participant_id or identity.fingerprint
        self.rooms: Dict[str, Room] = {}
        self._lock = threading.RLock()

        # Callbacks
        self.on_membership_change: Optional[Callable[[MembershipEvent], None]] = None
        self.on_state_change: Optional[Callable[[str, SessionLifecycleEvent], None]] = None
        self.on_security_event: Optional[Callable[[str, SecurityEvent], None]] = None

    def _emit(self, events: List[MembershipEvent]) -> None:
        if not self.on_membership_change:
            return
        for event in events:
            try:
                self.on_membership_change(event)
            except Exception as e:
                logger.error(f"Membership callback error: {e}")

    def _get_room(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            raise RoomError(ErrorCode.E501_ROOM_NOT_FOUND, f"Room not found: {room_id}")
        return room

    def _get_member(self, room: Room, participant_id: str) -> RoomMember:
        member = room.get_member(participant_id)
        if member is None:
            raise RoomError(
                ErrorCode.E503_MEMBER_NOT_FOUND,
                f"{participant_id} is not a member of {room.room_id}",
                {"room_id": room.room_id, "participant_id": participant_id},
            )
        return member

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def create_room(self, room_id: str) -> Room:
        """Create an empty room.

        Raises:
            RoomError: If the room already exists
        """
        with self._lock:
            if room_id in self.rooms:
                raise RoomError(ErrorCode.E502_ROOM_ALREADY_EXISTS, f"Room already exists: {room_id}")
            room = Room(room_id)
            self.rooms[room_id] = room
        logger.info(f"Created room {room_id}")
        return room

    def _add_member(self, room: Room, participant_id: str) -> RoomMember:
        """Create a PENDING member with a fresh session. Caller holds the lock."""
        if participant_id == self.participant_id:
            raise RoomError(ErrorCode.E002_INVALID_ARGUMENT, "Cannot add the local participant")
        if participant_id in room.members:
            raise RoomError(
                ErrorCode.E504_MEMBER_ALREADY_JOINED,
                f"{participant_id} already joined {room.room_id}",
                {"room_id": room.room_id, "participant_id": participant_id},
            )

        session = Session(self.identity, participant_id, self.config)
        session.on_state_change = functools.partial(self._on_session_state, room.room_id, session)
        session.on_security_event = functools.partial(self._on_security_event, room.room_id)

        member = RoomMember(participant_id, session)
        room.members[participant_id] = member
        logger.info(f"{participant_id} joined room {room.room_id} (pending)")
        return member

    def join(self, room_id: str, participant_id: str) -> bytes:
        """Add a remote participant and start the handshake with it.

        Returns:
            HELLO message for the participant

        Raises:
            RoomError: If the room is unknown or the participant is present
        """
        with self._lock:
            room = self._get_room(room_id)
            member = self._add_member(room, participant_id)
            hello = member.session.hello()

        self._emit([MembershipEvent(room_id, participant_id, "joined")])
        return hello

    def leave(self, room_id: str, participant_id: str) -> Optional[bytes]:
        """Remove a participant and close its session.

        Returns:
            CLOSE message for the participant, if its handshake had started
        """
        with self._lock:
            room = self._get_room(room_id)
            member = self._get_member(room, participant_id)
            del room.members[participant_id]
            member.backlog.clear()
            message = member.session.close("left")

        logger.info(f"{participant_id} left room {room_id}")
        self._emit([MembershipEvent(room_id, participant_id, "left")])
        return message

    def leave_room(self, room_id: str) -> Dict[str, bytes]:
        """Local participant leaves: every session in the room is closed.

        Returns:
            CLOSE messages keyed by participant id
        """
        with self._lock:
            room = self._get_room(room_id)
            del self.rooms[room_id]
            members = list(room.members.values())
            room.members.clear()

            closes = {}
            for member in members:
                member.backlog.clear()
                message = member.session.close("left")
                if message is not None:
                    closes[member.participant_id] = message

        logger.info(f"Left room {room_id} ({len(members)} sessions closed)")
        self._emit([MembershipEvent(room_id, m.participant_id, "left") for m in members])
        return closes

    def members(self, room_id: str) -> List[str]:
        """Participant ids of ACTIVE members."""
        with self._lock:
            return sorted(m.participant_id for m in self._get_room(room_id).active_members())

    def pending_members(self, room_id: str) -> List[str]:
        """Participant ids of members still handshaking."""
        with self._lock:
            return sorted(m.participant_id for m in self._get_room(room_id).pending_members())

    def session(self, room_id: str, participant_id: str) -> Session:
        with self._lock:
            return self._get_member(self._get_room(room_id), participant_id).session

    # ------------------------------------------------------------------
    # Session callbacks
    # ------------------------------------------------------------------

    def _on_session_state(
        self, room_id: str, session: Session, event: SessionLifecycleEvent
    ) -> None:
        events = []
        with self._lock:
            room = self.rooms.get(room_id)
            member = room.get_member(event.peer_id) if room else None

            # Events from a session that has since been replaced are stale
            if member is not None and member.session is session:
                if (
                    event.to_state == SessionState.ESTABLISHED
                    and member.state == MembershipState.PENDING
                    and not session.is_terminated
                ):
                    member.state = MembershipState.ACTIVE
                    logger.info(f"{event.peer_id} is active in room {room_id}")
                    events.append(MembershipEvent(room_id, event.peer_id, "activated"))

                elif event.to_state == SessionState.TERMINATED:
                    del room.members[event.peer_id]
                    member.backlog.clear()
                    logger.warning(
                        f"Removed {event.peer_id} from room {room_id}: {event.reason}"
                    )
                    events.append(MembershipEvent(room_id, event.peer_id, "removed", event.reason))

        self._emit(events)

        if self.on_state_change:
            try:
                self.on_state_change(room_id, event)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def _on_security_event(self, room_id: str, event: SecurityEvent) -> None:
        if self.on_security_event:
            try:
                self.on_security_event(room_id, event)
            except Exception as e:
                logger.error(f"Security event callback error: {e}")

    # ------------------------------------------------------------------
    # Traffic
    # ------------------------------------------------------------------

    def receive(self, room_id: str, participant_id: str, data: bytes) -> ReceiveResult:
        """Process a message from a room participant.

        A HELLO from a participant that is not yet a member admits it as
        PENDING. Messages held for a member during a rekey are flushed into
        ``outbound`` once its session is established again.

        Raises:
            RoomError: If the room or participant is unknown
        """
        admitted = False
        with self._lock:
            room = self._get_room(room_id)
            member = room.get_member(participant_id)
            if member is None:
                msg_type, _ = Protocol.unpack_message(data)
                if msg_type != MessageType.HELLO:
                    raise RoomError(
                        ErrorCode.E503_MEMBER_NOT_FOUND,
                        f"{participant_id} is not a member of {room_id}",
                        {"room_id": room_id, "participant_id": participant_id},
                    )
                member = self._add_member(room, participant_id)
                admitted = True

        if admitted:
            self._emit([MembershipEvent(room_id, participant_id, "joined")])

        result = member.session.receive(data)

        with self._lock:
            if member.backlog and member.session.is_established:
                held, member.backlog = member.backlog, []
                for i, plaintext in enumerate(held):
                    try:
                        result.outbound.extend(member.session.send(plaintext))
                    except SessionError as e:
                        if e.code != ErrorCode.E110_REKEY_IN_PROGRESS:
                            raise
                        # Next rekey started mid-flush
                        member.backlog = held[i:]
                        result.outbound.extend(member.session.pending_outbound())
                        break
                logger.debug(f"Flushed held messages to {participant_id}")

        return result

    def _encrypt_for(self, member: RoomMember, plaintext: bytes) -> Optional[CipherFrame]:
        """Encrypt for one member, holding the message if it is mid-rekey."""
        if member.backlog:
            member.backlog.append(plaintext)
            return None
        try:
            return member.session.encrypt(plaintext)
        except SessionError as e:
            if e.code == ErrorCode.E110_REKEY_IN_PROGRESS:
                member.backlog.append(plaintext)
                logger.debug(f"Holding message for {member.participant_id} until rekey completes")
                return None
            if e.code == ErrorCode.E111_SESSION_TERMINATED:
                return None
            raise

    def broadcast(self, room_id: str, plaintext: bytes) -> Dict[str, CipherFrame]:
        """Encrypt a message for every ACTIVE member.

        Each member gets its own frame under its own session. The local
        participant receives nothing. Members that are mid-rekey get the
        message once their rekey completes.

        Returns:
            Frames keyed by participant id
        """
        with self._lock:
            room = self._get_room(room_id)
            frames = {}
            for member in room.active_members():
                frame = self._encrypt_for(member, plaintext)
                if frame is not None:
                    frames[member.participant_id] = frame

        logger.debug(f"Broadcast to {len(frames)} members of {room_id}")
        return frames

    def broadcast_bytes(self, room_id: str, plaintext: bytes) -> Dict[str, List[bytes]]:
        """Like ``broadcast`` but in wire form, with any rekey requests.

        Returns:
            Messages to send, in order, keyed by participant id
        """
        with self._lock:
            frames = self.broadcast(room_id, plaintext)
            outbound = {pid: [Protocol.create_frame(frame)] for pid, frame in frames.items()}
            for pid, messages in self.pending_outbound(room_id).items():
                outbound.setdefault(pid, []).extend(messages)
            return outbound

    def pending_outbound(self, room_id: str) -> Dict[str, List[bytes]]:
        """Drain control messages queued by member sessions."""
        with self._lock:
            room = self._get_room(room_id)
            pending = {}
            for member in list(room.members.values()):
                messages = member.session.pending_outbound()
                if messages:
                    pending[member.participant_id] = messages
            return pending
