"""
Aegis - File Transfer Integrity

This module carries files over an established session as a sequence of
encrypted chunks. Each chunk is a CHUNK cipher frame whose counter is the
chunk index and whose authenticated context is the file id, encrypted
under a per-file key derived from the session generation current when the
transfer starts. The session zeroes that key when it rekeys or terminates,
which retires the transfer; the sender restarts it under the new
generation. The receiver checks
every chunk on arrival, accepts chunks in any order, and only releases the
file once every chunk is present and the whole-file SHA-256 digest matches.

Author: aegischat contributors
Version: 0.3.0
"""

import hashlib
import hmac
import logging
import string
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Union

from . import envelope
from .config import Config
from .envelope import AssociatedData, CipherFrame, FrameKind
from .errors import AuthenticationFailure, DigestMismatch, ErrorCode, TransferError
from .ratchet import Session

logger = logging.getLogger(__name__)


def chunk_count(total_size: int, chunk_size: int) -> int:
    """Number of chunks for a file: ceil(total_size / chunk_size)."""
    return (total_size + chunk_size - 1) // chunk_size


@dataclass(frozen=True)
class TransferOffer:
    """What the sender announces before streaming chunks.

    Attributes:
        file_id: Identifier unique within the session generation
        total_size: File size in bytes
        chunk_size: Size of every chunk except possibly the last
        expected_digest: Hex SHA-256 of the whole file
    """

    file_id: str
    total_size: int
    chunk_size: int
    expected_digest: str

    @property
    def total_chunks(self) -> int:
        return chunk_count(self.total_size, self.chunk_size)


@dataclass(frozen=True)
class TransferProgress:
    """Bytes received so far for one file."""

    file_id: str
    bytes_received: int
    total_size: int

    @property
    def fraction(self) -> float:
        if self.total_size == 0:
            return 1.0
        return self.bytes_received / self.total_size

    @property
    def complete(self) -> bool:
        return self.bytes_received == self.total_size


@dataclass
class TransferState:
    """Receiver-side bookkeeping for one file."""

    file_id: str
    total_size: int
    chunk_size: int
    expected_digest: str
    generation: int
    key: bytearray
    chunks: Dict[int, bytes] = field(default_factory=dict)
    prefix: int = 0  # Chunks [0, prefix) are folded into the digest
    digest: "hashlib._Hash" = field(default_factory=hashlib.sha256)

    @property
    def total_chunks(self) -> int:
        return chunk_count(self.total_size, self.chunk_size)

    @property
    def bytes_received(self) -> int:
        return sum(len(chunk) for chunk in self.chunks.values())

    def expected_length(self, index: int) -> int:
        if index == self.total_chunks - 1:
            return self.total_size - self.chunk_size * index
        return self.chunk_size

    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.chunks]

    def discard(self, session: Session) -> None:
        session.release_file_key(self.key)
        self.chunks.clear()


def _retired(file_id: str, session: Session) -> TransferError:
    return TransferError(
        ErrorCode.E609_TRANSFER_RETIRED,
        f"File key for {file_id} was retired",
        {"file_id": file_id, "generation": session.generation, "state": session.state.name},
    )


def _validate_digest(expected_digest: str) -> str:
    digest = expected_digest.lower() if isinstance(expected_digest, str) else ""
    if len(digest) != 64 or not all(c in string.hexdigits for c in digest):
        raise TransferError(ErrorCode.E002_INVALID_ARGUMENT, "Expected digest must be hex SHA-256")
    return digest


class TransferSender:
    """Splits a file into encrypted chunks for one peer.

    The per-file key is derived when the sender is created. A rekey or
    session termination before the last chunk retires the sender.
    """

    def __init__(
        self,
        session: Session,
        file_id: str,
        data: bytes,
        chunk_size: Optional[int] = None,
    ):
        config = session.config
        self.file_id = file_id
        self.data = bytes(data)
        self.chunk_size = chunk_size or config.chunk_size

        if self.chunk_size < 1:
            raise TransferError(ErrorCode.E002_INVALID_ARGUMENT, "Chunk size must be positive")
        if len(self.data) > config.max_file_size:
            raise TransferError(
                ErrorCode.E601_FILE_TOO_LARGE,
                f"File too large: {len(self.data)} > {config.max_file_size}",
                {"size": len(self.data), "max_size": config.max_file_size},
            )

        self.session = session
        self._sender_id = session.identity.public_key
        self.generation, self._key = session.derive_file_key(file_id, sending=True)
        self._closed = False
        self.expected_digest = hashlib.sha256(self.data).hexdigest()

        logger.info(
            f"Prepared transfer {file_id}: size={len(self.data)}, chunks={self.total_chunks}"
        )

    @property
    def total_chunks(self) -> int:
        return chunk_count(len(self.data), self.chunk_size)

    def offer(self) -> TransferOffer:
        return TransferOffer(self.file_id, len(self.data), self.chunk_size, self.expected_digest)

    def chunk(self, index: int) -> CipherFrame:
        """Encrypt a single chunk.

        Raises:
            TransferError: If the index is out of range, the sender is closed
                or the file key was retired
        """
        if not 0 <= index < self.total_chunks:
            raise TransferError(
                ErrorCode.E606_INVALID_CHUNK,
                f"Invalid chunk number: {index}",
                {"chunk": index, "total": self.total_chunks},
            )
        if self._closed:
            raise TransferError(ErrorCode.E600_FILE_TRANSFER_ERROR, "Transfer sender is closed")
        key = self.session.file_key_material(self._key)
        if key is None:
            raise _retired(self.file_id, self.session)

        start = index * self.chunk_size
        associated_data = AssociatedData(
            self._sender_id, self.generation, FrameKind.CHUNK, self.file_id.encode("utf-8")
        )
        return envelope.encrypt(
            key, self.data[start : start + self.chunk_size], associated_data, index
        )

    def chunks(self) -> Iterator[CipherFrame]:
        """Encrypted chunks in index order."""
        for index in range(self.total_chunks):
            yield self.chunk(index)

    def close(self) -> None:
        """Zero the per-file key."""
        self.session.release_file_key(self._key)
        self._closed = True


class TransferIntegrityModule:
    """Receives chunked files from one peer and verifies them.

    Attributes:
        session: Session the chunks arrive on
        on_progress: Called with a TransferProgress after every new chunk
    """

    def __init__(
        self,
        session: Session,
        config: Optional[Config] = None,
        on_progress: Optional[Callable[[TransferProgress], None]] = None,
    ):
        self.session = session
        self.config = config or session.config
        self.on_progress = on_progress
        self._transfers: Dict[str, TransferState] = {}
        self._lock = threading.Lock()

    def begin(
        self,
        file_id: str,
        total_size: int,
        expected_digest: str,
        chunk_size: Optional[int] = None,
    ) -> TransferProgress:
        """Start receiving a file.

        Raises:
            TransferError: If the id is already in use, the size is too
                large, or an argument is malformed
        """
        chunk_size = chunk_size or self.config.chunk_size
        digest = _validate_digest(expected_digest)

        if total_size < 0 or chunk_size < 1:
            raise TransferError(
                ErrorCode.E002_INVALID_ARGUMENT,
                "Invalid transfer size",
                {"total_size": total_size, "chunk_size": chunk_size},
            )
        if total_size > self.config.max_file_size:
            raise TransferError(
                ErrorCode.E601_FILE_TOO_LARGE,
                f"File too large: {total_size} > {self.config.max_file_size}",
                {"size": total_size, "max_size": self.config.max_file_size},
            )

        with self._lock:
            existing = self._transfers.get(file_id)
            if existing is not None:
                if self.session.file_key_material(existing.key) is not None:
                    raise TransferError(
                        ErrorCode.E608_DUPLICATE_TRANSFER,
                        f"Transfer already in progress: {file_id}",
                        {"file_id": file_id},
                    )
                # Retired by a rekey; the sender is restarting it
                del self._transfers[file_id]
                existing.discard(self.session)

            generation, key = self.session.derive_file_key(file_id, sending=False)
            self._transfers[file_id] = TransferState(
                file_id=file_id,
                total_size=total_size,
                chunk_size=chunk_size,
                expected_digest=digest,
                generation=generation,
                key=key,
            )

        logger.info(
            f"Receiving {file_id} from {self.session.peer_id}: "
            f"size={total_size}, chunks={chunk_count(total_size, chunk_size)}"
        )
        return TransferProgress(file_id, 0, total_size)

    def accept(self, offer: TransferOffer) -> TransferProgress:
        """Start receiving the file described by ``offer``."""
        return self.begin(offer.file_id, offer.total_size, offer.expected_digest, offer.chunk_size)

    def _get(self, file_id: str) -> TransferState:
        state = self._transfers.get(file_id)
        if state is None:
            raise TransferError(
                ErrorCode.E607_UNKNOWN_TRANSFER, f"Unknown transfer: {file_id}", {"file_id": file_id}
            )
        return state

    def _live_key(self, state: TransferState) -> bytes:
        """File key of a transfer; drops the transfer if the key was retired. Caller holds the lock."""
        key = self.session.file_key_material(state.key)
        if key is None:
            del self._transfers[state.file_id]
            state.discard(self.session)
            logger.warning(f"Transfer {state.file_id} dropped: file key retired")
            raise _retired(state.file_id, self.session)
        return key

    def submit_chunk(
        self, file_id: str, index: int, chunk: Union[CipherFrame, bytes]
    ) -> TransferProgress:
        """Authenticate, decrypt and store one chunk.

        Chunks may arrive in any order. A chunk already received is ignored.

        Raises:
            AuthenticationFailure: If the chunk does not verify (discarded)
            TransferError: If the index or chunk length is invalid, or the
                session rekeyed or terminated since the transfer began
        """
        failure = None
        with self._lock:
            state = self._get(file_id)
            key = self._live_key(state)

            if not 0 <= index < state.total_chunks:
                raise TransferError(
                    ErrorCode.E606_INVALID_CHUNK,
                    f"Invalid chunk number: {index}",
                    {"chunk": index, "total": state.total_chunks},
                )

            if index in state.chunks:
                logger.debug(f"Ignoring duplicate chunk {index} of {file_id}")
                return TransferProgress(file_id, state.bytes_received, state.total_size)

            try:
                frame = chunk if isinstance(chunk, CipherFrame) else CipherFrame.from_bytes(chunk)
                data = self._open(state, key, index, frame)
            except AuthenticationFailure as e:
                logger.warning(f"Discarded chunk {index} of {file_id}: {e.message}")
                failure = e
            else:
                if len(data) != state.expected_length(index):
                    raise TransferError(
                        ErrorCode.E606_INVALID_CHUNK,
                        f"Chunk {index} has wrong length",
                        {"chunk": index, "length": len(data), "expected": state.expected_length(index)},
                    )

                state.chunks[index] = data
                while state.prefix in state.chunks:
                    state.digest.update(state.chunks[state.prefix])
                    state.prefix += 1

                progress = TransferProgress(file_id, state.bytes_received, state.total_size)

        # Session callbacks may call back into this module
        if failure is not None:
            raise self.session.record_auth_failure(failure)

        logger.debug(f"Received chunk {index + 1}/{state.total_chunks} of {file_id}")

        if self.on_progress:
            try:
                self.on_progress(progress)
            except Exception as e:
                logger.error(f"Progress callback error: {e}")

        return progress

    def _open(self, state: TransferState, key: bytes, index: int, frame: CipherFrame) -> bytes:
        if (
            frame.kind != FrameKind.CHUNK
            or frame.counter != index
            or frame.generation != state.generation
            or frame.context != state.file_id.encode("utf-8")
            or frame.sender_id != self.session.remote_public_key
        ):
            raise AuthenticationFailure(
                "Chunk frame does not belong to this transfer",
                {"file_id": state.file_id, "chunk": index},
            )
        return envelope.decrypt(key, frame)

    def progress(self, file_id: str) -> TransferProgress:
        """Current progress for a transfer. Does not change any state."""
        with self._lock:
            state = self._get(file_id)
            return TransferProgress(file_id, state.bytes_received, state.total_size)

    def finalize(self, file_id: str) -> bytes:
        """Reassemble the file once every chunk is present and verified.

        The transfer is removed whether or not it succeeds.

        Raises:
            DigestMismatch: If chunks are missing or the digest differs;
                the partial file is discarded
            TransferError: If the session rekeyed or terminated since the
                transfer began
        """
        with self._lock:
            state = self._get(file_id)
            self._live_key(state)
            del self._transfers[file_id]

        try:
            missing = state.missing_chunks()
            if missing:
                logger.warning(f"Transfer {file_id} incomplete: {len(missing)} chunks missing")
                raise DigestMismatch(
                    f"Transfer incomplete: {len(missing)} chunks missing",
                    {"file_id": file_id, "missing": missing[:16], "missing_count": len(missing)},
                )

            if not hmac.compare_digest(state.digest.hexdigest(), state.expected_digest):
                logger.warning(f"Transfer {file_id} failed digest verification")
                raise DigestMismatch(details={"file_id": file_id})

            data = b"".join(state.chunks[i] for i in range(state.total_chunks))
            logger.info(f"Transfer {file_id} verified ({state.total_size} bytes)")
            return data
        finally:
            state.discard(self.session)

    def abort(self, file_id: str) -> bool:
        """Discard a transfer and zero its key. Returns True if it existed."""
        with self._lock:
            state = self._transfers.pop(file_id, None)
        if state is None:
            return False
        state.discard(self.session)
        logger.info(f"Aborted transfer {file_id}")
        return True

    def active_transfers(self) -> List[str]:
        with self._lock:
            return list(self._transfers)
