"""
Aegis - File transfer tests.

Tests chunked transfer over an established session, out-of-order delivery,
tamper detection and digest verification.
"""

import dataclasses
import hashlib
import os
import random
import threading

import pytest

from aegischat.config import Config
from aegischat.errors import (
    AuthenticationFailure,
    DigestMismatch,
    ErrorCode,
    SessionError,
    TransferError,
)
from aegischat.ratchet import Session, SessionState
from aegischat.transfer import (
    TransferIntegrityModule,
    TransferProgress,
    TransferSender,
    chunk_count,
)


@pytest.fixture
def data() -> bytes:
    return os.urandom(10_500)


@pytest.fixture
def transfer(session_pair, data):
    """A sender on Alice's side and a receiver on Bob's, offer accepted."""
    a, b = session_pair
    sender = TransferSender(a, "report.pdf", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b)
    receiver.accept(sender.offer())
    return sender, receiver


def test_chunk_count():
    assert chunk_count(0, 1000) == 0
    assert chunk_count(1, 1000) == 1
    assert chunk_count(1000, 1000) == 1
    assert chunk_count(1001, 1000) == 2


def test_offer(transfer, data):
    sender, _ = transfer
    offer = sender.offer()
    assert offer.total_size == len(data)
    assert offer.total_chunks == 11
    assert offer.expected_digest == hashlib.sha256(data).hexdigest()


def test_in_order_transfer(transfer, data):
    sender, receiver = transfer
    for frame in sender.chunks():
        receiver.submit_chunk("report.pdf", frame.counter, frame)
    assert receiver.finalize("report.pdf") == data


def test_shuffled_chunks_finalize(transfer, data):
    """Test that chunks submitted in any order reassemble correctly."""
    sender, receiver = transfer
    frames = list(sender.chunks())
    random.Random(7).shuffle(frames)
    for frame in frames:
        receiver.submit_chunk("report.pdf", frame.counter, frame.to_bytes())
    assert receiver.finalize("report.pdf") == data
    assert receiver.active_transfers() == []


def test_tampered_chunk_gives_digest_mismatch(transfer):
    sender, receiver = transfer
    frames = list(sender.chunks())
    victim = frames[4]
    frames[4] = dataclasses.replace(
        victim, ciphertext=bytes([victim.ciphertext[0] ^ 0x80]) + victim.ciphertext[1:]
    )

    for frame in frames:
        if frame is frames[4]:
            with pytest.raises(AuthenticationFailure):
                receiver.submit_chunk("report.pdf", frame.counter, frame)
        else:
            receiver.submit_chunk("report.pdf", frame.counter, frame)

    with pytest.raises(DigestMismatch) as exc_info:
        receiver.finalize("report.pdf")
    assert exc_info.value.details["missing"] == [4]

    # Partial file is gone
    with pytest.raises(TransferError) as exc_info:
        receiver.progress("report.pdf")
    assert exc_info.value.code == ErrorCode.E607_UNKNOWN_TRANSFER


def test_tampered_chunk_counts_against_session(transfer):
    sender, receiver = transfer
    frame = sender.chunk(0)
    with pytest.raises(AuthenticationFailure):
        receiver.submit_chunk("report.pdf", 0, dataclasses.replace(frame, tag=bytes(16)))
    assert receiver.session.auth_failures == 1


def test_missing_chunk(transfer):
    sender, receiver = transfer
    for frame in list(sender.chunks())[:-1]:
        receiver.submit_chunk("report.pdf", frame.counter, frame)
    with pytest.raises(DigestMismatch):
        receiver.finalize("report.pdf")


def test_wrong_expected_digest(session_pair, data):
    a, b = session_pair
    sender = TransferSender(a, "f", data, chunk_size=4096)
    receiver = TransferIntegrityModule(b)
    receiver.begin("f", len(data), hashlib.sha256(b"something else").hexdigest(), 4096)
    for frame in sender.chunks():
        receiver.submit_chunk("f", frame.counter, frame)
    with pytest.raises(DigestMismatch):
        receiver.finalize("f")


def test_progress_reporting(session_pair, data):
    a, b = session_pair
    updates = []
    sender = TransferSender(a, "f", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b, on_progress=updates.append)
    receiver.accept(sender.offer())

    receiver.submit_chunk("f", 10, sender.chunk(10))
    progress = receiver.submit_chunk("f", 0, sender.chunk(0))

    assert progress == TransferProgress("f", 1500, len(data))
    assert receiver.progress("f") == progress
    assert [u.bytes_received for u in updates] == [500, 1500]
    assert 0 < progress.fraction < 1
    assert not progress.complete


def test_duplicate_chunk_ignored(transfer, data):
    sender, receiver = transfer
    frame = sender.chunk(0)
    first = receiver.submit_chunk("report.pdf", 0, frame)
    second = receiver.submit_chunk("report.pdf", 0, frame)
    assert first == second
    assert receiver.session.auth_failures == 0


def test_chunk_under_wrong_index(transfer):
    sender, receiver = transfer
    with pytest.raises(AuthenticationFailure):
        receiver.submit_chunk("report.pdf", 2, sender.chunk(1))


def test_index_out_of_range(transfer):
    sender, receiver = transfer
    with pytest.raises(TransferError) as exc_info:
        receiver.submit_chunk("report.pdf", 11, sender.chunk(0))
    assert exc_info.value.code == ErrorCode.E606_INVALID_CHUNK


def test_wrong_chunk_length(session_pair, data):
    a, b = session_pair
    sender = TransferSender(a, "f", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b)
    receiver.begin("f", len(data), sender.expected_digest, chunk_size=500)
    with pytest.raises(TransferError) as exc_info:
        receiver.submit_chunk("f", 0, sender.chunk(0))
    assert exc_info.value.code == ErrorCode.E606_INVALID_CHUNK


def test_chunk_for_other_file_rejected(session_pair, data):
    a, b = session_pair
    first = TransferSender(a, "first", data, chunk_size=1000)
    second = TransferSender(a, "second", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b)
    receiver.accept(first.offer())
    with pytest.raises(AuthenticationFailure):
        receiver.submit_chunk("first", 0, second.chunk(0))


def test_duplicate_transfer_id(transfer, data):
    sender, receiver = transfer
    with pytest.raises(TransferError) as exc_info:
        receiver.accept(sender.offer())
    assert exc_info.value.code == ErrorCode.E608_DUPLICATE_TRANSFER


def test_file_too_large(alice, bob, handshake):
    config = Config.defaults()
    config.set("transfer", "max_file_size", 100)
    a, b = Session(alice, "bob", config), Session(bob, "alice", config)
    handshake(a, b)

    with pytest.raises(TransferError) as exc_info:
        TransferSender(a, "big", b"x" * 101)
    assert exc_info.value.code == ErrorCode.E601_FILE_TOO_LARGE

    with pytest.raises(TransferError):
        TransferIntegrityModule(b).begin("big", 101, "0" * 64)


def test_invalid_digest_format(session_pair):
    _, b = session_pair
    with pytest.raises(TransferError):
        TransferIntegrityModule(b).begin("f", 10, "not-a-digest")


def test_sender_file_id_reuse(session_pair):
    a, _ = session_pair
    TransferSender(a, "same", b"data")
    with pytest.raises(SessionError):
        TransferSender(a, "same", b"data")


def test_empty_file(session_pair):
    a, b = session_pair
    sender = TransferSender(a, "empty", b"")
    receiver = TransferIntegrityModule(b)
    receiver.accept(sender.offer())
    assert list(sender.chunks()) == []
    assert receiver.finalize("empty") == b""


def test_abort(transfer):
    sender, receiver = transfer
    receiver.submit_chunk("report.pdf", 0, sender.chunk(0))
    state = receiver._transfers["report.pdf"]
    assert receiver.abort("report.pdf")
    assert state.key == bytearray(32)
    assert not receiver.abort("report.pdf")
    with pytest.raises(TransferError):
        receiver.submit_chunk("report.pdf", 1, sender.chunk(1))


def test_closed_sender(transfer):
    sender, _ = transfer
    sender.close()
    with pytest.raises(TransferError):
        sender.chunk(0)


def rekey(a: Session, b: Session) -> None:
    request = a.request_rekey()
    a.receive(b.receive(request).outbound[0])
    assert a.generation == b.generation == 1


def test_rekey_retires_transfer(session_pair, data):
    """Test that a rekey zeroes the file keys of the old generation."""
    a, b = session_pair
    sender = TransferSender(a, "f", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b)
    receiver.accept(sender.offer())
    receiver.submit_chunk("f", 0, sender.chunk(0))
    state = receiver._transfers["f"]
    stale = sender.chunk(1)

    rekey(a, b)

    assert sender._key == bytearray(32)
    assert state.key == bytearray(32)
    with pytest.raises(TransferError) as exc_info:
        sender.chunk(2)
    assert exc_info.value.code == ErrorCode.E609_TRANSFER_RETIRED
    with pytest.raises(TransferError) as exc_info:
        receiver.submit_chunk("f", 1, stale)
    assert exc_info.value.code == ErrorCode.E609_TRANSFER_RETIRED
    assert receiver.active_transfers() == []
    assert b.auth_failures == 0


def test_transfer_restarts_after_rekey(session_pair, data):
    a, b = session_pair
    receiver = TransferIntegrityModule(b)
    receiver.accept(TransferSender(a, "f", data, chunk_size=1000).offer())

    rekey(a, b)

    # Same id is accepted again under the new generation
    sender = TransferSender(a, "f", data, chunk_size=1000)
    receiver.accept(sender.offer())
    for frame in sender.chunks():
        assert frame.generation == 1
        receiver.submit_chunk("f", frame.counter, frame)
    assert receiver.finalize("f") == data


def test_close_zeroes_file_keys(session_pair, data):
    """Test that no chunk decrypts and no file is released after close."""
    a, b = session_pair
    sender = TransferSender(a, "f", data, chunk_size=1000)
    receiver = TransferIntegrityModule(b)
    receiver.accept(sender.offer())
    frames = list(sender.chunks())
    for frame in frames[:-1]:
        receiver.submit_chunk("f", frame.counter, frame)
    state = receiver._transfers["f"]

    b.close()
    a.close()

    assert state.key == bytearray(32)
    assert sender._key == bytearray(32)
    with pytest.raises(TransferError):
        receiver.submit_chunk("f", frames[-1].counter, frames[-1])
    with pytest.raises(TransferError):
        receiver.finalize("f")
    with pytest.raises(TransferError):
        sender.chunk(0)


def test_finalize_after_termination(transfer):
    sender, receiver = transfer
    for frame in sender.chunks():
        receiver.submit_chunk("report.pdf", frame.counter, frame)

    receiver.session.close()

    with pytest.raises(TransferError) as exc_info:
        receiver.finalize("report.pdf")
    assert exc_info.value.code == ErrorCode.E609_TRANSFER_RETIRED
    assert receiver.active_transfers() == []


def test_abort_from_termination_callback(transfer):
    """Test that session callbacks can re-enter the module on the third bad chunk."""
    sender, receiver = transfer
    session = receiver.session
    aborted = []

    def on_state_change(event):
        if event.to_state == SessionState.TERMINATED:
            aborted.append(receiver.abort("report.pdf"))

    session.on_state_change = on_state_change

    def submit_forged():
        for index in range(3):
            frame = dataclasses.replace(sender.chunk(index), tag=bytes(16))
            with pytest.raises(AuthenticationFailure):
                receiver.submit_chunk("report.pdf", index, frame)

    worker = threading.Thread(target=submit_forged, daemon=True)
    worker.start()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert session.state == SessionState.TERMINATED
    assert aborted == [True]
    assert receiver.active_transfers() == []


def test_security_event_callback_can_reenter(transfer):
    sender, receiver = transfer
    seen = []
    receiver.session.on_security_event = lambda event: seen.append(
        receiver.active_transfers()
    )
    with pytest.raises(AuthenticationFailure):
        receiver.submit_chunk("report.pdf", 0, dataclasses.replace(sender.chunk(0), tag=bytes(16)))
    assert seen == [["report.pdf"]]
