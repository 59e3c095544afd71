"""
Unit tests for aegischat.exchange module.

Tests the X25519 exchange, public key validation and key confirmation.
"""

import pytest

from aegischat.errors import InvalidPeerKey
from aegischat.exchange import (
    LOW_ORDER_POINTS,
    confirmation_tag,
    derive_key,
    exchange,
    validate_public_key,
    verify_confirmation,
)
from aegischat.identity import generate


class TestExchange:
    """Test shared secret derivation."""

    def test_symmetric(self, alice, bob):
        """Test that both sides derive the same secret."""
        assert exchange(alice, bob.public_key) == exchange(bob, alice.public_key)

    def test_secret_size(self, alice, bob):
        assert len(exchange(alice, bob.public_key)) == 32

    def test_different_pairs_differ(self, alice, bob):
        carol = generate()
        assert exchange(alice, bob.public_key) != exchange(alice, carol.public_key)

    def test_not_raw_dh_output(self, alice, bob):
        """Test that the returned secret is derived, not the raw DH output."""
        from aegischat.exchange import raw_exchange

        assert exchange(alice, bob.public_key) != raw_exchange(alice, bob.public_key)

    @pytest.mark.parametrize("point", sorted(LOW_ORDER_POINTS))
    def test_rejects_low_order_points(self, alice, point):
        with pytest.raises(InvalidPeerKey):
            exchange(alice, point)

    @pytest.mark.parametrize("point", sorted(LOW_ORDER_POINTS))
    def test_rejects_low_order_points_with_high_bit(self, point):
        """Test that setting the ignored top bit does not bypass the check."""
        flagged = point[:-1] + bytes([point[-1] | 0x80])
        with pytest.raises(InvalidPeerKey):
            validate_public_key(flagged)


class TestValidatePublicKey:
    """Test remote key validation."""

    def test_accepts_real_key(self, bob):
        assert validate_public_key(bytearray(bob.public_key)) == bob.public_key

    def test_rejects_wrong_length(self):
        with pytest.raises(InvalidPeerKey):
            validate_public_key(b"\x09" * 31)
        with pytest.raises(InvalidPeerKey):
            validate_public_key(b"\x09" * 33)

    def test_rejects_non_bytes(self):
        with pytest.raises(InvalidPeerKey):
            validate_public_key("not bytes")


class TestDeriveKey:
    """Test the HKDF helper."""

    def test_labels_separate_keys(self):
        secret = b"\x01" * 32
        assert derive_key(secret, b"label-a") != derive_key(secret, b"label-b")

    def test_salt_changes_key(self):
        secret = b"\x01" * 32
        assert derive_key(secret, b"label") != derive_key(secret, b"label", salt=b"salt")

    def test_length(self):
        assert len(derive_key(b"\x01" * 32, b"label", length=64)) == 64


class TestConfirmation:
    """Test handshake confirmation tags."""

    def test_verify(self):
        key = b"\x02" * 32
        tag = confirmation_tag(key, b"transcript")
        assert verify_confirmation(key, b"transcript", tag)

    def test_wrong_transcript(self):
        key = b"\x02" * 32
        tag = confirmation_tag(key, b"transcript")
        assert not verify_confirmation(key, b"other", tag)

    def test_wrong_key(self):
        tag = confirmation_tag(b"\x02" * 32, b"transcript")
        assert not verify_confirmation(b"\x03" * 32, b"transcript", tag)
