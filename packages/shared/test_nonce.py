"""Unit tests for shared nonce module."""

import pytest

from shared.nonce import NONCE_BYTES, NONCE_LENGTH, Nonce, RandomSourceError, generate_nonce


class TestGenerateNonce:
    """Tests for nonce generation."""

    def test_length_and_alphabet(self):
        nonce = generate_nonce()
        assert len(nonce) == NONCE_LENGTH == 32
        assert all(c in '0123456789abcdef' for c in str(nonce))

    def test_unique(self):
        nonces = {str(generate_nonce()) for _ in range(10000)}
        assert len(nonces) == 10000

    def test_injected_source(self):
        nonce = generate_nonce(lambda n: bytes(range(n)))
        assert str(nonce) == "000102030405060708090a0b0c0d0e0f"

    def test_source_failure(self):
        def broken(n):
            raise OSError("getrandom failed")

        with pytest.raises(RandomSourceError, match="getrandom failed"):
            generate_nonce(broken)

    def test_short_read(self):
        with pytest.raises(RandomSourceError):
            generate_nonce(lambda n: b"\x00" * (NONCE_BYTES - 1))


class TestNonce:
    """Tests for the Nonce value."""

    def test_matches_own_bytes(self):
        nonce = generate_nonce()
        assert nonce.matches(nonce.encode())

    def test_rejects_other_bytes(self):
        nonce = Nonce("a" * 32)
        assert not nonce.matches(b"b" * 32)
        assert not nonce.matches(b"a" * 31)
        assert not nonce.matches(b"")

    def test_repr_hides_value(self):
        nonce = generate_nonce()
        assert str(nonce) not in repr(nonce)
        assert repr(nonce) == "Nonce(<32 chars>)"
