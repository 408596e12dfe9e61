"""Unit tests for crypto helpers."""

from __future__ import annotations

import base64
import hashlib
import re

import pytest

from tessera.core.crypto import (
    CHARSET,
    base64url_decode,
    base64url_encode,
    constant_time_equals,
    generate_pkce,
    generate_saml_id,
    generate_verification_token,
    pkce_challenge,
    secure_random_string,
    sha256_hex,
)


class TestSecureRandomString:
    """Tests for secure_random_string."""

    def test_length_and_charset(self) -> None:
        """Test output has the requested length and only charset symbols."""
        value = secure_random_string(32)

        assert len(value) == 32
        assert set(value) <= set(CHARSET)

    def test_values_differ(self) -> None:
        """Test repeated calls do not collide."""
        values = {secure_random_string(32) for _ in range(200)}

        assert len(values) == 200

    def test_rejects_non_positive_length(self) -> None:
        """Test zero length raises ValueError."""
        with pytest.raises(ValueError):
            secure_random_string(0)

    def test_charset_has_64_symbols(self) -> None:
        """Test charset size keeps byte modulo unbiased."""
        assert len(CHARSET) == 64
        assert len(set(CHARSET)) == 64


class TestPKCE:
    """Tests for PKCE generation."""

    def test_challenge_matches_rfc7636_example(self) -> None:
        """Test the S256 challenge from RFC 7636 appendix B."""
        verifier = "dBjftJeZ4CVP-1mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_generated_pairs_verify(self) -> None:
        """Test every generated challenge is the S256 of its verifier."""
        for _ in range(100):
            pair = generate_pkce()
            digest = hashlib.sha256(pair.verifier.encode("ascii")).digest()
            expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

            assert pair.challenge == expected
            assert pair.method == "S256"
            assert "=" not in pair.verifier
            assert 43 <= len(pair.verifier) <= 128


class TestEncoding:
    """Tests for base64url and hashing helpers."""

    def test_base64url_has_no_padding(self) -> None:
        """Test encoding strips padding and decoding restores it."""
        encoded = base64url_encode(b"\xfb\xff")

        assert encoded == "-_8"
        assert base64url_decode(encoded) == b"\xfb\xff"

    def test_base64url_decode_rejects_garbage(self) -> None:
        """Test invalid characters raise ValueError."""
        with pytest.raises(ValueError):
            base64url_decode("é")

    def test_sha256_hex(self) -> None:
        """Test hex digest of a string."""
        assert sha256_hex("abc") == hashlib.sha256(b"abc").hexdigest()


class TestIdentifiers:
    """Tests for ID and token generation."""

    def test_saml_id_is_valid_xs_id(self) -> None:
        """Test SAML IDs never start with a digit."""
        assert re.fullmatch(r"_[0-9a-f]{32}", generate_saml_id())

    def test_verification_token_is_64_hex(self) -> None:
        """Test verification tokens are 32 random bytes in hex."""
        assert re.fullmatch(r"[0-9a-f]{64}", generate_verification_token())

    def test_constant_time_equals(self) -> None:
        """Test equal and unequal comparisons."""
        assert constant_time_equals("state", "state")
        assert not constant_time_equals("state", "stale")
