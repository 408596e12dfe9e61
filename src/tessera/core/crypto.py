"""Secure random values, PKCE and hashing helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

# 64 symbols, so a random byte modulo 64 is unbiased.
CHARSET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"

STATE_LENGTH = 32
NONCE_LENGTH = 32
PKCE_VERIFIER_BYTES = 32  # 256 bits of entropy


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and its S256 challenge."""

    verifier: str
    challenge: str
    method: str = "S256"


def secure_random_string(length: int) -> str:
    """Generate a random string drawn from the 64-symbol charset.

    Args:
        length: Number of characters.

    Returns:
        Random string of exactly ``length`` characters.

    Raises:
        ValueError: If length is not positive.
    """
    if length <= 0:
        raise ValueError("length must be positive")
    return "".join(CHARSET[b % len(CHARSET)] for b in secrets.token_bytes(length))


def base64url_encode(data: bytes) -> str:
    """Base64url-encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Decode unpadded base64url.

    Raises:
        ValueError: If the input is not valid base64url.
    """
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (UnicodeEncodeError, ValueError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def pkce_challenge(verifier: str) -> str:
    """Compute the S256 challenge for a verifier."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce() -> PKCEPair:
    """Generate a PKCE verifier/challenge pair.

    The verifier is 32 random bytes, base64url-encoded without padding.
    """
    verifier = base64url_encode(secrets.token_bytes(PKCE_VERIFIER_BYTES))
    return PKCEPair(verifier=verifier, challenge=pkce_challenge(verifier))


def sha256_hex(data: bytes | str) -> str:
    """Hex-encoded SHA-256 digest."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def generate_saml_id() -> str:
    """Generate a SAML message ID.

    IDs are xs:ID values and must not start with a digit.
    """
    return f"_{secrets.token_hex(16)}"


def generate_verification_token() -> str:
    """Generate a domain verification token."""
    return secrets.token_hex(32)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking timing information."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
