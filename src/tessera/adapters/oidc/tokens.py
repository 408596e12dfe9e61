"""ID token decoding, signature verification and claim validation."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from tessera.adapters.oidc.types import DecodedJWT
from tessera.core.crypto import base64url_decode
from tessera.core.types import ValidationResult

DEFAULT_CLOCK_SKEW = timedelta(seconds=300)

# Only asymmetric algorithms: a token signed with the client secret (HS*) or
# unsigned ("none") is never accepted.
ALLOWED_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"}
)


class JWTDecodeError(ValueError):
    """A token is not a structurally valid JWT."""


def decode_jwt(token: str) -> DecodedJWT:
    """Decode the three JWT segments without verifying the signature.

    Raises:
        JWTDecodeError: If the token is not three base64url JSON segments.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise JWTDecodeError("Invalid JWT format")
    try:
        header = json.loads(base64url_decode(parts[0]))
        claims = json.loads(base64url_decode(parts[1]))
    except (ValueError, UnicodeDecodeError) as e:
        raise JWTDecodeError(f"Invalid JWT encoding: {e}") from e
    if not isinstance(header, dict) or not isinstance(claims, dict):
        raise JWTDecodeError("JWT header and payload must be JSON objects")
    return DecodedJWT(header=header, claims=claims, signature=parts[2])


def validate_id_token_claims(
    claims: dict[str, Any],
    client_id: str,
    issuer: str | None = None,
    expected_nonce: str | None = None,
    clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
    now: datetime | None = None,
) -> ValidationResult:
    """Validate ID token claims.

    Args:
        claims: Decoded ID token claims.
        client_id: The configured client ID; must be in ``aud``.
        issuer: Expected issuer, checked when known.
        expected_nonce: Nonce issued with the authorization request.
        clock_skew: Allowance for ``exp`` and ``iat``.
        now: Current time override.

    Returns:
        Validation result with code ``id_token_invalid`` on failure.
    """
    now_ts = (now or datetime.now(UTC)).timestamp()
    skew = clock_skew.total_seconds()

    if issuer and claims.get("iss") != issuer:
        return ValidationResult.fail(
            f"Invalid issuer: expected {issuer}, got {claims.get('iss')}", code="id_token_invalid"
        )

    aud = claims.get("aud")
    audience = aud if isinstance(aud, list) else [aud] if aud else []
    if client_id not in audience:
        return ValidationResult.fail(
            f"Invalid audience: {client_id} not in {', '.join(map(str, audience))}",
            code="id_token_invalid",
        )

    exp = claims.get("exp")
    if not isinstance(exp, int | float) or exp + skew < now_ts:
        return ValidationResult.fail("ID token has expired", code="id_token_invalid")

    iat = claims.get("iat")
    if not isinstance(iat, int | float) or iat - skew > now_ts:
        return ValidationResult.fail("ID token issued in the future", code="id_token_invalid")

    if expected_nonce and claims.get("nonce") != expected_nonce:
        return ValidationResult.fail("Nonce mismatch", code="id_token_invalid")

    azp = claims.get("azp")
    if len(audience) > 1 and azp and azp != client_id:
        return ValidationResult.fail(
            f"Invalid authorized party: expected {client_id}, got {azp}", code="id_token_invalid"
        )

    return ValidationResult.ok()


def verify_signature(token: str, jwks: dict[str, Any]) -> dict[str, Any]:
    """Verify a JWT signature against a JWK set.

    Only the signature is checked here; claims are validated separately.

    Args:
        token: Encoded JWT.
        jwks: JWK set document (``{"keys": [...]}``).

    Returns:
        The verified claims.

    Raises:
        PyJWTError: If no key matches or the signature is invalid.
    """
    header = jwt.get_unverified_header(token)
    alg = header.get("alg")
    if alg not in ALLOWED_ALGORITHMS:
        raise jwt.InvalidAlgorithmError(f"Algorithm not allowed: {alg}")

    key_set = jwt.PyJWKSet.from_dict(jwks)
    kid = header.get("kid")
    if kid:
        candidates = [k for k in key_set.keys if k.key_id == kid]
    else:
        candidates = list(key_set.keys)
    if not candidates:
        raise jwt.InvalidKeyError(f"No signing key found for kid {kid}")
    if len(candidates) > 1:
        raise jwt.InvalidKeyError("Token has no kid and the key set holds several keys")

    return jwt.decode(
        token,
        key=candidates[0].key,
        algorithms=[alg],
        options={
            "verify_aud": False,
            "verify_iss": False,
            "verify_exp": False,
            "verify_iat": False,
            "verify_nbf": False,
        },
    )
