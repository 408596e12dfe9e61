"""Unit tests for ID token helpers and provider presets."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tessera.adapters.oidc.tokens import JWTDecodeError, decode_jwt, validate_id_token_claims
from tessera.adapters.oidc.types import provider_preset
from tessera.core.crypto import base64url_encode

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
SKEW = timedelta(seconds=300)


def _claims(**overrides: object) -> dict[str, object]:
    ts = int(NOW.timestamp())
    claims: dict[str, object] = {
        "iss": "https://idp.test",
        "aud": "client",
        "sub": "u1",
        "iat": ts,
        "exp": ts + 60,
        "nonce": "n",
    }
    claims.update(overrides)
    return claims


def _validate(claims: dict[str, object], now: datetime = NOW):
    return validate_id_token_claims(
        claims,
        client_id="client",
        issuer="https://idp.test",
        expected_nonce="n",
        clock_skew=SKEW,
        now=now,
    )


class TestDecodeJwt:
    """Tests for decode_jwt."""

    def test_decodes_segments(self) -> None:
        """Test header and claims are decoded without verification."""
        header = base64url_encode(b'{"alg":"RS256","kid":"k"}')
        body = base64url_encode(b'{"sub":"u1"}')

        decoded = decode_jwt(f"{header}.{body}.sig")

        assert decoded.header["kid"] == "k"
        assert decoded.claims == {"sub": "u1"}
        assert decoded.signature == "sig"

    @pytest.mark.parametrize("token", ["a.b", "a.b.c.d", "!!!.???.x", f"{base64url_encode(b'[1]')}.e30.x"])
    def test_rejects_malformed(self, token: str) -> None:
        """Test tokens that are not three JSON-object segments are refused."""
        with pytest.raises(JWTDecodeError):
            decode_jwt(token)


class TestValidateClaims:
    """Tests for validate_id_token_claims."""

    def test_valid(self) -> None:
        """Test matching claims pass."""
        assert _validate(_claims()).valid

    def test_audience_list(self) -> None:
        """Test a list audience containing the client passes when azp matches."""
        assert _validate(_claims(aud=["client", "api"], azp="client")).valid

    def test_azp_mismatch(self) -> None:
        """Test a multi-audience token issued to another party fails."""
        result = _validate(_claims(aud=["client", "api"], azp="api"))

        assert not result.valid

    def test_wrong_issuer(self) -> None:
        """Test tokens from another issuer fail."""
        result = _validate(_claims(iss="https://evil.test"))

        assert not result.valid
        assert result.code == "id_token_invalid"

    @pytest.mark.parametrize(("seconds", "valid"), [(300, True), (301, False)])
    def test_expiry_skew(self, seconds: int, valid: bool) -> None:
        """Test exp is honored up to the skew allowance."""
        ts = int(NOW.timestamp())
        claims = _claims(exp=ts)

        result = _validate(claims, now=NOW + timedelta(seconds=seconds))

        assert result.valid is valid

    def test_issued_in_future(self) -> None:
        """Test iat beyond the skew allowance fails."""
        ts = int(NOW.timestamp())

        result = _validate(_claims(iat=ts + 301, exp=ts + 900))

        assert not result.valid

    def test_missing_exp(self) -> None:
        """Test a token without exp fails."""
        claims = _claims()
        del claims["exp"]

        assert not _validate(claims).valid

    def test_nonce_mismatch(self) -> None:
        """Test a different nonce fails."""
        result = _validate(_claims(nonce="other"))

        assert not result.valid
        assert "Nonce" in (result.error or "")


class TestProviderPreset:
    """Tests for provider_preset."""

    def test_google(self) -> None:
        """Test the Google preset needs no domain."""
        preset = provider_preset("google")

        assert preset["oidc_issuer"] == "https://accounts.google.com"

    def test_okta_requires_domain(self) -> None:
        """Test tenant presets use the domain."""
        preset = provider_preset("okta", "acme.okta.com")

        assert preset["oidc_jwks_url"] == "https://acme.okta.com/oauth2/v1/keys"
        with pytest.raises(ValueError):
            provider_preset("auth0")

    def test_unknown(self) -> None:
        """Test unknown providers are refused."""
        with pytest.raises(ValueError):
            provider_preset("myspace")
