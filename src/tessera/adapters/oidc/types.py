"""OIDC client types."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from tessera.core.types import ValidationResult


@dataclass(frozen=True)
class DiscoveryDocument:
    """Subset of ``/.well-known/openid-configuration`` the client uses."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None
    id_token_signing_alg_values_supported: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveryDocument:
        """Build from the discovery JSON.

        Raises:
            KeyError: If a required endpoint is missing.
        """
        return cls(
            issuer=data["issuer"],
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            userinfo_endpoint=data.get("userinfo_endpoint"),
            jwks_uri=data.get("jwks_uri"),
            end_session_endpoint=data.get("end_session_endpoint"),
            id_token_signing_alg_values_supported=list(
                data.get("id_token_signing_alg_values_supported") or []
            ),
        )


@dataclass(frozen=True)
class OIDCEndpoints:
    """Endpoints resolved from explicit configuration and discovery."""

    authorization_endpoint: str
    token_endpoint: str
    issuer: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    end_session_endpoint: str | None = None


@dataclass(frozen=True)
class TokenResponse:
    """Token endpoint response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenResponse:
        """Build from the token endpoint JSON.

        Raises:
            KeyError: If ``access_token`` is missing.
        """
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(expires_in) if expires_in is not None else None,
            refresh_token=data.get("refresh_token"),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
        )


@dataclass(frozen=True)
class DecodedJWT:
    """Structurally decoded JWT. The signature is not verified."""

    header: dict[str, Any]
    claims: dict[str, Any]
    signature: str


@dataclass(frozen=True)
class IDTokenValidation:
    """Outcome of full ID token validation."""

    valid: bool
    claims: dict[str, Any] | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def from_result(cls, result: ValidationResult) -> IDTokenValidation:
        return cls(valid=False, error=result.error, code=result.code or "id_token_invalid")


def _okta(domain: str) -> dict[str, str]:
    return {
        "oidc_issuer": f"https://{domain}",
        "oidc_authorization_url": f"https://{domain}/oauth2/v1/authorize",
        "oidc_token_url": f"https://{domain}/oauth2/v1/token",
        "oidc_userinfo_url": f"https://{domain}/oauth2/v1/userinfo",
        "oidc_jwks_url": f"https://{domain}/oauth2/v1/keys",
    }


def _auth0(domain: str) -> dict[str, str]:
    return {
        "oidc_issuer": f"https://{domain}/",
        "oidc_authorization_url": f"https://{domain}/authorize",
        "oidc_token_url": f"https://{domain}/oauth/token",
        "oidc_userinfo_url": f"https://{domain}/userinfo",
        "oidc_jwks_url": f"https://{domain}/.well-known/jwks.json",
    }


def provider_preset(provider: str, domain: str | None = None) -> dict[str, str]:
    """Endpoint presets for common IdPs, keyed like the ``oidc_*`` config fields.

    Args:
        provider: ``google``, ``microsoft``, ``okta`` or ``auth0``.
        domain: Tenant domain, required for okta and auth0.

    Raises:
        ValueError: For an unknown provider or a missing domain.
    """
    if provider == "google":
        return {
            "oidc_issuer": "https://accounts.google.com",
            "oidc_authorization_url": "https://accounts.google.com/o/oauth2/v2/auth",
            "oidc_token_url": "https://oauth2.googleapis.com/token",
            "oidc_userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
            "oidc_jwks_url": "https://www.googleapis.com/oauth2/v3/certs",
        }
    if provider == "microsoft":
        return {
            "oidc_issuer": "https://login.microsoftonline.com/common/v2.0",
            "oidc_authorization_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
            "oidc_token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
            "oidc_userinfo_url": "https://graph.microsoft.com/oidc/userinfo",
            "oidc_jwks_url": "https://login.microsoftonline.com/common/discovery/v2.0/keys",
        }
    if provider in ("okta", "auth0"):
        if not domain:
            raise ValueError(f"{provider} preset requires a domain")
        return _okta(domain) if provider == "okta" else _auth0(domain)
    raise ValueError(f"Unknown OIDC provider preset: {provider}")
