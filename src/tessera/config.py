"""Settings loaded from the environment."""

from __future__ import annotations

import os


def _bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """SSO service settings loaded from environment."""

    def __init__(self) -> None:
        """Load settings from environment variables."""
        self.database_url = os.getenv("DATABASE_URL", "postgresql://localhost:5432/tessera")
        self.storage = os.getenv("TESSERA_STORAGE", "postgres").lower()

        # Service provider identity
        self.base_url = os.getenv("TESSERA_BASE_URL", "http://localhost:8000").rstrip("/")
        self.product_name = os.getenv("TESSERA_PRODUCT_NAME", "tessera")
        self.organization_name = os.getenv("TESSERA_ORGANIZATION_NAME", "Tessera")
        self.sp_private_key = os.getenv("TESSERA_SP_PRIVATE_KEY") or None
        self.sp_certificate = os.getenv("TESSERA_SP_CERTIFICATE") or None

        # Timeouts and lifetimes
        self.http_timeout_seconds = float(os.getenv("TESSERA_HTTP_TIMEOUT_SECONDS", "10"))
        self.auth_state_ttl_seconds = int(os.getenv("TESSERA_AUTH_STATE_TTL_SECONDS", "600"))
        self.session_duration_seconds = int(os.getenv("TESSERA_SESSION_DURATION_SECONDS", str(8 * 60 * 60)))
        self.saml_clock_skew_seconds = int(os.getenv("TESSERA_SAML_CLOCK_SKEW_SECONDS", "300"))
        self.oidc_clock_skew_seconds = int(os.getenv("TESSERA_OIDC_CLOCK_SKEW_SECONDS", "300"))
        self.discovery_cache_seconds = int(os.getenv("TESSERA_DISCOVERY_CACHE_SECONDS", "3600"))

        # Test environments only: accept admin attestation instead of DNS
        self.allow_manual_domain_verification = _bool("TESSERA_ALLOW_MANUAL_DOMAIN_VERIFICATION")

    @property
    def oidc_callback_url(self) -> str:
        """Redirect URI registered with OIDC providers."""
        return f"{self.base_url}/auth/sso/oidc/callback"


settings = Settings()
