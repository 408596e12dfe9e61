"""OpenID Connect relying-party client.

Handles the authorization code flow with PKCE:
1. Resolve endpoints (explicit configuration, else discovery)
2. Build the authorization URL
3. Exchange the code for tokens
4. Validate the ID token (JWKS signature, then claims)
5. Fetch UserInfo

Network failures are never retried here. Non-2xx responses and timeouts raise
ProtocolError carrying the upstream status and body.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt
import structlog
from jwt.exceptions import PyJWTError

from tessera.adapters.oidc.tokens import (
    JWTDecodeError,
    decode_jwt,
    validate_id_token_claims,
    verify_signature,
)
from tessera.adapters.oidc.types import (
    DiscoveryDocument,
    IDTokenValidation,
    OIDCEndpoints,
    TokenResponse,
)
from tessera.core.exceptions import ConfigurationError, ProtocolError
from tessera.core.types import SSOConfiguration

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_CACHE_SECONDS = 3600
DEFAULT_CLOCK_SKEW_SECONDS = 300


class OIDCClient:
    """OIDC client shared by every OIDC configuration."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        discovery_cache_seconds: int = DEFAULT_CACHE_SECONDS,
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
    ) -> None:
        """Initialize the client.

        Args:
            timeout: Timeout for every outbound HTTP call, in seconds.
            discovery_cache_seconds: How long discovery documents and JWK sets are reused.
            clock_skew_seconds: Allowance for ID token ``exp``/``iat``.
        """
        self._timeout = timeout
        self._cache_ttl = discovery_cache_seconds
        self._clock_skew = timedelta(seconds=clock_skew_seconds)
        self._discovery: dict[str, tuple[float, DiscoveryDocument]] = {}
        self._jwks: dict[str, tuple[float, dict[str, Any]]] = {}

    # ------------------------------------------------------------------ #
    # HTTP plumbing
    # ------------------------------------------------------------------ #

    async def _request(
        self,
        method: str,
        url: str,
        error_code: str,
        what: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.warning("oidc_upstream_timeout", url=url, operation=what)
            raise ProtocolError(f"{what} timed out", code="upstream_timeout") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "oidc_upstream_error",
                url=url,
                operation=what,
                status_code=e.response.status_code,
            )
            raise ProtocolError(
                f"{what} failed: {e.response.status_code} - {e.response.text}",
                code=error_code,
                status_code=e.response.status_code,
                body=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            raise ProtocolError(f"{what} failed: {e}", code=error_code) from e
        except ValueError as e:
            raise ProtocolError(f"{what} returned invalid JSON", code=error_code) from e

        if not isinstance(data, dict):
            raise ProtocolError(f"{what} returned an unexpected payload", code=error_code)
        return data

    # ------------------------------------------------------------------ #
    # Discovery
    # ------------------------------------------------------------------ #

    async def fetch_well_known(self, issuer: str) -> DiscoveryDocument:
        """Fetch (or reuse a cached) discovery document.

        Raises:
            ProtocolError: On non-2xx, timeout or an incomplete document.
        """
        key = issuer.rstrip("/")
        cached = self._discovery.get(key)
        if cached and cached[0] > time.monotonic():
            return cached[1]

        url = f"{key}/.well-known/openid-configuration"
        data = await self._request(
            "GET",
            url,
            "discovery_failed",
            "OIDC discovery",
            headers={"Accept": "application/json"},
        )
        try:
            document = DiscoveryDocument.from_dict(data)
        except KeyError as e:
            raise ProtocolError(f"Discovery document missing {e.args[0]}", code="discovery_failed") from e

        self._discovery[key] = (time.monotonic() + self._cache_ttl, document)
        logger.info("oidc_discovery_fetched", issuer=key)
        return document

    async def resolve_endpoints(self, config: SSOConfiguration) -> OIDCEndpoints:
        """Combine explicitly configured endpoints with discovery.

        Explicit URLs win. Whenever an issuer is configured its (cached)
        discovery document fills the gaps and supplies end_session_endpoint.

        Raises:
            ConfigurationError: If authorization or token endpoints cannot be resolved.
            ProtocolError: If discovery fails.
        """
        authorization = config.oidc_authorization_url
        token = config.oidc_token_url
        userinfo = config.oidc_userinfo_url
        jwks = config.oidc_jwks_url
        end_session = None

        if config.oidc_issuer:
            document = await self.fetch_well_known(config.oidc_issuer)
            authorization = authorization or document.authorization_endpoint
            token = token or document.token_endpoint
            userinfo = userinfo or document.userinfo_endpoint
            jwks = jwks or document.jwks_uri
            end_session = document.end_session_endpoint

        if not authorization or not token:
            raise ConfigurationError("OIDC authorization and token endpoints are not configured")

        return OIDCEndpoints(
            authorization_endpoint=authorization,
            token_endpoint=token,
            issuer=config.oidc_issuer,
            userinfo_endpoint=userinfo,
            jwks_uri=jwks,
            end_session_endpoint=end_session,
        )

    # ------------------------------------------------------------------ #
    # Authorization request
    # ------------------------------------------------------------------ #

    def build_authorization_url(
        self,
        config: SSOConfiguration,
        endpoints: OIDCEndpoints,
        redirect_uri: str,
        state: str,
        nonce: str,
        code_challenge: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the authorization URL the user is redirected to."""
        params = {
            "response_type": "code",
            "client_id": config.oidc_client_id or "",
            "redirect_uri": redirect_uri,
            "scope": " ".join(config.oidc_scopes),
            "state": state,
            "nonce": nonce,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if extra_params:
            params.update(extra_params)

        separator = "&" if "?" in endpoints.authorization_endpoint else "?"
        return f"{endpoints.authorization_endpoint}{separator}{urlencode(params)}"

    # ------------------------------------------------------------------ #
    # Token endpoint
    # ------------------------------------------------------------------ #

    async def exchange_code(
        self,
        config: SSOConfiguration,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            ProtocolError: With code ``token_exchange_failed`` on non-2xx.
        """
        endpoints = await self.resolve_endpoints(config)
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": config.oidc_client_id or "",
        }
        if config.oidc_client_secret:
            body["client_secret"] = config.oidc_client_secret
        if code_verifier:
            body["code_verifier"] = code_verifier

        data = await self._request(
            "POST",
            endpoints.token_endpoint,
            "token_exchange_failed",
            "Token exchange",
            data=body,
            headers={"Accept": "application/json"},
        )
        return self._token_response(data, "token_exchange_failed")

    async def refresh_token(self, config: SSOConfiguration, refresh_token: str) -> TokenResponse:
        """Use a refresh token to obtain new tokens.

        Raises:
            ProtocolError: With code ``token_exchange_failed`` on non-2xx.
        """
        endpoints = await self.resolve_endpoints(config)
        body = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": config.oidc_client_id or "",
        }
        if config.oidc_client_secret:
            body["client_secret"] = config.oidc_client_secret

        data = await self._request(
            "POST",
            endpoints.token_endpoint,
            "token_exchange_failed",
            "Token refresh",
            data=body,
            headers={"Accept": "application/json"},
        )
        return self._token_response(data, "token_exchange_failed")

    @staticmethod
    def _token_response(data: dict[str, Any], code: str) -> TokenResponse:
        try:
            return TokenResponse.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError("Token response missing access_token", code=code) from e

    # ------------------------------------------------------------------ #
    # UserInfo
    # ------------------------------------------------------------------ #

    async def get_user_info(self, config: SSOConfiguration, access_token: str) -> dict[str, Any]:
        """Fetch claims from the UserInfo endpoint.

        Raises:
            ConfigurationError: If no UserInfo endpoint is known.
            ProtocolError: With code ``userinfo_failed`` on non-2xx.
        """
        endpoints = await self.resolve_endpoints(config)
        if not endpoints.userinfo_endpoint:
            raise ConfigurationError("UserInfo endpoint not configured")
        return await self._request(
            "GET",
            endpoints.userinfo_endpoint,
            "userinfo_failed",
            "UserInfo request",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    # ------------------------------------------------------------------ #
    # ID token
    # ------------------------------------------------------------------ #

    async def fetch_jwks(self, jwks_uri: str, force: bool = False) -> dict[str, Any]:
        """Fetch (or reuse a cached) JWK set."""
        cached = self._jwks.get(jwks_uri)
        if cached and not force and cached[0] > time.monotonic():
            return cached[1]
        data = await self._request("GET", jwks_uri, "id_token_invalid", "JWKS fetch")
        self._jwks[jwks_uri] = (time.monotonic() + self._cache_ttl, data)
        return data

    async def validate_id_token(
        self,
        token: str,
        config: SSOConfiguration,
        expected_nonce: str | None = None,
        now: datetime | None = None,
    ) -> IDTokenValidation:
        """Verify an ID token's signature against the IdP's JWKS, then its claims.

        Returns:
            Validation result carrying the claims on success.

        Raises:
            ProtocolError: If discovery or the JWKS fetch fails.
        """
        try:
            decode_jwt(token)
        except JWTDecodeError as e:
            return IDTokenValidation(valid=False, error=str(e), code="id_token_invalid")

        endpoints = await self.resolve_endpoints(config)
        if not endpoints.jwks_uri:
            return IDTokenValidation(
                valid=False,
                error="No JWKS URI configured; cannot verify ID token signature",
                code="id_token_invalid",
            )

        try:
            claims = await self._verify_with_rotation(token, endpoints.jwks_uri)
        except PyJWTError as e:
            logger.warning("oidc_id_token_signature_invalid", error=str(e))
            return IDTokenValidation(
                valid=False,
                error=f"ID token signature invalid: {e}",
                code="id_token_invalid",
            )

        result = validate_id_token_claims(
            claims,
            client_id=config.oidc_client_id or "",
            issuer=config.oidc_issuer,
            expected_nonce=expected_nonce,
            clock_skew=self._clock_skew,
            now=now,
        )
        if not result.valid:
            logger.warning("oidc_id_token_claims_invalid", error=result.error)
            return IDTokenValidation.from_result(result)
        return IDTokenValidation(valid=True, claims=claims)

    async def _verify_with_rotation(self, token: str, jwks_uri: str) -> dict[str, Any]:
        jwks = await self.fetch_jwks(jwks_uri)
        kid = jwt.get_unverified_header(token).get("kid")
        known = {key.get("kid") for key in jwks.get("keys", []) if isinstance(key, dict)}
        if kid and kid not in known:
            # An unknown kid means the IdP may have rotated keys since the set was cached.
            logger.info("oidc_jwks_refetch", kid=kid)
            jwks = await self.fetch_jwks(jwks_uri, force=True)
        return verify_signature(token, jwks)

    # ------------------------------------------------------------------ #
    # Logout
    # ------------------------------------------------------------------ #

    async def build_logout_url(
        self,
        config: SSOConfiguration,
        id_token_hint: str | None = None,
        post_logout_redirect_uri: str | None = None,
        state: str | None = None,
    ) -> str | None:
        """RP-initiated logout URL, or None when the IdP has no end_session_endpoint."""
        endpoints = await self.resolve_endpoints(config)
        if not endpoints.end_session_endpoint:
            return None

        params: dict[str, str] = {}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        if post_logout_redirect_uri:
            params["post_logout_redirect_uri"] = post_logout_redirect_uri
            params["client_id"] = config.oidc_client_id or ""
        if state:
            params["state"] = state
        if not params:
            return endpoints.end_session_endpoint
        return f"{endpoints.end_session_endpoint}?{urlencode(params)}"
