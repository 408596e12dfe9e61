"""Domain-specific exceptions.

All exceptions in tessera inherit from TesseraError. Authentication failures
inherit from SSOError, which carries a stable machine-readable ``code`` that is
written to the audit log alongside the human-readable message.

Taxonomy:
- ConfigurationError: disabled, not-yet-tested, or incomplete configuration.
- ProtocolError: malformed XML/JWT, non-success SAML status, upstream non-2xx.
- ValidationError: expired assertion/token, audience/issuer/nonce mismatch,
  missing or invalid signature.
- StateError: auth state not found, already used, or expired (possible replay).
- MappingError: no email could be resolved from the IdP claims.

Every one of these is terminal. None of them is retried by the core.
"""

from __future__ import annotations

from typing import Any


class TesseraError(Exception):
    """Base exception for all tessera errors."""

    pass


class SSOError(TesseraError):
    """Base class for terminal SSO failures.

    Attributes:
        message: Human-readable description.
        code: Stable error code recorded in the audit log.
        details: Extra context (upstream status, response body, ...).
    """

    default_code = "sso_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize SSOError.

        Args:
            message: Error description.
            code: Error code; defaults to the class default.
            details: Optional structured context.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class ConfigurationError(SSOError):
    """Configuration is disabled, untested, or missing required fields."""

    default_code = "config_incomplete"


class ProtocolError(SSOError):
    """The IdP sent something malformed or an upstream call failed.

    Raised for malformed XML or JWTs, non-success SAML status codes, and
    non-2xx responses from discovery, token, userinfo or JWKS endpoints.
    """

    default_code = "invalid_response"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        """Initialize ProtocolError.

        Args:
            message: Error description.
            code: Error code.
            details: Optional structured context.
            status_code: Upstream HTTP status, when there was one.
            body: Upstream response body, when there was one.
        """
        super().__init__(message, code, details)
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            self.details.setdefault("status_code", status_code)


class ValidationError(SSOError):
    """A security check on an assertion or token failed."""

    default_code = "validation_failed"


class StateError(SSOError):
    """Auth state is unknown, already consumed, or expired.

    Treated as a potential replay attempt.
    """

    default_code = "state_not_found"


class MappingError(SSOError):
    """IdP claims could not be mapped to a local identity."""

    default_code = "email_missing"


class PermissionDeniedError(TesseraError):
    """The acting user lacks the role required for an administrative action."""

    pass


class NotFoundError(TesseraError):
    """A configuration, routing, or session does not exist."""

    pass


class DomainConflictError(TesseraError):
    """The email domain is already routed to an SSO configuration."""

    def __init__(self, domain: str) -> None:
        """Initialize DomainConflictError.

        Args:
            domain: The normalized domain that is already claimed.
        """
        super().__init__(f"Domain {domain} is already configured for another workspace")
        self.domain = domain
