"""SAML codec types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

NS_SAMLP = "urn:oasis:names:tc:SAML:2.0:protocol"
NS_SAML = "urn:oasis:names:tc:SAML:2.0:assertion"
NS_MD = "urn:oasis:names:tc:SAML:2.0:metadata"
NS_DS = "http://www.w3.org/2000/09/xmldsig#"

NAMESPACES = {"samlp": NS_SAMLP, "saml": NS_SAML, "md": NS_MD, "ds": NS_DS}

BINDING_HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
BINDING_HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"

STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
STATUS_REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"

NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
NAMEID_PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"

SIG_ALG_RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SIG_ALG_RSA_SHA512 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha512"


@dataclass(frozen=True)
class SPEndpoints:
    """Service provider URLs for one workspace."""

    entity_id: str
    acs_url: str
    slo_url: str


@dataclass(frozen=True)
class SAMLRedirect:
    """A message encoded for the HTTP-Redirect binding."""

    xml: str
    id: str
    redirect_url: str


@dataclass
class SAMLAssertion:
    """Fields extracted from a SAML assertion."""

    issuer: str
    name_id: str
    name_id_format: str = ""
    session_index: str | None = None
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    audiences: list[str] = field(default_factory=list)
    attributes: dict[str, str | list[str]] = field(default_factory=dict)
    assertion_id: str | None = None
    response_id: str | None = None
    in_response_to: str | None = None

    @property
    def audience(self) -> str | None:
        """First audience, when the assertion is audience-restricted."""
        return self.audiences[0] if self.audiences else None


@dataclass(frozen=True)
class SAMLParseResult:
    """Outcome of parsing a SAML Response."""

    success: bool
    assertion: SAMLAssertion | None = None
    error: str | None = None
    code: str | None = None
    raw_xml: bytes | None = None


@dataclass(frozen=True)
class LogoutRequestInfo:
    """Fields of an IdP-initiated LogoutRequest."""

    success: bool
    id: str | None = None
    issuer: str | None = None
    name_id: str | None = None
    session_index: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class LogoutResponseInfo:
    """Fields of a LogoutResponse."""

    success: bool
    in_response_to: str | None = None
    issuer: str | None = None
    status: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ExtractedAttributes:
    """Canonical profile fields found under well-known attribute names."""

    email: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    groups: list[str] | None = None

    def as_claims(self) -> dict[str, str | list[str]]:
        """Canonical keys with values, for merging into raw claims."""
        claims: dict[str, str | list[str]] = {}
        if self.email:
            claims["email"] = self.email
        if self.name:
            claims["name"] = self.name
        if self.first_name:
            claims["firstName"] = self.first_name
        if self.last_name:
            claims["lastName"] = self.last_name
        if self.groups:
            claims["groups"] = list(self.groups)
        return claims
