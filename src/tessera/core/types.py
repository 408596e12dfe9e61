"""SSO domain types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

DEFAULT_OIDC_SCOPES = ["openid", "email", "profile"]
DEFAULT_NAME_ID_FORMAT = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"


class SSOProviderType(str, Enum):
    """SSO provider types."""

    OIDC = "oidc"
    SAML = "saml"


class OrgRole(str, Enum):
    """Workspace membership roles, highest privilege first."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        """Numeric privilege level used for hierarchy checks."""
        return _ROLE_RANK[self]

    def includes(self, required: OrgRole) -> bool:
        """Check whether this role grants at least ``required``."""
        return self.rank >= required.rank


_ROLE_RANK = {
    OrgRole.OWNER: 4,
    OrgRole.ADMIN: 3,
    OrgRole.MEMBER: 2,
    OrgRole.VIEWER: 1,
}


class ConfigLifecycle(str, Enum):
    """Derived lifecycle state of an SSO configuration.

    ``test_mode`` and ``enabled`` are stored as two booleans; the legal
    combinations are the three states below. ``enabled`` together with
    ``test_mode`` is never persisted.
    """

    TESTING = "testing"
    DISABLED = "disabled"
    ENABLED = "enabled"


class VerificationMethod(str, Enum):
    """How a domain routing was verified."""

    DNS_TXT = "dns_txt"
    EMAIL = "email"
    MANUAL = "manual"


class SessionStatus(str, Enum):
    """SSO session lifecycle states."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    LOGGED_OUT = "logged_out"


class AuditEventType(str, Enum):
    """SSO audit event types."""

    CONFIG_CREATED = "config_created"
    CONFIG_UPDATED = "config_updated"
    CONFIG_ENABLED = "config_enabled"
    CONFIG_DISABLED = "config_disabled"
    CONFIG_DELETED = "config_deleted"
    LOGIN_INITIATED = "login_initiated"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    LOGOUT_INITIATED = "logout_initiated"
    LOGOUT_SUCCEEDED = "logout_succeeded"
    LOGOUT_FAILED = "logout_failed"
    SESSION_REFRESHED = "session_refreshed"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    DOMAIN_VERIFIED = "domain_verified"
    DOMAIN_VERIFICATION_FAILED = "domain_verification_failed"


@dataclass
class AttributeMapping:
    """Paths into the IdP claims for each profile field.

    Paths use dot notation into nested claim objects (``profile.email``).
    """

    email: str = "email"
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    groups: str | None = None
    avatar: str | None = None


@dataclass(frozen=True)
class GroupRoleRule:
    """Maps an IdP group to a workspace role."""

    idp_group: str
    role: OrgRole


@dataclass
class SSOConfiguration:
    """SSO configuration for one (workspace, IdP) pair."""

    id: UUID
    workspace_id: UUID
    provider_type: SSOProviderType
    name: str
    enabled: bool = False
    test_mode: bool = True

    # SAML settings
    saml_entity_id: str | None = None
    saml_sso_url: str | None = None
    saml_slo_url: str | None = None
    saml_certificate: str | None = None
    saml_sign_requests: bool = False
    saml_signature_algorithm: str = "sha256"
    saml_digest_algorithm: str = "sha256"
    saml_name_id_format: str | None = None

    # OIDC settings
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_issuer: str | None = None
    oidc_authorization_url: str | None = None
    oidc_token_url: str | None = None
    oidc_userinfo_url: str | None = None
    oidc_jwks_url: str | None = None
    oidc_scopes: list[str] = field(default_factory=lambda: list(DEFAULT_OIDC_SCOPES))

    attribute_mapping: AttributeMapping = field(default_factory=AttributeMapping)
    group_role_mapping: list[GroupRoleRule] = field(default_factory=list)
    allowed_domains: list[str] = field(default_factory=list)
    blocked_domains: list[str] = field(default_factory=list)
    enforce_sso: bool = False
    allow_bypass_for_owner: bool = True
    jit_provisioning: bool = False
    jit_default_role: OrgRole = OrgRole.MEMBER

    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_used_at: datetime | None = None
    tested_at: datetime | None = None

    @property
    def lifecycle(self) -> ConfigLifecycle:
        """Current lifecycle state derived from the two flags."""
        if self.test_mode:
            return ConfigLifecycle.TESTING
        if self.enabled:
            return ConfigLifecycle.ENABLED
        return ConfigLifecycle.DISABLED

    @property
    def accepts_logins(self) -> bool:
        """Whether logins may be initiated against this configuration."""
        return self.enabled or self.test_mode

    def missing_fields(self) -> list[str]:
        """List required provider fields that are unset.

        Returns:
            Names of missing fields; empty when the configuration is complete.
        """
        missing: list[str] = []
        if self.provider_type == SSOProviderType.SAML:
            for name in ("saml_entity_id", "saml_sso_url", "saml_certificate"):
                if not getattr(self, name):
                    missing.append(name)
        else:
            for name in ("oidc_client_id", "oidc_client_secret"):
                if not getattr(self, name):
                    missing.append(name)
            if not self.oidc_issuer and not (self.oidc_authorization_url and self.oidc_token_url):
                missing.append("oidc_issuer")
        if not self.attribute_mapping.email:
            missing.append("attribute_mapping.email")
        return missing

    def email_domain_allowed(self, domain: str) -> bool:
        """Apply the allowed/blocked email domain lists.

        An empty allow list admits every domain that is not blocked.
        """
        domain = domain.lower()
        if domain in (d.lower() for d in self.blocked_domains):
            return False
        if self.allowed_domains:
            return domain in (d.lower() for d in self.allowed_domains)
        return True


@dataclass(frozen=True)
class Workspace:
    """Workspace as seen by the SSO subsystem."""

    id: UUID
    slug: str
    name: str
    owner_id: UUID
    plan: str = "free"


@dataclass
class AuthState:
    """Ephemeral record for one initiated login attempt."""

    state: str
    workspace_id: UUID
    config_id: UUID
    nonce: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime
    code_verifier: str | None = None
    used_at: datetime | None = None
    initiated_by: UUID | None = None


@dataclass
class DomainRouting:
    """An email domain routed to an SSO configuration."""

    id: UUID
    domain: str
    workspace_id: UUID
    config_id: UUID
    verification_token: str
    created_at: datetime
    verified: bool = False
    verification_method: VerificationMethod = VerificationMethod.DNS_TXT
    verified_at: datetime | None = None


@dataclass
class SSOSession:
    """A local session created by a federated login."""

    id: UUID
    user_id: UUID
    workspace_id: UUID
    config_id: UUID
    idp_subject: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    idp_session_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    token_expires_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    terminated_at: datetime | None = None


@dataclass(frozen=True)
class ResolvedIdentity:
    """Canonical profile produced by the attribute mapper."""

    email: str
    role: OrgRole
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validation step."""

    valid: bool
    error: str | None = None
    code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **details: Any) -> ValidationResult:
        """Build a passing result."""
        return cls(valid=True, details=details)

    @classmethod
    def fail(cls, error: str, code: str = "validation_failed") -> ValidationResult:
        """Build a failing result."""
        return cls(valid=False, error=error, code=code)


@dataclass(frozen=True)
class RequestContext:
    """Client information attached to audit records."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ProvisioningRequest:
    """Create-or-update request handed to the user provisioner."""

    workspace_id: UUID
    email: str
    role: OrgRole
    name: str | None = None
    avatar: str | None = None
    allow_create: bool = False


@dataclass(frozen=True)
class ProvisioningResult:
    """Opaque provisioning outcome."""

    success: bool
    user_id: UUID | None = None
    created: bool = False
    error: str | None = None
