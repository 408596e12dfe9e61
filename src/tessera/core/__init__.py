"""Core domain - SSO business logic behind protocol interfaces."""

from .exceptions import (
    ConfigurationError,
    DomainConflictError,
    MappingError,
    NotFoundError,
    PermissionDeniedError,
    ProtocolError,
    SSOError,
    StateError,
    TesseraError,
    ValidationError,
)
from .types import (
    AttributeMapping,
    AuditEventType,
    AuthState,
    DomainRouting,
    GroupRoleRule,
    OrgRole,
    ResolvedIdentity,
    SSOConfiguration,
    SSOProviderType,
    SSOSession,
)

__all__ = [
    # Domain types
    "AttributeMapping",
    "AuditEventType",
    "AuthState",
    "DomainRouting",
    "GroupRoleRule",
    "OrgRole",
    "ResolvedIdentity",
    "SSOConfiguration",
    "SSOProviderType",
    "SSOSession",
    # Exceptions
    "TesseraError",
    "SSOError",
    "ConfigurationError",
    "ProtocolError",
    "ValidationError",
    "StateError",
    "MappingError",
    "PermissionDeniedError",
    "NotFoundError",
    "DomainConflictError",
]
