"""Protocols for the collaborators the SSO core depends on.

Implementations live in ``tessera.adapters`` (in-memory and PostgreSQL).
"""

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from tessera.adapters.audit.types import AuditLogCreate, AuditLogEntry
from tessera.core.types import (
    AuthState,
    AuditEventType,
    DomainRouting,
    OrgRole,
    ProvisioningRequest,
    ProvisioningResult,
    SessionStatus,
    SSOConfiguration,
    SSOSession,
    VerificationMethod,
    Workspace,
)


@runtime_checkable
class SSOConfigRepository(Protocol):
    """Storage for SSO configurations."""

    async def get(self, config_id: UUID) -> SSOConfiguration | None:
        """Get a configuration by ID."""
        ...

    async def list_for_workspace(self, workspace_id: UUID) -> list[SSOConfiguration]:
        """List configurations belonging to a workspace."""
        ...

    async def create(self, config: SSOConfiguration) -> SSOConfiguration:
        """Persist a new configuration."""
        ...

    async def update(self, config: SSOConfiguration) -> SSOConfiguration:
        """Persist changes to an existing configuration."""
        ...

    async def touch_usage(
        self,
        config_id: UUID,
        last_used_at: datetime,
        tested_at: datetime | None = None,
    ) -> None:
        """Stamp login bookkeeping without rewriting any other field.

        ``tested_at`` is left unchanged when None.
        """
        ...

    async def delete(self, config_id: UUID) -> bool:
        """Delete a configuration. Returns False if it did not exist."""
        ...


@runtime_checkable
class AuthStateRepository(Protocol):
    """Storage for single-use auth states."""

    async def create(self, auth_state: AuthState) -> None:
        """Persist a new auth state."""
        ...

    async def consume(self, state: str, now: datetime) -> AuthState | None:
        """Atomically mark an unused, unexpired state as used.

        Check and stamp happen in one operation. Returns the consumed record,
        or None when the state is unknown, already used or expired.
        """
        ...

    async def get(self, state: str) -> AuthState | None:
        """Get a state record without consuming it."""
        ...

    async def delete_expired(self, now: datetime) -> int:
        """Delete expired states. Returns the number removed."""
        ...


@runtime_checkable
class DomainRoutingRepository(Protocol):
    """Storage for email domain routings."""

    async def claim(self, routing: DomainRouting) -> DomainRouting | None:
        """Atomically insert a routing if its domain is unclaimed.

        Returns the stored routing, or None when the domain is already routed.
        """
        ...

    async def get(self, routing_id: UUID) -> DomainRouting | None:
        """Get a routing by ID."""
        ...

    async def get_by_domain(self, domain: str) -> DomainRouting | None:
        """Get the routing for a normalized domain."""
        ...

    async def list_for_workspace(self, workspace_id: UUID) -> list[DomainRouting]:
        """List routings belonging to a workspace."""
        ...

    async def mark_verified(
        self,
        routing_id: UUID,
        method: VerificationMethod,
        verified_at: datetime,
    ) -> DomainRouting | None:
        """Mark a routing verified."""
        ...

    async def delete(self, routing_id: UUID) -> bool:
        """Delete a routing."""
        ...

    async def delete_for_config(self, config_id: UUID) -> int:
        """Delete every routing pointing at a configuration."""
        ...


@runtime_checkable
class SessionRepository(Protocol):
    """Storage for SSO sessions."""

    async def create(self, session: SSOSession) -> SSOSession:
        """Persist a new session."""
        ...

    async def get(self, session_id: UUID) -> SSOSession | None:
        """Get a session by ID."""
        ...

    async def update(self, session: SSOSession) -> SSOSession:
        """Persist session changes."""
        ...

    async def list_active(
        self,
        *,
        user_id: UUID | None = None,
        workspace_id: UUID | None = None,
        config_id: UUID | None = None,
    ) -> list[SSOSession]:
        """List active sessions matching every given filter."""
        ...

    async def list_for_workspace(
        self,
        workspace_id: UUID,
        *,
        user_id: UUID | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
    ) -> list[SSOSession]:
        """List a workspace's sessions in any state, newest first."""
        ...

    async def find_by_idp_session(
        self,
        config_id: UUID,
        idp_session_id: str,
    ) -> SSOSession | None:
        """Find an active session by the IdP's session index."""
        ...

    async def list_stale(self, now: datetime) -> list[SSOSession]:
        """List active sessions whose expiry has passed."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit event storage."""

    async def record(self, entry: AuditLogCreate) -> UUID:
        """Append an entry. Returns its ID."""
        ...

    async def list(
        self,
        workspace_id: UUID,
        limit: int = 50,
        offset: int = 0,
        event_type: AuditEventType | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        """List a workspace's entries newest first, with the total count."""
        ...


@runtime_checkable
class UserProvisioner(Protocol):
    """Create-or-update a local account for a federated identity."""

    async def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Provision a user. The outcome is opaque to the SSO core."""
        ...


@runtime_checkable
class WorkspaceDirectory(Protocol):
    """Read access to workspaces and memberships owned by the host app."""

    async def get_workspace(self, workspace_id: UUID) -> Workspace | None:
        """Get a workspace by ID."""
        ...

    async def get_workspace_by_slug(self, slug: str) -> Workspace | None:
        """Get a workspace by slug."""
        ...

    async def get_member_role(self, workspace_id: UUID, user_id: UUID) -> OrgRole | None:
        """Get a user's role in a workspace, or None if not a member."""
        ...
