"""In-memory adapters for tests and local development.

Each store guards its dict with an ``asyncio.Lock`` so the check-and-set
operations (``consume``, ``claim``) stay atomic across concurrent tasks.
Records are copied on the way in and out so callers cannot mutate stored
state behind the lock.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import UTC, datetime
from uuid import UUID, uuid4

from tessera.adapters.audit.types import AuditLogCreate, AuditLogEntry
from tessera.core.types import (
    AuditEventType,
    AuthState,
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


class InMemorySSOConfigRepository:
    """SSO configurations keyed by ID."""

    def __init__(self) -> None:
        self._configs: dict[UUID, SSOConfiguration] = {}
        self._lock = asyncio.Lock()

    async def get(self, config_id: UUID) -> SSOConfiguration | None:
        config = self._configs.get(config_id)
        return copy.deepcopy(config) if config else None

    async def list_for_workspace(self, workspace_id: UUID) -> list[SSOConfiguration]:
        return [
            copy.deepcopy(c) for c in self._configs.values() if c.workspace_id == workspace_id
        ]

    async def create(self, config: SSOConfiguration) -> SSOConfiguration:
        async with self._lock:
            now = datetime.now(UTC)
            stored = replace(copy.deepcopy(config), created_at=config.created_at or now, updated_at=now)
            self._configs[config.id] = stored
            return copy.deepcopy(stored)

    async def update(self, config: SSOConfiguration) -> SSOConfiguration:
        async with self._lock:
            if config.id not in self._configs:
                raise RuntimeError(f"SSO configuration {config.id} does not exist")
            stored = replace(copy.deepcopy(config), updated_at=datetime.now(UTC))
            self._configs[config.id] = stored
            return copy.deepcopy(stored)

    async def touch_usage(
        self,
        config_id: UUID,
        last_used_at: datetime,
        tested_at: datetime | None = None,
    ) -> None:
        async with self._lock:
            config = self._configs.get(config_id)
            if config is None:
                return
            config.last_used_at = last_used_at
            if tested_at is not None:
                config.tested_at = tested_at

    async def delete(self, config_id: UUID) -> bool:
        async with self._lock:
            return self._configs.pop(config_id, None) is not None


class InMemoryAuthStateRepository:
    """Auth states keyed by the state string."""

    def __init__(self) -> None:
        self._states: dict[str, AuthState] = {}
        self._lock = asyncio.Lock()

    async def create(self, auth_state: AuthState) -> None:
        async with self._lock:
            self._states[auth_state.state] = copy.copy(auth_state)

    async def consume(self, state: str, now: datetime) -> AuthState | None:
        async with self._lock:
            record = self._states.get(state)
            if record is None or record.used_at is not None or now > record.expires_at:
                return None
            record.used_at = now
            return copy.copy(record)

    async def get(self, state: str) -> AuthState | None:
        record = self._states.get(state)
        return copy.copy(record) if record else None

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, record in self._states.items() if record.expires_at < now]
            for key in expired:
                del self._states[key]
            return len(expired)


class InMemoryDomainRoutingRepository:
    """Domain routings with a unique index on the domain."""

    def __init__(self) -> None:
        self._routings: dict[UUID, DomainRouting] = {}
        self._by_domain: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    async def claim(self, routing: DomainRouting) -> DomainRouting | None:
        async with self._lock:
            if routing.domain in self._by_domain:
                return None
            self._routings[routing.id] = copy.copy(routing)
            self._by_domain[routing.domain] = routing.id
            return copy.copy(routing)

    async def get(self, routing_id: UUID) -> DomainRouting | None:
        routing = self._routings.get(routing_id)
        return copy.copy(routing) if routing else None

    async def get_by_domain(self, domain: str) -> DomainRouting | None:
        routing_id = self._by_domain.get(domain)
        return await self.get(routing_id) if routing_id else None

    async def list_for_workspace(self, workspace_id: UUID) -> list[DomainRouting]:
        routings = [r for r in self._routings.values() if r.workspace_id == workspace_id]
        return [copy.copy(r) for r in sorted(routings, key=lambda r: r.domain)]

    async def mark_verified(
        self,
        routing_id: UUID,
        method: VerificationMethod,
        verified_at: datetime,
    ) -> DomainRouting | None:
        async with self._lock:
            routing = self._routings.get(routing_id)
            if routing is None:
                return None
            routing.verified = True
            routing.verification_method = method
            routing.verified_at = verified_at
            return copy.copy(routing)

    async def delete(self, routing_id: UUID) -> bool:
        async with self._lock:
            routing = self._routings.pop(routing_id, None)
            if routing is None:
                return False
            self._by_domain.pop(routing.domain, None)
            return True

    async def delete_for_config(self, config_id: UUID) -> int:
        async with self._lock:
            doomed = [r for r in self._routings.values() if r.config_id == config_id]
            for routing in doomed:
                del self._routings[routing.id]
                self._by_domain.pop(routing.domain, None)
            return len(doomed)


class InMemorySessionRepository:
    """SSO sessions keyed by ID."""

    def __init__(self) -> None:
        self._sessions: dict[UUID, SSOSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, session: SSOSession) -> SSOSession:
        async with self._lock:
            self._sessions[session.id] = copy.copy(session)
            return copy.copy(session)

    async def get(self, session_id: UUID) -> SSOSession | None:
        session = self._sessions.get(session_id)
        return copy.copy(session) if session else None

    async def update(self, session: SSOSession) -> SSOSession:
        async with self._lock:
            if session.id not in self._sessions:
                raise RuntimeError(f"SSO session {session.id} does not exist")
            self._sessions[session.id] = copy.copy(session)
            return copy.copy(session)

    async def list_active(
        self,
        *,
        user_id: UUID | None = None,
        workspace_id: UUID | None = None,
        config_id: UUID | None = None,
    ) -> list[SSOSession]:
        matches = []
        for session in self._sessions.values():
            if session.status != SessionStatus.ACTIVE:
                continue
            if user_id is not None and session.user_id != user_id:
                continue
            if workspace_id is not None and session.workspace_id != workspace_id:
                continue
            if config_id is not None and session.config_id != config_id:
                continue
            matches.append(copy.copy(session))
        return sorted(matches, key=lambda s: s.created_at)

    async def list_for_workspace(
        self,
        workspace_id: UUID,
        *,
        user_id: UUID | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
    ) -> list[SSOSession]:
        matches = [
            copy.copy(s)
            for s in self._sessions.values()
            if s.workspace_id == workspace_id
            and (user_id is None or s.user_id == user_id)
            and (status is None or s.status == status)
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches if limit is None else matches[:limit]

    async def find_by_idp_session(
        self,
        config_id: UUID,
        idp_session_id: str,
    ) -> SSOSession | None:
        for session in await self.list_active(config_id=config_id):
            if session.idp_session_id == idp_session_id:
                return session
        return None

    async def list_stale(self, now: datetime) -> list[SSOSession]:
        return [s for s in await self.list_active() if s.expires_at < now]


class InMemoryAuditSink:
    """Append-only list of audit entries."""

    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []
        self._lock = asyncio.Lock()

    async def record(self, entry: AuditLogCreate) -> UUID:
        async with self._lock:
            stored = AuditLogEntry(id=uuid4(), timestamp=datetime.now(UTC), **entry.model_dump())
            self.entries.append(stored)
            return stored.id

    async def list(
        self,
        workspace_id: UUID,
        limit: int = 50,
        offset: int = 0,
        event_type: AuditEventType | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        matches = [
            e
            for e in reversed(self.entries)
            if e.workspace_id == workspace_id and (event_type is None or e.event_type == event_type)
        ]
        return matches[offset : offset + limit], len(matches)

    def of_type(self, event_type: AuditEventType) -> list[AuditLogEntry]:
        """Entries of one type in insertion order."""
        return [e for e in self.entries if e.event_type == event_type]


class InMemoryWorkspaceDirectory:
    """Workspaces and memberships, also acting as the user provisioner.

    Provisioning follows the same rules as the PostgreSQL adapter: existing
    members are updated, unknown users are only created when allowed, and the
    owner's role is never changed.
    """

    def __init__(self) -> None:
        self.workspaces: dict[UUID, Workspace] = {}
        self.members: dict[tuple[UUID, UUID], OrgRole] = {}
        self.users: dict[str, UUID] = {}
        self._lock = asyncio.Lock()

    def add_workspace(self, workspace: Workspace) -> Workspace:
        """Register a workspace and make its owner a member."""
        self.workspaces[workspace.id] = workspace
        self.members[(workspace.id, workspace.owner_id)] = OrgRole.OWNER
        return workspace

    def add_member(
        self, workspace_id: UUID, user_id: UUID, role: OrgRole, email: str | None = None
    ) -> None:
        """Add a member, optionally registering the user's email."""
        self.members[(workspace_id, user_id)] = role
        if email:
            self.users[email.lower()] = user_id

    async def get_workspace(self, workspace_id: UUID) -> Workspace | None:
        return self.workspaces.get(workspace_id)

    async def get_workspace_by_slug(self, slug: str) -> Workspace | None:
        for workspace in self.workspaces.values():
            if workspace.slug == slug:
                return workspace
        return None

    async def get_member_role(self, workspace_id: UUID, user_id: UUID) -> OrgRole | None:
        return self.members.get((workspace_id, user_id))

    async def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        async with self._lock:
            email = request.email.lower()
            user_id = self.users.get(email)
            created = False
            if user_id is None:
                if not request.allow_create:
                    return ProvisioningResult(
                        success=False, error="User not found and JIT provisioning disabled"
                    )
                user_id = uuid4()
                self.users[email] = user_id
                created = True

            key = (request.workspace_id, user_id)
            current = self.members.get(key)
            if current is None:
                if not request.allow_create:
                    return ProvisioningResult(
                        success=False,
                        user_id=user_id,
                        error="User is not a member of this workspace",
                    )
                self.members[key] = request.role
            elif current != OrgRole.OWNER:
                self.members[key] = request.role
            return ProvisioningResult(success=True, user_id=user_id, created=created)
