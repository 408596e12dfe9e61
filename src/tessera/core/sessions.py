"""SSO session lifecycle."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import structlog

from tessera.core.audit import AuditLog
from tessera.core.exceptions import ConfigurationError, NotFoundError, SSOError
from tessera.core.interfaces import SessionRepository
from tessera.core.types import (
    AuditEventType,
    RequestContext,
    SessionStatus,
    SSOConfiguration,
    SSOProviderType,
    SSOSession,
)

if TYPE_CHECKING:
    from tessera.adapters.oidc.client import OIDCClient
    from tessera.adapters.oidc.types import TokenResponse

logger = structlog.get_logger()

DEFAULT_SESSION_DURATION_SECONDS = 8 * 60 * 60


@dataclass(frozen=True)
class SessionStats:
    """Counts of a workspace's SSO sessions by state and age."""

    total: int
    active: int
    expired: int
    revoked: int
    logged_out: int
    created_last_24h: int
    created_last_week: int
    active_users: int


class SessionService:
    """Creates, validates and terminates SSO sessions."""

    def __init__(
        self,
        repository: SessionRepository,
        audit: AuditLog,
        oidc_client: OIDCClient | None = None,
        duration_seconds: int = DEFAULT_SESSION_DURATION_SECONDS,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._oidc = oidc_client
        self._duration = timedelta(seconds=duration_seconds)

    async def create(
        self,
        *,
        user_id: UUID,
        config: SSOConfiguration,
        idp_subject: str,
        idp_session_id: str | None = None,
        tokens: TokenResponse | None = None,
        context: RequestContext | None = None,
        now: datetime | None = None,
    ) -> SSOSession:
        """Create an active session after a successful login.

        Args:
            user_id: Local user the session belongs to.
            config: Configuration the login went through.
            idp_subject: Subject (NameID or ``sub``) asserted by the IdP.
            idp_session_id: SAML SessionIndex, used for IdP-initiated logout.
            tokens: OIDC tokens to keep for refresh and logout.
            context: Client information.
            now: Current time override.

        Returns:
            The stored session.
        """
        now = now or datetime.now(UTC)
        session = SSOSession(
            id=uuid4(),
            user_id=user_id,
            workspace_id=config.workspace_id,
            config_id=config.id,
            idp_subject=idp_subject,
            idp_session_id=idp_session_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self._duration,
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
        )
        if tokens is not None:
            session = _apply_tokens(session, tokens, now)

        stored = await self._repository.create(session)
        logger.info(
            "sso_session_created",
            session_id=str(stored.id),
            config_id=str(config.id),
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    async def get(self, session_id: UUID) -> SSOSession:
        """Get a session.

        Raises:
            NotFoundError: If the session does not exist.
        """
        session = await self._repository.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    async def validate(self, session_id: UUID, now: datetime | None = None) -> SSOSession | None:
        """Return the session if it is active and unexpired.

        A session found past its expiry is marked expired and audited.
        """
        now = now or datetime.now(UTC)
        session = await self._repository.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        if now > session.expires_at:
            await self._expire(session, now)
            return None
        return session

    async def touch(self, session_id: UUID, now: datetime | None = None) -> SSOSession | None:
        """Record activity on an active session."""
        now = now or datetime.now(UTC)
        session = await self.validate(session_id, now)
        if session is None:
            return None
        return await self._repository.update(replace(session, last_activity_at=now))

    async def refresh_tokens(
        self,
        session_id: UUID,
        config: SSOConfiguration,
        now: datetime | None = None,
    ) -> SSOSession:
        """Refresh the OIDC tokens held by a session.

        Raises:
            NotFoundError: If the session is missing or inactive.
            ConfigurationError: If the session cannot be refreshed.
            SSOError: If the refresh grant fails.
        """
        now = now or datetime.now(UTC)
        session = await self.validate(session_id, now)
        if session is None:
            raise NotFoundError(f"Session not active: {session_id}")
        if config.provider_type != SSOProviderType.OIDC or self._oidc is None:
            raise ConfigurationError("Token refresh requires an OIDC configuration")
        if not session.refresh_token:
            raise ConfigurationError("Session has no refresh token", code="no_refresh_token")

        try:
            tokens = await self._oidc.refresh_token(config, session.refresh_token)
        except SSOError as e:
            await self._audit.record_failure(
                AuditEventType.SESSION_REFRESHED,
                e,
                workspace_id=session.workspace_id,
                config_id=session.config_id,
                user_id=session.user_id,
                session_id=session.id,
            )
            raise

        updated = await self._repository.update(
            replace(_apply_tokens(session, tokens, now), last_activity_at=now)
        )
        await self._audit.record(
            AuditEventType.SESSION_REFRESHED,
            workspace_id=session.workspace_id,
            config_id=session.config_id,
            user_id=session.user_id,
            session_id=session.id,
        )
        return updated

    async def terminate(
        self,
        session_id: UUID,
        *,
        reason: str = "user_logout",
        context: RequestContext | None = None,
        now: datetime | None = None,
    ) -> SSOSession:
        """Log a session out.

        Raises:
            NotFoundError: If the session does not exist.
        """
        session = await self.get(session_id)
        if session.status != SessionStatus.ACTIVE:
            return session
        ended = await self._end(session, SessionStatus.LOGGED_OUT, now)
        await self._audit.record(
            AuditEventType.LOGOUT_SUCCEEDED,
            workspace_id=session.workspace_id,
            config_id=session.config_id,
            user_id=session.user_id,
            session_id=session.id,
            metadata={"reason": reason},
            context=context,
        )
        return ended

    async def terminate_all_for_user(
        self,
        user_id: UUID,
        workspace_id: UUID | None = None,
        now: datetime | None = None,
    ) -> int:
        """Log out every active session a user holds."""
        sessions = await self._repository.list_active(user_id=user_id, workspace_id=workspace_id)
        for session in sessions:
            await self._end(session, SessionStatus.LOGGED_OUT, now)
        logger.info("sso_sessions_terminated", user_id=str(user_id), count=len(sessions))
        return len(sessions)

    async def revoke_user_sessions(
        self,
        workspace_id: UUID,
        user_id: UUID,
        *,
        revoked_by: UUID | None = None,
        now: datetime | None = None,
    ) -> int:
        """Revoke a user's active sessions in a workspace."""
        sessions = await self._repository.list_active(user_id=user_id, workspace_id=workspace_id)
        for session in sessions:
            await self._end(session, SessionStatus.REVOKED, now)
        await self._audit.record(
            AuditEventType.SESSION_REVOKED,
            workspace_id=workspace_id,
            user_id=user_id,
            metadata={"count": len(sessions), "revoked_by": str(revoked_by) if revoked_by else None},
        )
        return len(sessions)

    async def revoke_for_config(self, config_id: UUID, now: datetime | None = None) -> int:
        """Revoke every active session created through a configuration."""
        sessions = await self._repository.list_active(config_id=config_id)
        for session in sessions:
            await self._end(session, SessionStatus.REVOKED, now)
        logger.info("sso_sessions_revoked", config_id=str(config_id), count=len(sessions))
        return len(sessions)

    async def list_active_for_user(self, user_id: UUID) -> list[SSOSession]:
        """Active sessions a user holds, across every workspace."""
        return await self._repository.list_active(user_id=user_id)

    async def list_for_workspace(
        self,
        workspace_id: UUID,
        *,
        user_id: UUID | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
    ) -> list[SSOSession]:
        """A workspace's sessions, newest first, optionally for one user or state."""
        return await self._repository.list_for_workspace(
            workspace_id, user_id=user_id, status=status, limit=limit
        )

    async def terminate_all_for_workspace(
        self,
        workspace_id: UUID,
        *,
        revoked_by: UUID | None = None,
        exclude_user_ids: frozenset[UUID] = frozenset(),
        now: datetime | None = None,
    ) -> int:
        """Revoke every active session in a workspace.

        Each revocation gets its own audit record flagged ``mass_revocation``.

        Args:
            workspace_id: Workspace to sign out.
            revoked_by: Acting user, recorded in the audit metadata.
            exclude_user_ids: Users whose sessions are kept.
            now: Current time override.

        Returns:
            Number of sessions revoked.
        """
        sessions = await self._repository.list_active(workspace_id=workspace_id)
        revoked = 0
        for session in sessions:
            if session.user_id in exclude_user_ids:
                continue
            await self._end(session, SessionStatus.REVOKED, now)
            await self._audit.record(
                AuditEventType.SESSION_REVOKED,
                workspace_id=workspace_id,
                config_id=session.config_id,
                user_id=session.user_id,
                session_id=session.id,
                metadata={
                    "revoked_by": str(revoked_by) if revoked_by else None,
                    "mass_revocation": True,
                },
            )
            revoked += 1
        logger.info("sso_workspace_sessions_revoked", workspace_id=str(workspace_id), count=revoked)
        return revoked

    async def stats(self, workspace_id: UUID, now: datetime | None = None) -> SessionStats:
        """Session counts for a workspace."""
        now = now or datetime.now(UTC)
        sessions = await self._repository.list_for_workspace(workspace_id)
        by_status = Counter(s.status for s in sessions)
        return SessionStats(
            total=len(sessions),
            active=by_status[SessionStatus.ACTIVE],
            expired=by_status[SessionStatus.EXPIRED],
            revoked=by_status[SessionStatus.REVOKED],
            logged_out=by_status[SessionStatus.LOGGED_OUT],
            created_last_24h=sum(1 for s in sessions if s.created_at > now - timedelta(days=1)),
            created_last_week=sum(1 for s in sessions if s.created_at > now - timedelta(days=7)),
            active_users=len({s.user_id for s in sessions if s.status == SessionStatus.ACTIVE}),
        )

    async def expire_stale(self, now: datetime | None = None) -> int:
        """Mark active sessions past their expiry as expired."""
        now = now or datetime.now(UTC)
        stale = await self._repository.list_stale(now)
        for session in stale:
            await self._expire(session, now)
        return len(stale)

    async def find_by_idp_session(self, config_id: UUID, idp_session_id: str) -> SSOSession | None:
        """Find an active session by the IdP session index."""
        return await self._repository.find_by_idp_session(config_id, idp_session_id)

    async def find_by_subject(self, config_id: UUID, idp_subject: str) -> list[SSOSession]:
        """List active sessions for an IdP subject under a configuration."""
        sessions = await self._repository.list_active(config_id=config_id)
        return [s for s in sessions if s.idp_subject == idp_subject]

    async def _expire(self, session: SSOSession, now: datetime) -> None:
        await self._end(session, SessionStatus.EXPIRED, now)
        await self._audit.record(
            AuditEventType.SESSION_EXPIRED,
            workspace_id=session.workspace_id,
            config_id=session.config_id,
            user_id=session.user_id,
            session_id=session.id,
        )

    async def _end(
        self,
        session: SSOSession,
        status: SessionStatus,
        now: datetime | None,
    ) -> SSOSession:
        now = now or datetime.now(UTC)
        return await self._repository.update(replace(session, status=status, terminated_at=now))


def _apply_tokens(session: SSOSession, tokens: TokenResponse, now: datetime) -> SSOSession:
    expires_at = now + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
    return replace(
        session,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token or session.refresh_token,
        id_token=tokens.id_token or session.id_token,
        token_expires_at=expires_at,
    )
