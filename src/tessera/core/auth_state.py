"""Single-use auth state for in-flight logins.

Each initiated login gets a random ``state`` token, a nonce and (for OIDC) a
PKCE verifier. The callback consumes the state exactly once; the check and the
``used_at`` stamp happen in one repository call so two concurrent callbacks
replaying the same state cannot both succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog

from tessera.core.audit import AuditLog
from tessera.core.crypto import NONCE_LENGTH, STATE_LENGTH, generate_pkce, secure_random_string
from tessera.core.interfaces import AuthStateRepository
from tessera.core.types import (
    AuditEventType,
    AuthState,
    RequestContext,
    SSOConfiguration,
    SSOProviderType,
)

logger = structlog.get_logger()

DEFAULT_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class AuthStateGrant:
    """Values handed to the protocol builders for a new login attempt."""

    state: str
    nonce: str
    expires_at: datetime
    code_verifier: str | None = None
    code_challenge: str | None = None


@dataclass(frozen=True)
class StateValidation:
    """Result of consuming an auth state."""

    valid: bool
    auth_state: AuthState | None = None
    error: str | None = None
    code: str | None = None

    @property
    def workspace_id(self) -> UUID | None:
        return self.auth_state.workspace_id if self.auth_state else None

    @property
    def config_id(self) -> UUID | None:
        return self.auth_state.config_id if self.auth_state else None

    @property
    def nonce(self) -> str | None:
        return self.auth_state.nonce if self.auth_state else None

    @property
    def code_verifier(self) -> str | None:
        return self.auth_state.code_verifier if self.auth_state else None

    @property
    def redirect_uri(self) -> str | None:
        return self.auth_state.redirect_uri if self.auth_state else None


class AuthStateStore:
    """Issues and consumes auth states."""

    def __init__(
        self,
        repository: AuthStateRepository,
        audit: AuditLog,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._ttl = timedelta(seconds=ttl_seconds)

    async def create(
        self,
        config: SSOConfiguration,
        redirect_uri: str,
        *,
        initiated_by: UUID | None = None,
        context: RequestContext | None = None,
        now: datetime | None = None,
    ) -> AuthStateGrant:
        """Create and persist a fresh auth state.

        A PKCE pair is generated for OIDC configurations only. A
        ``login_initiated`` audit record is written.

        Args:
            config: Configuration the login is for.
            redirect_uri: Where the IdP sends the user back.
            initiated_by: Acting user, when known.
            context: Client information for the audit record.
            now: Current time override.

        Returns:
            The generated state, nonce and PKCE values.
        """
        now = now or datetime.now(UTC)
        verifier = challenge = None
        if config.provider_type == SSOProviderType.OIDC:
            pkce = generate_pkce()
            verifier, challenge = pkce.verifier, pkce.challenge

        record = AuthState(
            state=secure_random_string(STATE_LENGTH),
            workspace_id=config.workspace_id,
            config_id=config.id,
            nonce=secure_random_string(NONCE_LENGTH),
            redirect_uri=redirect_uri,
            created_at=now,
            expires_at=now + self._ttl,
            code_verifier=verifier,
            initiated_by=initiated_by,
        )
        await self._repository.create(record)

        await self._audit.record(
            AuditEventType.LOGIN_INITIATED,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=initiated_by,
            metadata={"provider": config.provider_type.value},
            context=context,
        )
        logger.info(
            "sso_state_created",
            config_id=str(config.id),
            expires_at=record.expires_at.isoformat(),
        )

        return AuthStateGrant(
            state=record.state,
            nonce=record.nonce,
            expires_at=record.expires_at,
            code_verifier=verifier,
            code_challenge=challenge,
        )

    async def validate(self, state: str, now: datetime | None = None) -> StateValidation:
        """Consume a state, succeeding at most once.

        Args:
            state: State value returned by the IdP.
            now: Current time override.

        Returns:
            Validation result. Failures carry ``state_not_found``,
            ``state_used`` or ``state_expired``.
        """
        now = now or datetime.now(UTC)
        if not state:
            return StateValidation(valid=False, error="Missing state", code="state_not_found")

        consumed = await self._repository.consume(state, now)
        if consumed is not None:
            return StateValidation(valid=True, auth_state=consumed)

        # The atomic consume already failed; this lookup only classifies why.
        existing = await self._repository.get(state)
        if existing is None:
            result = StateValidation(valid=False, error="Invalid state", code="state_not_found")
        elif existing.used_at is not None:
            result = StateValidation(
                valid=False,
                auth_state=existing,
                error="State already used",
                code="state_used",
            )
        else:
            result = StateValidation(
                valid=False,
                auth_state=existing,
                error="State expired",
                code="state_expired",
            )

        logger.warning("sso_state_rejected", code=result.code)
        return result

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete expired states."""
        return await self._repository.delete_expired(now or datetime.now(UTC))
