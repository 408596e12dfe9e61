"""SSO configuration administration.

A configuration's login availability is governed by two booleans:

    test_mode=True,  enabled=False  -> TESTING   (new configs; admins may test)
    test_mode=False, enabled=False  -> DISABLED
    test_mode=False, enabled=True   -> ENABLED

Leaving test mode requires a recorded successful test login, and enabling is
rejected while test mode is on, so ``enabled and test_mode`` never persists.
"""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import structlog

from tessera.core.audit import AuditLog
from tessera.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    PermissionDeniedError,
)
from tessera.core.interfaces import (
    DomainRoutingRepository,
    SSOConfigRepository,
    WorkspaceDirectory,
)
from tessera.core.sessions import SessionService, SessionStats
from tessera.core.types import (
    AttributeMapping,
    AuditEventType,
    GroupRoleRule,
    OrgRole,
    SessionStatus,
    SSOConfiguration,
    SSOProviderType,
    SSOSession,
    Workspace,
)

if TYPE_CHECKING:
    from tessera.adapters.audit.types import AuditLogEntry
    from tessera.adapters.saml.codec import SAMLCodec

logger = structlog.get_logger()

REDACTED = "[REDACTED]"
SSO_PLAN = "enterprise"

# Fields an admin may change through update(); the lifecycle flags other than
# test_mode go through set_enabled().
UPDATABLE_FIELDS = frozenset(
    f.name
    for f in fields(SSOConfiguration)
    if f.name
    not in {
        "id",
        "workspace_id",
        "provider_type",
        "enabled",
        "created_at",
        "updated_at",
        "last_used_at",
        "tested_at",
    }
)


async def require_role(
    directory: WorkspaceDirectory,
    workspace_id: UUID,
    user_id: UUID,
    required: OrgRole,
    action: str,
) -> OrgRole:
    """Ensure a user holds at least ``required`` in a workspace.

    Raises:
        PermissionDeniedError: If the user is not a member or ranks lower.
    """
    role = await directory.get_member_role(workspace_id, user_id)
    if role is None or not role.includes(required):
        logger.warning(
            "sso_permission_denied",
            workspace_id=str(workspace_id),
            user_id=str(user_id),
            action=action,
        )
        raise PermissionDeniedError(f"You don't have permission to {action}")
    return role


def redact(config: SSOConfiguration) -> SSOConfiguration:
    """Copy of a configuration with secrets masked."""
    return replace(
        config,
        saml_certificate=REDACTED if config.saml_certificate else None,
        oidc_client_secret=REDACTED if config.oidc_client_secret else None,
    )


def coerce_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Convert plain values (as received over the API) into domain types."""
    values = dict(settings)
    mapping = values.get("attribute_mapping")
    if isinstance(mapping, dict):
        values["attribute_mapping"] = AttributeMapping(**mapping)
    rules = values.get("group_role_mapping")
    if rules is not None:
        values["group_role_mapping"] = [
            rule
            if isinstance(rule, GroupRoleRule)
            else GroupRoleRule(idp_group=rule["idp_group"], role=OrgRole(rule["role"]))
            for rule in rules
        ]
    if "jit_default_role" in values and values["jit_default_role"] is not None:
        values["jit_default_role"] = OrgRole(values["jit_default_role"])
    for key in ("allowed_domains", "blocked_domains"):
        if values.get(key) is not None:
            values[key] = [d.strip().lower() for d in values[key] if d.strip()]
    return values


def validate_provider_fields(config: SSOConfiguration) -> None:
    """Check the provider-specific fields are set together.

    Raises:
        ConfigurationError: If required fields are missing.
    """
    if config.provider_type == SSOProviderType.SAML:
        if not (config.saml_entity_id and config.saml_sso_url and config.saml_certificate):
            raise ConfigurationError(
                "SAML configuration requires entity ID, SSO URL, and certificate",
                details={"missing": config.missing_fields()},
            )
    else:
        if not (config.oidc_client_id and config.oidc_client_secret):
            raise ConfigurationError(
                "OIDC configuration requires client ID and client secret",
                details={"missing": config.missing_fields()},
            )
        if not config.oidc_issuer and not (config.oidc_authorization_url and config.oidc_token_url):
            raise ConfigurationError(
                "OIDC configuration requires either an issuer or authorization and token URLs",
                details={"missing": config.missing_fields()},
            )
    if not config.attribute_mapping.email:
        raise ConfigurationError("Attribute mapping requires an email path")


class SSOConfigService:
    """Administrative operations on SSO configurations."""

    def __init__(
        self,
        configs: SSOConfigRepository,
        routings: DomainRoutingRepository,
        sessions: SessionService,
        audit: AuditLog,
        directory: WorkspaceDirectory,
        saml_codec: SAMLCodec | None = None,
    ) -> None:
        self._configs = configs
        self._routings = routings
        self._sessions = sessions
        self._audit = audit
        self._directory = directory
        self._saml = saml_codec

    async def _load(self, config_id: UUID) -> SSOConfiguration:
        config = await self._configs.get(config_id)
        if config is None:
            raise NotFoundError(f"SSO configuration not found: {config_id}")
        return config

    async def _workspace(self, workspace_id: UUID) -> Workspace:
        workspace = await self._directory.get_workspace(workspace_id)
        if workspace is None:
            raise NotFoundError(f"Workspace not found: {workspace_id}")
        return workspace

    async def create(
        self,
        workspace_id: UUID,
        actor_id: UUID,
        provider_type: SSOProviderType,
        name: str,
        settings: dict[str, Any] | None = None,
    ) -> SSOConfiguration:
        """Create a configuration in test mode.

        Args:
            workspace_id: Owning workspace.
            actor_id: Admin creating the configuration.
            provider_type: SAML or OIDC.
            name: Display name.
            settings: Any updatable configuration fields.

        Returns:
            The created configuration (secrets redacted).

        Raises:
            PermissionDeniedError: If the actor is not an admin or the plan lacks SSO.
            ConfigurationError: If provider fields are missing.
        """
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "create SSO configuration")
        workspace = await self._workspace(workspace_id)
        if workspace.plan != SSO_PLAN:
            raise PermissionDeniedError("SSO is only available on Enterprise plans")

        values = coerce_settings(settings or {})
        unknown = set(values) - UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")
        values.pop("test_mode", None)

        now = datetime.now(UTC)
        config = SSOConfiguration(
            id=uuid4(),
            workspace_id=workspace_id,
            provider_type=SSOProviderType(provider_type),
            name=name,
            enabled=False,
            test_mode=True,
            created_at=now,
            updated_at=now,
            **values,
        )
        validate_provider_fields(config)

        created = await self._configs.create(config)
        await self._audit.record(
            AuditEventType.CONFIG_CREATED,
            workspace_id=workspace_id,
            config_id=created.id,
            user_id=actor_id,
            metadata={"provider": created.provider_type.value, "name": created.name},
        )
        logger.info("sso_config_created", config_id=str(created.id), workspace_id=str(workspace_id))
        return redact(created)

    async def get(self, config_id: UUID, actor_id: UUID) -> SSOConfiguration:
        """Get a configuration with secrets redacted (admin only)."""
        config = await self._load(config_id)
        await require_role(
            self._directory, config.workspace_id, actor_id, OrgRole.ADMIN, "view SSO configuration"
        )
        return redact(config)

    async def list(self, workspace_id: UUID, actor_id: UUID) -> list[SSOConfiguration]:
        """List a workspace's configurations with secrets redacted (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view SSO configuration")
        return [redact(c) for c in await self._configs.list_for_workspace(workspace_id)]

    async def update(
        self,
        config_id: UUID,
        actor_id: UUID,
        changes: dict[str, Any],
    ) -> SSOConfiguration:
        """Apply admin changes to a configuration.

        Turning test mode off requires a recorded successful test login.
        Turning it back on also disables the configuration.

        Raises:
            ConfigurationError: On unknown fields, incomplete provider fields,
                or leaving test mode before a successful test.
        """
        config = await self._load(config_id)
        await require_role(
            self._directory, config.workspace_id, actor_id, OrgRole.ADMIN, "update SSO configuration"
        )

        values = coerce_settings(changes)
        unknown = set(values) - UPDATABLE_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown configuration fields: {', '.join(sorted(unknown))}")

        # Redacted placeholders echoed back by clients mean "unchanged".
        for secret in ("saml_certificate", "oidc_client_secret"):
            if values.get(secret) == REDACTED:
                values.pop(secret)

        if values.get("test_mode") is False and config.test_mode and config.tested_at is None:
            raise ConfigurationError(
                "Complete a successful test login before leaving test mode",
                code="not_tested",
            )
        if values.get("test_mode") is True:
            values["enabled"] = False

        updated = replace(config, **values, updated_at=datetime.now(UTC))
        validate_provider_fields(updated)
        stored = await self._configs.update(updated)

        await self._audit.record(
            AuditEventType.CONFIG_UPDATED,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=actor_id,
            metadata={"updated_fields": sorted(k for k in values if k != "enabled")},
        )
        return redact(stored)

    async def set_enabled(self, config_id: UUID, actor_id: UUID, enabled: bool) -> SSOConfiguration:
        """Enable or disable a configuration.

        Raises:
            ConfigurationError: If enabling while in test mode or incomplete.
        """
        config = await self._load(config_id)
        await require_role(
            self._directory, config.workspace_id, actor_id, OrgRole.ADMIN, "update SSO configuration"
        )
        if enabled:
            if config.test_mode:
                raise ConfigurationError(
                    "Cannot enable SSO while in test mode. Test the configuration first.",
                    code="test_mode_active",
                )
            validate_provider_fields(config)

        stored = await self._configs.update(
            replace(config, enabled=enabled, updated_at=datetime.now(UTC))
        )
        await self._audit.record(
            AuditEventType.CONFIG_ENABLED if enabled else AuditEventType.CONFIG_DISABLED,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=actor_id,
        )
        logger.info("sso_config_toggled", config_id=str(config.id), enabled=enabled)
        return redact(stored)

    async def delete(self, config_id: UUID, actor_id: UUID) -> None:
        """Delete a configuration (workspace owner only).

        Active sessions are revoked and domain routings removed. The deletion
        is audited before the record goes away.
        """
        config = await self._load(config_id)
        workspace = await self._workspace(config.workspace_id)
        if workspace.owner_id != actor_id:
            raise PermissionDeniedError("Only the workspace owner can delete SSO configuration")

        revoked = await self._sessions.revoke_for_config(config.id)
        removed = await self._routings.delete_for_config(config.id)
        await self._audit.record(
            AuditEventType.CONFIG_DELETED,
            workspace_id=config.workspace_id,
            config_id=config.id,
            user_id=actor_id,
            metadata={
                "name": config.name,
                "sessions_revoked": revoked,
                "routings_removed": removed,
            },
        )
        await self._configs.delete(config.id)
        logger.info("sso_config_deleted", config_id=str(config.id))

    async def sp_metadata(self, config_id: UUID, actor_id: UUID) -> str:
        """SP metadata XML for a SAML configuration (admin only)."""
        config = await self._load(config_id)
        await require_role(
            self._directory, config.workspace_id, actor_id, OrgRole.ADMIN, "view SP metadata"
        )
        if config.provider_type != SSOProviderType.SAML or self._saml is None:
            raise ConfigurationError("SP metadata is only available for SAML configurations")
        workspace = await self._workspace(config.workspace_id)
        return self._saml.generate_sp_metadata(config, workspace.slug)

    async def public_sp_metadata(self, workspace_slug: str) -> str:
        """SP metadata for a workspace's SAML configuration, for IdP import.

        Served without authentication; only configurations accepting logins
        are published.

        Raises:
            NotFoundError: If the workspace has no such SAML configuration.
        """
        workspace = await self._directory.get_workspace_by_slug(workspace_slug)
        if workspace is None or self._saml is None:
            raise NotFoundError(f"Workspace not found: {workspace_slug}")
        for config in await self._configs.list_for_workspace(workspace.id):
            if config.provider_type == SSOProviderType.SAML and config.accepts_logins:
                return self._saml.generate_sp_metadata(config, workspace.slug)
        raise NotFoundError(f"No SAML configuration for workspace: {workspace_slug}")

    async def audit_log(
        self,
        workspace_id: UUID,
        actor_id: UUID,
        limit: int = 50,
        offset: int = 0,
        event_type: AuditEventType | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        """A workspace's SSO audit log, newest first (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view audit logs")
        return await self._audit.list(workspace_id, limit, offset, event_type)

    async def revoke_user_sessions(self, workspace_id: UUID, user_id: UUID, actor_id: UUID) -> int:
        """Revoke another user's SSO sessions (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "revoke sessions")
        return await self._sessions.revoke_user_sessions(workspace_id, user_id, revoked_by=actor_id)

    async def my_sessions(self, actor_id: UUID) -> list[SSOSession]:
        """The caller's own active SSO sessions."""
        return await self._sessions.list_active_for_user(actor_id)

    async def user_sessions(self, workspace_id: UUID, user_id: UUID, actor_id: UUID) -> list[SSOSession]:
        """Every session a user has held in a workspace (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view user sessions")
        return await self._sessions.list_for_workspace(workspace_id, user_id=user_id)

    async def workspace_sessions(
        self,
        workspace_id: UUID,
        actor_id: UUID,
        *,
        status: SessionStatus = SessionStatus.ACTIVE,
        limit: int = 100,
    ) -> list[SSOSession]:
        """A workspace's sessions in one state, newest first (admin only)."""
        await require_role(self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view workspace sessions")
        return await self._sessions.list_for_workspace(workspace_id, status=status, limit=limit)

    async def terminate_workspace_sessions(
        self,
        workspace_id: UUID,
        actor_id: UUID,
        *,
        exclude_admins: bool = False,
    ) -> int:
        """Revoke every active session in a workspace (owner only).

        With ``exclude_admins`` the sessions of admins and the owner survive,
        so the workspace keeps someone able to administer it.
        """
        await require_role(
            self._directory, workspace_id, actor_id, OrgRole.OWNER, "terminate all workspace sessions"
        )
        excluded: set[UUID] = set()
        if exclude_admins:
            for session in await self._sessions.list_for_workspace(workspace_id, status=SessionStatus.ACTIVE):
                role = await self._directory.get_member_role(workspace_id, session.user_id)
                if role is not None and role.includes(OrgRole.ADMIN):
                    excluded.add(session.user_id)
        return await self._sessions.terminate_all_for_workspace(
            workspace_id, revoked_by=actor_id, exclude_user_ids=frozenset(excluded)
        )

    async def session_stats(self, workspace_id: UUID, actor_id: UUID) -> SessionStats:
        """Session counts for a workspace (admin only)."""
        await require_role(
            self._directory, workspace_id, actor_id, OrgRole.ADMIN, "view session statistics"
        )
        return await self._sessions.stats(workspace_id)

    async def mark_used(self, config: SSOConfiguration, *, tested: bool, now: datetime) -> None:
        """Record a successful login against a configuration."""
        await self._configs.touch_usage(config.id, last_used_at=now, tested_at=now if tested else None)
