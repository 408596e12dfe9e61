"""PostgreSQL repositories for SSO configurations, states, routings and sessions.

Rows are read and written through :class:`AppDatabase`. JSON columns hold the
attribute mapping and group rules; list settings use ``text[]``.
"""

import json
from dataclasses import asdict
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from tessera.adapters.db.app_db import AppDatabase
from tessera.core.types import (
    AttributeMapping,
    AuthState,
    DomainRouting,
    GroupRoleRule,
    OrgRole,
    SessionStatus,
    SSOConfiguration,
    SSOProviderType,
    SSOSession,
    VerificationMethod,
)

logger = structlog.get_logger()

_CONFIG_COLUMNS = (
    "id",
    "workspace_id",
    "provider_type",
    "name",
    "enabled",
    "test_mode",
    "saml_entity_id",
    "saml_sso_url",
    "saml_slo_url",
    "saml_certificate",
    "saml_sign_requests",
    "saml_signature_algorithm",
    "saml_digest_algorithm",
    "saml_name_id_format",
    "oidc_client_id",
    "oidc_client_secret",
    "oidc_issuer",
    "oidc_authorization_url",
    "oidc_token_url",
    "oidc_userinfo_url",
    "oidc_jwks_url",
    "oidc_scopes",
    "attribute_mapping",
    "group_role_mapping",
    "allowed_domains",
    "blocked_domains",
    "enforce_sso",
    "allow_bypass_for_owner",
    "jit_provisioning",
    "jit_default_role",
    "last_used_at",
    "tested_at",
)


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _config_values(config: SSOConfiguration) -> list[Any]:
    values: list[Any] = []
    for column in _CONFIG_COLUMNS:
        value = getattr(config, column)
        if column == "attribute_mapping":
            value = json.dumps(asdict(value))
        elif column == "group_role_mapping":
            value = json.dumps([{"idp_group": r.idp_group, "role": r.role.value} for r in value])
        elif column in ("provider_type", "jit_default_role"):
            value = value.value
        values.append(value)
    return values


def _row_to_config(row: dict[str, Any]) -> SSOConfiguration:
    data = {column: row[column] for column in _CONFIG_COLUMNS}
    data["provider_type"] = SSOProviderType(data["provider_type"])
    data["jit_default_role"] = OrgRole(data["jit_default_role"])
    data["attribute_mapping"] = AttributeMapping(**(_json(data["attribute_mapping"]) or {}))
    data["group_role_mapping"] = [
        GroupRoleRule(idp_group=r["idp_group"], role=OrgRole(r["role"]))
        for r in _json(data["group_role_mapping"]) or []
    ]
    for column in ("oidc_scopes", "allowed_domains", "blocked_domains"):
        data[column] = list(data[column] or [])
    return SSOConfiguration(**data, created_at=row["created_at"], updated_at=row["updated_at"])


def _row_to_auth_state(row: dict[str, Any]) -> AuthState:
    return AuthState(
        state=row["state"],
        workspace_id=row["workspace_id"],
        config_id=row["config_id"],
        nonce=row["nonce"],
        redirect_uri=row["redirect_uri"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        code_verifier=row["code_verifier"],
        used_at=row["used_at"],
        initiated_by=row["initiated_by"],
    )


def _row_to_routing(row: dict[str, Any]) -> DomainRouting:
    return DomainRouting(
        id=row["id"],
        domain=row["domain"],
        workspace_id=row["workspace_id"],
        config_id=row["config_id"],
        verification_token=row["verification_token"],
        created_at=row["created_at"],
        verified=row["verified"],
        verification_method=VerificationMethod(row["verification_method"]),
        verified_at=row["verified_at"],
    )


def _row_to_session(row: dict[str, Any]) -> SSOSession:
    return SSOSession(
        id=row["id"],
        user_id=row["user_id"],
        workspace_id=row["workspace_id"],
        config_id=row["config_id"],
        idp_subject=row["idp_subject"],
        created_at=row["created_at"],
        last_activity_at=row["last_activity_at"],
        expires_at=row["expires_at"],
        status=SessionStatus(row["status"]),
        idp_session_id=row["idp_session_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        id_token=row["id_token"],
        token_expires_at=row["token_expires_at"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        terminated_at=row["terminated_at"],
    )


def _affected(status: str) -> int:
    # Status is like "DELETE 3"
    return int(status.split()[-1])


class PostgresSSOConfigRepository:
    """SSO configurations in the ``sso_configurations`` table."""

    def __init__(self, db: AppDatabase) -> None:
        self._db = db

    async def get(self, config_id: UUID) -> SSOConfiguration | None:
        row = await self._db.fetch_one("SELECT * FROM sso_configurations WHERE id = $1", config_id)
        return _row_to_config(row) if row else None

    async def list_for_workspace(self, workspace_id: UUID) -> list[SSOConfiguration]:
        rows = await self._db.fetch_all(
            "SELECT * FROM sso_configurations WHERE workspace_id = $1 ORDER BY created_at",
            workspace_id,
        )
        return [_row_to_config(row) for row in rows]

    async def create(self, config: SSOConfiguration) -> SSOConfiguration:
        columns = ", ".join(_CONFIG_COLUMNS)
        placeholders = ", ".join(f"${i}" for i in range(1, len(_CONFIG_COLUMNS) + 1))
        row = await self._db.execute_returning(
            f"INSERT INTO sso_configurations ({columns}) VALUES ({placeholders}) RETURNING *",
            *_config_values(config),
        )
        if row is None:
            raise RuntimeError("Failed to create SSO configuration")
        logger.info("sso_config_stored", config_id=str(config.id))
        return _row_to_config(row)

    async def update(self, config: SSOConfiguration) -> SSOConfiguration:
        # id and workspace_id are immutable
        mutable = _CONFIG_COLUMNS[2:]
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(mutable, start=2))
        row = await self._db.execute_returning(
            f"""UPDATE sso_configurations
                SET {assignments}, updated_at = NOW()
                WHERE id = $1
                RETURNING *""",
            config.id,
            *_config_values(config)[2:],
        )
        if row is None:
            raise RuntimeError(f"SSO configuration {config.id} does not exist")
        return _row_to_config(row)

    async def touch_usage(
        self,
        config_id: UUID,
        last_used_at: datetime,
        tested_at: datetime | None = None,
    ) -> None:
        await self._db.execute(
            """UPDATE sso_configurations
               SET last_used_at = $2, tested_at = COALESCE($3, tested_at)
               WHERE id = $1""",
            config_id,
            last_used_at,
            tested_at,
        )

    async def delete(self, config_id: UUID) -> bool:
        result = await self._db.execute("DELETE FROM sso_configurations WHERE id = $1", config_id)
        return _affected(result) > 0


class PostgresAuthStateRepository:
    """Single-use auth states in the ``sso_auth_states`` table."""

    def __init__(self, db: AppDatabase) -> None:
        self._db = db

    async def create(self, auth_state: AuthState) -> None:
        await self._db.execute(
            """INSERT INTO sso_auth_states (
                   state, workspace_id, config_id, nonce, redirect_uri, created_at,
                   expires_at, code_verifier, used_at, initiated_by
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)""",
            auth_state.state,
            auth_state.workspace_id,
            auth_state.config_id,
            auth_state.nonce,
            auth_state.redirect_uri,
            auth_state.created_at,
            auth_state.expires_at,
            auth_state.code_verifier,
            auth_state.used_at,
            auth_state.initiated_by,
        )

    async def consume(self, state: str, now: datetime) -> AuthState | None:
        row = await self._db.execute_returning(
            """UPDATE sso_auth_states
               SET used_at = $2
               WHERE state = $1 AND used_at IS NULL AND expires_at >= $2
               RETURNING *""",
            state,
            now,
        )
        return _row_to_auth_state(row) if row else None

    async def get(self, state: str) -> AuthState | None:
        row = await self._db.fetch_one("SELECT * FROM sso_auth_states WHERE state = $1", state)
        return _row_to_auth_state(row) if row else None

    async def delete_expired(self, now: datetime) -> int:
        result = await self._db.execute("DELETE FROM sso_auth_states WHERE expires_at < $1", now)
        return _affected(result)


class PostgresDomainRoutingRepository:
    """Domain routings in the ``sso_domain_routings`` table.

    ``domain`` carries a unique constraint, which is what makes ``claim``
    first-writer-wins across concurrent requests.
    """

    def __init__(self, db: AppDatabase) -> None:
        self._db = db

    async def claim(self, routing: DomainRouting) -> DomainRouting | None:
        row = await self._db.execute_returning(
            """INSERT INTO sso_domain_routings (
                   id, domain, workspace_id, config_id, verification_token, created_at,
                   verified, verification_method, verified_at
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
               ON CONFLICT (domain) DO NOTHING
               RETURNING *""",
            routing.id,
            routing.domain,
            routing.workspace_id,
            routing.config_id,
            routing.verification_token,
            routing.created_at,
            routing.verified,
            routing.verification_method.value,
            routing.verified_at,
        )
        return _row_to_routing(row) if row else None

    async def get(self, routing_id: UUID) -> DomainRouting | None:
        row = await self._db.fetch_one("SELECT * FROM sso_domain_routings WHERE id = $1", routing_id)
        return _row_to_routing(row) if row else None

    async def get_by_domain(self, domain: str) -> DomainRouting | None:
        row = await self._db.fetch_one("SELECT * FROM sso_domain_routings WHERE domain = $1", domain)
        return _row_to_routing(row) if row else None

    async def list_for_workspace(self, workspace_id: UUID) -> list[DomainRouting]:
        rows = await self._db.fetch_all(
            "SELECT * FROM sso_domain_routings WHERE workspace_id = $1 ORDER BY domain",
            workspace_id,
        )
        return [_row_to_routing(row) for row in rows]

    async def mark_verified(
        self,
        routing_id: UUID,
        method: VerificationMethod,
        verified_at: datetime,
    ) -> DomainRouting | None:
        row = await self._db.execute_returning(
            """UPDATE sso_domain_routings
               SET verified = true, verification_method = $2, verified_at = $3
               WHERE id = $1
               RETURNING *""",
            routing_id,
            method.value,
            verified_at,
        )
        return _row_to_routing(row) if row else None

    async def delete(self, routing_id: UUID) -> bool:
        result = await self._db.execute("DELETE FROM sso_domain_routings WHERE id = $1", routing_id)
        return _affected(result) > 0

    async def delete_for_config(self, config_id: UUID) -> int:
        result = await self._db.execute(
            "DELETE FROM sso_domain_routings WHERE config_id = $1", config_id
        )
        return _affected(result)


class PostgresSessionRepository:
    """SSO sessions in the ``sso_sessions`` table."""

    def __init__(self, db: AppDatabase) -> None:
        self._db = db

    async def create(self, session: SSOSession) -> SSOSession:
        row = await self._db.execute_returning(
            """INSERT INTO sso_sessions (
                   id, user_id, workspace_id, config_id, idp_subject, created_at,
                   last_activity_at, expires_at, status, idp_session_id, access_token,
                   refresh_token, id_token, token_expires_at, ip_address, user_agent,
                   terminated_at
               ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14,
                         $15, $16, $17)
               RETURNING *""",
            session.id,
            session.user_id,
            session.workspace_id,
            session.config_id,
            session.idp_subject,
            session.created_at,
            session.last_activity_at,
            session.expires_at,
            session.status.value,
            session.idp_session_id,
            session.access_token,
            session.refresh_token,
            session.id_token,
            session.token_expires_at,
            session.ip_address,
            session.user_agent,
            session.terminated_at,
        )
        if row is None:
            raise RuntimeError("Failed to create SSO session")
        return _row_to_session(row)

    async def get(self, session_id: UUID) -> SSOSession | None:
        row = await self._db.fetch_one("SELECT * FROM sso_sessions WHERE id = $1", session_id)
        return _row_to_session(row) if row else None

    async def update(self, session: SSOSession) -> SSOSession:
        row = await self._db.execute_returning(
            """UPDATE sso_sessions
               SET last_activity_at = $2, expires_at = $3, status = $4, idp_session_id = $5,
                   access_token = $6, refresh_token = $7, id_token = $8,
                   token_expires_at = $9, terminated_at = $10
               WHERE id = $1
               RETURNING *""",
            session.id,
            session.last_activity_at,
            session.expires_at,
            session.status.value,
            session.idp_session_id,
            session.access_token,
            session.refresh_token,
            session.id_token,
            session.token_expires_at,
            session.terminated_at,
        )
        if row is None:
            raise RuntimeError(f"SSO session {session.id} does not exist")
        return _row_to_session(row)

    async def list_active(
        self,
        *,
        user_id: UUID | None = None,
        workspace_id: UUID | None = None,
        config_id: UUID | None = None,
    ) -> list[SSOSession]:
        conditions = ["status = $1"]
        params: list[Any] = [SessionStatus.ACTIVE.value]
        param_idx = 2

        for column, value in (
            ("user_id", user_id),
            ("workspace_id", workspace_id),
            ("config_id", config_id),
        ):
            if value is not None:
                conditions.append(f"{column} = ${param_idx}")
                params.append(value)
                param_idx += 1

        rows = await self._db.fetch_all(
            f"SELECT * FROM sso_sessions WHERE {' AND '.join(conditions)} ORDER BY created_at",
            *params,
        )
        return [_row_to_session(row) for row in rows]

    async def list_for_workspace(
        self,
        workspace_id: UUID,
        *,
        user_id: UUID | None = None,
        status: SessionStatus | None = None,
        limit: int | None = None,
    ) -> list[SSOSession]:
        conditions = ["workspace_id = $1"]
        params: list[Any] = [workspace_id]
        if user_id is not None:
            params.append(user_id)
            conditions.append(f"user_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")

        query = f"SELECT * FROM sso_sessions WHERE {' AND '.join(conditions)} ORDER BY created_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"
        rows = await self._db.fetch_all(query, *params)
        return [_row_to_session(row) for row in rows]

    async def find_by_idp_session(
        self,
        config_id: UUID,
        idp_session_id: str,
    ) -> SSOSession | None:
        row = await self._db.fetch_one(
            """SELECT * FROM sso_sessions
               WHERE config_id = $1 AND idp_session_id = $2 AND status = $3
               ORDER BY created_at DESC
               LIMIT 1""",
            config_id,
            idp_session_id,
            SessionStatus.ACTIVE.value,
        )
        return _row_to_session(row) if row else None

    async def list_stale(self, now: datetime) -> list[SSOSession]:
        rows = await self._db.fetch_all(
            "SELECT * FROM sso_sessions WHERE status = $1 AND expires_at < $2",
            SessionStatus.ACTIVE.value,
            now,
        )
        return [_row_to_session(row) for row in rows]
