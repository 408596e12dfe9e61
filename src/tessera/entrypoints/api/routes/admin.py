"""SSO administration API routes.

Every route acts on behalf of the authenticated user set on
``request.state.user_id``; role checks happen in the services.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, NoReturn
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, ConfigDict

from tessera.core.configuration import SSOConfigService
from tessera.core.domain_router import DomainRouter
from tessera.core.exceptions import (
    DomainConflictError,
    NotFoundError,
    PermissionDeniedError,
    SSOError,
    TesseraError,
)
from tessera.core.types import AuditEventType, OrgRole, SessionStatus, SSOProviderType
from tessera.entrypoints.api.deps import get_actor_id, get_config_service, get_domain_router

logger = structlog.get_logger()

router = APIRouter(prefix="/sso/admin", tags=["sso-admin"])

# Annotated types for dependency injection
ActorDep = Annotated[UUID, Depends(get_actor_id)]
ConfigServiceDep = Annotated[SSOConfigService, Depends(get_config_service)]
DomainRouterDep = Annotated[DomainRouter, Depends(get_domain_router)]


def _raise_http(error: TesseraError) -> NoReturn:
    """Translate a service error into an HTTP error."""
    if isinstance(error, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error)) from error
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error)) from error
    if isinstance(error, DomainConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error)) from error
    if isinstance(error, SSOError):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": error.code, "message": error.message, **error.details},
        ) from error
    raise error


class AttributeMappingModel(BaseModel):
    """Claim paths for each profile field."""

    model_config = ConfigDict(from_attributes=True)

    email: str = "email"
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    groups: str | None = None
    avatar: str | None = None


class GroupRoleRuleModel(BaseModel):
    """IdP group to workspace role rule."""

    model_config = ConfigDict(from_attributes=True)

    idp_group: str
    role: OrgRole


class SSOConfigCreate(BaseModel):
    """SSO configuration creation request."""

    workspace_id: UUID
    provider_type: SSOProviderType
    name: str
    settings: dict[str, Any] = {}


class SSOConfigResponse(BaseModel):
    """SSO configuration with secrets redacted."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    provider_type: SSOProviderType
    name: str
    enabled: bool
    test_mode: bool
    saml_entity_id: str | None = None
    saml_sso_url: str | None = None
    saml_slo_url: str | None = None
    saml_certificate: str | None = None
    saml_sign_requests: bool = False
    saml_signature_algorithm: str = "sha256"
    saml_digest_algorithm: str = "sha256"
    saml_name_id_format: str | None = None
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_issuer: str | None = None
    oidc_authorization_url: str | None = None
    oidc_token_url: str | None = None
    oidc_userinfo_url: str | None = None
    oidc_jwks_url: str | None = None
    oidc_scopes: list[str] = []
    attribute_mapping: AttributeMappingModel
    group_role_mapping: list[GroupRoleRuleModel] = []
    allowed_domains: list[str] = []
    blocked_domains: list[str] = []
    enforce_sso: bool = False
    allow_bypass_for_owner: bool = True
    jit_provisioning: bool = False
    jit_default_role: OrgRole = OrgRole.MEMBER
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_used_at: datetime | None = None
    tested_at: datetime | None = None


class EnableRequest(BaseModel):
    """Enable or disable request."""

    enabled: bool


class DomainAddRequest(BaseModel):
    """Route an email domain to a configuration."""

    config_id: UUID
    domain: str


class DomainChallengeResponse(BaseModel):
    """New routing and the DNS record that proves ownership."""

    model_config = ConfigDict(from_attributes=True)

    routing_id: UUID
    domain: str
    verification_token: str
    dns_record_name: str
    dns_record_value: str


class DomainVerifyRequest(BaseModel):
    """Verification request. ``manual`` is honoured only where allowed."""

    manual: bool = False


class DomainRoutingResponse(BaseModel):
    """Domain routing."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    domain: str
    workspace_id: UUID
    config_id: UUID
    verified: bool
    verification_method: str
    verified_at: datetime | None = None
    created_at: datetime


class AuditLogResponse(BaseModel):
    """A single SSO audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    timestamp: datetime
    config_id: UUID | None = None
    user_id: UUID | None = None
    session_id: UUID | None = None
    event_type: AuditEventType
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = {}
    ip_address: str | None = None
    user_agent: str | None = None


class AuditLogListResponse(BaseModel):
    """Paginated list of audit entries."""

    items: list[AuditLogResponse]
    total: int
    page: int
    pages: int
    limit: int


class RevokeSessionsResponse(BaseModel):
    """Number of sessions revoked."""

    revoked: int


class SessionResponse(BaseModel):
    """An SSO session, without its IdP tokens."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    workspace_id: UUID
    config_id: UUID
    status: SessionStatus
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    terminated_at: datetime | None = None


class TerminateAllRequest(BaseModel):
    """Options for signing out a whole workspace."""

    exclude_admins: bool = False


class SessionStatsResponse(BaseModel):
    """Session counts for a workspace."""

    model_config = ConfigDict(from_attributes=True)

    total: int
    active: int
    expired: int
    revoked: int
    logged_out: int
    created_last_24h: int
    created_last_week: int
    active_users: int


# SSO configurations


@router.post("/configs", response_model=SSOConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_config(
    body: SSOConfigCreate,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> SSOConfigResponse:
    """Create an SSO configuration. New configurations start in test mode."""
    try:
        config = await config_service.create(
            body.workspace_id, actor_id, body.provider_type, body.name, body.settings
        )
    except TesseraError as e:
        _raise_http(e)
    return SSOConfigResponse.model_validate(config)


@router.get("/workspaces/{workspace_id}/configs", response_model=list[SSOConfigResponse])
async def list_configs(
    workspace_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> list[SSOConfigResponse]:
    """List a workspace's SSO configurations."""
    try:
        configs = await config_service.list(workspace_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return [SSOConfigResponse.model_validate(c) for c in configs]


@router.get("/configs/{config_id}", response_model=SSOConfigResponse)
async def get_config(
    config_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> SSOConfigResponse:
    """Get an SSO configuration."""
    try:
        config = await config_service.get(config_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return SSOConfigResponse.model_validate(config)


@router.patch("/configs/{config_id}", response_model=SSOConfigResponse)
async def update_config(
    config_id: UUID,
    changes: dict[str, Any],
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> SSOConfigResponse:
    """Update configuration fields. ``[REDACTED]`` secrets are left unchanged."""
    try:
        config = await config_service.update(config_id, actor_id, changes)
    except TesseraError as e:
        _raise_http(e)
    return SSOConfigResponse.model_validate(config)


@router.post("/configs/{config_id}/enabled", response_model=SSOConfigResponse)
async def set_config_enabled(
    config_id: UUID,
    body: EnableRequest,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> SSOConfigResponse:
    """Enable or disable a configuration."""
    try:
        config = await config_service.set_enabled(config_id, actor_id, body.enabled)
    except TesseraError as e:
        _raise_http(e)
    return SSOConfigResponse.model_validate(config)


@router.delete("/configs/{config_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_config(
    config_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> Response:
    """Delete a configuration (workspace owner only)."""
    try:
        await config_service.delete(config_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/configs/{config_id}/metadata")
async def get_sp_metadata(
    config_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> Response:
    """SP metadata XML for a SAML configuration."""
    try:
        xml = await config_service.sp_metadata(config_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return Response(content=xml, media_type="application/samlmetadata+xml")


# Domain routing


@router.post("/domains", response_model=DomainChallengeResponse, status_code=status.HTTP_201_CREATED)
async def add_domain(
    body: DomainAddRequest,
    actor_id: ActorDep,
    domain_router: DomainRouterDep,
) -> DomainChallengeResponse:
    """Route an email domain to a configuration, pending DNS verification."""
    try:
        challenge = await domain_router.add_routing(body.config_id, body.domain, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return DomainChallengeResponse.model_validate(challenge)


@router.post("/domains/{routing_id}/verify", response_model=DomainRoutingResponse)
async def verify_domain(
    routing_id: UUID,
    actor_id: ActorDep,
    domain_router: DomainRouterDep,
    body: DomainVerifyRequest | None = None,
) -> DomainRoutingResponse:
    """Verify domain ownership via its DNS TXT record."""
    try:
        routing = await domain_router.verify_domain(
            routing_id, actor_id, manual=body.manual if body else False
        )
    except TesseraError as e:
        _raise_http(e)
    return DomainRoutingResponse(
        id=routing.id,
        domain=routing.domain,
        workspace_id=routing.workspace_id,
        config_id=routing.config_id,
        verified=routing.verified,
        verification_method=routing.verification_method.value,
        verified_at=routing.verified_at,
        created_at=routing.created_at,
    )


@router.delete("/domains/{routing_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_domain(
    routing_id: UUID,
    actor_id: ActorDep,
    domain_router: DomainRouterDep,
) -> Response:
    """Remove a domain routing."""
    try:
        await domain_router.remove_routing(routing_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/workspaces/{workspace_id}/domains", response_model=list[DomainRoutingResponse])
async def list_domains(
    workspace_id: UUID,
    actor_id: ActorDep,
    domain_router: DomainRouterDep,
) -> list[DomainRoutingResponse]:
    """List a workspace's domain routings."""
    try:
        routings = await domain_router.list_routings(workspace_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return [
        DomainRoutingResponse(
            id=r.id,
            domain=r.domain,
            workspace_id=r.workspace_id,
            config_id=r.config_id,
            verified=r.verified,
            verification_method=r.verification_method.value,
            verified_at=r.verified_at,
            created_at=r.created_at,
        )
        for r in routings
    ]


# Audit log and sessions


@router.get("/workspaces/{workspace_id}/audit-log", response_model=AuditLogListResponse)
async def list_audit_log(
    workspace_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    event_type: AuditEventType | None = None,
) -> AuditLogListResponse:
    """A workspace's SSO audit log, newest first."""
    offset = (page - 1) * limit
    try:
        entries, total = await config_service.audit_log(
            workspace_id, actor_id, limit=limit, offset=offset, event_type=event_type
        )
    except TesseraError as e:
        _raise_http(e)

    pages = (total + limit - 1) // limit if total > 0 else 1
    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(e) for e in entries],
        total=total,
        page=page,
        pages=pages,
        limit=limit,
    )


@router.post(
    "/workspaces/{workspace_id}/users/{user_id}/revoke-sessions",
    response_model=RevokeSessionsResponse,
)
async def revoke_user_sessions(
    workspace_id: UUID,
    user_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> RevokeSessionsResponse:
    """Revoke every active SSO session a user holds in a workspace."""
    try:
        revoked = await config_service.revoke_user_sessions(workspace_id, user_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    logger.info("sso_sessions_revoked_by_admin", workspace_id=str(workspace_id), user_id=str(user_id))
    return RevokeSessionsResponse(revoked=revoked)


@router.get("/sessions/me", response_model=list[SessionResponse])
async def list_my_sessions(actor_id: ActorDep, config_service: ConfigServiceDep) -> list[SessionResponse]:
    """The caller's active SSO sessions across workspaces."""
    sessions = await config_service.my_sessions(actor_id)
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/workspaces/{workspace_id}/sessions", response_model=list[SessionResponse])
async def list_workspace_sessions(
    workspace_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
    session_status: Annotated[SessionStatus, Query(alias="status")] = SessionStatus.ACTIVE,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> list[SessionResponse]:
    """A workspace's SSO sessions in one state, newest first."""
    try:
        sessions = await config_service.workspace_sessions(
            workspace_id, actor_id, status=session_status, limit=limit
        )
    except TesseraError as e:
        _raise_http(e)
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/workspaces/{workspace_id}/users/{user_id}/sessions", response_model=list[SessionResponse])
async def list_user_sessions(
    workspace_id: UUID,
    user_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> list[SessionResponse]:
    """Every SSO session a user has held in a workspace."""
    try:
        sessions = await config_service.user_sessions(workspace_id, user_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return [SessionResponse.model_validate(s) for s in sessions]


@router.post("/workspaces/{workspace_id}/sessions/terminate-all", response_model=RevokeSessionsResponse)
async def terminate_workspace_sessions(
    workspace_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
    body: TerminateAllRequest | None = None,
) -> RevokeSessionsResponse:
    """Revoke every active SSO session in a workspace. Owner only."""
    try:
        revoked = await config_service.terminate_workspace_sessions(
            workspace_id, actor_id, exclude_admins=body.exclude_admins if body else False
        )
    except TesseraError as e:
        _raise_http(e)
    logger.info("sso_workspace_sessions_terminated", workspace_id=str(workspace_id), revoked=revoked)
    return RevokeSessionsResponse(revoked=revoked)


@router.get("/workspaces/{workspace_id}/session-stats", response_model=SessionStatsResponse)
async def get_session_stats(
    workspace_id: UUID,
    actor_id: ActorDep,
    config_service: ConfigServiceDep,
) -> SessionStatsResponse:
    """Counts of a workspace's SSO sessions by state and age."""
    try:
        stats = await config_service.session_stats(workspace_id, actor_id)
    except TesseraError as e:
        _raise_http(e)
    return SessionStatsResponse.model_validate(stats)
