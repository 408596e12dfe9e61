"""SSO authentication endpoints.

These are the unauthenticated, browser-facing routes: SSO discovery, login
initiation, the IdP callbacks, SP metadata and single logout.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response
from pydantic import BaseModel

from tessera.core.configuration import SSOConfigService
from tessera.core.domain_router import DomainRouter
from tessera.core.exceptions import NotFoundError
from tessera.core.orchestrator import CallbackResult, LogoutResult, SSOOrchestrator
from tessera.core.types import RequestContext
from tessera.entrypoints.api.deps import (
    get_actor_id,
    get_config_service,
    get_domain_router,
    get_optional_actor_id,
    get_orchestrator,
    get_request_context,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/auth/sso", tags=["sso"])

# Annotated types for dependency injection
OrchestratorDep = Annotated[SSOOrchestrator, Depends(get_orchestrator)]
ConfigServiceDep = Annotated[SSOConfigService, Depends(get_config_service)]
DomainRouterDep = Annotated[DomainRouter, Depends(get_domain_router)]
ContextDep = Annotated[RequestContext, Depends(get_request_context)]
OptionalActorDep = Annotated[UUID | None, Depends(get_optional_actor_id)]
ActorDep = Annotated[UUID, Depends(get_actor_id)]


class SSOCheckRequest(BaseModel):
    """Request to check whether a login must use SSO."""

    identifier: str


class SSOCheckResponse(BaseModel):
    """Whether SSO is required, and where to send the user."""

    required: bool
    config_id: UUID | None = None
    provider: str | None = None
    name: str | None = None
    bypassed: bool = False


class InitiateRequest(BaseModel):
    """Request to start an SSO login."""

    redirect_uri: str | None = None


class InitiateResponse(BaseModel):
    """Where to send the browser to authenticate."""

    redirect_url: str
    state: str


class SSOLoginResponse(BaseModel):
    """Session issued by a successful federated login."""

    session_id: UUID
    user_id: UUID
    workspace_id: UUID
    email: str
    role: str
    expires_at: datetime
    created: bool
    test_mode: bool


class LogoutResponse(BaseModel):
    """Outcome of a logout."""

    sessions_terminated: int
    redirect_url: str | None = None


def _login_response(result: CallbackResult) -> SSOLoginResponse:
    if not result.success or result.session is None or result.identity is None:
        logger.info("sso_callback_rejected", code=result.code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": result.code, "message": result.error},
        )
    return SSOLoginResponse(
        session_id=result.session.id,
        user_id=result.session.user_id,
        workspace_id=result.session.workspace_id,
        email=result.identity.email,
        role=result.identity.role.value,
        expires_at=result.session.expires_at,
        created=result.created,
        test_mode=result.test_mode,
    )


_LOGOUT_ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "permission_denied": status.HTTP_403_FORBIDDEN,
}


def _logout_response(result: LogoutResult) -> Response:
    if not result.success:
        code = status.HTTP_404_NOT_FOUND if result.code == "config_not_found" else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail={"code": result.code, "message": result.error})
    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=status.HTTP_302_FOUND)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/check", response_model=SSOCheckResponse)
async def check_sso(
    body: SSOCheckRequest,
    domain_router: DomainRouterDep,
    actor_id: OptionalActorDep,
) -> SSOCheckResponse:
    """Check whether an email, workspace slug or domain must sign in with SSO.

    Args:
        body: The identifier typed on the login form.
        domain_router: Domain router dependency.
        actor_id: Known user, if the caller is already authenticated.

    Returns:
        The SSO requirement for the identifier.
    """
    requirement = await domain_router.check_sso_required(body.identifier, user_id=actor_id)
    return SSOCheckResponse(
        required=requirement.required,
        config_id=requirement.config_id,
        provider=requirement.provider.value if requirement.provider else None,
        name=requirement.name,
        bypassed=requirement.bypassed,
    )


@router.post("/{config_id}/initiate", response_model=InitiateResponse)
async def initiate_login(
    config_id: UUID,
    orchestrator: OrchestratorDep,
    context: ContextDep,
    actor_id: OptionalActorDep,
    body: InitiateRequest | None = None,
) -> InitiateResponse:
    """Start an SSO login against a configuration.

    Returns:
        The IdP URL to redirect the browser to and the issued state.
    """
    result = await orchestrator.initiate(
        config_id,
        body.redirect_uri if body else None,
        initiated_by=actor_id,
        context=context,
    )
    if not result.success or result.redirect_url is None or result.state is None:
        code = status.HTTP_404_NOT_FOUND if result.code == "config_not_found" else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail={"code": result.code, "message": result.error})
    return InitiateResponse(redirect_url=result.redirect_url, state=result.state)


@router.get("/oidc/callback", response_model=SSOLoginResponse)
async def oidc_callback(
    orchestrator: OrchestratorDep,
    context: ContextDep,
    state: str,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
) -> SSOLoginResponse:
    """Handle the OIDC authorization response."""
    result = await orchestrator.handle_callback(
        state,
        code=code,
        error=error,
        error_description=error_description,
        context=context,
    )
    return _login_response(result)


@router.post("/saml/acs", response_model=SSOLoginResponse)
async def saml_acs(
    orchestrator: OrchestratorDep,
    context: ContextDep,
    saml_response: Annotated[str, Form(alias="SAMLResponse")],
    relay_state: Annotated[str, Form(alias="RelayState")],
) -> SSOLoginResponse:
    """Assertion Consumer Service for the HTTP-POST binding."""
    result = await orchestrator.handle_callback(
        relay_state,
        saml_response=saml_response,
        context=context,
    )
    return _login_response(result)


@router.get("/saml/metadata/{workspace_slug}")
async def saml_metadata(workspace_slug: str, config_service: ConfigServiceDep) -> Response:
    """Publish SP metadata for the workspace's SAML configuration."""
    try:
        xml = await config_service.public_sp_metadata(workspace_slug)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return Response(content=xml, media_type="application/samlmetadata+xml")


@router.get("/saml/slo/{config_id}")
async def saml_slo_redirect(
    config_id: UUID,
    request: Request,
    orchestrator: OrchestratorDep,
    context: ContextDep,
    saml_request: Annotated[str | None, Query(alias="SAMLRequest")] = None,
    saml_response: Annotated[str | None, Query(alias="SAMLResponse")] = None,
    relay_state: Annotated[str | None, Query(alias="RelayState")] = None,
) -> Response:
    """Single logout over the HTTP-Redirect binding (deflated, query-signed messages)."""
    return await _single_logout(
        orchestrator,
        config_id,
        saml_request,
        saml_response,
        relay_state,
        context,
        deflated=True,
        signed_query=request.url.query,
    )


@router.post("/saml/slo/{config_id}")
async def saml_slo_post(
    config_id: UUID,
    orchestrator: OrchestratorDep,
    context: ContextDep,
    saml_request: Annotated[str | None, Form(alias="SAMLRequest")] = None,
    saml_response: Annotated[str | None, Form(alias="SAMLResponse")] = None,
    relay_state: Annotated[str | None, Form(alias="RelayState")] = None,
) -> Response:
    """Single logout over the HTTP-POST binding."""
    return await _single_logout(
        orchestrator, config_id, saml_request, saml_response, relay_state, context, deflated=False
    )


async def _single_logout(
    orchestrator: SSOOrchestrator,
    config_id: UUID,
    saml_request: str | None,
    saml_response: str | None,
    relay_state: str | None,
    context: RequestContext,
    *,
    deflated: bool,
    signed_query: str | None = None,
) -> Response:
    if saml_request:
        result = await orchestrator.handle_idp_logout(
            config_id,
            saml_request,
            relay_state=relay_state,
            deflated=deflated,
            signed_query=signed_query,
            context=context,
        )
    elif saml_response:
        result = await orchestrator.handle_logout_response(
            config_id, saml_response, deflated=deflated, context=context
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="SAMLRequest or SAMLResponse is required",
        )
    return _logout_response(result)


@router.post("/sessions/{session_id}/logout", response_model=LogoutResponse)
async def logout(
    session_id: UUID,
    request: Request,
    orchestrator: OrchestratorDep,
    actor_id: ActorDep,
    context: ContextDep,
    post_logout_redirect_uri: str | None = None,
) -> LogoutResponse:
    """End an SSO session, returning the IdP logout URL when there is one.

    Users may end their own sessions; ending anyone else's needs the admin role.
    """
    result = await orchestrator.logout(
        session_id,
        post_logout_redirect_uri=post_logout_redirect_uri,
        actor_id=actor_id,
        context=context,
    )
    if not result.success:
        code = _LOGOUT_ERROR_STATUS.get(result.code or "", status.HTTP_400_BAD_REQUEST)
        raise HTTPException(status_code=code, detail={"code": result.code, "message": result.error})
    logger.info("sso_logout_completed", session_id=str(session_id), path=request.url.path)
    return LogoutResponse(
        sessions_terminated=result.sessions_terminated,
        redirect_url=result.redirect_url,
    )
