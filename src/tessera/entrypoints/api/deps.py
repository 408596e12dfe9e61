"""Dependency injection and application lifespan management."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import structlog
from fastapi import FastAPI, HTTPException, Request

from tessera.adapters.audit import AuditRepository
from tessera.adapters.db import AppDatabase
from tessera.adapters.db.memory import (
    InMemoryAuditSink,
    InMemoryAuthStateRepository,
    InMemoryDomainRoutingRepository,
    InMemorySessionRepository,
    InMemorySSOConfigRepository,
    InMemoryWorkspaceDirectory,
)
from tessera.adapters.db.postgres import (
    PostgresAuthStateRepository,
    PostgresDomainRoutingRepository,
    PostgresSessionRepository,
    PostgresSSOConfigRepository,
)
from tessera.adapters.oidc.client import OIDCClient
from tessera.adapters.saml.codec import SAMLCodec
from tessera.config import Settings, settings
from tessera.core.audit import AuditLog
from tessera.core.auth_state import AuthStateStore
from tessera.core.configuration import SSOConfigService
from tessera.core.domain_router import DomainRouter
from tessera.core.interfaces import (
    AuditSink,
    AuthStateRepository,
    DomainRoutingRepository,
    SessionRepository,
    SSOConfigRepository,
    UserProvisioner,
    WorkspaceDirectory,
)
from tessera.core.orchestrator import SSOOrchestrator
from tessera.core.sessions import SessionService
from tessera.core.types import RequestContext

logger = structlog.get_logger()


@dataclass
class Storage:
    """The repositories the SSO services are built on."""

    configs: SSOConfigRepository
    states: AuthStateRepository
    routings: DomainRoutingRepository
    sessions: SessionRepository
    audit_sink: AuditSink
    directory: WorkspaceDirectory
    provisioner: UserProvisioner


@dataclass
class SSOServices:
    """Wired SSO services shared by every request."""

    config_service: SSOConfigService
    domain_router: DomainRouter
    orchestrator: SSOOrchestrator
    sessions: SessionService
    state_store: AuthStateStore
    audit: AuditLog
    oidc_client: OIDCClient
    saml_codec: SAMLCodec


def memory_storage() -> Storage:
    """In-process storage for local development and tests."""
    directory = InMemoryWorkspaceDirectory()
    return Storage(
        configs=InMemorySSOConfigRepository(),
        states=InMemoryAuthStateRepository(),
        routings=InMemoryDomainRoutingRepository(),
        sessions=InMemorySessionRepository(),
        audit_sink=InMemoryAuditSink(),
        directory=directory,
        provisioner=directory,
    )


def postgres_storage(app_db: AppDatabase) -> Storage:
    """PostgreSQL storage over a connected :class:`AppDatabase`."""
    if app_db.pool is None:
        raise RuntimeError("Database pool not initialized")
    return Storage(
        configs=PostgresSSOConfigRepository(app_db),
        states=PostgresAuthStateRepository(app_db),
        routings=PostgresDomainRoutingRepository(app_db),
        sessions=PostgresSessionRepository(app_db),
        audit_sink=AuditRepository(pool=app_db.pool),
        directory=app_db,
        provisioner=app_db,
    )


def build_services(storage: Storage, config: Settings = settings) -> SSOServices:
    """Wire the SSO services from storage and settings."""
    audit = AuditLog(storage.audit_sink)
    oidc_client = OIDCClient(
        timeout=config.http_timeout_seconds,
        discovery_cache_seconds=config.discovery_cache_seconds,
        clock_skew_seconds=config.oidc_clock_skew_seconds,
    )
    saml_codec = SAMLCodec(
        base_url=config.base_url,
        organization_name=config.organization_name,
        sp_private_key=config.sp_private_key,
        sp_certificate=config.sp_certificate,
    )
    sessions = SessionService(
        storage.sessions,
        audit,
        oidc_client=oidc_client,
        duration_seconds=config.session_duration_seconds,
    )
    state_store = AuthStateStore(storage.states, audit, ttl_seconds=config.auth_state_ttl_seconds)
    return SSOServices(
        config_service=SSOConfigService(
            storage.configs,
            storage.routings,
            sessions,
            audit,
            storage.directory,
            saml_codec=saml_codec,
        ),
        domain_router=DomainRouter(
            storage.routings,
            storage.configs,
            storage.directory,
            audit,
            product=config.product_name,
            allow_manual_verification=config.allow_manual_domain_verification,
            dns_timeout=config.http_timeout_seconds,
        ),
        orchestrator=SSOOrchestrator(
            configs=storage.configs,
            directory=storage.directory,
            state_store=state_store,
            sessions=sessions,
            provisioner=storage.provisioner,
            audit=audit,
            saml_codec=saml_codec,
            oidc_client=oidc_client,
            oidc_callback_url=config.oidc_callback_url,
            saml_clock_skew_seconds=config.saml_clock_skew_seconds,
        ),
        sessions=sessions,
        state_store=state_store,
        audit=audit,
        oidc_client=oidc_client,
        saml_codec=saml_codec,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager.

    Sets up storage and the SSO services on startup and tears down the
    connection pool on shutdown.
    """
    app_db: AppDatabase | None = None
    if settings.storage == "memory":
        storage = memory_storage()
        logger.warning("sso_memory_storage_enabled")
    else:
        app_db = AppDatabase(settings.database_url)
        await app_db.connect()
        storage = postgres_storage(app_db)

    app.state.app_db = app_db
    app.state.storage = storage
    app.state.sso = build_services(storage)
    logger.info("sso_services_ready", storage=settings.storage, base_url=settings.base_url)

    yield

    if app_db is not None:
        await app_db.close()


def get_services(request: Request) -> SSOServices:
    """Get the SSO services from app state."""
    services: SSOServices = request.app.state.sso
    return services


def get_orchestrator(request: Request) -> SSOOrchestrator:
    """Get the SSO orchestrator from app state."""
    return get_services(request).orchestrator


def get_config_service(request: Request) -> SSOConfigService:
    """Get the SSO configuration service from app state."""
    return get_services(request).config_service


def get_domain_router(request: Request) -> DomainRouter:
    """Get the domain router from app state."""
    return get_services(request).domain_router


def get_client_ip(request: Request) -> str | None:
    """Extract the client IP, preferring the first X-Forwarded-For hop."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def get_request_context(request: Request) -> RequestContext:
    """Client details attached to audit records."""
    return RequestContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_actor_id(request: Request) -> UUID:
    """Authenticated user ID set by the host application's auth middleware.

    Raises:
        HTTPException: 401 when the request is unauthenticated.
    """
    user_id: Any = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id if isinstance(user_id, UUID) else UUID(str(user_id))


def get_optional_actor_id(request: Request) -> UUID | None:
    """Authenticated user ID, or None for anonymous requests."""
    user_id: Any = getattr(request.state, "user_id", None)
    if user_id is None:
        return None
    return user_id if isinstance(user_id, UUID) else UUID(str(user_id))
