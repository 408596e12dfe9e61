"""SSO fixtures: workspaces, configurations and wired in-memory services."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import quote
from uuid import UUID, uuid4

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

from tessera.adapters.db.memory import (
    InMemoryAuditSink,
    InMemoryAuthStateRepository,
    InMemoryDomainRoutingRepository,
    InMemorySessionRepository,
    InMemorySSOConfigRepository,
    InMemoryWorkspaceDirectory,
)
from tessera.adapters.oidc.client import OIDCClient
from tessera.adapters.saml.codec import SAMLCodec, deflate_and_encode
from tessera.adapters.saml.types import SIG_ALG_RSA_SHA256
from tessera.core.audit import AuditLog
from tessera.core.auth_state import AuthStateStore
from tessera.core.configuration import SSOConfigService
from tessera.core.domain_router import DomainRouter
from tessera.core.orchestrator import SSOOrchestrator
from tessera.core.sessions import SessionService
from tessera.core.types import (
    AttributeMapping,
    GroupRoleRule,
    OrgRole,
    SSOConfiguration,
    SSOProviderType,
    Workspace,
)

BASE_URL = "https://sso.example.test"
IDP_CERT = "MIIC-test-certificate"


@dataclass
class SSOHarness:
    """In-memory storage with every SSO service wired on top."""

    directory: InMemoryWorkspaceDirectory
    configs: InMemorySSOConfigRepository
    states: InMemoryAuthStateRepository
    routings: InMemoryDomainRoutingRepository
    session_repo: InMemorySessionRepository
    audit_sink: InMemoryAuditSink
    audit: AuditLog
    state_store: AuthStateStore
    sessions: SessionService
    config_service: SSOConfigService
    domain_router: DomainRouter
    orchestrator: SSOOrchestrator
    saml_codec: SAMLCodec
    oidc_client: MagicMock
    workspace: Workspace
    admin_id: UUID
    member_id: UUID


def make_saml_config(workspace_id: UUID, **overrides: object) -> SSOConfiguration:
    """A complete SAML configuration in test mode."""
    values: dict[str, object] = {
        "id": uuid4(),
        "workspace_id": workspace_id,
        "provider_type": SSOProviderType.SAML,
        "name": "Okta SAML",
        "saml_entity_id": "http://www.okta.com/exk123",
        "saml_sso_url": "https://acme.okta.com/app/sso/saml",
        "saml_slo_url": "https://acme.okta.com/app/slo/saml",
        "saml_certificate": IDP_CERT,
        "created_at": datetime.now(UTC),
        "updated_at": datetime.now(UTC),
    }
    values.update(overrides)
    return SSOConfiguration(**values)  # type: ignore[arg-type]


def make_oidc_config(workspace_id: UUID, **overrides: object) -> SSOConfiguration:
    """A complete OIDC configuration in test mode."""
    values: dict[str, object] = {
        "id": uuid4(),
        "workspace_id": workspace_id,
        "provider_type": SSOProviderType.OIDC,
        "name": "Acme OIDC",
        "oidc_client_id": "client-123",
        "oidc_client_secret": "s3cret",
        "oidc_issuer": "https://idp.acme.test",
        "attribute_mapping": AttributeMapping(
            email="email", name="name", groups="groups", avatar="picture"
        ),
        "group_role_mapping": [GroupRoleRule(idp_group="eng", role=OrgRole.ADMIN)],
        "jit_provisioning": True,
        "created_at": datetime.now(UTC),
        "updated_at": datetime.now(UTC),
    }
    values.update(overrides)
    return SSOConfiguration(**values)  # type: ignore[arg-type]


@dataclass
class IdPSigner:
    """An IdP signing key with its self-signed certificate."""

    key: rsa.RSAPrivateKey
    certificate: str

    def redirect_query(self, param: str, xml: str, relay_state: str | None = None) -> str:
        """Raw query string of a signed HTTP-Redirect binding message."""
        parts = [f"{param}={quote(deflate_and_encode(xml), safe='')}"]
        if relay_state:
            parts.append(f"RelayState={quote(relay_state, safe='')}")
        parts.append(f"SigAlg={quote(SIG_ALG_RSA_SHA256, safe='')}")
        signature = self.key.sign("&".join(parts).encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        parts.append(f"Signature={quote(base64.b64encode(signature).decode('ascii'), safe='')}")
        return "&".join(parts)


@pytest.fixture(scope="session")
def idp_signer() -> IdPSigner:
    """Return an RSA key and certificate acting as the IdP's signing identity."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "idp.acme.test")])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    pem = certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")
    return IdPSigner(key=key, certificate=pem)


@pytest.fixture
def owner_id() -> UUID:
    """Return the workspace owner's user ID."""
    return uuid4()


@pytest.fixture
def workspace(owner_id: UUID) -> Workspace:
    """Return an enterprise workspace."""
    return Workspace(id=uuid4(), slug="acme", name="Acme", owner_id=owner_id, plan="enterprise")


@pytest.fixture
def mock_oidc_client() -> MagicMock:
    """Return an OIDC client with async methods mocked."""
    client = MagicMock(spec=OIDCClient)
    client.resolve_endpoints = AsyncMock()
    client.exchange_code = AsyncMock()
    client.refresh_token = AsyncMock()
    client.get_user_info = AsyncMock()
    client.validate_id_token = AsyncMock()
    client.build_logout_url = AsyncMock(return_value=None)
    return client


@pytest.fixture
def harness(workspace: Workspace, mock_oidc_client: MagicMock) -> SSOHarness:
    """Return every SSO service wired over in-memory storage."""
    directory = InMemoryWorkspaceDirectory()
    directory.add_workspace(workspace)
    admin_id, member_id = uuid4(), uuid4()
    directory.add_member(workspace.id, admin_id, OrgRole.ADMIN, email="admin@acme.com")
    directory.add_member(workspace.id, member_id, OrgRole.MEMBER, email="member@acme.com")

    configs = InMemorySSOConfigRepository()
    states = InMemoryAuthStateRepository()
    routings = InMemoryDomainRoutingRepository()
    session_repo = InMemorySessionRepository()
    audit_sink = InMemoryAuditSink()
    audit = AuditLog(audit_sink)
    saml_codec = SAMLCodec(base_url=BASE_URL, organization_name="Tessera")
    sessions = SessionService(session_repo, audit, oidc_client=mock_oidc_client)
    state_store = AuthStateStore(states, audit)

    return SSOHarness(
        directory=directory,
        configs=configs,
        states=states,
        routings=routings,
        session_repo=session_repo,
        audit_sink=audit_sink,
        audit=audit,
        state_store=state_store,
        sessions=sessions,
        config_service=SSOConfigService(
            configs, routings, sessions, audit, directory, saml_codec=saml_codec
        ),
        domain_router=DomainRouter(routings, configs, directory, audit),
        orchestrator=SSOOrchestrator(
            configs=configs,
            directory=directory,
            state_store=state_store,
            sessions=sessions,
            provisioner=directory,
            audit=audit,
            saml_codec=saml_codec,
            oidc_client=mock_oidc_client,
            oidc_callback_url=f"{BASE_URL}/auth/sso/oidc/callback",
        ),
        saml_codec=saml_codec,
        oidc_client=mock_oidc_client,
        workspace=workspace,
        admin_id=admin_id,
        member_id=member_id,
    )
