"""Unit tests for SSO configuration administration."""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from tessera.core.configuration import REDACTED, coerce_settings, redact
from tessera.core.exceptions import ConfigurationError, NotFoundError, PermissionDeniedError
from tessera.core.types import (
    AttributeMapping,
    AuditEventType,
    ConfigLifecycle,
    GroupRoleRule,
    OrgRole,
    SessionStatus,
    SSOProviderType,
    Workspace,
)
from tests.fixtures.sso import IDP_CERT, SSOHarness, make_saml_config

SAML_SETTINGS = {
    "saml_entity_id": "http://www.okta.com/exk123",
    "saml_sso_url": "https://acme.okta.com/app/sso/saml",
    "saml_certificate": IDP_CERT,
}


class TestHelpers:
    """Tests for module helpers."""

    def test_redact_masks_secrets(self) -> None:
        """Test certificate and client secret are masked."""
        config = make_saml_config(uuid4(), oidc_client_secret="x")

        redacted = redact(config)

        assert redacted.saml_certificate == REDACTED
        assert redacted.oidc_client_secret == REDACTED
        assert config.saml_certificate == IDP_CERT

    def test_coerce_settings(self) -> None:
        """Test API values become domain types."""
        values = coerce_settings(
            {
                "attribute_mapping": {"email": "mail", "groups": "memberOf"},
                "group_role_mapping": [{"idp_group": "eng", "role": "admin"}],
                "jit_default_role": "viewer",
                "allowed_domains": [" Acme.com ", ""],
            }
        )

        assert values["attribute_mapping"] == AttributeMapping(email="mail", groups="memberOf")
        assert values["group_role_mapping"] == [GroupRoleRule(idp_group="eng", role=OrgRole.ADMIN)]
        assert values["jit_default_role"] == OrgRole.VIEWER
        assert values["allowed_domains"] == ["acme.com"]


class TestCreate:
    """Tests for SSOConfigService.create."""

    async def test_create_starts_in_test_mode(self, harness: SSOHarness) -> None:
        """Test new configurations start testing, redacted and audited."""
        config = await harness.config_service.create(
            harness.workspace.id, harness.admin_id, SSOProviderType.SAML, "Okta", SAML_SETTINGS
        )

        assert config.lifecycle == ConfigLifecycle.TESTING
        assert not config.enabled
        assert config.saml_certificate == REDACTED
        stored = await harness.configs.get(config.id)
        assert stored is not None and stored.saml_certificate == IDP_CERT
        records = harness.audit_sink.of_type(AuditEventType.CONFIG_CREATED)
        assert records[0].metadata == {"provider": "saml", "name": "Okta"}

    async def test_create_ignores_requested_test_mode(self, harness: SSOHarness) -> None:
        """Test a create request cannot skip test mode."""
        config = await harness.config_service.create(
            harness.workspace.id,
            harness.admin_id,
            SSOProviderType.SAML,
            "Okta",
            {**SAML_SETTINGS, "test_mode": False},
        )

        assert config.test_mode

    async def test_create_requires_admin(self, harness: SSOHarness) -> None:
        """Test members cannot create configurations."""
        with pytest.raises(PermissionDeniedError):
            await harness.config_service.create(
                harness.workspace.id, harness.member_id, SSOProviderType.SAML, "Okta", SAML_SETTINGS
            )

    async def test_create_requires_enterprise_plan(self, harness: SSOHarness) -> None:
        """Test non-enterprise workspaces cannot use SSO."""
        free = harness.directory.add_workspace(
            Workspace(id=uuid4(), slug="free", name="Free", owner_id=uuid4(), plan="free")
        )

        with pytest.raises(PermissionDeniedError):
            await harness.config_service.create(
                free.id, free.owner_id, SSOProviderType.SAML, "Okta", SAML_SETTINGS
            )

    async def test_create_incomplete(self, harness: SSOHarness) -> None:
        """Test missing provider fields are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            await harness.config_service.create(
                harness.workspace.id,
                harness.admin_id,
                SSOProviderType.OIDC,
                "OIDC",
                {"oidc_client_id": "abc"},
            )

        assert "oidc_client_secret" in exc_info.value.details["missing"]

    async def test_create_unknown_field(self, harness: SSOHarness) -> None:
        """Test unknown settings are rejected."""
        with pytest.raises(ConfigurationError):
            await harness.config_service.create(
                harness.workspace.id,
                harness.admin_id,
                SSOProviderType.SAML,
                "Okta",
                {**SAML_SETTINGS, "favourite_colour": "blue"},
            )


class TestLifecycle:
    """Tests for test mode, enable and disable."""

    async def _created(self, harness: SSOHarness):
        return await harness.config_service.create(
            harness.workspace.id, harness.admin_id, SSOProviderType.SAML, "Okta", SAML_SETTINGS
        )

    async def test_enable_in_test_mode_rejected(self, harness: SSOHarness) -> None:
        """Test enabling while testing raises and changes nothing."""
        config = await self._created(harness)

        with pytest.raises(ConfigurationError) as exc_info:
            await harness.config_service.set_enabled(config.id, harness.admin_id, True)

        assert exc_info.value.code == "test_mode_active"
        stored = await harness.configs.get(config.id)
        assert stored is not None and not stored.enabled and stored.test_mode

    async def test_leave_test_mode_requires_tested(self, harness: SSOHarness) -> None:
        """Test test mode cannot be left before a successful test login."""
        config = await self._created(harness)

        with pytest.raises(ConfigurationError) as exc_info:
            await harness.config_service.update(config.id, harness.admin_id, {"test_mode": False})

        assert exc_info.value.code == "not_tested"

    async def test_full_lifecycle(self, harness: SSOHarness) -> None:
        """Test testing, then disabled, then enabled, then back to testing."""
        config = await self._created(harness)
        stored = await harness.configs.get(config.id)
        assert stored is not None
        await harness.config_service.mark_used(stored, tested=True, now=datetime.now(UTC))

        disabled = await harness.config_service.update(config.id, harness.admin_id, {"test_mode": False})
        enabled = await harness.config_service.set_enabled(config.id, harness.admin_id, True)
        retesting = await harness.config_service.update(config.id, harness.admin_id, {"test_mode": True})

        assert disabled.lifecycle == ConfigLifecycle.DISABLED
        assert enabled.lifecycle == ConfigLifecycle.ENABLED
        assert retesting.lifecycle == ConfigLifecycle.TESTING
        assert not retesting.enabled
        assert len(harness.audit_sink.of_type(AuditEventType.CONFIG_ENABLED)) == 1

    async def test_update_keeps_redacted_secret(self, harness: SSOHarness) -> None:
        """Test echoing the redacted placeholder leaves the secret unchanged."""
        config = await self._created(harness)

        updated = await harness.config_service.update(
            config.id, harness.admin_id, {"name": "Renamed", "saml_certificate": REDACTED}
        )

        stored = await harness.configs.get(config.id)
        assert updated.name == "Renamed"
        assert stored is not None and stored.saml_certificate == IDP_CERT
        records = harness.audit_sink.of_type(AuditEventType.CONFIG_UPDATED)
        assert records[0].metadata["updated_fields"] == ["name"]


class TestDelete:
    """Tests for SSOConfigService.delete."""

    async def test_owner_delete_revokes_and_removes(self, harness: SSOHarness) -> None:
        """Test deletion revokes sessions, drops routings and audits."""
        config = await harness.configs.create(make_saml_config(harness.workspace.id))
        await harness.domain_router.add_routing(config.id, "acme.com", harness.admin_id)
        session = await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="n"
        )

        await harness.config_service.delete(config.id, harness.workspace.owner_id)

        assert await harness.configs.get(config.id) is None
        assert await harness.routings.get_by_domain("acme.com") is None
        revoked = await harness.session_repo.get(session.id)
        assert revoked is not None and revoked.status == SessionStatus.REVOKED
        records = harness.audit_sink.of_type(AuditEventType.CONFIG_DELETED)
        assert records[0].metadata["sessions_revoked"] == 1
        assert records[0].metadata["routings_removed"] == 1

    async def test_admin_cannot_delete(self, harness: SSOHarness) -> None:
        """Test only the owner may delete."""
        config = await harness.configs.create(make_saml_config(harness.workspace.id))

        with pytest.raises(PermissionDeniedError):
            await harness.config_service.delete(config.id, harness.admin_id)

    async def test_delete_missing(self, harness: SSOHarness) -> None:
        """Test deleting an unknown configuration raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await harness.config_service.delete(uuid4(), harness.workspace.owner_id)


class TestMetadata:
    """Tests for SP metadata access."""

    async def test_admin_metadata(self, harness: SSOHarness) -> None:
        """Test admins can fetch SP metadata for SAML configurations."""
        config = await harness.configs.create(make_saml_config(harness.workspace.id))

        xml = await harness.config_service.sp_metadata(config.id, harness.admin_id)

        assert "EntityDescriptor" in xml
        assert "/saml/sp/acme" in xml

    async def test_public_metadata_by_slug(self, harness: SSOHarness) -> None:
        """Test metadata is published by workspace slug."""
        await harness.configs.create(make_saml_config(harness.workspace.id))

        xml = await harness.config_service.public_sp_metadata("acme")

        assert "AssertionConsumerService" in xml

    async def test_public_metadata_unknown_slug(self, harness: SSOHarness) -> None:
        """Test unknown workspaces have no metadata."""
        with pytest.raises(NotFoundError):
            await harness.config_service.public_sp_metadata("nobody")
