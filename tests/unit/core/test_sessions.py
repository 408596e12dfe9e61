"""Unit tests for the session service and audit log."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from tessera.adapters.oidc.types import TokenResponse
from tessera.core.exceptions import ConfigurationError, NotFoundError, PermissionDeniedError, ProtocolError
from tessera.core.types import AuditEventType, RequestContext, SessionStatus
from tests.fixtures.sso import SSOHarness, make_oidc_config, make_saml_config


class TestSessionLifecycle:
    """Tests for creating, validating and ending sessions."""

    async def test_create_keeps_tokens_and_context(self, harness: SSOHarness) -> None:
        """Test OIDC tokens and client details are stored on the session."""
        config = make_oidc_config(harness.workspace.id)
        now = datetime.now(UTC)

        session = await harness.sessions.create(
            user_id=harness.member_id,
            config=config,
            idp_subject="sub-1",
            tokens=TokenResponse(access_token="at", refresh_token="rt", id_token="it", expires_in=60),
            context=RequestContext(ip_address="10.0.0.1", user_agent="pytest"),
            now=now,
        )

        assert session.status == SessionStatus.ACTIVE
        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.token_expires_at == now + timedelta(seconds=60)
        assert session.expires_at == now + timedelta(hours=8)
        assert session.ip_address == "10.0.0.1"

    async def test_validate_expires_stale_session(self, harness: SSOHarness) -> None:
        """Test a session past expiry is marked expired and audited."""
        config = make_saml_config(harness.workspace.id)
        now = datetime.now(UTC)
        session = await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="n", now=now
        )

        assert await harness.sessions.validate(session.id, now) is not None
        assert await harness.sessions.validate(session.id, now + timedelta(hours=9)) is None

        stored = await harness.session_repo.get(session.id)
        assert stored is not None and stored.status == SessionStatus.EXPIRED
        assert len(harness.audit_sink.of_type(AuditEventType.SESSION_EXPIRED)) == 1

    async def test_touch_updates_activity(self, harness: SSOHarness) -> None:
        """Test touch records the latest activity time."""
        now = datetime.now(UTC)
        session = await harness.sessions.create(
            user_id=harness.member_id,
            config=make_saml_config(harness.workspace.id),
            idp_subject="n",
            now=now,
        )

        touched = await harness.sessions.touch(session.id, now + timedelta(minutes=5))

        assert touched is not None
        assert touched.last_activity_at == now + timedelta(minutes=5)

    async def test_terminate_is_audited_once(self, harness: SSOHarness) -> None:
        """Test terminating twice only logs out once."""
        session = await harness.sessions.create(
            user_id=harness.member_id, config=make_saml_config(harness.workspace.id), idp_subject="n"
        )

        ended = await harness.sessions.terminate(session.id)
        again = await harness.sessions.terminate(session.id)

        assert ended.status == SessionStatus.LOGGED_OUT
        assert ended.terminated_at is not None
        assert again.status == SessionStatus.LOGGED_OUT
        assert len(harness.audit_sink.of_type(AuditEventType.LOGOUT_SUCCEEDED)) == 1

    async def test_terminate_unknown(self, harness: SSOHarness) -> None:
        """Test terminating a missing session raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await harness.sessions.terminate(uuid4())

    async def test_revoke_user_sessions(self, harness: SSOHarness) -> None:
        """Test revocation ends every active session of the user in the workspace."""
        config = make_saml_config(harness.workspace.id)
        for _ in range(2):
            await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="n")
        other = await harness.sessions.create(user_id=harness.admin_id, config=config, idp_subject="a")

        revoked = await harness.sessions.revoke_user_sessions(
            harness.workspace.id, harness.member_id, revoked_by=harness.admin_id
        )

        assert revoked == 2
        assert await harness.session_repo.list_active(user_id=harness.member_id) == []
        assert (await harness.session_repo.get(other.id)).status == SessionStatus.ACTIVE  # type: ignore[union-attr]
        records = harness.audit_sink.of_type(AuditEventType.SESSION_REVOKED)
        assert records[0].metadata["count"] == 2

    async def test_expire_stale(self, harness: SSOHarness) -> None:
        """Test the sweep expires only sessions past their expiry."""
        config = make_saml_config(harness.workspace.id)
        now = datetime.now(UTC)
        await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="old", now=now - timedelta(days=1)
        )
        await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="new", now=now)

        assert await harness.sessions.expire_stale(now) == 1
        assert len(await harness.session_repo.list_active()) == 1

    async def test_find_by_idp_session_and_subject(self, harness: SSOHarness) -> None:
        """Test lookups used by IdP-initiated logout."""
        config = make_saml_config(harness.workspace.id)
        session = await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="bob@acme.com", idp_session_id="idx-1"
        )

        found = await harness.sessions.find_by_idp_session(config.id, "idx-1")
        by_subject = await harness.sessions.find_by_subject(config.id, "bob@acme.com")

        assert found is not None and found.id == session.id
        assert [s.id for s in by_subject] == [session.id]


class TestRefreshTokens:
    """Tests for SessionService.refresh_tokens."""

    async def test_refresh_replaces_tokens(self, harness: SSOHarness) -> None:
        """Test a refresh stores new tokens and audits success."""
        config = make_oidc_config(harness.workspace.id)
        session = await harness.sessions.create(
            user_id=harness.member_id,
            config=config,
            idp_subject="sub",
            tokens=TokenResponse(access_token="old", refresh_token="rt"),
        )
        harness.oidc_client.refresh_token.return_value = TokenResponse(
            access_token="new", refresh_token="rt2"
        )

        refreshed = await harness.sessions.refresh_tokens(session.id, config)

        harness.oidc_client.refresh_token.assert_awaited_once_with(config, "rt")
        assert refreshed.access_token == "new"
        assert refreshed.refresh_token == "rt2"
        assert len(harness.audit_sink.of_type(AuditEventType.SESSION_REFRESHED)) == 1

    async def test_refresh_failure_is_audited(self, harness: SSOHarness) -> None:
        """Test a failing refresh grant is audited and re-raised."""
        config = make_oidc_config(harness.workspace.id)
        session = await harness.sessions.create(
            user_id=harness.member_id,
            config=config,
            idp_subject="sub",
            tokens=TokenResponse(access_token="old", refresh_token="rt"),
        )
        harness.oidc_client.refresh_token.side_effect = ProtocolError(
            "Token refresh failed", code="token_exchange_failed", status_code=400
        )

        with pytest.raises(ProtocolError):
            await harness.sessions.refresh_tokens(session.id, config)

        records = harness.audit_sink.of_type(AuditEventType.SESSION_REFRESHED)
        assert len(records) == 1
        assert not records[0].success
        assert records[0].error_code == "token_exchange_failed"

    async def test_refresh_without_refresh_token(self, harness: SSOHarness) -> None:
        """Test sessions without a refresh token cannot refresh."""
        config = make_oidc_config(harness.workspace.id)
        session = await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="sub"
        )

        with pytest.raises(ConfigurationError) as exc_info:
            await harness.sessions.refresh_tokens(session.id, config)

        assert exc_info.value.code == "no_refresh_token"


class TestAuditLog:
    """Tests for AuditLog."""

    async def test_record_and_list_newest_first(self, harness: SSOHarness) -> None:
        """Test records list newest first with a total count."""
        ws = harness.workspace.id
        await harness.audit.record(AuditEventType.CONFIG_CREATED, workspace_id=ws)
        await harness.audit.record(AuditEventType.CONFIG_ENABLED, workspace_id=ws)
        await harness.audit.record(AuditEventType.CONFIG_ENABLED, workspace_id=uuid4())

        entries, total = await harness.audit.list(ws)

        assert total == 2
        assert [e.event_type for e in entries] == [
            AuditEventType.CONFIG_ENABLED,
            AuditEventType.CONFIG_CREATED,
        ]

    async def test_record_failure_copies_error(self, harness: SSOHarness) -> None:
        """Test failures carry the error code, message and details."""
        error = ProtocolError("Bad gateway", code="upstream_timeout", status_code=504)

        await harness.audit.record_failure(
            AuditEventType.LOGIN_FAILED, error, workspace_id=harness.workspace.id
        )

        entry = harness.audit_sink.entries[-1]
        assert not entry.success
        assert entry.error_code == "upstream_timeout"
        assert entry.error_message == "Bad gateway"
        assert entry.metadata["status_code"] == 504

    async def test_filter_by_event_type(self, harness: SSOHarness) -> None:
        """Test filtering by event type."""
        ws = harness.workspace.id
        await harness.audit.record(AuditEventType.LOGIN_SUCCEEDED, workspace_id=ws)
        await harness.audit.record(AuditEventType.LOGIN_FAILED, workspace_id=ws, success=False)

        entries, total = await harness.audit.list(ws, event_type=AuditEventType.LOGIN_FAILED)

        assert total == 1
        assert entries[0].event_type == AuditEventType.LOGIN_FAILED


class TestSessionManagement:
    """Tests for listing, mass revocation and statistics."""

    async def test_list_for_workspace(self, harness: SSOHarness) -> None:
        """Test listing is newest first and filters by user, state and limit."""
        config = make_saml_config(harness.workspace.id)
        now = datetime.now(UTC)
        oldest = await harness.sessions.create(
            user_id=harness.member_id, config=config, idp_subject="m", now=now - timedelta(hours=2)
        )
        middle = await harness.sessions.create(
            user_id=harness.admin_id, config=config, idp_subject="a", now=now - timedelta(hours=1)
        )
        newest = await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="m", now=now)
        await harness.sessions.create(user_id=harness.member_id, config=make_saml_config(uuid4()), idp_subject="x")
        await harness.sessions.terminate(oldest.id)

        everything = await harness.sessions.list_for_workspace(harness.workspace.id)
        mine = await harness.sessions.list_for_workspace(harness.workspace.id, user_id=harness.member_id)
        active = await harness.sessions.list_for_workspace(harness.workspace.id, status=SessionStatus.ACTIVE)
        latest = await harness.sessions.list_for_workspace(harness.workspace.id, limit=1)

        assert [s.id for s in everything] == [newest.id, middle.id, oldest.id]
        assert [s.id for s in mine] == [newest.id, oldest.id]
        assert [s.id for s in active] == [newest.id, middle.id]
        assert [s.id for s in latest] == [newest.id]

    async def test_list_active_for_user_spans_workspaces(self, harness: SSOHarness) -> None:
        """Test a user's own listing covers every workspace but only active sessions."""
        here = await harness.sessions.create(
            user_id=harness.member_id, config=make_saml_config(harness.workspace.id), idp_subject="m"
        )
        elsewhere = await harness.sessions.create(
            user_id=harness.member_id, config=make_saml_config(uuid4()), idp_subject="m"
        )
        ended = await harness.sessions.create(
            user_id=harness.member_id, config=make_saml_config(harness.workspace.id), idp_subject="m"
        )
        await harness.sessions.terminate(ended.id)

        sessions = await harness.sessions.list_active_for_user(harness.member_id)

        assert {s.id for s in sessions} == {here.id, elsewhere.id}

    async def test_terminate_all_for_workspace(self, harness: SSOHarness) -> None:
        """Test every active session in the workspace is revoked and audited."""
        config = make_saml_config(harness.workspace.id)
        member = await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="m")
        admin = await harness.sessions.create(user_id=harness.admin_id, config=config, idp_subject="a")
        foreign = await harness.sessions.create(
            user_id=harness.member_id, config=make_saml_config(uuid4()), idp_subject="m"
        )

        revoked = await harness.sessions.terminate_all_for_workspace(
            harness.workspace.id,
            revoked_by=harness.workspace.owner_id,
            exclude_user_ids=frozenset({harness.admin_id}),
        )

        assert revoked == 1
        assert (await harness.session_repo.get(member.id)).status == SessionStatus.REVOKED  # type: ignore[union-attr]
        assert (await harness.session_repo.get(admin.id)).status == SessionStatus.ACTIVE  # type: ignore[union-attr]
        assert (await harness.session_repo.get(foreign.id)).status == SessionStatus.ACTIVE  # type: ignore[union-attr]
        records = harness.audit_sink.of_type(AuditEventType.SESSION_REVOKED)
        assert [r.session_id for r in records] == [member.id]
        assert records[0].metadata == {
            "revoked_by": str(harness.workspace.owner_id),
            "mass_revocation": True,
        }

    async def test_stats(self, harness: SSOHarness) -> None:
        """Test counts by state, by age and of distinct active users."""
        config = make_saml_config(harness.workspace.id)
        now = datetime.now(UTC)
        for user_id, age in (
            (harness.member_id, timedelta(hours=1)),
            (harness.member_id, timedelta(hours=2)),
            (harness.admin_id, timedelta(days=3)),
        ):
            await harness.sessions.create(user_id=user_id, config=config, idp_subject="s", now=now - age)
        old = await harness.sessions.create(
            user_id=harness.admin_id, config=config, idp_subject="s", now=now - timedelta(days=10)
        )
        await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="s", now=now)
        await harness.sessions.terminate(old.id, now=now)
        await harness.sessions.revoke_user_sessions(harness.workspace.id, harness.member_id)
        await harness.sessions.create(user_id=harness.member_id, config=make_saml_config(uuid4()), idp_subject="x")

        stats = await harness.sessions.stats(harness.workspace.id, now=now)

        assert stats.total == 5
        assert stats.active == 1
        assert stats.revoked == 3
        assert stats.logged_out == 1
        assert stats.expired == 0
        assert stats.created_last_24h == 3
        assert stats.created_last_week == 4
        assert stats.active_users == 1


class TestSessionAdministration:
    """Tests for the role checks around session management."""

    async def test_member_cannot_view_workspace_sessions(self, harness: SSOHarness) -> None:
        """Test listing a workspace's or another user's sessions needs the admin role."""
        with pytest.raises(PermissionDeniedError):
            await harness.config_service.workspace_sessions(harness.workspace.id, harness.member_id)
        with pytest.raises(PermissionDeniedError):
            await harness.config_service.user_sessions(harness.workspace.id, harness.admin_id, harness.member_id)
        with pytest.raises(PermissionDeniedError):
            await harness.config_service.session_stats(harness.workspace.id, harness.member_id)

    async def test_admin_views_workspace_sessions(self, harness: SSOHarness) -> None:
        """Test admins see the workspace's sessions in the requested state."""
        config = make_saml_config(harness.workspace.id)
        session = await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="m")

        active = await harness.config_service.workspace_sessions(harness.workspace.id, harness.admin_id)
        revoked = await harness.config_service.workspace_sessions(
            harness.workspace.id, harness.admin_id, status=SessionStatus.REVOKED
        )

        assert [s.id for s in active] == [session.id]
        assert revoked == []

    async def test_terminate_all_is_owner_only(self, harness: SSOHarness) -> None:
        """Test admins cannot sign out the whole workspace."""
        config = make_saml_config(harness.workspace.id)
        await harness.sessions.create(user_id=harness.member_id, config=config, idp_subject="m")

        with pytest.raises(PermissionDeniedError):
            await harness.config_service.terminate_workspace_sessions(harness.workspace.id, harness.admin_id)
        assert len(await harness.session_repo.list_active()) == 1

    async def test_terminate_all_can_spare_admins(self, harness: SSOHarness) -> None:
        """Test excluding admins keeps the sessions of admins and the owner."""
        config = make_saml_config(harness.workspace.id)
        owner = harness.workspace.owner_id
        for user_id in (harness.member_id, harness.admin_id, owner):
            await harness.sessions.create(user_id=user_id, config=config, idp_subject="s")

        revoked = await harness.config_service.terminate_workspace_sessions(
            harness.workspace.id, owner, exclude_admins=True
        )

        assert revoked == 1
        remaining = await harness.session_repo.list_active(workspace_id=harness.workspace.id)
        assert {s.user_id for s in remaining} == {harness.admin_id, owner}
