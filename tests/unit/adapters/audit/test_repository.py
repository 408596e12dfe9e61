"""Unit tests for the SSO audit repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from tessera.adapters.audit import AuditLogCreate, AuditRepository
from tessera.core.types import AuditEventType


@pytest.fixture
def mock_conn() -> AsyncMock:
    """Return a mock connection."""
    return AsyncMock()


@pytest.fixture
def repository(mock_conn: AsyncMock) -> AuditRepository:
    """Return a repository over a mocked pool."""
    pool = MagicMock()

    @asynccontextmanager
    async def acquire():
        yield mock_conn

    pool.acquire = acquire
    return AuditRepository(pool)


def _row(**overrides: object) -> dict[str, object]:
    row: dict[str, object] = {
        "id": uuid4(),
        "timestamp": datetime.now(UTC),
        "workspace_id": uuid4(),
        "config_id": None,
        "user_id": None,
        "session_id": None,
        "event_type": "login_failed",
        "success": False,
        "error_code": "state_used",
        "error_message": "State already used",
        "metadata": '{"attempt": 2}',
        "ip_address": "10.0.0.1",
        "user_agent": "pytest",
    }
    row.update(overrides)
    return row


class TestAuditRepository:
    """Tests for AuditRepository."""

    async def test_record(self, repository: AuditRepository, mock_conn: AsyncMock) -> None:
        """Test entries are inserted with JSON metadata."""
        entry_id = uuid4()
        mock_conn.fetchrow.return_value = {"id": entry_id}
        entry = AuditLogCreate(
            workspace_id=uuid4(),
            event_type=AuditEventType.LOGIN_SUCCEEDED,
            success=True,
            metadata={"email": "bob@acme.com", "at": datetime(2024, 1, 1, tzinfo=UTC)},
        )

        result = await repository.record(entry)

        assert result == entry_id
        args = mock_conn.fetchrow.call_args.args
        assert "INSERT INTO sso_audit_log" in args[0]
        assert args[5] == "login_succeeded"
        assert json.loads(args[9])["email"] == "bob@acme.com"

    async def test_list_with_filter(self, repository: AuditRepository, mock_conn: AsyncMock) -> None:
        """Test filters, paging and total count."""
        workspace_id = uuid4()
        mock_conn.fetchval.return_value = 3
        mock_conn.fetch.return_value = [_row(workspace_id=workspace_id)]

        entries, total = await repository.list(
            workspace_id, limit=1, offset=2, event_type=AuditEventType.LOGIN_FAILED
        )

        assert total == 3
        assert entries[0].event_type == AuditEventType.LOGIN_FAILED
        assert entries[0].metadata == {"attempt": 2}
        count_args = mock_conn.fetchval.call_args.args
        assert count_args[1:] == (workspace_id, "login_failed")
        list_args = mock_conn.fetch.call_args.args
        assert "LIMIT $3 OFFSET $4" in list_args[0]
        assert list_args[-2:] == (1, 2)

    async def test_get_missing(self, repository: AuditRepository, mock_conn: AsyncMock) -> None:
        """Test a missing entry returns None."""
        mock_conn.fetchrow.return_value = None

        assert await repository.get(uuid4(), uuid4()) is None

    async def test_get_decoded_metadata(self, repository: AuditRepository, mock_conn: AsyncMock) -> None:
        """Test metadata already decoded by the driver is kept."""
        mock_conn.fetchrow.return_value = _row(metadata={"k": "v"}, success=True, event_type="config_created")

        entry = await repository.get(uuid4(), uuid4())

        assert entry is not None
        assert entry.metadata == {"k": "v"}
        assert entry.success
