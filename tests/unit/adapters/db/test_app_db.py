"""Unit tests for AppDatabase."""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from tessera.adapters.db.app_db import AppDatabase
from tessera.core.types import OrgRole, ProvisioningRequest


class TestAppDatabase:
    """Tests for AppDatabase."""

    @pytest.fixture
    def mock_conn(self) -> AsyncMock:
        """Return a mock connection with a working transaction."""
        conn = AsyncMock()

        @asynccontextmanager
        async def transaction():
            yield

        conn.transaction = transaction
        return conn

    @pytest.fixture
    def db(self, mock_conn: AsyncMock) -> AppDatabase:
        """Return an AppDatabase with a mocked pool."""
        db = AppDatabase("postgresql://user:pw@localhost:5432/app")
        mock_pool = MagicMock()

        @asynccontextmanager
        async def mock_acquire():
            yield mock_conn

        mock_pool.acquire = mock_acquire
        mock_pool.close = AsyncMock()
        db.pool = mock_pool
        return db

    def _request(self, **overrides: object) -> ProvisioningRequest:
        values: dict[str, object] = {
            "workspace_id": uuid4(),
            "email": "Bob@Acme.com",
            "role": OrgRole.ADMIN,
            "name": "Bob",
            "allow_create": True,
        }
        values.update(overrides)
        return ProvisioningRequest(**values)  # type: ignore[arg-type]

    async def test_connect_creates_pool(self) -> None:
        """Test that connect creates a connection pool."""
        db = AppDatabase("postgresql://localhost/app")
        mock_pool = MagicMock()

        async def mock_create_pool(*args, **kwargs):
            return mock_pool

        with patch("tessera.adapters.db.app_db.asyncpg.create_pool", side_effect=mock_create_pool):
            await db.connect()

        assert db.pool is mock_pool

    async def test_acquire_without_pool(self) -> None:
        """Test queries fail before connect."""
        with pytest.raises(RuntimeError):
            await AppDatabase("postgresql://localhost/app").fetch_one("SELECT 1")

    async def test_get_workspace(self, db: AppDatabase, mock_conn: AsyncMock) -> None:
        """Test workspace rows map to Workspace."""
        workspace_id, owner_id = uuid4(), uuid4()
        mock_conn.fetchrow.return_value = {
            "id": workspace_id,
            "slug": "acme",
            "name": "Acme",
            "owner_id": owner_id,
            "plan": None,
        }

        workspace = await db.get_workspace(workspace_id)

        assert workspace is not None
        assert workspace.slug == "acme"
        assert workspace.plan == "free"

    async def test_get_member_role(self, db: AppDatabase, mock_conn: AsyncMock) -> None:
        """Test member roles are returned as OrgRole."""
        mock_conn.fetchrow.return_value = {"role": "admin"}

        assert await db.get_member_role(uuid4(), uuid4()) == OrgRole.ADMIN

    async def test_provision_creates_user_and_member(
        self, db: AppDatabase, mock_conn: AsyncMock
    ) -> None:
        """Test unknown users are created with a membership when allowed."""
        user_id = uuid4()
        mock_conn.fetchrow.side_effect = [None, {"id": user_id}, None]

        result = await db.provision(self._request())

        assert result.success
        assert result.created
        assert result.user_id == user_id
        insert_user = mock_conn.fetchrow.call_args_list[1].args
        assert insert_user[1] == "bob@acme.com"
        insert_member = mock_conn.execute.call_args.args
        assert "INSERT INTO workspace_members" in insert_member[0]
        assert insert_member[3] == "admin"

    async def test_provision_refuses_unknown_without_jit(
        self, db: AppDatabase, mock_conn: AsyncMock
    ) -> None:
        """Test unknown users are not created when JIT is off."""
        mock_conn.fetchrow.side_effect = [None]

        result = await db.provision(self._request(allow_create=False))

        assert not result.success
        mock_conn.execute.assert_not_called()

    async def test_provision_never_demotes_owner(self, db: AppDatabase, mock_conn: AsyncMock) -> None:
        """Test the owner's membership is left alone."""
        user_id = uuid4()
        mock_conn.fetchrow.side_effect = [{"id": user_id}, {"role": "owner"}]

        result = await db.provision(self._request(role=OrgRole.VIEWER))

        assert result.success
        assert not result.created
        queries = [c.args[0] for c in mock_conn.execute.call_args_list]
        assert len(queries) == 1
        assert "UPDATE users" in queries[0]

    async def test_provision_updates_member_role(self, db: AppDatabase, mock_conn: AsyncMock) -> None:
        """Test existing members take the mapped role."""
        mock_conn.fetchrow.side_effect = [{"id": uuid4()}, {"role": "member"}]

        await db.provision(self._request(role=OrgRole.ADMIN, allow_create=False))

        last = mock_conn.execute.call_args.args
        assert "UPDATE workspace_members" in last[0]
        assert last[3] == "admin"
