"""Application database adapter using asyncpg.

Owns the connection pool and the host application's tables the SSO
subsystem reads (workspaces, memberships) or writes through provisioning
(users).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import asyncpg
import structlog

from tessera.core.types import OrgRole, ProvisioningRequest, ProvisioningResult, Workspace

logger = structlog.get_logger()


def _row_to_workspace(row: dict[str, Any]) -> Workspace:
    return Workspace(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        owner_id=row["owner_id"],
        plan=row.get("plan") or "free",
    )


class AppDatabase:
    """Application database holding workspaces, members and users."""

    def __init__(self, dsn: str):
        """Store the DSN; the pool is created by :meth:`connect`."""
        self.dsn = dsn
        self.pool: asyncpg.Pool[asyncpg.Connection[asyncpg.Record]] | None = None

    async def connect(self) -> None:
        """Create connection pool."""
        self.pool = await asyncpg.create_pool(
            self.dsn,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )
        logger.info("sso_database_connected", host=self.dsn.split("@")[-1])

    async def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("sso_database_closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection[asyncpg.Record]]:
        """Borrow a pooled connection for the duration of the block."""
        if self.pool is None:
            raise RuntimeError("Database pool not initialized")
        async with self.pool.acquire() as conn:
            yield conn

    async def fetch_one(self, query: str, *args: Any) -> dict[str, Any] | None:
        """Fetch a single row."""
        async with self.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, *args: Any) -> list[dict[str, Any]]:
        """Fetch all rows."""
        async with self.acquire() as conn:
            rows = await conn.fetch(query, *args)
            return [dict(row) for row in rows]

    async def execute(self, query: str, *args: Any) -> str:
        """Run a statement and return the command status tag."""
        async with self.acquire() as conn:
            result: str = await conn.execute(query, *args)
            return result

    async def execute_returning(self, query: str, *args: Any) -> dict[str, Any] | None:
        """Run a statement with RETURNING and return the first row."""
        async with self.acquire() as conn:
            row = await conn.fetchrow(query, *args)
            if row:
                return dict(row)
            return None

    # Workspace directory
    async def get_workspace(self, workspace_id: UUID) -> Workspace | None:
        """Get workspace by ID."""
        row = await self.fetch_one("SELECT * FROM workspaces WHERE id = $1", workspace_id)
        return _row_to_workspace(row) if row else None

    async def get_workspace_by_slug(self, slug: str) -> Workspace | None:
        """Get workspace by slug."""
        row = await self.fetch_one("SELECT * FROM workspaces WHERE slug = $1", slug)
        return _row_to_workspace(row) if row else None

    async def get_member_role(self, workspace_id: UUID, user_id: UUID) -> OrgRole | None:
        """Get a member's role, or None when the user is not a member."""
        row = await self.fetch_one(
            "SELECT role FROM workspace_members WHERE workspace_id = $1 AND user_id = $2",
            workspace_id,
            user_id,
        )
        return OrgRole(row["role"]) if row else None

    # User provisioning
    async def provision(self, request: ProvisioningRequest) -> ProvisioningResult:
        """Create or update the user and membership for a federated login.

        Existing members keep their account; name and avatar are refreshed and
        the role is set to the mapped role. New users are only created when
        just-in-time provisioning is allowed.
        """
        async with self.acquire() as conn:
            async with conn.transaction():
                user = await conn.fetchrow(
                    "SELECT id FROM users WHERE lower(email) = $1",
                    request.email.lower(),
                )
                created = False
                if user is None:
                    if not request.allow_create:
                        return ProvisioningResult(
                            success=False,
                            error="User not found and JIT provisioning disabled",
                        )
                    user = await conn.fetchrow(
                        """INSERT INTO users (email, name, avatar_url)
                           VALUES ($1, $2, $3)
                           RETURNING id""",
                        request.email.lower(),
                        request.name,
                        request.avatar,
                    )
                    created = True
                else:
                    await conn.execute(
                        """UPDATE users
                           SET name = COALESCE($2, name),
                               avatar_url = COALESCE($3, avatar_url),
                               updated_at = NOW()
                           WHERE id = $1""",
                        user["id"],
                        request.name,
                        request.avatar,
                    )

                member = await conn.fetchrow(
                    "SELECT role FROM workspace_members WHERE workspace_id = $1 AND user_id = $2",
                    request.workspace_id,
                    user["id"],
                )
                if member is None:
                    if not request.allow_create:
                        return ProvisioningResult(
                            success=False,
                            user_id=user["id"],
                            error="User is not a member of this workspace",
                        )
                    await conn.execute(
                        """INSERT INTO workspace_members (workspace_id, user_id, role)
                           VALUES ($1, $2, $3)""",
                        request.workspace_id,
                        user["id"],
                        request.role.value,
                    )
                elif member["role"] != OrgRole.OWNER.value:
                    # The owner is never demoted by an IdP group mapping
                    await conn.execute(
                        """UPDATE workspace_members SET role = $3
                           WHERE workspace_id = $1 AND user_id = $2""",
                        request.workspace_id,
                        user["id"],
                        request.role.value,
                    )

        logger.info(
            "user_provisioned",
            workspace_id=str(request.workspace_id),
            user_id=str(user["id"]),
            created=created,
        )
        return ProvisioningResult(success=True, user_id=user["id"], created=created)
