"""SSO audit log repository."""

import json
from typing import Any
from uuid import UUID

import structlog
from asyncpg import Pool

from tessera.adapters.audit.types import AuditLogCreate, AuditLogEntry
from tessera.core.types import AuditEventType

logger = structlog.get_logger()


def _row_to_entry(row: Any) -> AuditLogEntry:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AuditLogEntry(
        id=row["id"],
        timestamp=row["timestamp"],
        workspace_id=row["workspace_id"],
        config_id=row["config_id"],
        user_id=row["user_id"],
        session_id=row["session_id"],
        event_type=AuditEventType(row["event_type"]),
        success=row["success"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        metadata=metadata or {},
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
    )


class AuditRepository:
    """Append-only storage for SSO audit events.

    Entries are written once and never updated or deleted.
    """

    def __init__(self, pool: Pool) -> None:
        """Initialize the repository.

        Args:
            pool: Database connection pool.
        """
        self._pool = pool

    async def record(self, entry: AuditLogCreate) -> UUID:
        """Record an audit log entry.

        Args:
            entry: Audit log entry to record.

        Returns:
            ID of the created entry.
        """
        query = """
            INSERT INTO sso_audit_log (
                workspace_id, config_id, user_id, session_id, event_type,
                success, error_code, error_message, metadata, ip_address, user_agent
            ) VALUES (
                $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11
            )
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                entry.workspace_id,
                entry.config_id,
                entry.user_id,
                entry.session_id,
                entry.event_type.value,
                entry.success,
                entry.error_code,
                entry.error_message,
                json.dumps(entry.metadata, default=str),
                entry.ip_address,
                entry.user_agent,
            )
            result: UUID = row["id"]
            return result

    async def list(
        self,
        workspace_id: UUID,
        limit: int = 50,
        offset: int = 0,
        event_type: AuditEventType | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        """List a workspace's audit entries, newest first.

        Args:
            workspace_id: Workspace to filter by.
            limit: Maximum entries to return.
            offset: Number of entries to skip.
            event_type: Filter by event type.

        Returns:
            Tuple of (entries, total_count).
        """
        conditions = ["workspace_id = $1"]
        params: list[Any] = [workspace_id]
        param_idx = 2

        if event_type:
            conditions.append(f"event_type = ${param_idx}")
            params.append(event_type.value)
            param_idx += 1

        where_clause = " AND ".join(conditions)

        count_query = f"SELECT COUNT(*) FROM sso_audit_log WHERE {where_clause}"
        list_query = f"""
            SELECT * FROM sso_audit_log
            WHERE {where_clause}
            ORDER BY timestamp DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        async with self._pool.acquire() as conn:
            total = await conn.fetchval(count_query, *params[:-2])
            rows = await conn.fetch(list_query, *params)

        total_count: int = total or 0
        return [_row_to_entry(row) for row in rows], total_count

    async def get(self, workspace_id: UUID, entry_id: UUID) -> AuditLogEntry | None:
        """Get a single audit log entry.

        Args:
            workspace_id: Workspace ID for access control.
            entry_id: Entry ID to fetch.

        Returns:
            Audit log entry or None if not found.
        """
        query = "SELECT * FROM sso_audit_log WHERE workspace_id = $1 AND id = $2"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, workspace_id, entry_id)

        if not row:
            return None
        return _row_to_entry(row)
