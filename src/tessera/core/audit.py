"""SSO audit trail."""

from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from tessera.adapters.audit.types import AuditLogCreate, AuditLogEntry
from tessera.core.exceptions import SSOError
from tessera.core.interfaces import AuditSink
from tessera.core.types import AuditEventType, RequestContext

logger = structlog.get_logger()


class AuditLog:
    """Writes SSO audit records to an append-only sink."""

    def __init__(self, sink: AuditSink) -> None:
        """Initialize the audit log.

        Args:
            sink: Storage the records are appended to.
        """
        self._sink = sink

    async def record(
        self,
        event_type: AuditEventType,
        *,
        success: bool = True,
        workspace_id: UUID | None = None,
        config_id: UUID | None = None,
        user_id: UUID | None = None,
        session_id: UUID | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> UUID:
        """Append one audit record.

        Returns:
            ID of the created entry.
        """
        entry = AuditLogCreate(
            workspace_id=workspace_id,
            config_id=config_id,
            user_id=user_id,
            session_id=session_id,
            event_type=event_type,
            success=success,
            error_code=error_code,
            error_message=error_message,
            metadata=metadata or {},
            ip_address=context.ip_address if context else None,
            user_agent=context.user_agent if context else None,
        )
        entry_id = await self._sink.record(entry)
        log = logger.info if success else logger.warning
        log(
            "sso_audit_recorded",
            event_type=event_type.value,
            success=success,
            workspace_id=str(workspace_id) if workspace_id else None,
            config_id=str(config_id) if config_id else None,
            error_code=error_code,
        )
        return entry_id

    async def record_failure(
        self,
        event_type: AuditEventType,
        error: SSOError,
        *,
        workspace_id: UUID | None = None,
        config_id: UUID | None = None,
        user_id: UUID | None = None,
        session_id: UUID | None = None,
        context: RequestContext | None = None,
    ) -> UUID:
        """Append a failure record built from an SSO error."""
        return await self.record(
            event_type,
            success=False,
            workspace_id=workspace_id,
            config_id=config_id,
            user_id=user_id,
            session_id=session_id,
            error_code=error.code,
            error_message=error.message,
            metadata=dict(error.details),
            context=context,
        )

    async def list(
        self,
        workspace_id: UUID,
        limit: int = 50,
        offset: int = 0,
        event_type: AuditEventType | None = None,
    ) -> tuple[list[AuditLogEntry], int]:
        """List a workspace's records, newest first."""
        return await self._sink.list(workspace_id, limit, offset, event_type)
