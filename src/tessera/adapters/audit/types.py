"""Audit log types."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from tessera.core.types import AuditEventType


class AuditLogCreate(BaseModel):
    """Request to append an SSO audit log entry."""

    model_config = ConfigDict(frozen=True)

    workspace_id: UUID | None = None
    config_id: UUID | None = None
    user_id: UUID | None = None
    session_id: UUID | None = None
    event_type: AuditEventType
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None


class AuditLogEntry(BaseModel):
    """Audit log entry from storage."""

    model_config = ConfigDict(frozen=True)

    id: UUID
    timestamp: datetime
    workspace_id: UUID | None = None
    config_id: UUID | None = None
    user_id: UUID | None = None
    session_id: UUID | None = None
    event_type: AuditEventType
    success: bool
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
