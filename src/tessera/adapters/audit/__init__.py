"""SSO audit log adapters."""

from tessera.adapters.audit.repository import AuditRepository
from tessera.adapters.audit.types import AuditLogCreate, AuditLogEntry

__all__ = [
    "AuditLogCreate",
    "AuditLogEntry",
    "AuditRepository",
]
