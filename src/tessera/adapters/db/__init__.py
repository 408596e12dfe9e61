"""Storage adapters for the SSO subsystem.

Contents:
- app_db: asyncpg pool plus the host application's workspaces and users
- postgres: SSO repositories backed by PostgreSQL
- memory: in-process repositories for tests and local development
"""

from .app_db import AppDatabase

__all__ = ["AppDatabase"]
