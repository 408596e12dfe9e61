"""SSO housekeeping job: purge expired auth states and expire stale sessions.

Run via: python -m tessera.jobs.cleanup
"""

import asyncio

import structlog

from tessera.adapters.db import AppDatabase
from tessera.config import settings
from tessera.entrypoints.api.deps import build_services, postgres_storage

logger = structlog.get_logger()


async def main() -> None:
    """Run SSO cleanup."""
    if not settings.database_url:
        logger.error("database_url_not_set")
        return

    app_db = AppDatabase(settings.database_url)
    await app_db.connect()

    try:
        services = build_services(postgres_storage(app_db))
        states = await services.state_store.purge_expired()
        sessions = await services.sessions.expire_stale()
        logger.info("sso_cleanup_completed", auth_states_purged=states, sessions_expired=sessions)
    finally:
        await app_db.close()


if __name__ == "__main__":
    asyncio.run(main())
