"""API route modules."""

from fastapi import APIRouter

from tessera.entrypoints.api.routes.admin import router as admin_router
from tessera.entrypoints.api.routes.sso import router as sso_router

# Admin API, mounted under the versioned prefix
api_router = APIRouter()
api_router.include_router(admin_router)

__all__ = ["api_router", "sso_router"]
