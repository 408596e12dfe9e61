"""FastAPI application definition."""

from __future__ import annotations

from fastapi import FastAPI

from .deps import lifespan
from .routes import api_router, sso_router

app = FastAPI(
    title="tessera",
    description="Workspace single sign-on over SAML 2.0 and OpenID Connect",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,  # Prevent 307 redirects that lose auth headers
)

# Browser-facing SSO routes live at the root so IdP-registered URLs stay stable
app.include_router(sso_router)
app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
