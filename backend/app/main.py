"""
FastAPI application entrypoint.

Lifespan:
  • On startup: verify DB connectivity (non-fatal).
  • On shutdown: drain pending request-log writes, dispose the engine.

Middleware (outermost first):
  • CORS — exposes the X-RateLimit-* headers to browsers
  • APIKeyAuthMiddleware — auth, quota counting, audit logging

Routes:
  • /              — service info (no auth)
  • /health        — shallow liveness probe (no auth)
  • /api-key/usage — quota status of the calling key
"""

import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.database import engine, ping_database
from app.middleware.api_key_auth import (
    API_KEY_HEADER,
    RATE_LIMIT_HEADERS,
    APIKeyAuthMiddleware,
)
from app.routers.usage import router as usage_router
from app.services.request_log import drain_pending_logs

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan ────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    logger.info("Starting %s (%s)", settings.APP_NAME, settings.ENVIRONMENT)

    # Startup: verify DB is reachable
    if await ping_database():
        logger.info("Database connection verified ✓")
    else:
        logger.warning(
            "Could not reach the database on startup. "
            "The app will start, but authenticated requests will fail "
            "until the DB is available."
        )

    yield  # ← application runs here

    # Shutdown: let in-flight audit log writes finish, then close the pool
    await drain_pending_logs()
    await engine.dispose()
    logger.info("Database engine disposed ✓")


# ── App ─────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Unofficial LK21 (LayarKaca21) and NontonDrama APIs — "
        "API key authentication with daily/monthly quotas."
    ),
    lifespan=lifespan,
)

# Starlette runs the last-added middleware first, so CORS wraps auth and
# preflight/error responses still carry CORS headers.
app.add_middleware(
    APIKeyAuthMiddleware,
    required=settings.API_KEY_REQUIRED,
    skip_routes=settings.AUTH_SKIP_ROUTES,
    skip_methods=settings.AUTH_SKIP_METHODS,
    optional_routes=settings.AUTH_OPTIONAL_ROUTES,
    trust_proxy_headers=settings.TRUST_PROXY_HEADERS,
    timeout=settings.AUTH_TIMEOUT_SECONDS,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept",
                   "Authorization", API_KEY_HEADER],
    expose_headers=list(RATE_LIMIT_HEADERS),
    max_age=86400,
)

# Mount routers
app.include_router(usage_router, prefix="/api-key")


# ── Root ────────────────────────────────────────────────────
@app.get(
    "/",
    tags=["System"],
    summary="API information",
)
async def root(request: Request) -> dict:
    """Service banner with documentation link and upstream site URLs."""
    return {
        "message": "Unofficial LK21 (LayarKaca21) and NontonDrama APIs",
        "documentation": f"{str(request.base_url).rstrip('/')}{app.docs_url}",
        "data": {
            "LK21_URL": settings.LK21_URL,
            "ND_URL": settings.ND_URL,
        },
    }


# ── Health check ────────────────────────────────────────────
@app.get(
    "/health",
    tags=["System"],
    summary="Liveness probe",
)
async def health_check() -> dict[str, str]:
    """Shallow health check — confirms the process is alive."""
    return {"status": "healthy"}
