from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from tokenshare.core.config import settings
from tokenshare.core.errors import (
    DomainError,
    domain_exception_handler,
    global_exception_handler,
    http_exception_handler,
)

import tokenshare.models  # noqa: F401 — register all models at startup

from tokenshare.modules.distributions.router import router as profits_router
from tokenshare.modules.projects.router import router as projects_router
from tokenshare.modules.token_sale.router import router as tokens_router
from tokenshare.core.sentry import init_sentry

# ── Sentry — must be initialised BEFORE FastAPI app is created ────────────────
init_sentry(settings.SENTRY_DSN, settings.SENTRY_ENVIRONMENT, settings.APP_VERSION)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    logger.info("Starting TokenShare API", env=settings.APP_ENV)
    yield
    logger.info("Shutting down TokenShare API")
    from tokenshare.core.database import engine
    await engine.dispose()


_is_prod = settings.APP_ENV == "production"

app = FastAPI(
    title="TokenShare API",
    description="Project token sales and profit distribution to token holders.",
    version="0.1.0",
    docs_url=None if _is_prod else "/docs",
    redoc_url=None if _is_prod else "/redoc",
    openapi_url=None if _is_prod else "/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
)

app.add_exception_handler(DomainError, domain_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, global_exception_handler)


# ── X-API-Version response header ────────────────────────────────────────────


@app.middleware("http")
async def add_version_header(request: Request, call_next) -> Response:
    response = await call_next(request)
    response.headers["X-API-Version"] = "v1"
    return response


# ── Health check (root-level, not under /v1) ─────────────────────────────────


@app.get("/health")
async def health_check() -> dict:
    """Deep health check: probes the database, Redis and the external ledger."""
    import asyncio
    checks: dict[str, dict] = {}

    # ── Database ──────────────────────────────────────────────────────────────
    try:
        from sqlalchemy import text
        from tokenshare.core.database import async_session_factory
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        checks["database"] = {"status": "unhealthy", "error": str(exc)}

    # ── Redis ─────────────────────────────────────────────────────────────────
    try:
        from redis.asyncio import from_url as redis_from_url
        r = redis_from_url(settings.REDIS_URL, socket_connect_timeout=2)
        await r.ping()
        await r.aclose()
        checks["redis"] = {"status": "healthy"}
    except Exception as exc:
        checks["redis"] = {"status": "unhealthy", "error": str(exc)}

    # ── Ledger ────────────────────────────────────────────────────────────────
    try:
        from tokenshare.services.ledger import get_ledger
        reachable = await asyncio.wait_for(get_ledger().ping(), timeout=3.0)
        checks["ledger"] = {"status": "healthy" if reachable else "unhealthy"}
    except Exception as exc:
        checks["ledger"] = {"status": "unhealthy", "error": str(exc)}

    overall = (
        "healthy"
        if all(c["status"] == "healthy" for c in checks.values())
        else "degraded"
    )
    return {"status": overall, "service": "tokenshare-api", "checks": checks}


# ── /v1 versioned router ──────────────────────────────────────────────────────

api_v1 = APIRouter(prefix="/v1")

api_v1.include_router(projects_router)
api_v1.include_router(tokens_router)
api_v1.include_router(profits_router)

app.include_router(api_v1)
