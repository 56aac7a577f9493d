"""Head office: FastAPI application entry point."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from headoffice.config import settings
from headoffice.database import engine, init_db
from headoffice.logging_config import setup_logging

from headoffice.api.branches import router as branches_router
from headoffice.api.error_handlers import register_error_handlers
from headoffice.api.migrations import router as migrations_router
from headoffice.observability.metrics import metrics
from headoffice.tenancy.context_factory import context_cache
from headoffice.workers.scheduler import orchestrator

logger = logging.getLogger("headoffice")

VERSION = "0.3.0"

# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])


def _startup_checks() -> None:
    """Log warnings for misconfigured or missing settings."""
    startup_errors: list[str] = []

    if settings.jwt_secret == "change-me-in-production-headoffice":
        msg = "JWT_SECRET is using the default value; set a strong secret for production"
        logger.warning(f"⚠  {msg}")
        if settings.is_production:
            startup_errors.append(msg)

    if settings.is_production and not settings.cors_origins_list:
        msg = "APP_ENV=production but CORS_ORIGINS is empty"
        logger.warning(f"⚠  {msg}")
        startup_errors.append(msg)

    if settings.is_production and "sqlite" in settings.database_url:
        logger.warning("⚠  APP_ENV=production with SQLite; use a server database for the head office")

    if settings.strict_startup_validation and startup_errors:
        raise RuntimeError("Startup validation failed: " + " | ".join(startup_errors))

    logger.info(f"○ Branch data root: {settings.branch_data_root}")
    if settings.migration_sweep_enabled:
        logger.info(
            f"✓ Migration sweep every {settings.migration_sweep_interval_seconds}s "
            f"(first run after {settings.migration_sweep_initial_delay_seconds}s)"
        )
    else:
        logger.info("○ Migration sweep disabled (MIGRATION_SWEEP_ENABLED=false)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    setup_logging(settings.log_level)
    _startup_checks()

    # Startup
    await init_db()
    metrics.bind_cache(context_cache.stats)
    logger.info("✦ Head office API started")

    if settings.migration_sweep_enabled:
        await orchestrator.start()

    yield

    # Shutdown
    await orchestrator.stop()
    context_cache.invalidate()
    logger.info("✦ Head office API shutting down")


app = FastAPI(
    title="Head Office",
    description="Multi-branch POS head office: branch database routing and provisioning API",
    version=VERSION,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
register_error_handlers(app)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request tracing + access log middleware
@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()

    response: Response = await call_next(request)

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    metrics.observe_request(request.url.path, response.status_code, duration_ms)
    logger.info(
        "request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Routers
app.include_router(branches_router)
app.include_router(migrations_router)


@app.get("/")
async def root():
    return JSONResponse(
        {
            "service": "headoffice-api",
            "status": "ok",
            "endpoints": {
                "health": "/api/health",
                "branches": "/api/v1/branches",
                "docs": "/docs",
            },
        }
    )


async def _db_ready() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError):
        logger.exception("database readiness check failed")
        return False


@app.get("/api/health")
async def health_check():
    database_ready = await _db_ready()
    status = "healthy" if database_ready else "degraded"
    last_sweep = orchestrator.last_result

    return {
        "status": status,
        "service": "headoffice",
        "version": VERSION,
        "database_ready": database_ready,
        "migration_sweep_active": orchestrator.running,
        "last_sweep_at": orchestrator.last_run_at.isoformat() if orchestrator.last_run_at else None,
        "last_sweep_failed_branches": last_sweep.branches_failed if last_sweep else 0,
        "cached_branch_contexts": len(context_cache),
    }


@app.get("/api/health/live")
async def liveness_check():
    return {"status": "alive", "service": "headoffice"}


@app.get("/api/metrics")
async def get_metrics():
    return {
        "service": "headoffice",
        "version": VERSION,
        "metrics": metrics.snapshot(),
    }


@app.get("/api/health/ready")
async def readiness_check(response: Response):
    database_ready = await _db_ready()
    sweep_ready = orchestrator.running or not settings.migration_sweep_enabled
    ready = database_ready and sweep_ready

    if not ready:
        response.status_code = 503

    return {
        "status": "ready" if ready else "not_ready",
        "checks": {
            "database": database_ready,
            "migration_sweep": sweep_ready,
        },
    }
