"""
DealFlow FastAPI Application
Administrative and health API for the deal analysis resilience layer.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from backend.api import admin_resilience, health
from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.core.sentry import capture_exception, init_sentry
from backend.database import AsyncSessionLocal, close_db, init_db
from backend.services.resilience import build_resilience_orchestrator
from backend.services.waterfall import WaterfallMonitor

# =============================================================================
# Logging Configuration
# =============================================================================

configure_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# Lifespan Events
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handle application startup and shutdown events.

    Startup:
    - Initialize Sentry error tracking when a DSN is configured
    - Create tables if needed (dev only)
    - Build the resilience components over the shared session factory

    Shutdown:
    - Cancel running waterfall monitors
    - Close database connections
    """
    logger.info("Starting DealFlow API...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Version: {settings.app_version}")

    # Initialize Sentry error tracking
    if init_sentry():
        logger.info("Sentry error tracking enabled")
    else:
        logger.info("Sentry error tracking disabled (no DSN configured)")

    # Initialize database (in production, use migrations instead)
    if settings.debug:
        try:
            await init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")

    session_factory = getattr(app.state, "session_factory", None) or AsyncSessionLocal
    app.state.session_factory = session_factory
    if getattr(app.state, "resilience", None) is None:
        app.state.resilience = build_resilience_orchestrator(session_factory)
    if getattr(app.state, "waterfall_monitor", None) is None:
        app.state.waterfall_monitor = WaterfallMonitor(session_factory)

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down DealFlow API...")
    stopped = await app.state.waterfall_monitor.stop_all()
    if stopped:
        logger.info(f"Cancelled {stopped} waterfall monitor(s)")
    await close_db()
    logger.info("Database connections closed")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="DealFlow Resilience API",
    description="""
    Administrative surface for the deal analysis pipeline.

    - **Kill switches**: activate, deactivate and emergency shutdown
    - **Circuit breakers**: inspect and manually reset
    - **Health**: aggregate resilience status and readiness checks
    """,
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)


# =============================================================================
# Exception Handlers
# =============================================================================


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "message": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")

    # Capture exception to Sentry with request context
    event_id = capture_exception(
        exc,
        extra={
            "request_url": str(request.url),
            "request_method": request.method,
            "request_path": request.url.path,
        },
    )

    # Don't expose internal errors in production
    if settings.debug:
        detail = str(exc)
    else:
        detail = f"Internal server error (ref: {event_id})" if event_id else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": True,
            "message": detail,
            "status_code": 500,
            "error_id": event_id,
        },
    )


# =============================================================================
# API Routers
# =============================================================================

app.include_router(health.router)
app.include_router(admin_resilience.router)


@app.get("/", include_in_schema=False)
async def root() -> dict:
    return {"name": settings.app_name, "version": settings.app_version}
