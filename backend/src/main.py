# pyright: reportMissingTypeStubs=false
"""
Calendar Sync Backend API

A FastAPI application keeping a behavioral-health practice's appointment
calendar in sync with clinicians' external calendars.

Features:
- Versioned calendar API authenticated with API keys
- Two-way sync with Nylas and Google Calendar connections
- Recurring availability pushed to external calendars
- ICS, CSV and JSON import/export
- SQLAlchemy ORM storage
"""

import logging
from contextlib import asynccontextmanager
import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import calendar
from core.config import DATABASE_URL, SYNC_SCHEDULER_ENABLED
from core.constants import CORS_ORIGINS
from core.database import Database
from core.errors import AuthRefreshError, CalendarSyncError, ErrorKind
from services.calendar_providers import ProviderRegistry
from services.sync_scheduler import start_sync_scheduler, stop_sync_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)
logger.info("📅 Calendar Sync API starting...")

# HTTP status for each tagged error kind
ERROR_STATUS_CODES = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.IMPORT_RECORD: 422,
    ErrorKind.CONFLICT: 409,
    ErrorKind.AUTH_REFRESH: 401,
    ErrorKind.PROVIDER_FETCH: 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("🚀 Starting Calendar Sync Backend API")

    if getattr(app.state, "database", None) is None:
        app.state.database = Database(DATABASE_URL)
    if getattr(app.state, "providers", None) is None:
        app.state.providers = ProviderRegistry()
    database: Database = app.state.database
    database.create_tables()

    # Note: Database sessions are created fresh for each scheduler run
    if SYNC_SCHEDULER_ENABLED:
        try:
            await start_sync_scheduler(database)
            logger.info("✅ Calendar sync scheduler started")
        except Exception as e:
            logger.exception(f"❌ Failed to start calendar sync scheduler: {e}")

    yield

    if SYNC_SCHEDULER_ENABLED:
        try:
            await stop_sync_scheduler()
            logger.info("🛑 Calendar sync scheduler stopped")
        except Exception as e:
            logger.exception(f"❌ Error stopping calendar sync scheduler: {e}")

    database.dispose()
    logger.info("🛑 Shutting down Calendar Sync Backend API")


# Create FastAPI application
app = FastAPI(
    title="Calendar Sync Backend",
    description="Calendar synchronization for behavioral-health practices",
    version="1.0.0",
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    lifespan=lifespan,
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(
    calendar.router,
    prefix="/api/calendar/v1",
    tags=["calendar"],
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
        502: {"description": "External calendar provider error"},
    },
)


@app.get(
    "/",
    summary="Root endpoint",
    description="Returns basic API information",
)
async def root() -> dict[str, str]:
    """Get API information."""
    return {
        "message": "Calendar Sync Backend API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get(
    "/health",
    summary="Health check",
    description="Returns the health status of the API",
)
async def health_check() -> dict[str, str]:
    """Check if the API is healthy and responding."""
    return {"status": "healthy"}


# Global exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"},
    )


@app.exception_handler(CalendarSyncError)
async def calendar_sync_error_handler(request: Request, exc: CalendarSyncError):
    """Map tagged calendar sync errors to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(exc.kind, 400)
    logger.warning(f"{exc.kind.value} error: {exc.message}")
    content = {"detail": exc.message, "type": f"{exc.kind.value}_error", **exc.details()}
    if isinstance(exc, AuthRefreshError):
        content["detail"] = exc.user_message
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError exceptions."""
    logger.warning(f"ValueError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "type": "validation_error"},
    )


@app.exception_handler(httpx.HTTPStatusError)
async def http_status_error_handler(request: Request, exc: httpx.HTTPStatusError):
    """Handle HTTP status errors from external services."""
    logger.exception(f"External service error: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": "External service error", "type": "external_service_error"},
    )
