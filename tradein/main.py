"""
FastAPI Backend for the trade-in storefront.

API server with endpoints for:
- Backup creation, listing, inspection and deletion
- Destructive restore from a backup
- Backup schedule configuration and the cron trigger
- Staff identity checks and health
"""

import logging
import traceback
import uuid
import asyncio
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from fastapi.exceptions import RequestValidationError

from tradein.routers import auth, backup
from tradein.core.config import settings
from tradein.core.database import DatabaseManager
from tradein.core.security import (
    RateLimitMiddleware, SecurityHeadersMiddleware, get_docs_urls, validate_jwt_secret,
)
from tradein.providers.shopify import ShopifyContentProvider
from tradein.services.backup_service import BackupService
from tradein.services.notifications import BackupEventPublisher
from tradein.workers.backup_scheduler import SchedulerHandle

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# Request timeout middleware to prevent blocking requests
REQUEST_TIMEOUT_SECONDS = 30
HEALTH_CHECK_PATHS = {"/health", "/"}
# Backups and restores run as long as they need; the lock bounds them
LONG_RUNNING_SUFFIXES = ("/backups/create", "/backups/auto", "/restore")


class RequestTimeoutMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce request timeouts.

    - Health check endpoints get a short timeout (5s)
    - Regular endpoints get a standard timeout (30s)
    - Backup, restore and cron trigger endpoints are excluded
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/")
        if path.endswith(LONG_RUNNING_SUFFIXES):
            return await call_next(request)

        timeout = 5 if request.url.path in HEALTH_CHECK_PATHS else REQUEST_TIMEOUT_SECONDS
        start_time = time.time()

        try:
            response = await asyncio.wait_for(call_next(request), timeout=timeout)
        except asyncio.TimeoutError:
            elapsed = time.time() - start_time
            logger.error(
                f"Request timeout after {elapsed:.2f}s: "
                f"{request.method} {request.url.path}"
            )
            return JSONResponse(
                status_code=504,
                content={
                    "success": False,
                    "error": "gateway_timeout",
                    "message": f"Request timed out after {timeout}s.",
                    "path": request.url.path
                }
            )

        elapsed = time.time() - start_time
        if elapsed > 5 and request.url.path not in HEALTH_CHECK_PATHS:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager - startup and shutdown."""
    logger.info("Starting trade-in backend API...")
    validate_jwt_secret()

    db_manager = DatabaseManager()
    await db_manager.connect()
    app.state.db = db_manager

    content_provider = ShopifyContentProvider.from_settings(settings)
    if content_provider is None:
        logger.info("Shopify not configured, backups will not include storefront content")

    notifier = BackupEventPublisher(db_manager.db, settings)
    service = BackupService(
        db_manager.db,
        content_provider=content_provider,
        notifier=notifier,
        lock_duration=timedelta(minutes=settings.backup_lock_minutes),
    )
    app.state.backup_service = service

    scheduler = None
    if settings.backup_scheduler_enabled:
        scheduler = SchedulerHandle(service)
        app.state.backup_scheduler = scheduler
        try:
            await scheduler.start()
        except Exception as e:
            logger.warning(f"Backup scheduler not started: {e}")
    else:
        logger.info("In-process backup scheduler disabled, relying on /api/v1/backups/auto")

    logger.info(f"API ready at http://0.0.0.0:{settings.api_port}")

    yield

    logger.info("Shutting down trade-in backend API...")

    if scheduler is not None:
        await scheduler.stop()
    await notifier.drain()
    if content_provider is not None:
        await content_provider.close()

    await db_manager.disconnect()
    logger.info("Database connection closed")


# Create FastAPI app
app = FastAPI(
    title="Trade-In Backend API",
    description="""
    Backup and restore service for the trade-in storefront database.

    ## Features
    - **Backups**: Full and incremental snapshots of the trade-in collections
    - **Restore**: Replace collections with a snapshot's contents
    - **Schedule**: In-process timer or external cron trigger
    """,
    version="1.0.0",
    lifespan=lifespan,
    **get_docs_urls()
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestTimeoutMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


# ============== Exception Handlers ==============

def _get_error_id() -> str:
    """Generate a unique error ID for tracking."""
    return str(uuid.uuid4())[:8]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with user-friendly messages."""
    error_id = _get_error_id()

    logger.error(
        f"Validation error [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.errors()}"
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Invalid request data. Please check your input and try again.",
            "error_id": error_id,
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    error_id = _get_error_id()

    logger.warning(
        f"HTTP {exc.status_code} [{error_id}] on {request.method} {request.url.path}: "
        f"{exc.detail}"
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": f"http_{exc.status_code}",
            "message": exc.detail,
            "error_id": error_id,
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors.

    Full details go to the log; the response carries technical details only
    in debug mode.
    """
    error_id = _get_error_id()

    logger.error(
        f"Unhandled exception [{error_id}]\n"
        f"  Request: {request.method} {request.url.path}\n"
        f"  Client: {request.client.host if request.client else 'unknown'}\n"
        f"  Exception Type: {type(exc).__name__}\n"
        f"  Exception Message: {str(exc)}\n"
        f"  Stack Trace:\n{traceback.format_exc()}"
    )

    content = {
        "success": False,
        "error": "internal_server_error",
        "message": f"We encountered an issue processing your request. Error ID: {error_id}",
        "error_id": error_id,
    }
    if settings.debug:
        content["technical_details"] = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "path": request.url.path,
            "method": request.method,
        }
    return JSONResponse(status_code=500, content=content)


# Include routers
app.include_router(
    backup.router,
    prefix="/api/v1/backups",
    tags=["Backups"]
)

app.include_router(
    auth.router,
    prefix="/api/v1/auth",
    tags=["Authentication"]
)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Trade-In Backend API",
        "version": "1.0.0",
        "status": "running",
        "health": "/health"
    }


# Health check at root level for load balancers
@app.get("/health", tags=["Health"])
async def health(request: Request):
    """Health check including database reachability and scheduler state."""
    db_manager = getattr(request.app.state, "db", None)
    database_ok = bool(db_manager is not None and await db_manager.ping())
    scheduler = getattr(request.app.state, "backup_scheduler", None)

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": "connected" if database_ok else "unreachable",
            "backup_scheduler": scheduler.state if scheduler is not None else "disabled",
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tradein.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1
    )
