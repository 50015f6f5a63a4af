"""
SiteSurvey Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn app.main:app).

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                       FastAPI App                        │
    │                                                          │
    │  Middleware:  Request ID → Access Log → GZip → CORS      │
    │                                                          │
    │  Routes:  /dealers  /surveys  /forms  /files  /health    │
    │                                                          │
    │  Exception Handlers:                                     │
    │   Validation→400  NotFound→404  Conflict→409             │
    │   UploadFailed→502 (400 when a file was invalid)         │
    │   Storage / Image / Database / unexpected → 500          │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging → config check → build storage + services →
              create tables (DB_CREATE_TABLES) → ready
    Shutdown: dispose database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from app import __version__
from app.config import settings
from app.database import create_tables, dispose_engine
from app.dependencies import warm_up
from app.exceptions import (
    BatchUploadError,
    ConflictError,
    DatabaseError,
    ImageProcessingError,
    NotFoundError,
    SiteSurveyError,
    StorageError,
    UnsupportedOperationError,
    UploadFailedError,
    ValidationError,
)
from app.middleware.logging import RequestLoggingMiddleware
from app.middleware.request_id import RequestIDMiddleware, RequestIdLogFilter, request_id_var
from app.routes import dealers, files, forms, health, surveys

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s

    The request ID comes from RequestIdLogFilter, attached to the handler so
    every record (including third-party ones) has the attribute.
    """
    handler = logging.StreamHandler(sys.stdout)  # Docker captures stdout
    handler.addFilter(RequestIdLogFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s]: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    for noisy in (
        "uvicorn.access",
        "sqlalchemy.engine",
        "botocore",
        "boto3",
        "urllib3",
        "googleapiclient.discovery_cache",
        "PIL",
    ):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("SiteSurvey Backend %s starting up (storage=%s)", __version__, settings.storage_backend)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Don't exit: /health still reports what is wrong
        logger.error("Configuration error: %s", e)

    try:
        warm_up()
    except Exception as e:
        logger.error("Could not initialize the storage backend: %s", e, exc_info=True)

    if settings.db_create_tables:
        await create_tables()
        logger.info("Database tables ensured")

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("SiteSurvey Backend shutting down...")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _request_id(request: Request) -> str:
    # The catch-all handler runs outside RequestIDMiddleware, after the
    # ContextVar was reset; request.state still has the ID
    return getattr(request.state, "request_id", None) or request_id_var.get()


def _error(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "error": error,
        "message": message,
        "request_id": _request_id(request),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def _upload_failure_details(exc: UploadFailedError) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if exc.service:
        details["service"] = exc.service
    if isinstance(exc, BatchUploadError):
        details["failed_count"] = len(exc.failures)
        details["total"] = exc.total
        details["failures"] = [
            {
                "index": index,
                "filename": filename,
                "message": error.message if isinstance(error, SiteSurveyError) else "Upload failed",
            }
            for index, filename, error in exc.failures
        ]
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to HTTP responses.

    Response shape for every error:
        {"error": ..., "message": ..., "details": {...}?, "request_id": ...}

    Internal errors (5xx) never echo `context`; it is logged server-side.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return _error(request, 400, "validation_error", exc.message, exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error(request, 404, "not_found", exc.message)

    @app.exception_handler(ConflictError)
    async def handle_conflict(request: Request, exc: ConflictError):
        logger.warning("Conflict: %s", exc.message)
        return _error(request, 409, "conflict", exc.message, exc.context)

    @app.exception_handler(UploadFailedError)
    async def handle_upload_failed(request: Request, exc: UploadFailedError):
        details = _upload_failure_details(exc)
        if isinstance(exc.cause, ValidationError):
            logger.warning("Upload rejected: %s", exc.message)
            return _error(request, 400, "validation_error", exc.message, details)
        logger.error(
            "Upload failed: %s | cause: %r | context: %s",
            exc.message, exc.cause, exc.context,
        )
        return _error(request, 502, "upload_failed", exc.message, details)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        logger.error("Storage error: %s | Context: %s", exc.message, exc.context)
        return _error(request, 500, "server_error", "A storage error occurred. Please try again later.")

    @app.exception_handler(UnsupportedOperationError)
    async def handle_unsupported(request: Request, exc: UnsupportedOperationError):
        logger.warning("Unsupported operation: %s", exc.message)
        return _error(request, 501, "not_implemented", exc.message, exc.context)

    @app.exception_handler(ImageProcessingError)
    async def handle_image_error(request: Request, exc: ImageProcessingError):
        logger.error("Image processing error: %s | Context: %s", exc.message, exc.context)
        return _error(request, 500, "server_error", "The image could not be processed.")

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("Database error: %s | Context: %s", exc.message, exc.context)
        return _error(request, 500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(SiteSurveyError)
    async def handle_app_error(request: Request, exc: SiteSurveyError):
        logger.error("Unhandled application error: %s | Context: %s", exc.message, exc.context)
        return _error(request, 500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", exc, exc_info=True)
        return _error(
            request,
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="SiteSurvey API",
        description=(
            "Dealers, site surveys and their photos. Uploaded images are "
            "compressed and stored in S3-compatible storage or Google Drive."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → GZip → CORS → route
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(dealers.router)
    app.include_router(surveys.router)
    app.include_router(forms.router)
    app.include_router(files.router)
    app.include_router(health.router)

    return app


app = create_app()
