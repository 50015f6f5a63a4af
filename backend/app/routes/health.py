"""
SiteSurvey Backend — Health Check Route
=========================================

What:  GET /health for load balancers and monitoring.

Status levels:
    - healthy:   database and storage answer
    - degraded:  storage backend unreachable (reads of stored rows still work)
    - unhealthy: database unreachable (HTTP 503, stop routing traffic)
"""

import logging
import time

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text

from app import __version__
from app.config import settings
from app.database import engine
from app.dependencies import get_storage_client
from app.schemas.common import HealthResponse
from app.services.storage_base import RemoteStorageClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(
    response: Response,
    storage: RemoteStorageClient = Depends(get_storage_client),
) -> HealthResponse:
    """SELECT 1 against the database, then the storage backend's own check."""
    db_status = "connected"
    storage_status = "available"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", e)

    try:
        storage_ok = await storage.health_check()
    except Exception as e:
        logger.warning("Health check: storage check raised: %s", e)
        storage_ok = False
    if not storage_ok:
        storage_status = "unavailable"
        if overall == "healthy":
            overall = "degraded"

    if overall == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        storage=storage_status,
        storage_backend=settings.storage_backend,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
