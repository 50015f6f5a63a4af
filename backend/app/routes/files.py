"""
SiteSurvey Backend — Stored File Proxy
========================================

What:  GET /files/{path} streams a stored object back to the client.
Why:   The local backend has no public host of its own, and private
       buckets can still be read through the API.

Any read failure is a 404: the proxy never reveals why a path is unreadable.
"""

import logging
import mimetypes
from typing import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.dependencies import get_storage_client
from app.schemas.common import ErrorResponse
from app.services.storage_base import RemoteStorageClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["Files"])


@router.get(
    "/{path:path}",
    response_class=StreamingResponse,
    responses={404: {"description": "File not found", "model": ErrorResponse}},
    summary="Stream a stored file",
)
async def serve_file(
    path: str,
    storage: RemoteStorageClient = Depends(get_storage_client),
) -> StreamingResponse:
    stream = storage.get_stream(path)
    # Pull the first chunk now so a missing file becomes a 404 before any
    # response headers are sent
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        first = b""

    async def body() -> AsyncIterator[bytes]:
        if first:
            yield first
        async for chunk in stream:
            yield chunk

    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return StreamingResponse(
        body(),
        media_type=media_type,
        # Object names are unique per upload, so content never changes
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
