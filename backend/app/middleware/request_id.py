"""
SiteSurvey Backend — Request ID Middleware
============================================

What:  Attaches a correlation ID to every request, its log lines and its response.
How:   Reuses the client's X-Request-ID when present, otherwise generates a
       short one; stores it in a ContextVar read by RequestIdLogFilter.

Error responses include the same ID in their body (`request_id`), so a
support ticket quoting it leads straight to the server-side log entries.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Client-supplied IDs longer than this are truncated before logging
MAX_REQUEST_ID_LENGTH = 64


class RequestIdLogFilter(logging.Filter):
    """Adds `request_id` to every log record so formatters can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def current_request_id() -> str:
    return request_id_var.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds the request ID for the duration of the request and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER, "").strip()[:MAX_REQUEST_ID_LENGTH]
        if not rid:
            rid = uuid.uuid4().hex[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[REQUEST_ID_HEADER] = rid
        return response
