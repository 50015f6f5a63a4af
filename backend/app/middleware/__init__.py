# Middleware package init
"""
SiteSurvey Backend — Middleware Package
=========================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (outermost first):
    Request → [Request ID] → [Logging] → [CORS] → Route Handler

    1. Request ID: honours or generates X-Request-ID and binds it to the
       logging context, so every log line of the request carries it
    2. Logging: one access line per request with status and duration
    3. CORS: FastAPI's CORSMiddleware (handles preflight)

    Responses travel back through the same chain in reverse, which is how
    the request ID ends up in the response headers.
"""
