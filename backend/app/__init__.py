"""
SiteSurvey Backend — Application Package Initializer
======================================================

What: Dealers, site surveys and the photos attached to them.
Who:  Imported by uvicorn (app.main:app), pytest and the scripts/ tools.

Architecture Note:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← multipart in, JSON out
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← dealers, surveys, forms
    ├─────────────────────────────────────┤
    │   Upload Orchestrator + Storage     │  ← validate → compress → put
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Routes never talk to storage directly: every file goes through the
    orchestrator, which owns validation, compression and retries.
"""

__version__ = "1.0.0"
