"""
SiteSurvey Backend — Shared API Schemas
=========================================

What:  Pydantic models shared by every resource: pagination metadata,
       error envelope, health response.
"""

import math
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


class PaginationMeta(BaseModel):
    """
    What:  Pagination state returned alongside every search result page.

    Offset pagination (page/limit) because the admin UI renders numbered
    pages; `totalPages` keeps the camelCase key existing clients read.
    """
    total: int = Field(description="Total number of rows matching the filters")
    page: int = Field(description="1-based page number")
    limit: int = Field(description="Page size")
    total_pages: int = Field(alias="totalPages", description="ceil(total / limit)")

    model_config = {"populate_by_name": True}

    @classmethod
    def build(cls, total: int, page: int, limit: int) -> "PaginationMeta":
        return cls(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if limit else 0,
        )


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "validation_error",
            "message": "Invalid file type. Allowed types: image/jpeg, image/png, image/gif",
            "details": {"field": "logo"},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """Health check response showing service and dependency status."""
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    storage: str = Field(description="Storage backend status: available, unavailable")
    storage_backend: str = Field(description="Configured storage backend")
    uptime_seconds: float = Field(description="Seconds since service started")


def build_from_form(model: Type[M], **fields: Any) -> M:
    """
    Instantiate a request model from multipart form values.

    Form endpoints build their models by hand (file fields are free-form),
    so a pydantic failure here is translated into the application's
    ValidationError (400) instead of surfacing as a 500.
    """
    try:
        return model(**fields)
    except PydanticValidationError as e:
        problems = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        first = problems[0]
        raise ValidationError(
            message=f"{first['field']}: {first['message']}" if first["field"] else first["message"],
            field=first["field"] or None,
            context={"errors": problems},
        )
