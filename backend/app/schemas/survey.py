"""
SiteSurvey Backend — Survey Request/Response Schemas
======================================================

What:  API contract for /surveys and the public survey form (/forms).

response_data:
    Multipart forms cannot carry nested objects, so clients send
    response_data as a JSON string. `parse_response_data()` accepts only a
    JSON object; anything else is a ValidationError at the edge.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.exceptions import ValidationError
from app.models.survey import Survey
from app.schemas.common import PaginationMeta


def parse_response_data(raw: Optional[str]) -> Dict[str, Any]:
    """Decode the response_data form field into a dict, or reject it."""
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(
            message=f"response_data is not valid JSON: {e.msg}",
            field="response_data",
        )
    if not isinstance(value, dict):
        raise ValidationError(
            message="response_data must be a JSON object",
            field="response_data",
        )
    return value


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class SurveyCreate(BaseModel):
    """Business fields of a survey submission; photos travel separately."""
    dealer_id: str = Field(min_length=1, max_length=255)
    rep_name: str = Field(min_length=1, max_length=255)
    customer_name: str = Field(min_length=1, max_length=255)
    customer_address: str = Field(min_length=1, max_length=1024)
    response_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("dealer_id", "rep_name", "customer_name", "customer_address")
    @classmethod
    def strip_required(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class SurveySearchParams(BaseModel):
    """Query parameters for GET /surveys."""
    id: Optional[int] = Field(default=None, description="Exact survey id")
    search: Optional[str] = Field(default=None, description="Matches customer name or address")
    dealer_id: Optional[str] = Field(default=None, description="Exact dealer business key")
    rep_name: Optional[str] = Field(default=None, description="Case-insensitive contains")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class SurveyResponse(BaseModel):
    """Full survey record, including photo URLs inside response_data."""
    id: int
    dealer_id: str
    dealer_name: Optional[str] = None
    rep_name: str
    customer_name: str
    customer_address: str
    response_data: Dict[str, Any]
    created_at: datetime

    @classmethod
    def from_model(cls, survey: Survey, dealer_name: Optional[str] = None) -> "SurveyResponse":
        return cls(
            id=survey.id,
            dealer_id=survey.dealer_id,
            dealer_name=dealer_name,
            rep_name=survey.rep_name,
            customer_name=survey.customer_name,
            customer_address=survey.customer_address,
            response_data=dict(survey.response_data or {}),
            created_at=survey.created_at,
        )


class SurveySummary(BaseModel):
    """One row of a survey search page."""
    id: int
    dealer_id: str
    dealer_name: Optional[str] = None
    dealer_reps: List[str] = Field(default_factory=list)
    customer_name: str
    customer_address: str
    rep_name: str
    created_at: datetime
    response_url: str = Field(description="Link to the rendered survey for this dealer")

    @classmethod
    def from_model(cls, survey: Survey) -> "SurveySummary":
        # Search eager-loads the dealer; it is None for orphaned surveys
        dealer = survey.dealer
        return cls(
            id=survey.id,
            dealer_id=survey.dealer_id,
            dealer_name=dealer.name if dealer else None,
            dealer_reps=list(dealer.reps) if dealer else [],
            customer_name=survey.customer_name,
            customer_address=survey.customer_address,
            rep_name=survey.rep_name,
            created_at=survey.created_at,
            response_url=f"/r/{survey.dealer_id}?survey_id={survey.id}",
        )


class SurveySearchResponse(BaseModel):
    results: List[SurveySummary]
    meta: PaginationMeta


class SurveyDeleteResponse(BaseModel):
    message: str
    deleted_survey: SurveyResponse


class SurveyFormContext(BaseModel):
    """What the public survey form needs to brand itself for a dealer."""
    title: str
    logo: Optional[str] = None
    dealer_id: str


class PhotoUploadResponse(BaseModel):
    url: str
