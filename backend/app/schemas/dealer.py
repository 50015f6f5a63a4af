"""
SiteSurvey Backend — Dealer Request/Response Schemas
======================================================

What:  API contract for the /dealers endpoints.

reps handling:
    `reps` is always a list of strings at the API boundary. Multipart forms
    send it as a repeated field (reps=Bob&reps=Alice). An empty or missing
    list is normalized to [""] so the stored sequence is never empty.
    Anything that is not a list of strings is rejected by Pydantic with 422;
    no attempt is made to guess at JSON-encoded strings.
"""

import uuid
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.config import settings
from app.models.dealer import Dealer
from app.schemas.common import PaginationMeta
from app.schemas.survey import SurveyResponse


def normalize_reps(reps: Optional[List[str]]) -> List[str]:
    """Strip names and guarantee a non-empty ordered sequence."""
    cleaned = [rep.strip() for rep in (reps or [])]
    return cleaned or [""]


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class DealerCreate(BaseModel):
    """Fields required to register a new dealer (logo travels separately)."""
    dealer_id: str = Field(min_length=1, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    reps: List[str] = Field(default_factory=lambda: [""])

    @field_validator("dealer_id", "name")
    @classmethod
    def strip_required(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("reps")
    @classmethod
    def validate_reps(cls, v: List[str]) -> List[str]:
        return normalize_reps(v)


class DealerUpdate(BaseModel):
    """
    Partial update. Only fields the client actually sent are applied
    (services use `model_dump(exclude_unset=True)`).

    dealer_id is deliberately absent: it is immutable once assigned.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    reps: Optional[List[str]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        stripped = v.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("reps")
    @classmethod
    def validate_reps(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        return None if v is None else normalize_reps(v)


class DealerSearchParams(BaseModel):
    """Query parameters for GET /dealers/search."""
    search: Optional[str] = Field(default=None, description="Case-insensitive match on dealer name")
    rep_name: Optional[str] = Field(default=None, description="Exact member of the reps list")
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


def public_logo_url(logo: Optional[str]) -> Optional[str]:
    """
    What:  Turns a stored logo reference into something a browser can load.
    Why:   Older rows hold bare object keys instead of full URLs.
    """
    if not logo:
        return None
    if logo.startswith(("http://", "https://", "/")):
        return logo
    base = settings.public_asset_base_url.rstrip("/")
    return f"{base}/{logo}" if base else logo


class DealerResponse(BaseModel):
    """Public representation of a dealer."""
    system_id: uuid.UUID = Field(description="Surrogate key used in /dealers/{id}")
    dealer_id: str = Field(description="Business key")
    name: str
    logo: Optional[str] = Field(default=None, description="Public logo URL, null when none")
    reps: List[str]

    @classmethod
    def from_model(cls, dealer: Dealer) -> "DealerResponse":
        return cls(
            system_id=dealer.id,
            dealer_id=dealer.dealer_id,
            name=dealer.name,
            logo=public_logo_url(dealer.logo),
            reps=list(dealer.reps or [""]),
        )


class DealerSearchResponse(BaseModel):
    """Paginated search result page."""
    data: List[DealerResponse]
    meta: PaginationMeta


class DealerDeleteResponse(BaseModel):
    """Confirmation returned by DELETE /dealers/{id}."""
    message: str
    deleted_dealer: DealerResponse


class DealerWithSurveysResponse(DealerResponse):
    """Dealer plus the surveys that matched a by-dealer-id lookup."""
    surveys: List[SurveyResponse] = Field(default_factory=list)


class LogoUploadUrlResponse(BaseModel):
    """Presigned target for uploading a dealer logo straight to storage."""
    upload_url: str = Field(alias="uploadUrl", description="PUT the image bytes here")
    image_url: str = Field(alias="imageUrl", description="Public URL once the upload completed")
    expires_in: int = Field(alias="expiresIn", description="Seconds the upload URL stays valid")

    model_config = {"populate_by_name": True}
