"""
SiteSurvey Backend — Dealer Route Handlers
============================================

What:  /dealers CRUD and search.
How:   Multipart forms in, DealerService does the work, JSON out.

Endpoints:
    GET    /dealers                          all dealers, newest first
    GET    /dealers/search                   filtered + paginated
    GET    /dealers/by-dealer-id/{dealer_id} lookup by business key (or survey id)
    GET    /dealers/{id}                     one dealer by surrogate id
    GET    /dealers/{id}/upload-url          presigned direct logo upload (S3 only)
    POST   /dealers                          create (optional logo file)
    PATCH  /dealers/{id}                     partial update (optional new logo)
    DELETE /dealers/{id}                     delete, including the stored logo

Route order matters: /search and /by-dealer-id/... are declared before
/{id} so they are not swallowed by the UUID path parameter.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.dependencies import get_dealer_service
from app.schemas.common import ErrorResponse, build_from_form
from app.schemas.dealer import (
    DealerCreate,
    DealerDeleteResponse,
    DealerResponse,
    DealerSearchParams,
    DealerSearchResponse,
    DealerUpdate,
    DealerWithSurveysResponse,
    LogoUploadUrlResponse,
)
from app.services.dealer_service import DealerService
from app.services.file_service import IncomingFile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dealers", tags=["Dealers"])

_ERRORS = {
    400: {"description": "Invalid input or rejected logo", "model": ErrorResponse},
    404: {"description": "Dealer not found", "model": ErrorResponse},
    502: {"description": "Remote storage failed", "model": ErrorResponse},
}


async def _logo_from(upload: Optional[UploadFile]) -> Optional[IncomingFile]:
    # Browsers send an empty, nameless part when no file was chosen
    if upload is None or not upload.filename:
        return None
    return await IncomingFile.from_upload(upload, field_name="logo")


@router.get("", response_model=List[DealerResponse], summary="List all dealers")
async def list_dealers(
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> List[DealerResponse]:
    return await service.find_all(db)


@router.get(
    "/search",
    response_model=DealerSearchResponse,
    summary="Search dealers by name and representative",
)
async def search_dealers(
    params: DealerSearchParams = Depends(),
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerSearchResponse:
    """
    `search` matches the dealer name case-insensitively; `rep_name` must be
    an exact member of the dealer's reps list.
    """
    return await service.search(db, params)


@router.get(
    "/by-dealer-id/{dealer_id}",
    response_model=DealerWithSurveysResponse,
    responses={404: _ERRORS[404]},
    summary="Find a dealer by its business key",
)
async def find_by_dealer_id(
    dealer_id: str,
    customer_name: Optional[str] = Query(default=None, description="Only surveys for this customer"),
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerWithSurveysResponse:
    return await service.find_by_dealer_id(db, dealer_id, customer_name=customer_name)


@router.get(
    "/{dealer_id}",
    response_model=DealerResponse,
    responses={404: _ERRORS[404]},
    summary="Get a dealer",
)
async def get_dealer(
    dealer_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerResponse:
    return await service.find_one(db, dealer_id)


@router.get(
    "/{dealer_id}/upload-url",
    response_model=LogoUploadUrlResponse,
    responses={
        400: _ERRORS[400],
        404: _ERRORS[404],
        501: {"description": "Storage backend cannot issue upload URLs", "model": ErrorResponse},
    },
    summary="Get a presigned URL for uploading a dealer logo",
)
async def get_logo_upload_url(
    dealer_id: UUID,
    content_type: str = Query(default="image/png", description="Type the client will upload"),
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> LogoUploadUrlResponse:
    """The bytes go straight to storage and skip validation and compression."""
    return await service.create_logo_upload_url(db, dealer_id, content_type)


@router.post(
    "",
    response_model=DealerResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERRORS, 409: {"description": "dealer_id already exists", "model": ErrorResponse}},
    summary="Create a dealer",
)
async def create_dealer(
    dealer_id: str = Form(...),
    name: str = Form(...),
    reps: List[str] = Form(default=[]),
    logo: Optional[UploadFile] = File(default=None, description="jpeg/png/gif, at most 5MB"),
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerResponse:
    data = build_from_form(DealerCreate, dealer_id=dealer_id, name=name, reps=reps)
    return await service.create(db, data, logo=await _logo_from(logo))


@router.patch(
    "/{dealer_id}",
    response_model=DealerResponse,
    responses=_ERRORS,
    summary="Update a dealer",
)
async def update_dealer(
    dealer_id: UUID,
    name: Optional[str] = Form(default=None),
    reps: Optional[List[str]] = Form(default=None),
    logo: Optional[UploadFile] = File(default=None),
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerResponse:
    """Only the form fields actually sent are applied; dealer_id cannot change."""
    provided = {}
    if name is not None:
        provided["name"] = name
    if reps is not None:
        provided["reps"] = reps
    data = build_from_form(DealerUpdate, **provided)
    return await service.update(db, dealer_id, data, logo=await _logo_from(logo))


@router.delete(
    "/{dealer_id}",
    response_model=DealerDeleteResponse,
    responses={404: _ERRORS[404]},
    summary="Delete a dealer and its logo",
)
async def delete_dealer(
    dealer_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    service: DealerService = Depends(get_dealer_service),
) -> DealerDeleteResponse:
    return await service.delete(db, dealer_id)
