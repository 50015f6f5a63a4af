"""
SiteSurvey Backend — Survey Route Handlers
============================================

Endpoints:
    POST   /surveys                          submit a survey with photos
    GET    /surveys, /surveys/search         filtered + paginated listing
    GET    /surveys/responses/{dealer_id}    every survey of one dealer
    GET    /surveys/{id}                     one survey (or by customer, see below)
    DELETE /surveys/{id}                     delete, including stored photos

Multipart layout of POST /surveys:
    dealer_id, rep_name, customer_name, customer_address   text fields
    response_data                                          JSON object as text
    <question>_<n> / photos / photos[]                     image files

    Photo field names are free-form, so the form is read directly from the
    request instead of through declared File() parameters.
"""

import logging
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from app.database import get_db_session
from app.dependencies import get_survey_service
from app.schemas.common import ErrorResponse, build_from_form
from app.schemas.survey import (
    SurveyCreate,
    SurveyDeleteResponse,
    SurveyResponse,
    SurveySearchParams,
    SurveySearchResponse,
    parse_response_data,
)
from app.services.file_service import IncomingFile
from app.services.survey_service import SurveyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/surveys", tags=["Surveys"])

_TEXT_FIELDS = ("dealer_id", "rep_name", "customer_name", "customer_address")


async def read_survey_submission(
    request: Request,
    dealer_id: Optional[str] = None,
) -> Tuple[SurveyCreate, List[IncomingFile]]:
    """
    Split a multipart survey submission into its business fields and photos.

    Args:
        dealer_id: When given, used instead of the form's dealer_id.

    Raises:
        ValidationError: missing/blank fields or malformed response_data.
    """
    form = await request.form()
    fields = {}
    photos: List[IncomingFile] = []
    for key, value in form.multi_items():
        if isinstance(value, UploadFile):
            # Empty file inputs arrive as nameless parts
            if value.filename:
                photos.append(await IncomingFile.from_upload(value, field_name=key))
        else:
            fields[key] = value

    values = {name: fields.get(name, "") for name in _TEXT_FIELDS}
    if dealer_id is not None:
        values["dealer_id"] = dealer_id
    data = build_from_form(
        SurveyCreate,
        **values,
        response_data=parse_response_data(fields.get("response_data")),
    )
    return data, photos


@router.post(
    "",
    response_model=SurveyResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid fields or rejected photo", "model": ErrorResponse},
        404: {"description": "Dealer not found", "model": ErrorResponse},
        502: {"description": "Remote storage failed", "model": ErrorResponse},
    },
    summary="Submit a survey",
)
async def create_survey(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    service: SurveyService = Depends(get_survey_service),
) -> SurveyResponse:
    data, photos = await read_survey_submission(request)
    logger.debug("Survey submission for %s with %d photos", data.dealer_id, len(photos))
    return await service.create(db, data, photos)


@router.get("", response_model=SurveySearchResponse, summary="Search surveys")
@router.get("/search", response_model=SurveySearchResponse, include_in_schema=False)
async def search_surveys(
    params: SurveySearchParams = Depends(),
    db: AsyncSession = Depends(get_db_session),
    service: SurveyService = Depends(get_survey_service),
) -> SurveySearchResponse:
    return await service.search(db, params)


@router.get(
    "/responses/{dealer_id}",
    response_model=List[SurveyResponse],
    summary="All surveys of one dealer, newest first",
)
async def dealer_responses(
    dealer_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: SurveyService = Depends(get_survey_service),
) -> List[SurveyResponse]:
    return await service.get_dealer_responses(db, dealer_id)


@router.get(
    "/{survey_id}",
    response_model=SurveyResponse,
    responses={404: {"description": "Survey not found", "model": ErrorResponse}},
    summary="Get a survey",
)
async def get_survey(
    survey_id: int,
    dealer_id: Optional[str] = Query(default=None),
    customer_name: Optional[str] = Query(default=None),
    customer_address: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db_session),
    service: SurveyService = Depends(get_survey_service),
) -> SurveyResponse:
    """
    With dealer_id + customer_name + customer_address all present, the
    newest survey for that customer is returned instead of `survey_id`
    (links shared with customers carry these fields).
    """
    if dealer_id and customer_name and customer_address:
        return await service.find_by_dealer_and_customer(db, dealer_id, customer_name, customer_address)
    return await service.find_one(db, survey_id)


@router.delete(
    "/{survey_id}",
    response_model=SurveyDeleteResponse,
    responses={404: {"description": "Survey not found", "model": ErrorResponse}},
    summary="Delete a survey and its photos",
)
async def delete_survey(
    survey_id: int,
    db: AsyncSession = Depends(get_db_session),
    service: SurveyService = Depends(get_survey_service),
) -> SurveyDeleteResponse:
    return await service.delete(db, survey_id)
