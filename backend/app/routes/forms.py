"""
SiteSurvey Backend — Public Survey Form Routes
================================================

What:  JSON endpoints behind the dealer-branded survey form.
       (HTML rendering lives in the frontend.)

    GET  /forms/{dealer_id}                                 form branding
    POST /forms/{dealer_id}                                 submit (same multipart layout as POST /surveys)
    POST /forms/{dealer_id}/questions/{question_id}/photos  upload one photo early
"""

from fastapi import APIRouter, Depends, File, Request, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db_session
from app.dependencies import get_survey_form_service
from app.exceptions import ValidationError
from app.routes.surveys import read_survey_submission
from app.schemas.common import ErrorResponse
from app.schemas.survey import PhotoUploadResponse, SurveyFormContext, SurveyResponse
from app.services.file_service import IncomingFile
from app.services.survey_form_service import SurveyFormService

router = APIRouter(prefix="/forms", tags=["Survey Form"])

_NOT_FOUND = {404: {"description": "Dealer not found", "model": ErrorResponse}}


@router.get("/{dealer_id}", response_model=SurveyFormContext, responses=_NOT_FOUND)
async def get_form(
    dealer_id: str,
    db: AsyncSession = Depends(get_db_session),
    service: SurveyFormService = Depends(get_survey_form_service),
) -> SurveyFormContext:
    return await service.get_form_context(db, dealer_id)


@router.post(
    "/{dealer_id}",
    response_model=SurveyResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_NOT_FOUND,
)
async def submit_form(
    dealer_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    service: SurveyFormService = Depends(get_survey_form_service),
) -> SurveyResponse:
    data, photos = await read_survey_submission(request, dealer_id=dealer_id)
    return await service.submit(db, dealer_id, data, photos)


@router.post(
    "/{dealer_id}/questions/{question_id}/photos",
    response_model=PhotoUploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_NOT_FOUND,
)
async def upload_question_photo(
    dealer_id: str,
    question_id: str,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db_session),
    service: SurveyFormService = Depends(get_survey_form_service),
) -> PhotoUploadResponse:
    if not file.filename:
        raise ValidationError(message="No file was uploaded", field="file")
    incoming = await IncomingFile.from_upload(file, field_name=question_id)
    return await service.upload_question_photo(db, dealer_id, question_id, incoming)
