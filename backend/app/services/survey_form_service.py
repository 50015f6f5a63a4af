"""
SiteSurvey Backend — Public Survey Form Service
=================================================

What:  The flow behind the dealer-branded survey form a rep fills in on site.
How:   Thin layer over DealerService / SurveyService / UploadOrchestrator.

    GET  /forms/{dealer_id}                              → get_form_context()
    POST /forms/{dealer_id}                              → submit()
    POST /forms/{dealer_id}/questions/{question_id}/photos → upload_question_photo()

Photos uploaded one at a time while the form is being filled in go to
surveys/<dealer_id>/<question_id>/...; the returned URL is placed in the
answer by the client and arrives in response_data on submit.
"""

import logging
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.schemas.survey import PhotoUploadResponse, SurveyCreate, SurveyFormContext, SurveyResponse
from app.services.dealer_service import DealerService
from app.services.file_service import IncomingFile
from app.services.survey_service import SURVEY_CATEGORY, SurveyService
from app.services.upload_orchestrator import UploadOrchestrator

logger = logging.getLogger(__name__)


class SurveyFormService:
    def __init__(
        self,
        dealer_service: DealerService,
        survey_service: SurveyService,
        orchestrator: UploadOrchestrator,
    ):
        self.dealer_service = dealer_service
        self.survey_service = survey_service
        self.orchestrator = orchestrator

    async def get_form_context(self, db: AsyncSession, dealer_id: str) -> SurveyFormContext:
        """Branding for the form: dealer name as title, logo, business key."""
        dealer = await self.dealer_service.get_by_business_key(db, dealer_id)
        return SurveyFormContext(
            title=dealer.name,
            logo=dealer.logo,
            dealer_id=dealer.dealer_id,
        )

    async def submit(
        self,
        db: AsyncSession,
        dealer_id: str,
        data: SurveyCreate,
        photos: Sequence[IncomingFile] = (),
    ) -> SurveyResponse:
        """Create a survey for the dealer in the URL; a different body dealer_id is overridden."""
        if data.dealer_id != dealer_id:
            logger.info(
                "Form submission dealer_id '%s' overridden by path dealer_id '%s'",
                data.dealer_id, dealer_id,
            )
            data = data.model_copy(update={"dealer_id": dealer_id})
        await self.dealer_service.get_by_business_key(db, dealer_id)
        return await self.survey_service.create(db, data, photos)

    async def upload_question_photo(
        self,
        db: AsyncSession,
        dealer_id: str,
        question_id: str,
        file: IncomingFile,
    ) -> PhotoUploadResponse:
        """Upload one photo for a question before the form is submitted."""
        await self.dealer_service.get_by_business_key(db, dealer_id)
        url = await self.orchestrator.ingest(file, f"{dealer_id}/{question_id}", SURVEY_CATEGORY)
        return PhotoUploadResponse(url=url)
