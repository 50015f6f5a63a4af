"""
SiteSurvey Backend — Survey Service
=====================================

What:  Survey creation (with photo uploads), search, lookup and deletion.
Who:   Called by the /surveys routes and by SurveyFormService.

Orchestration Flow (create):
    ┌──────────────┐   ┌────────────┐   ┌─────────────────┐   ┌──────────────┐
    │ Check dealer │──▶│ Insert row │──▶│ ingest_many()   │──▶│ Merge URLs   │
    │ (404)        │   │ flush → id │   │ surveys/<id>/…  │   │ into answers │
    └──────────────┘   └────────────┘   └─────────────────┘   └──────────────┘

    The row is flushed first because its integer id names the photo
    folder. If any photo fails, the exception propagates and the request
    transaction rolls the row back; already uploaded photos stay in storage
    (see UPLOAD_ROLLBACK_ON_FAILURE).

Photo questions:
    Multipart field "roof_1" → question key "roof". Every URL lands in
    response_data[<question key>] as a list, in upload order.
"""

import logging
from typing import Any, Dict, List, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import settings
from app.exceptions import DatabaseError, NotFoundError, SiteSurveyError
from app.models.dealer import Dealer
from app.models.survey import Survey
from app.schemas.common import PaginationMeta
from app.schemas.survey import (
    SurveyCreate,
    SurveyDeleteResponse,
    SurveyResponse,
    SurveySearchParams,
    SurveySearchResponse,
    SurveySummary,
)
from app.services.file_service import IncomingFile
from app.services.upload_orchestrator import UploadOrchestrator

logger = logging.getLogger(__name__)

SURVEY_CATEGORY = "surveys"


def question_key(field_name: str) -> str:
    """
    Question a multipart file field belongs to.

    "roof_1" → "roof", "photos[]" → "photos", "photos" → "photos"
    """
    name = field_name[:-2] if field_name.endswith("[]") else field_name
    return name.split("_", 1)[0]


def merge_photo_urls(
    response_data: Dict[str, Any],
    files: Sequence[IncomingFile],
    urls: Sequence[str],
) -> Dict[str, Any]:
    """Return a copy of `response_data` with each URL appended under its question."""
    merged = dict(response_data)
    for file, url in zip(files, urls):
        key = question_key(file.field_name)
        existing = merged.get(key)
        # A scalar answer under a photo question is replaced by the URL list
        merged[key] = (list(existing) if isinstance(existing, list) else []) + [url]
    return merged


def collect_photo_urls(response_data: Dict[str, Any]) -> List[str]:
    """Every stored-file URL found in the list-valued answers."""
    local_prefix = settings.public_files_path + "/"
    urls: List[str] = []
    for value in response_data.values():
        if not isinstance(value, list):
            continue
        for item in value:
            if isinstance(item, str) and item.startswith(("http://", "https://", local_prefix)):
                urls.append(item)
    return urls


class SurveyService:
    """Business logic for surveys."""

    def __init__(self, orchestrator: UploadOrchestrator):
        self.orchestrator = orchestrator

    async def _require_dealer(self, db: AsyncSession, dealer_id: str) -> Dealer:
        result = await db.execute(select(Dealer).where(Dealer.dealer_id == dealer_id))
        dealer = result.scalar_one_or_none()
        if dealer is None:
            raise NotFoundError(resource="Dealer", resource_id=dealer_id)
        return dealer

    async def _get(self, db: AsyncSession, survey_id: int) -> Survey:
        result = await db.execute(
            select(Survey).options(selectinload(Survey.dealer)).where(Survey.id == survey_id)
        )
        survey = result.scalar_one_or_none()
        if survey is None:
            raise NotFoundError(resource="Survey", resource_id=str(survey_id))
        return survey

    @staticmethod
    def _to_response(survey: Survey) -> SurveyResponse:
        return SurveyResponse.from_model(
            survey, dealer_name=survey.dealer.name if survey.dealer else None
        )

    # ── Commands ──────────────────────────────────────────────────────────

    async def create(
        self,
        db: AsyncSession,
        data: SurveyCreate,
        photos: Sequence[IncomingFile] = (),
    ) -> SurveyResponse:
        """
        Store a survey submission and its photos.

        Raises:
            NotFoundError:     dealer_id does not reference a dealer
            BatchUploadError:  at least one photo failed; nothing is persisted
            DatabaseError:     insert failed
        """
        dealer = await self._require_dealer(db, data.dealer_id)

        survey = Survey(
            dealer_id=data.dealer_id,
            rep_name=data.rep_name,
            customer_name=data.customer_name,
            customer_address=data.customer_address,
            response_data=dict(data.response_data),
        )
        try:
            db.add(survey)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to insert survey: %s", e, exc_info=True)
            raise DatabaseError(
                message="Could not save the survey. Please try again.",
                context={"error_type": type(e).__name__},
            )
        logger.info("Survey %s created for dealer %s", survey.id, survey.dealer_id)

        if photos:
            urls = await self.orchestrator.ingest_many(photos, str(survey.id), SURVEY_CATEGORY)
            # Reassigned, not mutated, so the JSON column registers the change
            survey.response_data = merge_photo_urls(survey.response_data or {}, photos, urls)
            try:
                await db.flush()
            except SQLAlchemyError as e:
                await self.orchestrator.discard_all(urls)
                logger.error("Failed to store photo URLs for survey %s: %s", survey.id, e)
                raise DatabaseError(
                    message="Could not save the survey photos. Please try again.",
                    context={"survey_id": survey.id},
                )
            logger.info("Survey %s: %d photos stored", survey.id, len(urls))

        return SurveyResponse.from_model(survey, dealer_name=dealer.name)

    async def delete(self, db: AsyncSession, survey_id: int) -> SurveyDeleteResponse:
        """Discard every stored photo (best-effort), then delete the row."""
        survey = await self._get(db, survey_id)
        snapshot = self._to_response(survey)

        await self.orchestrator.discard_all(collect_photo_urls(survey.response_data or {}))

        try:
            await db.delete(survey)
            await db.flush()
        except SQLAlchemyError as e:
            logger.error("Failed to delete survey %s: %s", survey_id, e, exc_info=True)
            raise DatabaseError(message="Could not delete the survey. Please try again.")

        logger.info("Survey %s deleted", survey_id)
        return SurveyDeleteResponse(
            message=f"Survey {survey_id} deleted successfully",
            deleted_survey=snapshot,
        )

    # ── Queries ───────────────────────────────────────────────────────────

    async def find_one(self, db: AsyncSession, survey_id: int) -> SurveyResponse:
        return self._to_response(await self._get(db, survey_id))

    async def find_by_dealer_and_customer(
        self,
        db: AsyncSession,
        dealer_id: str,
        customer_name: str,
        customer_address: str,
    ) -> SurveyResponse:
        """Newest survey for one customer of one dealer."""
        result = await db.execute(
            select(Survey)
            .options(selectinload(Survey.dealer))
            .where(
                Survey.dealer_id == dealer_id,
                Survey.customer_name == customer_name,
                Survey.customer_address == customer_address,
            )
            .order_by(Survey.created_at.desc())
            .limit(1)
        )
        survey = result.scalar_one_or_none()
        if survey is None:
            raise NotFoundError(
                resource="Survey",
                context={"dealer_id": dealer_id, "customer_name": customer_name},
            )
        return self._to_response(survey)

    async def get_dealer_responses(self, db: AsyncSession, dealer_id: str) -> List[SurveyResponse]:
        """All surveys of a dealer, newest first. Unknown dealers yield []."""
        result = await db.execute(
            select(Survey)
            .options(selectinload(Survey.dealer))
            .where(Survey.dealer_id == dealer_id)
            .order_by(Survey.created_at.desc())
        )
        surveys = list(result.scalars().all())
        logger.debug("Found %d surveys for dealer %s", len(surveys), dealer_id)
        return [self._to_response(s) for s in surveys]

    async def search(self, db: AsyncSession, params: SurveySearchParams) -> SurveySearchResponse:
        """
        Filtered, paginated survey listing, newest first, dealer eager-loaded.

        Filters combine with AND:
            id           exact
            search       customer_name ILIKE OR customer_address ILIKE
            dealer_id    exact
            rep_name     ILIKE contains
        """
        filters = []
        if params.id is not None:
            filters.append(Survey.id == params.id)
        if params.search:
            pattern = f"%{params.search}%"
            filters.append(or_(Survey.customer_name.ilike(pattern), Survey.customer_address.ilike(pattern)))
        if params.dealer_id:
            filters.append(Survey.dealer_id == params.dealer_id)
        if params.rep_name:
            filters.append(Survey.rep_name.ilike(f"%{params.rep_name}%"))

        try:
            total = (
                await db.execute(select(func.count()).select_from(Survey).where(*filters))
            ).scalar() or 0

            rows = await db.execute(
                select(Survey)
                .options(selectinload(Survey.dealer))
                .where(*filters)
                .order_by(Survey.created_at.desc())
                .offset((params.page - 1) * params.limit)
                .limit(params.limit)
            )
            surveys = list(rows.scalars().all())
        except SiteSurveyError:
            raise
        except SQLAlchemyError as e:
            logger.error("Database error searching surveys: %s", e, exc_info=True)
            raise DatabaseError(
                message="Could not search surveys. Please try again.",
                context={"error_type": type(e).__name__},
            )

        return SurveySearchResponse(
            results=[SurveySummary.from_model(s) for s in surveys],
            meta=PaginationMeta.build(total=total, page=params.page, limit=params.limit),
        )
