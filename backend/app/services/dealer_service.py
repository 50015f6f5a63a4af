"""
SiteSurvey Backend — Dealer Service
=====================================

What:  Dealer CRUD and search, including the logo upload side effects.
Who:   Called by the /dealers route handlers.

Logo lifecycle:
    create  → ingest logo into dealers/<dealer_id>, then insert the row.
              If the insert fails the fresh logo is discarded again.
    update  → replace(): new logo uploaded first, old one deleted after.
              The row's logo column changes only once the upload succeeded.
    delete  → logo discarded (best-effort), then the row is removed.

Transactions:
    Methods only flush. get_db_session() commits once the route returns,
    so a failure anywhere in the request rolls the row changes back.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import any_, exists, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.exceptions import ConflictError, DatabaseError, NotFoundError, SiteSurveyError
from app.models.dealer import Dealer
from app.models.survey import Survey
from app.schemas.common import PaginationMeta
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
from app.schemas.survey import SurveyResponse
from app.services.file_service import IncomingFile
from app.services.upload_orchestrator import UploadOrchestrator

logger = logging.getLogger(__name__)

DEALER_CATEGORY = "dealers"

_NUMERIC_RE = re.compile(r"^\d+$")


def rep_filter(db: AsyncSession, rep_name: str):
    """
    Exact element match of `rep_name` in Dealer.reps.

    Postgres: :rep = ANY(dealers.reps). SQLite stores reps as a JSON array,
    so the same membership test is an EXISTS over json_each().
    """
    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    if getattr(dialect, "name", None) == "sqlite":
        element = func.json_each(Dealer.reps).table_valued("value")
        return exists(select(1).select_from(element).where(element.c.value == rep_name))
    return rep_name == any_(Dealer.reps)


class DealerService:
    """
    Business logic for dealers.

    Error Handling Strategy:
        Application exceptions propagate unchanged. A unique-key violation
        becomes ConflictError (409); any other SQLAlchemy error is wrapped in
        DatabaseError so no SQL reaches the client.
    """

    def __init__(self, orchestrator: UploadOrchestrator):
        self.orchestrator = orchestrator

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _get(self, db: AsyncSession, dealer_id: uuid.UUID) -> Dealer:
        result = await db.execute(select(Dealer).where(Dealer.id == dealer_id))
        dealer = result.scalar_one_or_none()
        if dealer is None:
            raise NotFoundError(resource="Dealer", resource_id=str(dealer_id))
        return dealer

    async def get_by_business_key(self, db: AsyncSession, dealer_id: str) -> Dealer:
        """Dealer whose dealer_id equals `dealer_id`, or NotFoundError."""
        result = await db.execute(select(Dealer).where(Dealer.dealer_id == dealer_id))
        dealer = result.scalar_one_or_none()
        if dealer is None:
            raise NotFoundError(resource="Dealer", resource_id=dealer_id)
        return dealer

    @staticmethod
    def _database_error(action: str, error: Exception) -> DatabaseError:
        logger.error("Database error while %s: %s", action, error, exc_info=True)
        return DatabaseError(
            message=f"Could not {action}. Please try again.",
            context={"error_type": type(error).__name__},
        )

    # ── Commands ──────────────────────────────────────────────────────────

    async def create(
        self,
        db: AsyncSession,
        data: DealerCreate,
        logo: Optional[IncomingFile] = None,
    ) -> DealerResponse:
        """
        Register a dealer, uploading its logo first when one is given.

        Raises:
            ConflictError:      dealer_id already taken
            ValidationError:    logo rejected
            UploadFailedError:  storage gave up on the logo
            DatabaseError:      insert failed for another reason
        """
        try:
            taken = await db.execute(select(Dealer.id).where(Dealer.dealer_id == data.dealer_id))
            if taken.scalar_one_or_none() is not None:
                raise ConflictError(
                    message=f"Dealer with dealer_id '{data.dealer_id}' already exists",
                    context={"dealer_id": data.dealer_id},
                )
        except SiteSurveyError:
            raise
        except SQLAlchemyError as e:
            raise self._database_error("create the dealer", e)

        logo_url = None
        if logo is not None:
            logo_url = await self.orchestrator.ingest(logo, data.dealer_id, DEALER_CATEGORY)

        dealer = Dealer(
            dealer_id=data.dealer_id,
            name=data.name,
            reps=data.reps,
            logo=logo_url,
        )
        try:
            db.add(dealer)
            await db.flush()
        except IntegrityError:
            await self.orchestrator.discard(logo_url)
            raise ConflictError(
                message=f"Dealer with dealer_id '{data.dealer_id}' already exists",
                context={"dealer_id": data.dealer_id},
            )
        except SQLAlchemyError as e:
            await self.orchestrator.discard(logo_url)
            raise self._database_error("create the dealer", e)

        logger.info("Dealer created: %s (%s)", dealer.dealer_id, dealer.id)
        return DealerResponse.from_model(dealer)

    async def update(
        self,
        db: AsyncSession,
        dealer_id: uuid.UUID,
        data: DealerUpdate,
        logo: Optional[IncomingFile] = None,
    ) -> DealerResponse:
        """
        Apply a partial update; only fields the client sent are changed.

        dealer_id (the business key) is never modified, so the logo keeps
        its dealers/<dealer_id> prefix.
        """
        dealer = await self._get(db, dealer_id)

        if logo is not None:
            dealer.logo = await self.orchestrator.replace(
                dealer.logo, logo, dealer.dealer_id, DEALER_CATEGORY
            )

        for field, value in data.model_dump(exclude_unset=True).items():
            if value is not None:
                setattr(dealer, field, value)
        dealer.updated_at = datetime.now(timezone.utc)

        try:
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("update the dealer", e)

        logger.info("Dealer updated: %s", dealer.dealer_id)
        return DealerResponse.from_model(dealer)

    async def delete(self, db: AsyncSession, dealer_id: uuid.UUID) -> DealerDeleteResponse:
        """Remove the logo (best-effort), then the row."""
        dealer = await self._get(db, dealer_id)
        snapshot = DealerResponse.from_model(dealer)

        await self.orchestrator.discard(dealer.logo)

        try:
            await db.delete(dealer)
            await db.flush()
        except SQLAlchemyError as e:
            raise self._database_error("delete the dealer", e)

        logger.info("Dealer deleted: %s", dealer.dealer_id)
        return DealerDeleteResponse(
            message=f"Dealer '{dealer.name}' deleted successfully",
            deleted_dealer=snapshot,
        )

    async def create_logo_upload_url(
        self,
        db: AsyncSession,
        dealer_id: uuid.UUID,
        content_type: str = "image/png",
    ) -> LogoUploadUrlResponse:
        """
        Presigned URL for uploading a logo directly to storage.

        Only the dealer's existence is checked; its logo column is left
        as it is.

        Raises:
            NotFoundError:              unknown dealer
            ValidationError:            content_type not an allowed image type
            UnsupportedOperationError:  storage backend has no direct upload
        """
        dealer = await self._get(db, dealer_id)
        target = await self.orchestrator.create_direct_upload(
            dealer.dealer_id, DEALER_CATEGORY, content_type
        )
        logger.info("Logo upload URL issued for dealer %s: %s", dealer.dealer_id, target.logical_path)
        return LogoUploadUrlResponse(
            upload_url=target.upload_url,
            image_url=target.public_url,
            expires_in=target.expires_in,
        )

    # ── Queries ───────────────────────────────────────────────────────────

    async def find_all(self, db: AsyncSession) -> List[DealerResponse]:
        try:
            result = await db.execute(select(Dealer).order_by(Dealer.created_at.desc()))
        except SQLAlchemyError as e:
            raise self._database_error("fetch dealers", e)
        return [DealerResponse.from_model(d) for d in result.scalars().all()]

    async def find_one(self, db: AsyncSession, dealer_id: uuid.UUID) -> DealerResponse:
        try:
            return DealerResponse.from_model(await self._get(db, dealer_id))
        except SiteSurveyError:
            raise
        except SQLAlchemyError as e:
            raise self._database_error("fetch the dealer", e)

    async def find_by_dealer_id(
        self,
        db: AsyncSession,
        key: str,
        customer_name: Optional[str] = None,
    ) -> DealerWithSurveysResponse:
        """
        Look a dealer up by business key, together with its surveys.

        A purely numeric key is taken to be a survey id (links shared from a
        survey page carry the survey id); the survey's dealer is returned.
        `customer_name` narrows the match to dealers with a survey for that
        customer, and only those surveys are included.
        """
        if _NUMERIC_RE.match(key):
            survey = (
                await db.execute(select(Survey).where(Survey.id == int(key)))
            ).scalar_one_or_none()
            if survey is None:
                raise NotFoundError(resource="Survey", resource_id=key)
            key = survey.dealer_id

        query = (
            select(Dealer)
            .options(selectinload(Dealer.surveys))
            .where(Dealer.dealer_id == key)
        )
        if customer_name:
            query = query.where(Dealer.surveys.any(Survey.customer_name == customer_name))

        dealer = (await db.execute(query)).scalar_one_or_none()
        if dealer is None:
            raise NotFoundError(resource="Dealer", resource_id=key)

        surveys = sorted(dealer.surveys, key=lambda s: s.created_at, reverse=True)
        if customer_name:
            surveys = [s for s in surveys if s.customer_name == customer_name]

        logger.debug("Found dealer %s with %d surveys", dealer.dealer_id, len(surveys))
        base = DealerResponse.from_model(dealer)
        return DealerWithSurveysResponse(
            **base.model_dump(),
            surveys=[SurveyResponse.from_model(s, dealer_name=dealer.name) for s in surveys],
        )

    async def search(self, db: AsyncSession, params: DealerSearchParams) -> DealerSearchResponse:
        """
        Filtered, paginated dealer listing, newest first.

        Query plan:
            SELECT ... FROM dealers
            WHERE name ILIKE '%:search%' AND :rep_name = ANY(reps)
            ORDER BY created_at DESC OFFSET (page-1)*limit LIMIT :limit
        """
        filters = []
        if params.search:
            filters.append(Dealer.name.ilike(f"%{params.search}%"))
        if params.rep_name:
            filters.append(rep_filter(db, params.rep_name))

        try:
            total = (
                await db.execute(select(func.count()).select_from(Dealer).where(*filters))
            ).scalar() or 0

            rows = await db.execute(
                select(Dealer)
                .where(*filters)
                .order_by(Dealer.created_at.desc())
                .offset((params.page - 1) * params.limit)
                .limit(params.limit)
            )
            dealers = list(rows.scalars().all())
        except SQLAlchemyError as e:
            raise self._database_error("search dealers", e)

        return DealerSearchResponse(
            data=[DealerResponse.from_model(d) for d in dealers],
            meta=PaginationMeta.build(total=total, page=params.page, limit=params.limit),
        )
