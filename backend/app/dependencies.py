"""
SiteSurvey Backend — Dependency Providers
===========================================

What:  Builds the storage client and services once, from settings, and
       exposes them to routes through FastAPI's Depends().
Why:   One shared boto3 client / Drive service per process; tests swap any
       of them with app.dependency_overrides.
When:  First use, or the lifespan warm-up at startup, whichever comes first.

Object graph:
    RemoteStorageClient (s3 | drive | local)
        └── UploadOrchestrator (+ ImageCompressor, FileService)
                ├── DealerService
                ├── SurveyService
                └── SurveyFormService (+ DealerService, SurveyService)
"""

import logging
from functools import lru_cache

from app.config import settings
from app.services.compression_service import ImageCompressor
from app.services.dealer_service import DealerService
from app.services.file_service import FileService
from app.services.storage_base import RemoteStorageClient
from app.services.survey_form_service import SurveyFormService
from app.services.survey_service import SurveyService
from app.services.upload_orchestrator import UploadOrchestrator

logger = logging.getLogger(__name__)


@lru_cache
def get_storage_client() -> RemoteStorageClient:
    """Backend selected by STORAGE_BACKEND; SDK modules are imported only when used."""
    backend = settings.storage_backend
    if backend == "s3":
        from app.services.s3_storage import S3StorageClient
        client: RemoteStorageClient = S3StorageClient()
    elif backend == "drive":
        from app.services.drive_storage import DriveStorageClient
        client = DriveStorageClient()
    else:
        from app.services.local_storage import LocalStorageClient
        client = LocalStorageClient()
    logger.info("Storage backend: %s", client.service_name)
    return client


@lru_cache
def get_image_compressor() -> ImageCompressor:
    return ImageCompressor()


@lru_cache
def get_file_service() -> FileService:
    return FileService()


@lru_cache
def get_upload_orchestrator() -> UploadOrchestrator:
    return UploadOrchestrator(
        storage=get_storage_client(),
        compressor=get_image_compressor(),
        file_service=get_file_service(),
    )


@lru_cache
def get_dealer_service() -> DealerService:
    return DealerService(get_upload_orchestrator())


@lru_cache
def get_survey_service() -> SurveyService:
    return SurveyService(get_upload_orchestrator())


@lru_cache
def get_survey_form_service() -> SurveyFormService:
    return SurveyFormService(
        dealer_service=get_dealer_service(),
        survey_service=get_survey_service(),
        orchestrator=get_upload_orchestrator(),
    )


def warm_up() -> None:
    """Build the whole object graph eagerly (called from the lifespan)."""
    get_survey_form_service()


def reset_providers() -> None:
    """Forget cached instances; used by tests that change settings."""
    for provider in (
        get_storage_client,
        get_image_compressor,
        get_file_service,
        get_upload_orchestrator,
        get_dealer_service,
        get_survey_service,
        get_survey_form_service,
    ):
        provider.cache_clear()
