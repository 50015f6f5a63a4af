"""
SiteSurvey Backend — Upload Orchestrator
==========================================

What:  The single entry point services use to turn an uploaded file into a
       public URL, to swap one URL for another, and to clean up.
Why:   Dealers (logo) and surveys (photos) need the same pipeline; keeping
       it in one place keeps the failure semantics identical for both.
How:   Composes FileService, ImageCompressor and a RemoteStorageClient.

Pipeline per file (ingest):
    ┌──────────┐   ┌──────────┐   ┌─────────────┐   ┌──────────────────┐
    │ Validate │──▶│ Compress │──▶│ Object path │──▶│ put() with retry │──▶ URL
    │ (400)    │   │ (400/500)│   │             │   │ (502 on give-up) │
    └──────────┘   └──────────┘   └─────────────┘   └──────────────────┘
    GIF uploads skip the compress step and are stored as uploaded.

    UploadState: pending → compressing → uploading → [permission_setting]
                 → done, or → failed from any step. Logged at DEBUG.

Ordering guarantees:
    - A URL is only ever handed back after the blob is in storage, so a
      record can never point at a blob that was not uploaded.
    - replace() uploads the new file BEFORE deleting the old one. If the
      upload fails the old blob and the caller's record stay untouched.
    - Deletes are best-effort: failures are logged as warnings, never raised.

Direct uploads:
    create_direct_upload() only names the object and asks the backend for a
    presigned URL. Nothing is validated or compressed on that path.
"""

import asyncio
import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from app.config import settings
from app.exceptions import BatchUploadError, ValidationError
from app.services.compression_service import ImageCompressor, options_for_category
from app.services.file_service import ALLOWED_MIME_TYPES, FileService, IncomingFile
from app.services.storage_base import (
    DirectUpload,
    RemoteStorageClient,
    UploadState,
    build_object_path,
)

logger = logging.getLogger(__name__)

# Skips compression: re-encoding would drop every frame but the first
PASSTHROUGH_TYPE = "image/gif"


class UploadOrchestrator:
    """
    Stateless coordinator; one instance is shared by every request.

    Args:
        storage:             Configured storage backend
        compressor:          Image normalizer
        file_service:        Upload validator
        compress_uploads:    Defaults to COMPRESS_UPLOADS
        batch_size:          Defaults to UPLOAD_BATCH_SIZE
        rollback_on_failure: Defaults to UPLOAD_ROLLBACK_ON_FAILURE
    """

    def __init__(
        self,
        storage: RemoteStorageClient,
        compressor: Optional[ImageCompressor] = None,
        file_service: Optional[FileService] = None,
        compress_uploads: Optional[bool] = None,
        batch_size: Optional[int] = None,
        rollback_on_failure: Optional[bool] = None,
    ):
        self.storage = storage
        self.compressor = compressor or ImageCompressor()
        self.file_service = file_service or FileService()
        self.compress_uploads = (
            settings.compress_uploads if compress_uploads is None else compress_uploads
        )
        self.batch_size = batch_size or settings.upload_batch_size
        self.rollback_on_failure = (
            settings.upload_rollback_on_failure if rollback_on_failure is None else rollback_on_failure
        )

    @staticmethod
    def _transition(upload_id: str, state: UploadState) -> None:
        logger.debug("Upload %s → %s", upload_id, state.value)

    async def ingest(self, file: IncomingFile, owner_key: str, category: str) -> str:
        """
        Validate, compress and upload one file.

        Returns:
            Public URL of the stored object.

        Raises:
            ValidationError:       rejected by validation or undecodable image
            ImageProcessingError:  codec failure on a valid image
            UploadFailedError:     storage gave up after retries
        """
        upload_id = uuid.uuid4().hex[:8]
        self._transition(upload_id, UploadState.PENDING)
        try:
            detected_type = self.file_service.validate(file)

            if self.compress_uploads and detected_type != PASSTHROUGH_TYPE:
                self._transition(upload_id, UploadState.COMPRESSING)
                options = options_for_category(category)
                content = await self.compressor.compress(file.content, options)
                content_type, extension = options.content_type, options.extension
            else:
                content = file.content
                content_type, extension = detected_type, ALLOWED_MIME_TYPES[detected_type]

            logical_path = build_object_path(category, owner_key, extension)

            self._transition(upload_id, UploadState.UPLOADING)
            url = await self.storage.put(
                content,
                content_type,
                logical_path,
                on_stage=lambda state: self._transition(upload_id, state),
            )
        except Exception:
            self._transition(upload_id, UploadState.FAILED)
            raise

        self._transition(upload_id, UploadState.DONE)
        return url

    async def ingest_many(
        self,
        files: Sequence[IncomingFile],
        owner_key: str,
        category: str,
    ) -> List[str]:
        """
        Upload several files in sequential batches of `batch_size`.

        Files within a batch upload concurrently; the next batch starts only
        after the current one has fully settled. The first batch containing
        a failure ends the call: later batches are never started.

        Returns:
            URLs in input order.

        Raises:
            BatchUploadError: carries the first failure as `cause` and every
                (index, filename, error) of the failing batch. URLs uploaded
                before the failure stay in storage unless
                rollback_on_failure is enabled.
        """
        urls: List[str] = []
        for start in range(0, len(files), self.batch_size):
            batch = files[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.ingest(f, owner_key, category) for f in batch),
                return_exceptions=True,
            )

            failures: List[Tuple[int, str, BaseException]] = []
            for offset, result in enumerate(results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    file = batch[offset]
                    failures.append((start + offset, file.filename or file.field_name, result))
                else:
                    urls.append(result)

            if failures:
                logger.error(
                    "Batch upload for %s/%s failed: %d of %d files failed, %d uploaded",
                    category, owner_key, len(failures), len(files), len(urls),
                )
                if self.rollback_on_failure:
                    await self.discard_all(urls)
                raise BatchUploadError(failures=failures, total=len(files))

        return urls

    async def replace(
        self,
        old_url: Optional[str],
        new_file: IncomingFile,
        owner_key: str,
        category: str,
    ) -> str:
        """Upload `new_file`, then best-effort delete `old_url`."""
        new_url = await self.ingest(new_file, owner_key, category)
        if old_url:
            await self.discard(old_url)
        return new_url

    async def discard(self, url: Optional[str]) -> None:
        """Best-effort delete. Never raises."""
        if not url:
            return
        try:
            await self.storage.delete(url)
        except Exception as e:
            logger.warning("Failed to delete stored file %s: %s", url, e)

    async def discard_all(self, urls: Sequence[str]) -> None:
        for url in urls:
            await self.discard(url)

    async def create_direct_upload(self, owner_key: str, category: str, content_type: str) -> DirectUpload:
        """
        Reserve a path under <category>/<owner_key> and ask the backend for a
        URL the client can upload to without going through this service.

        Raises:
            ValidationError:            content_type is not an allowed image type
            UnsupportedOperationError:  backend cannot issue upload URLs
        """
        extension = ALLOWED_MIME_TYPES.get(content_type)
        if extension is None:
            raise ValidationError(
                message=f"Content type '{content_type}' is not allowed. "
                        f"Allowed: {', '.join(sorted(ALLOWED_MIME_TYPES))}",
                field="content_type",
            )
        logical_path = build_object_path(category, owner_key, extension)
        return await self.storage.create_upload_url(logical_path, content_type)
