"""
SiteSurvey Backend — Local Disk Storage
=========================================

What:  Stores uploads under STORAGE_ROOT and serves them back through
       GET /files/{path}.
Why:   Development and the test suite need a backend with no credentials.
How:   Async file I/O (aiofiles) so writes never block the event loop.

Directory Structure:
    storage/
    ├── dealers/
    │   └── D1/
    │       └── 1718000000000-9f1c...e2.png
    └── surveys/
        └── 42/
            └── 1718000000123-0a7b...44.jpg

Security:
    Every path is resolved and must stay inside STORAGE_ROOT. A "../" path
    raises ValidationError on write or delete and NotFoundError on read,
    before the filesystem is touched.
"""

import logging
import os
from pathlib import Path
from typing import AsyncIterator, Optional

import aiofiles
import aiofiles.os

from app.config import settings
from app.exceptions import NotFoundError, StorageError, ValidationError
from app.services.retry import RetryPolicy
from app.services.storage_base import RemoteStorageClient, StageCallback

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class LocalStorageClient(RemoteStorageClient):
    """Filesystem backend; public URLs are rooted at PUBLIC_FILES_PATH."""

    service_name = "local"

    def __init__(
        self,
        storage_root: Optional[str] = None,
        public_path: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        super().__init__(retry_policy=retry_policy, **kwargs)
        self.storage_root = Path(storage_root or settings.storage_root).resolve()
        self.public_path = "/" + (public_path or settings.public_files_path).strip("/")
        self.storage_root.mkdir(parents=True, exist_ok=True)
        logger.info("LocalStorageClient initialized with storage_root=%s", self.storage_root)

    def _resolve(self, logical_path: str) -> Path:
        """Absolute path for `logical_path`, refusing anything outside the root."""
        candidate = (self.storage_root / logical_path.lstrip("/")).resolve()
        if candidate != self.storage_root and self.storage_root not in candidate.parents:
            raise ValidationError(
                message="Invalid file path",
                field="path",
                context={"path": logical_path},
            )
        return candidate

    def _logical_path_from(self, url_or_ref: str) -> str:
        prefix = self.public_path + "/"
        if url_or_ref.startswith(prefix):
            return url_or_ref[len(prefix):]
        return url_or_ref.lstrip("/")

    async def _put_once(
        self,
        content: bytes,
        content_type: str,
        folder: str,
        filename: str,
        on_stage: Optional[StageCallback],
    ) -> str:
        logical_path = f"{folder}/{filename}"
        target = self._resolve(logical_path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        async with aiofiles.open(target, "wb") as f:
            await f.write(content)
        return f"{self.public_path}/{logical_path}"

    async def delete(self, url_or_ref: str) -> bool:
        target = self._resolve(self._logical_path_from(url_or_ref))
        if not await aiofiles.os.path.isfile(target):
            logger.debug("Delete: file already gone: %s", url_or_ref)
            return False
        try:
            await aiofiles.os.remove(target)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(
                message="Failed to delete stored file",
                context={"path": str(target), "os_error": str(e)},
            ) from e
        logger.info("Deleted local file: %s", url_or_ref)
        return True

    async def get_stream(self, logical_path: str) -> AsyncIterator[bytes]:
        try:
            target = self._resolve(logical_path)
        except ValidationError as e:
            logger.warning("Read outside storage root refused: %s", logical_path)
            raise NotFoundError(resource="file", resource_id=logical_path) from e
        try:
            f = await aiofiles.open(target, "rb")
        except OSError as e:
            raise NotFoundError(resource="file", resource_id=logical_path) from e
        try:
            while True:
                chunk = await f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await f.close()

    async def health_check(self) -> bool:
        return self.storage_root.is_dir() and os.access(self.storage_root, os.W_OK)
