"""
SiteSurvey Backend — Remote Storage Contract
==============================================

What:  Abstract base class shared by the S3, Google Drive and local-disk
       storage backends, plus the helpers that name objects.
Why:   Services upload, delete and stream files without knowing which
       backend is configured (STORAGE_BACKEND).
How:   RemoteStorageClient.put() is a template method:
           1. validate the logical path
           2. find_or_create_folder(dirname)      (retried → FolderCreationError)
           3. _put_once(folder, basename, ...)    (retried → UploadFailedError)
       Backends implement only the single-attempt primitives.

Folder resolution:
    Lookups run one at a time per client and resolved folders are cached,
    so the concurrent uploads of one batch all land in the same folder
    instead of each creating its own. A failed upload evicts its folder
    from the cache.

Logical paths:
    "<category>/<owner_key>/<timestamp_ms>-<uuid4hex><ext>"
    e.g. "surveys/42/1718000000000-9f1c...e2.jpg"

    The category/owner prefix groups every asset of one entity; the
    timestamp+uuid basename makes concurrent uploads collision-free.
"""

import asyncio
import logging
import posixpath
import re
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional

from app.exceptions import (
    FolderCreationError,
    UnsupportedOperationError,
    UploadFailedError,
    ValidationError,
)
from app.services.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger(__name__)


class UploadState(str, Enum):
    """Lifecycle of a single upload, logged at DEBUG on every transition."""
    PENDING = "pending"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    PERMISSION_SETTING = "permission_setting"
    DONE = "done"
    FAILED = "failed"


StageCallback = Callable[[UploadState], None]


@dataclass(frozen=True)
class DirectUpload:
    """A presigned upload target and the public URL the object will have."""
    upload_url: str
    public_url: str
    logical_path: str
    expires_in: int


# Resolved folder refs kept per client
FOLDER_CACHE_SIZE = 512

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def build_object_path(category: str, owner_key: str, extension: str) -> str:
    """
    Build a collision-free logical path for a new object.

    Args:
        category:  Top-level prefix ("dealers", "surveys")
        owner_key: Entity key; may itself contain "/" (e.g. "D1/roof").
                   Characters outside [A-Za-z0-9._-] become "-".
        extension: Including the dot (".jpg"); empty for none
    """
    owner = "/".join(_safe_segment(seg) for seg in owner_key.split("/") if seg)
    timestamp_ms = int(time.time() * 1000)
    return f"{category}/{owner or '_'}/{timestamp_ms}-{uuid.uuid4().hex}{extension}"


def _safe_segment(segment: str) -> str:
    cleaned = _UNSAFE_SEGMENT_RE.sub("-", segment).strip("-")
    return cleaned if cleaned.strip(".") else "_"


def validate_logical_path(logical_path: str) -> str:
    """
    Reject paths that could escape their prefix or that no backend can name.

    Raises:
        ValidationError for absolute paths, empty segments, "." / ".." or
        characters outside [A-Za-z0-9._-].
    """
    segments = logical_path.split("/")
    if (
        not logical_path
        or logical_path.startswith("/")
        or any(seg in ("", ".", "..") or not _SEGMENT_RE.match(seg) for seg in segments)
    ):
        raise ValidationError(
            message=f"Invalid storage path '{logical_path}'",
            field="path",
        )
    return logical_path


def sanitize_folder_name(name: str) -> str:
    """
    Normalize a prefix into a flat folder name.

    Non-alphanumerics become "-", runs collapse, ends are trimmed, and the
    result is lower-cased: "Dealers/ACME Co." → "dealers-acme-co".
    """
    return _NON_ALNUM_RE.sub("-", name.lower()).strip("-")


class RemoteStorageClient(ABC):
    """
    Contract for every storage backend.

    Subclasses implement:
        _find_or_create_folder_once(name)     one attempt, returns folder ref
        _put_once(...)                        one attempt, returns public URL
        delete(url_or_ref)                    idempotent, False when absent
        get_stream(logical_path)              async byte iterator
        health_check()                        lightweight connectivity check
        create_upload_url(...)                optional, presigned direct upload
    """

    #: Short backend name used in logs and UploadFailedError.service
    service_name = "storage"

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._sleep = sleep
        self._folder_cache: "OrderedDict[str, str]" = OrderedDict()
        self._folder_lock = asyncio.Lock()

    # ── Public API ────────────────────────────────────────────────────────

    async def find_or_create_folder(self, name: str) -> str:
        """
        Resolve (or create) the folder/prefix that holds one entity's files.

        Raises:
            FolderCreationError once retries are exhausted; the last backend
            error is kept on `cause`.
        """
        cached = self._cached_folder(name)
        if cached is not None:
            return cached

        async with self._folder_lock:
            # Another upload may have resolved it while we waited
            cached = self._cached_folder(name)
            if cached is not None:
                return cached
            try:
                folder = await execute_with_retry(
                    self._find_or_create_folder_once,
                    name,
                    policy=self.retry_policy,
                    give_up_on=(ValidationError,),
                    sleep=self._sleep,
                )
            except ValidationError:
                raise
            except Exception as e:
                logger.error("[%s] Folder lookup for '%s' failed: %s", self.service_name, name, e)
                raise FolderCreationError(
                    message=f"Failed to find or create storage folder '{name}'",
                    cause=e,
                    service=self.service_name,
                    context={"folder": name},
                ) from e

            self._folder_cache[name] = folder
            if len(self._folder_cache) > FOLDER_CACHE_SIZE:
                self._folder_cache.popitem(last=False)
            return folder

    def _cached_folder(self, name: str) -> Optional[str]:
        folder = self._folder_cache.get(name)
        if folder is not None:
            self._folder_cache.move_to_end(name)
        return folder

    def forget_folder(self, name: str) -> None:
        """Drop a cached folder ref so the next upload looks it up again."""
        self._folder_cache.pop(name, None)

    async def put(
        self,
        content: bytes,
        content_type: str,
        logical_path: str,
        on_stage: Optional[StageCallback] = None,
    ) -> str:
        """
        Upload `content` at `logical_path` and return a public URL.

        The URL is readable without further authentication as soon as this
        returns.

        Raises:
            ValidationError:      malformed logical path (not retried)
            FolderCreationError:  folder step gave up
            UploadFailedError:    upload step gave up
        """
        validate_logical_path(logical_path)
        folder_name = posixpath.dirname(logical_path)
        folder = await self.find_or_create_folder(folder_name)
        filename = posixpath.basename(logical_path)

        try:
            url = await execute_with_retry(
                self._put_once,
                content,
                content_type,
                folder,
                filename,
                on_stage,
                policy=self.retry_policy,
                give_up_on=(ValidationError,),
                sleep=self._sleep,
            )
        except ValidationError:
            raise
        except Exception as e:
            logger.error(
                "[%s] Upload of %s failed after %d attempts: %s",
                self.service_name, logical_path, self.retry_policy.max_attempts, e,
            )
            self.forget_folder(folder_name)
            raise UploadFailedError(
                message=f"Failed to upload file to {self.service_name}",
                cause=e,
                service=self.service_name,
                context={"path": logical_path},
            ) from e

        logger.info("[%s] Uploaded %s (%d bytes)", self.service_name, logical_path, len(content))
        return url

    async def create_upload_url(self, logical_path: str, content_type: str) -> DirectUpload:
        """
        Hand out a URL the client can PUT `logical_path` to directly.

        The bytes bypass validation and compression. Backends that cannot
        issue such URLs keep this default.

        Raises:
            UnsupportedOperationError: backend has no direct upload
        """
        raise UnsupportedOperationError(
            message=f"Direct uploads are not supported by the {self.service_name} storage backend",
            context={"service": self.service_name},
        )

    # ── Backend Primitives ────────────────────────────────────────────────

    async def _find_or_create_folder_once(self, name: str) -> str:
        """Prefix backends have no folders to create; the prefix is the folder."""
        return name

    @abstractmethod
    async def _put_once(
        self,
        content: bytes,
        content_type: str,
        folder: str,
        filename: str,
        on_stage: Optional[StageCallback],
    ) -> str:
        """Single upload attempt; may raise anything (it will be retried)."""

    @abstractmethod
    async def delete(self, url_or_ref: str) -> bool:
        """
        Delete the object a stored URL (or bare reference) points to.

        Returns:
            True if something was deleted, False if it was already gone.
        Raises:
            StorageError on a real backend failure.
        """

    @abstractmethod
    def get_stream(self, logical_path: str) -> AsyncIterator[bytes]:
        """
        Stream the bytes at `logical_path`.

        Raises:
            NotFoundError for any read failure.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the backend answered a trivial request."""
