"""
SiteSurvey Backend — Google Drive Storage
===========================================

What:  Stores uploads as files inside per-entity folders of one shared
       Google Drive root folder (GOOGLE_DRIVE_FOLDER_ID).
How:   google-api-python-client (Drive v3) with service-account credentials.
       The client library is synchronous, so every call runs in a worker
       thread via asyncio.to_thread.

Folder layout:
    <GOOGLE_DRIVE_FOLDER_ID>/
    ├── dealers-d1/             ← sanitize("dealers/D1")
    │   └── 1718000000000-9f1c...e2.png
    └── surveys-42/
        └── 1718000000123-0a7b...44.jpg

    Folder lookup is scoped to direct children of the root folder, so a
    same-named folder elsewhere in the service account's Drive is ignored.

Public access:
    Drive files are private by default. Every folder is created with an
    "anyone → reader" permission, and every uploaded file gets one too
    (the PERMISSION_SETTING upload stage), so the returned
    https://drive.google.com/uc?export=view&id=<id> URL works without auth.
"""

import asyncio
import io
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload

from app.config import settings
from app.exceptions import NotFoundError, StorageError
from app.services.retry import RetryPolicy
from app.services.storage_base import (
    RemoteStorageClient,
    StageCallback,
    UploadState,
    sanitize_folder_name,
)

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
PUBLIC_READER = {"type": "anyone", "role": "reader"}
PUBLIC_URL_TEMPLATE = "https://drive.google.com/uc?export=view&id={file_id}"

CHUNK_SIZE = 256 * 1024

_ID_QUERY_RE = re.compile(r"[?&]id=([A-Za-z0-9_-]+)")
_ID_PATH_RE = re.compile(r"/d/([A-Za-z0-9_-]+)")
_BARE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def build_drive_service(client_email: Optional[str] = None, private_key: Optional[str] = None):
    """
    Build an authenticated Drive v3 service from service-account fields.

    Private keys pasted into .env files usually carry literal "\\n"
    sequences; they are unescaped here.
    """
    info = {
        "type": "service_account",
        "client_email": client_email or settings.google_client_email,
        "private_key": (private_key or settings.google_private_key).replace("\\n", "\n"),
        "token_uri": "https://oauth2.googleapis.com/token",
    }
    credentials = service_account.Credentials.from_service_account_info(info, scopes=SCOPES)
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


def extract_file_id(url_or_ref: str) -> Optional[str]:
    """Pull the Drive file id out of a uc?id= / open?id= / /d/<id>/ URL or a bare id."""
    for pattern in (_ID_QUERY_RE, _ID_PATH_RE):
        match = pattern.search(url_or_ref)
        if match:
            return match.group(1)
    if _BARE_ID_RE.match(url_or_ref):
        return url_or_ref
    return None


def _escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _is_not_found(error: HttpError) -> bool:
    return getattr(error.resp, "status", None) == 404


class DriveStorageClient(RemoteStorageClient):
    """Google Drive backend."""

    service_name = "drive"

    def __init__(
        self,
        service: Any = None,
        root_folder_id: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        **kwargs,
    ):
        """
        Args:
            service:        Pre-built Drive service (tests pass a MagicMock).
                            Built from settings when omitted.
            root_folder_id: Parent of every entity folder; defaults to
                            GOOGLE_DRIVE_FOLDER_ID.
        """
        super().__init__(retry_policy=retry_policy, **kwargs)
        self.service = service if service is not None else build_drive_service()
        self.root_folder_id = root_folder_id or settings.google_drive_folder_id

    # ── Folder Management ─────────────────────────────────────────────────

    async def _find_or_create_folder_once(self, name: str) -> str:
        folder_name = sanitize_folder_name(name)

        def _find_or_create() -> str:
            query = (
                f"name = '{_escape_query(folder_name)}' "
                f"and mimeType = '{FOLDER_MIME_TYPE}' "
                f"and '{self.root_folder_id}' in parents "
                "and trashed = false"
            )
            response = self.service.files().list(
                q=query,
                fields="files(id, name)",
                spaces="drive",
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ).execute()
            existing = response.get("files", [])
            if existing:
                folder_id = existing[0]["id"]
                # Creation may have stopped short of the permission step
                if not self._is_public_sync(folder_id):
                    self._grant_public_read(folder_id)
                    logger.info("Granted public read on existing Drive folder %s", folder_id)
                return folder_id

            folder = self.service.files().create(
                body={
                    "name": folder_name,
                    "mimeType": FOLDER_MIME_TYPE,
                    "parents": [self.root_folder_id],
                },
                fields="id",
                supportsAllDrives=True,
            ).execute()
            self._grant_public_read(folder["id"])
            logger.info("Created Drive folder '%s' (%s)", folder_name, folder["id"])
            return folder["id"]

        return await asyncio.to_thread(_find_or_create)

    def _grant_public_read(self, file_id: str) -> None:
        self.service.permissions().create(
            fileId=file_id,
            body=PUBLIC_READER,
            fields="id",
            supportsAllDrives=True,
        ).execute()

    def _is_public_sync(self, file_id: str) -> bool:
        response = self.service.permissions().list(
            fileId=file_id,
            fields="permissions(id, type, role)",
            supportsAllDrives=True,
        ).execute()
        return any(p.get("type") == "anyone" for p in response.get("permissions", []))

    # ── Upload ────────────────────────────────────────────────────────────

    async def _put_once(
        self,
        content: bytes,
        content_type: str,
        folder: str,
        filename: str,
        on_stage: Optional[StageCallback],
    ) -> str:
        def _create() -> str:
            media = MediaIoBaseUpload(io.BytesIO(content), mimetype=content_type, resumable=False)
            created = self.service.files().create(
                body={"name": filename, "parents": [folder]},
                media_body=media,
                fields="id",
                supportsAllDrives=True,
            ).execute()
            return created["id"]

        file_id = await asyncio.to_thread(_create)

        if on_stage is not None:
            on_stage(UploadState.PERMISSION_SETTING)
        try:
            await asyncio.to_thread(self._grant_public_read, file_id)
        except Exception:
            # A private file is useless; drop it so the retry starts clean
            await self._delete_quietly(file_id)
            raise

        return PUBLIC_URL_TEMPLATE.format(file_id=file_id)

    async def _delete_quietly(self, file_id: str) -> None:
        try:
            await self.delete(file_id)
        except StorageError as e:
            logger.warning("Could not remove unshared Drive file %s: %s", file_id, e.message)

    # ── Delete / Read ─────────────────────────────────────────────────────

    async def delete(self, url_or_ref: str) -> bool:
        file_id = extract_file_id(url_or_ref)
        if file_id is None:
            logger.warning("Delete: could not parse a Drive file id from '%s'", url_or_ref)
            return False

        def _delete() -> bool:
            try:
                self.service.files().delete(fileId=file_id, supportsAllDrives=True).execute()
                return True
            except HttpError as e:
                if _is_not_found(e):
                    return False
                raise

        try:
            deleted = await asyncio.to_thread(_delete)
        except Exception as e:
            raise StorageError(
                message="Failed to delete file from Google Drive",
                context={"file_id": file_id, "error": str(e)},
            ) from e

        if deleted:
            logger.info("Deleted Drive file %s", file_id)
        else:
            logger.debug("Delete: Drive file already gone: %s", file_id)
        return deleted

    async def get_stream(self, logical_path: str) -> AsyncIterator[bytes]:
        """Stream a Drive file; `logical_path` is its id (or any Drive URL)."""
        file_id = extract_file_id(logical_path)
        if file_id is None:
            raise NotFoundError(resource="file", resource_id=logical_path)

        def _download() -> bytes:
            buffer = io.BytesIO()
            downloader = MediaIoBaseDownload(
                buffer, self.service.files().get_media(fileId=file_id), chunksize=CHUNK_SIZE
            )
            done = False
            while not done:
                _, done = downloader.next_chunk()
            return buffer.getvalue()

        try:
            body = await asyncio.to_thread(_download)
        except Exception as e:
            logger.warning("Drive read of %s failed: %s", file_id, e)
            raise NotFoundError(resource="file", resource_id=logical_path) from e

        for offset in range(0, len(body), CHUNK_SIZE):
            yield body[offset:offset + CHUNK_SIZE]

    async def health_check(self) -> bool:
        def _ping() -> None:
            self.service.files().get(
                fileId=self.root_folder_id, fields="id", supportsAllDrives=True
            ).execute()

        try:
            await asyncio.to_thread(_ping)
            return True
        except Exception as e:
            logger.warning("Drive health check failed: %s", e)
            return False

    # ── Maintenance (scripts/drive_permissions.py) ────────────────────────

    async def create_root_folder(self, name: str = "Site Survey Uploads") -> Dict[str, str]:
        """Create a top-level upload folder and make it publicly readable."""
        def _create() -> Dict[str, str]:
            folder = self.service.files().create(
                body={"name": name, "mimeType": FOLDER_MIME_TYPE},
                fields="id, name, webViewLink",
            ).execute()
            self._grant_public_read(folder["id"])
            return folder

        return await asyncio.to_thread(_create)

    async def list_children(self, folder_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every non-trashed direct child of `folder_id` (default: the root folder)."""
        parent = folder_id or self.root_folder_id

        def _list() -> List[Dict[str, Any]]:
            children: List[Dict[str, Any]] = []
            page_token = None
            while True:
                response = self.service.files().list(
                    q=f"'{parent}' in parents and trashed = false",
                    fields="nextPageToken, files(id, name, mimeType)",
                    spaces="drive",
                    pageToken=page_token,
                    supportsAllDrives=True,
                    includeItemsFromAllDrives=True,
                ).execute()
                children.extend(response.get("files", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    return children

        return await asyncio.to_thread(_list)

    async def is_public(self, file_id: str) -> bool:
        return await asyncio.to_thread(self._is_public_sync, file_id)

    async def ensure_public(self, file_id: str) -> bool:
        """Grant anyone/reader if missing. Returns True when a permission was added."""
        if await self.is_public(file_id):
            return False
        await asyncio.to_thread(self._grant_public_read, file_id)
        return True
