"""
SiteSurvey Backend — Storage Backend Tests
============================================

What:  The RemoteStorageClient contract and its three backends.
How:   Local disk runs for real in tmp_path; S3 and Drive get MagicMock SDK
       clients, so no network or credentials are needed.

What we test:
    ✅ Object naming, path validation, folder-name sanitizing
    ✅ put(): retries transient failures, wraps give-ups in UploadFailedError
    ✅ Local: write / stream / idempotent delete, traversal rejected
    ✅ S3: public-read upload, 404-tolerant delete, bucket-scoped URLs,
       presigned direct-upload URLs (unsupported on local disk)
    ✅ Drive: folder reuse/creation, public permission stage, cleanup of
       unshared files, file-id extraction
    ✅ One folder lookup per prefix, even for concurrent uploads
"""

import asyncio
import io
import re
import time
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from googleapiclient.errors import HttpError

from app.exceptions import (
    FolderCreationError,
    NotFoundError,
    StorageError,
    UnsupportedOperationError,
    UploadFailedError,
    ValidationError,
)
from app.services.drive_storage import FOLDER_MIME_TYPE, DriveStorageClient, extract_file_id
from app.services.local_storage import LocalStorageClient
from app.services.s3_storage import S3StorageClient
from app.services.storage_base import (
    UploadState,
    build_object_path,
    sanitize_folder_name,
    validate_logical_path,
)
from app.services.upload_orchestrator import UploadOrchestrator
from conftest import NO_WAIT, FakeStorageClient, no_sleep

OBJECT_NAME = re.compile(r"^\d{13}-[0-9a-f]{32}\.jpg$")


async def read_all(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


# ══════════════════════════════════════════════════════════════════════════
# Naming Helpers
# ══════════════════════════════════════════════════════════════════════════


class TestObjectNaming:

    def test_build_object_path_layout(self):
        path = build_object_path("surveys", "42", ".jpg")
        category, owner, name = path.split("/")
        assert (category, owner) == ("surveys", "42")
        assert OBJECT_NAME.match(name)

    def test_paths_are_unique(self):
        assert build_object_path("surveys", "42", ".jpg") != build_object_path("surveys", "42", ".jpg")

    def test_owner_key_is_sanitized(self):
        path = build_object_path("dealers", "ACME Co/../roof", ".png")
        assert path.startswith("dealers/ACME-Co/_/roof/")
        validate_logical_path(path)

    @pytest.mark.parametrize("bad", ["", "/abs/a.jpg", "a//b.jpg", "a/../b.jpg", "a/b c.jpg", "./a.jpg"])
    def test_invalid_logical_paths(self, bad):
        with pytest.raises(ValidationError):
            validate_logical_path(bad)

    def test_sanitize_folder_name(self):
        assert sanitize_folder_name("Dealers/ACME Co.") == "dealers-acme-co"
        assert sanitize_folder_name("surveys/42") == "surveys-42"


# ══════════════════════════════════════════════════════════════════════════
# put() template: retries and error wrapping
# ══════════════════════════════════════════════════════════════════════════


class TestPutContract:

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        attempts = {"n": 0}

        def flaky(path, content):
            attempts["n"] += 1
            return attempts["n"] < 3

        storage = FakeStorageClient(fail_when=flaky)
        url = await storage.put(b"data", "image/jpeg", "surveys/1/a.jpg")

        assert url == "https://files.example.com/surveys/1/a.jpg"
        assert len(storage.put_calls) == 3

    @pytest.mark.asyncio
    async def test_give_up_raises_upload_failed_with_cause(self):
        storage = FakeStorageClient(fail_when=lambda path, content: True)
        with pytest.raises(UploadFailedError) as exc_info:
            await storage.put(b"data", "image/jpeg", "surveys/1/a.jpg")

        assert isinstance(exc_info.value.cause, ConnectionError)
        assert exc_info.value.service == "fake"
        assert len(storage.put_calls) == NO_WAIT.max_attempts

    @pytest.mark.asyncio
    async def test_invalid_path_is_not_retried(self):
        storage = FakeStorageClient()
        with pytest.raises(ValidationError):
            await storage.put(b"data", "image/jpeg", "../etc/passwd")
        assert storage.put_calls == []

    @pytest.mark.asyncio
    async def test_folder_failure_raises_folder_creation_error(self):
        class NoFolders(FakeStorageClient):
            async def _find_or_create_folder_once(self, name):
                raise TimeoutError("folder api down")

        storage = NoFolders()
        with pytest.raises(FolderCreationError) as exc_info:
            await storage.put(b"data", "image/jpeg", "surveys/1/a.jpg")
        assert isinstance(exc_info.value.cause, TimeoutError)
        assert storage.put_calls == []

    @pytest.mark.asyncio
    async def test_put_awaits_the_upload_coroutine(self):
        storage = FakeStorageClient()

        url = await storage.put(b"data", "image/jpeg", "surveys/1/a.jpg")

        assert isinstance(url, str)
        assert storage.objects == {"surveys/1/a.jpg": b"data"}

    @pytest.mark.asyncio
    async def test_concurrent_puts_resolve_folder_once(self):
        class CountingFolders(FakeStorageClient):
            lookups = 0

            async def _find_or_create_folder_once(self, name):
                self.lookups += 1
                await asyncio.sleep(0.01)
                return f"{name}-folder"

        storage = CountingFolders()
        urls = await asyncio.gather(
            *(storage.put(b"data", "image/jpeg", f"surveys/42/{i}.jpg") for i in range(3))
        )

        assert storage.lookups == 1
        assert all(url.startswith("https://files.example.com/surveys/42-folder/") for url in urls)

    @pytest.mark.asyncio
    async def test_failed_upload_forgets_folder(self):
        class CountingFolders(FakeStorageClient):
            lookups = 0

            async def _find_or_create_folder_once(self, name):
                self.lookups += 1
                return name

        storage = CountingFolders(fail_when=lambda path, content: content == b"bad")
        with pytest.raises(UploadFailedError):
            await storage.put(b"bad", "image/jpeg", "surveys/42/a.jpg")
        await storage.put(b"good", "image/jpeg", "surveys/42/b.jpg")
        await storage.put(b"good", "image/jpeg", "surveys/42/c.jpg")

        assert storage.lookups == 2


# ══════════════════════════════════════════════════════════════════════════
# Local Disk
# ══════════════════════════════════════════════════════════════════════════


class TestLocalStorage:

    @pytest.fixture
    def storage(self, tmp_path):
        return LocalStorageClient(storage_root=str(tmp_path / "storage"), public_path="/files", retry_policy=NO_WAIT)

    @pytest.mark.asyncio
    async def test_put_then_stream(self, storage, tmp_path):
        url = await storage.put(b"jpeg-bytes", "image/jpeg", "surveys/42/a.jpg")

        assert url == "/files/surveys/42/a.jpg"
        assert (tmp_path / "storage" / "surveys" / "42" / "a.jpg").read_bytes() == b"jpeg-bytes"
        assert await read_all(storage.get_stream("surveys/42/a.jpg")) == b"jpeg-bytes"

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, storage):
        url = await storage.put(b"x", "image/jpeg", "dealers/D1/logo.png")
        assert await storage.delete(url) is True
        assert await storage.delete(url) is False

    @pytest.mark.asyncio
    async def test_missing_file_stream_is_not_found(self, storage):
        with pytest.raises(NotFoundError):
            await read_all(storage.get_stream("surveys/42/missing.jpg"))

    @pytest.mark.asyncio
    async def test_traversal_read_is_not_found(self, storage):
        with pytest.raises(NotFoundError):
            await read_all(storage.get_stream("../../etc/passwd"))

    @pytest.mark.asyncio
    async def test_traversal_delete_rejected(self, storage):
        with pytest.raises(ValidationError):
            await storage.delete("/files/../../outside.txt")

    @pytest.mark.asyncio
    async def test_delete_of_directory_is_not_a_file(self, storage, tmp_path):
        (tmp_path / "storage" / "surveys" / "42").mkdir(parents=True)
        assert await storage.delete("/files/surveys/42") is False

    @pytest.mark.asyncio
    async def test_health_check(self, storage):
        assert await storage.health_check() is True

    @pytest.mark.asyncio
    async def test_direct_upload_not_supported(self, storage):
        with pytest.raises(UnsupportedOperationError):
            await storage.create_upload_url("dealers/D1/logo.png", "image/png")


# ══════════════════════════════════════════════════════════════════════════
# S3
# ══════════════════════════════════════════════════════════════════════════


class TestS3Storage:

    @pytest.fixture
    def s3(self):
        return MagicMock()

    @pytest.fixture
    def storage(self, s3):
        return S3StorageClient(
            client=s3,
            bucket="surveys-bucket",
            public_base_url="https://cdn.example.com/",
            retry_policy=NO_WAIT,
            sleep=no_sleep,
        )

    @pytest.mark.asyncio
    async def test_put_uploads_public_object(self, storage, s3):
        url = await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")

        assert url == "https://cdn.example.com/surveys-bucket/surveys/42/a.jpg"
        s3.put_object.assert_called_once_with(
            Bucket="surveys-bucket",
            Key="surveys/42/a.jpg",
            Body=b"img",
            ContentType="image/jpeg",
            ACL="public-read",
        )

    @pytest.mark.asyncio
    async def test_put_retries_throttling(self, storage, s3):
        s3.put_object.side_effect = [client_error("SlowDown"), None]
        await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")
        assert s3.put_object.call_count == 2

    @pytest.mark.asyncio
    async def test_put_gives_up(self, storage, s3):
        s3.put_object.side_effect = client_error("InternalError")
        with pytest.raises(UploadFailedError) as exc_info:
            await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")
        assert exc_info.value.service == "s3"
        assert s3.put_object.call_count == 3

    @pytest.mark.asyncio
    async def test_delete_existing_object(self, storage, s3):
        deleted = await storage.delete("https://cdn.example.com/surveys-bucket/dealers/D1/logo.png")
        assert deleted is True
        s3.delete_object.assert_called_once_with(Bucket="surveys-bucket", Key="dealers/D1/logo.png")

    @pytest.mark.asyncio
    async def test_delete_missing_object_returns_false(self, storage, s3):
        s3.head_object.side_effect = client_error("404")
        assert await storage.delete("dealers/D1/logo.png") is False
        s3.delete_object.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_failure_raises_storage_error(self, storage, s3):
        s3.head_object.side_effect = client_error("AccessDenied")
        with pytest.raises(StorageError):
            await storage.delete("dealers/D1/logo.png")

    def test_foreign_url_rejected(self, storage):
        with pytest.raises(StorageError):
            storage.key_from_url("https://elsewhere.example.com/other/key.png")

    @pytest.mark.asyncio
    async def test_get_stream(self, storage, s3):
        s3.get_object.return_value = {"Body": io.BytesIO(b"stored")}
        assert await read_all(storage.get_stream("surveys/42/a.jpg")) == b"stored"

    @pytest.mark.asyncio
    async def test_get_stream_missing_is_not_found(self, storage, s3):
        s3.get_object.side_effect = client_error("NoSuchKey")
        with pytest.raises(NotFoundError):
            await read_all(storage.get_stream("surveys/42/a.jpg"))

    @pytest.mark.asyncio
    async def test_create_upload_url_signs_public_put(self, storage, s3):
        s3.generate_presigned_url.return_value = "https://signed.example.com/put?sig=abc"

        target = await storage.create_upload_url("dealers/D1/1-abc.png", "image/png")

        assert target.upload_url == "https://signed.example.com/put?sig=abc"
        assert target.public_url == "https://cdn.example.com/surveys-bucket/dealers/D1/1-abc.png"
        assert target.expires_in == storage.upload_url_expires
        s3.generate_presigned_url.assert_called_once_with(
            "put_object",
            Params={
                "Bucket": "surveys-bucket",
                "Key": "dealers/D1/1-abc.png",
                "ContentType": "image/png",
                "ACL": "public-read",
            },
            ExpiresIn=storage.upload_url_expires,
        )

    @pytest.mark.asyncio
    async def test_create_upload_url_failure_is_storage_error(self, storage, s3):
        s3.generate_presigned_url.side_effect = client_error("AccessDenied")
        with pytest.raises(StorageError):
            await storage.create_upload_url("dealers/D1/1-abc.png", "image/png")

    @pytest.mark.asyncio
    async def test_create_upload_url_rejects_bad_path(self, storage, s3):
        with pytest.raises(ValidationError):
            await storage.create_upload_url("dealers/../x.png", "image/png")
        s3.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_check(self, storage, s3):
        assert await storage.health_check() is True
        s3.head_bucket.side_effect = client_error("403")
        assert await storage.health_check() is False


# ══════════════════════════════════════════════════════════════════════════
# Google Drive
# ══════════════════════════════════════════════════════════════════════════


class TestDriveStorage:

    @pytest.fixture
    def drive(self):
        service = MagicMock()
        service.files.return_value.list.return_value.execute.return_value = {
            "files": [{"id": "FOLDER1", "name": "surveys-42"}]
        }
        service.files.return_value.create.return_value.execute.return_value = {"id": "FILE1"}
        service.permissions.return_value.list.return_value.execute.return_value = {
            "permissions": [{"type": "anyone", "role": "reader"}]
        }
        return service

    @pytest.fixture
    def storage(self, drive):
        return DriveStorageClient(
            service=drive,
            root_folder_id="ROOT",
            retry_policy=NO_WAIT,
            sleep=no_sleep,
        )

    @pytest.mark.asyncio
    async def test_put_into_existing_folder(self, storage, drive):
        stages = []
        url = await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg", on_stage=stages.append)

        assert url == "https://drive.google.com/uc?export=view&id=FILE1"
        assert stages == [UploadState.PERMISSION_SETTING]

        files = drive.files.return_value
        query = files.list.call_args.kwargs["q"]
        assert "name = 'surveys-42'" in query
        assert "'ROOT' in parents" in query
        assert files.create.call_args.kwargs["body"] == {"name": "a.jpg", "parents": ["FOLDER1"]}
        drive.permissions.return_value.create.assert_called_once()
        assert drive.permissions.return_value.create.call_args.kwargs["fileId"] == "FILE1"

    @pytest.mark.asyncio
    async def test_missing_folder_is_created_public(self, storage, drive):
        files = drive.files.return_value
        files.list.return_value.execute.return_value = {"files": []}
        files.create.return_value.execute.side_effect = [{"id": "NEWFOLDER"}, {"id": "FILE1"}]

        await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")

        folder_call, file_call = files.create.call_args_list
        assert folder_call.kwargs["body"]["name"] == "surveys-42"
        assert folder_call.kwargs["body"]["parents"] == ["ROOT"]
        assert file_call.kwargs["body"]["parents"] == ["NEWFOLDER"]
        granted = [c.kwargs["fileId"] for c in drive.permissions.return_value.create.call_args_list]
        assert granted == ["NEWFOLDER", "FILE1"]

    @pytest.mark.asyncio
    async def test_unshareable_file_is_removed_before_retry(self, storage, drive):
        drive.permissions.return_value.create.return_value.execute.side_effect = RuntimeError("quota")

        with pytest.raises(UploadFailedError) as exc_info:
            await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")

        assert isinstance(exc_info.value.cause, RuntimeError)
        deleted_ids = [c.kwargs["fileId"] for c in drive.files.return_value.delete.call_args_list]
        assert deleted_ids == ["FILE1"] * 3

    @pytest.mark.asyncio
    async def test_delete_missing_file_returns_false(self, storage, drive):
        drive.files.return_value.delete.return_value.execute.side_effect = HttpError(
            MagicMock(status=404, reason="Not Found"), b"not found"
        )
        assert await storage.delete("https://drive.google.com/uc?export=view&id=GONE") is False

    @pytest.mark.asyncio
    async def test_delete_existing_file(self, storage, drive):
        assert await storage.delete("FILE1") is True
        drive.files.return_value.delete.assert_called_once_with(fileId="FILE1", supportsAllDrives=True)

    @pytest.mark.asyncio
    async def test_get_stream(self, storage):
        class FakeDownload:
            def __init__(self, fd, request, chunksize):
                self.fd = fd

            def next_chunk(self):
                self.fd.write(b"drive-bytes")
                return None, True

        with patch("app.services.drive_storage.MediaIoBaseDownload", FakeDownload):
            assert await read_all(storage.get_stream("FILE1")) == b"drive-bytes"

    @pytest.mark.asyncio
    async def test_private_existing_folder_is_made_public(self, storage, drive):
        drive.permissions.return_value.list.return_value.execute.return_value = {"permissions": []}

        await storage.put(b"img", "image/jpeg", "surveys/42/a.jpg")

        granted = [c.kwargs["fileId"] for c in drive.permissions.return_value.create.call_args_list]
        assert granted == ["FOLDER1", "FILE1"]

    @pytest.mark.asyncio
    async def test_batch_uploads_share_one_new_folder(self, drive, make_file):
        folders, parents = [], []

        def list_folders(**kwargs):
            request = MagicMock()

            def execute():
                time.sleep(0.02)
                return {"files": list(folders)}

            request.execute.side_effect = execute
            return request

        def create(body, **kwargs):
            request = MagicMock()
            if body.get("mimeType") == FOLDER_MIME_TYPE:
                folder_id = f"F{len(folders)}"
                folders.append({"id": folder_id, "name": body["name"]})
                request.execute.return_value = {"id": folder_id}
            else:
                parents.append(body["parents"][0])
                request.execute.return_value = {"id": f"FILE{len(parents)}"}
            return request

        drive.files.return_value.list.side_effect = list_folders
        drive.files.return_value.create.side_effect = create
        storage = DriveStorageClient(service=drive, root_folder_id="ROOT", retry_policy=NO_WAIT, sleep=no_sleep)
        orchestrator = UploadOrchestrator(storage=storage, compress_uploads=False, batch_size=3)

        urls = await orchestrator.ingest_many([make_file(f"p{i}.jpg") for i in range(3)], "42", "surveys")

        assert len(urls) == 3
        assert folders == [{"id": "F0", "name": "surveys-42"}]
        assert parents == ["F0", "F0", "F0"]

    @pytest.mark.asyncio
    async def test_get_stream_failure_is_not_found(self, storage, drive):
        drive.files.return_value.get_media.side_effect = RuntimeError("boom")
        with pytest.raises(NotFoundError):
            await read_all(storage.get_stream("FILE1"))

    @pytest.mark.parametrize(
        "ref, expected",
        [
            ("https://drive.google.com/uc?export=view&id=abc_123-X", "abc_123-X"),
            ("https://drive.google.com/open?id=xyz", "xyz"),
            ("https://drive.google.com/file/d/FILEID/view", "FILEID"),
            ("BAREID", "BAREID"),
            ("https://example.com/not/a/drive/url", None),
        ],
    )
    def test_extract_file_id(self, ref, expected):
        assert extract_file_id(ref) == expected
