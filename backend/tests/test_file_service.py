"""
SiteSurvey Backend — File Service Unit Tests
==============================================

What:  Tests for FileService validation (size, declared type, extension,
       sniffed content).
Why:   File validation is the security boundary in front of remote storage.

Test Strategy:
    ✅ Allowed types pass and return the sniffed MIME type
    ✅ Empty and oversized files are rejected (boundary at MAX_FILE_SIZE)
    ✅ Disallowed declared types and extensions are rejected
    ✅ A renamed non-image is caught by content sniffing
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import ValidationError
from app.services.file_service import FileService, IncomingFile


class TestFileValidation:
    """Tests for file validation logic in FileService."""

    def setup_method(self):
        self.service = FileService()

    # ── Happy Path ────────────────────────────────────────────────────────

    def test_jpeg_passes(self, make_file):
        assert self.service.validate(make_file()) == "image/jpeg"

    def test_png_passes(self, make_file, make_image):
        file = make_file("logo.png", make_image(fmt="PNG"), "image/png")
        assert self.service.validate(file) == "image/png"

    def test_gif_passes(self, make_file, make_image):
        file = make_file("anim.gif", make_image(fmt="GIF", mode="P", color=1), "image/gif")
        assert self.service.validate(file) == "image/gif"

    def test_missing_extension_is_allowed(self, make_file):
        assert self.service.validate(make_file(filename="blob")) == "image/jpeg"

    def test_uppercase_extension_is_allowed(self, make_file):
        self.service.validate_extension(make_file(filename="PHOTO.JPG"))

    def test_detected_type_wins_over_declared(self, make_file, make_image):
        # Declared jpeg, actually png: accepted, the sniffed type is returned
        file = make_file("photo.jpg", make_image(fmt="PNG"), "image/jpeg")
        assert self.service.validate(file) == "image/png"

    # ── Size ──────────────────────────────────────────────────────────────

    def test_empty_file_rejected(self, make_file):
        with pytest.raises(ValidationError, match="empty"):
            self.service.validate(make_file(content=b""))

    def test_oversized_file_rejected(self, make_file, monkeypatch):
        from app.config import settings
        monkeypatch.setattr(settings, "max_file_size", 2048)
        file = make_file(content=b"\xff\xd8" + b"\x00" * 4096)
        with pytest.raises(ValidationError, match="exceeds") as exc_info:
            self.service.validate_size(file)
        assert exc_info.value.context["actual_size"] == 4098
        assert exc_info.value.field == "photos"

    def test_file_at_limit_passes_size_check(self, make_file, monkeypatch):
        from app.config import settings
        monkeypatch.setattr(settings, "max_file_size", 2048)
        self.service.validate_size(make_file(content=b"x" * 2048))

    # ── Declared Type / Extension ─────────────────────────────────────────

    @pytest.mark.parametrize("content_type", ["application/pdf", "image/webp", "text/plain", ""])
    def test_disallowed_declared_type(self, make_file, content_type):
        with pytest.raises(ValidationError, match="Invalid file type"):
            self.service.validate(make_file(content_type=content_type))

    def test_declared_type_parameters_are_ignored(self, make_file):
        assert self.service.validate_mime_type(make_file(content_type="image/JPEG; charset=x")) == "image/jpeg"

    @pytest.mark.parametrize("filename", ["photo.exe", "photo.pdf", "photo.bmp"])
    def test_disallowed_extension(self, make_file, filename):
        with pytest.raises(ValidationError, match="not supported"):
            self.service.validate(make_file(filename=filename))

    # ── Content Sniffing ──────────────────────────────────────────────────

    def test_renamed_text_file_rejected(self, make_file):
        file = make_file("photo.jpg", b"just some text pretending", "image/jpeg")
        with pytest.raises(ValidationError, match="not a valid image"):
            self.service.validate(file)

    def test_unsupported_real_image_format_rejected(self, make_file, make_image):
        file = make_file("photo.png", make_image(fmt="BMP"), "image/png")
        with pytest.raises(ValidationError, match="'BMP' is not supported"):
            self.service.validate(file)


class TestIncomingFile:

    @pytest.mark.asyncio
    async def test_from_upload_reads_content(self):
        upload = MagicMock()
        upload.filename = "roof.jpg"
        upload.content_type = "IMAGE/JPEG"
        upload.read = AsyncMock(return_value=b"abc")

        file = await IncomingFile.from_upload(upload, field_name="roof_1")

        assert file.content == b"abc"
        assert file.size == 3
        assert file.content_type == "image/jpeg"
        assert file.field_name == "roof_1"
