"""
SiteSurvey Backend — Upload Validation Service
================================================

What:  Validates incoming image files before anything is compressed or sent
       to remote storage.
Why:   Every rejected file here is one less wasted round-trip to S3/Drive,
       and the client gets a precise 400 instead of a vague 502.
How:   Cheap checks first, content sniffing last.
Who:   Called by UploadOrchestrator.ingest() for every file.

Validation order (optimized for early rejection):
    1. Empty check       — zero-byte uploads are never valid
    2. Size check        — MAX_FILE_SIZE (5MB by default)
    3. Declared MIME     — image/jpeg, image/png, image/gif
    4. Extension         — if the filename has one, it must match the above
    5. Content sniffing  — Pillow reads the header bytes; a renamed
                           non-image is rejected here

    Why both declared MIME AND sniffing:
        - The Content-Type of a multipart part is set by the client
        - Pillow only reads the header, so sniffing costs no full decode
"""

import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from PIL import Image, UnidentifiedImageError
from starlette.datastructures import UploadFile

from app.config import settings
from app.exceptions import ValidationError

logger = logging.getLogger(__name__)

# ── Allowed File Types ────────────────────────────────────────────────────
# What: Declared MIME types accepted for logos and survey photos
ALLOWED_MIME_TYPES = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif"}

# What: Pillow format names that correspond to the allowed types
_SNIFFED_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "GIF": "image/gif"}


@dataclass
class IncomingFile:
    """
    One file from a multipart request, held in memory.

    Attributes:
        filename:      Client-supplied name (used for messages and extension only)
        content:       Raw bytes as received
        content_type:  Declared Content-Type of the part
        field_name:    Multipart field the file arrived in ("logo", "roof_1", ...)
    """
    filename: str
    content: bytes
    content_type: str
    field_name: str = "file"

    @property
    def size(self) -> int:
        return len(self.content)

    @classmethod
    async def from_upload(cls, upload: UploadFile, field_name: Optional[str] = None) -> "IncomingFile":
        """Read a Starlette UploadFile fully into memory."""
        content = await upload.read()
        return cls(
            filename=upload.filename or "",
            content=content,
            content_type=(upload.content_type or "").lower(),
            field_name=field_name or "file",
        )


class FileService:
    """Stateless validator for uploaded images."""

    def validate_size(self, file: IncomingFile) -> None:
        """
        Reject empty files and files over MAX_FILE_SIZE.

        Raises:
            ValidationError with a human-readable size limit message
        """
        if file.size == 0:
            raise ValidationError(
                message=f"File '{file.filename or file.field_name}' is empty",
                field=file.field_name,
            )

        if file.size > settings.max_file_size:
            max_mb = settings.max_file_size / (1024 * 1024)
            raise ValidationError(
                message=(
                    f"File size ({file.size / (1024 * 1024):.1f}MB) exceeds "
                    f"maximum of {max_mb:.0f}MB."
                ),
                field=file.field_name,
                context={"max_size_mb": max_mb, "actual_size": file.size},
            )

    def validate_mime_type(self, file: IncomingFile) -> str:
        """Check the declared Content-Type against the allow-list."""
        mime_type = file.content_type.split(";")[0].strip().lower()
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                message="Invalid file type. Allowed types: image/jpeg, image/png, image/gif",
                field=file.field_name,
                context={"declared_mime": mime_type or None},
            )
        return mime_type

    def validate_extension(self, file: IncomingFile) -> None:
        """A filename without an extension passes; a wrong one does not."""
        ext = Path(file.filename).suffix.lower()
        if ext and ext not in ALLOWED_EXTENSIONS:
            raise ValidationError(
                message=(
                    f"File extension '{ext}' is not supported. "
                    f"Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
                ),
                field=file.field_name,
                context={"extension": ext},
            )

    def validate_content(self, file: IncomingFile) -> str:
        """
        Sniff the real image format from the header bytes.

        Returns:
            MIME type matching the detected format.
        """
        try:
            with Image.open(io.BytesIO(file.content)) as image:
                detected = image.format
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
            raise ValidationError(
                message=f"File '{file.filename or file.field_name}' is not a valid image",
                field=file.field_name,
                context={"error": str(e)},
            )

        mime_type = _SNIFFED_FORMATS.get(detected or "")
        if mime_type is None:
            raise ValidationError(
                message=(
                    f"Image format '{detected}' is not supported. "
                    "Allowed types: image/jpeg, image/png, image/gif"
                ),
                field=file.field_name,
                context={"detected_format": detected},
            )
        return mime_type

    def validate(self, file: IncomingFile) -> str:
        """
        Run every check in order.

        Returns:
            The sniffed MIME type (trusted over the declared one).

        Raises:
            ValidationError on the first failing check.
        """
        self.validate_size(file)
        declared = self.validate_mime_type(file)
        self.validate_extension(file)
        detected = self.validate_content(file)

        if ALLOWED_MIME_TYPES[declared] != ALLOWED_MIME_TYPES[detected]:
            # Not fatal: the image is re-encoded anyway
            logger.info(
                "Declared type %s differs from detected %s for '%s'",
                declared, detected, file.filename,
            )
        return detected
