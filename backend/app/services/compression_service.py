"""
SiteSurvey Backend — Image Compression Service
================================================

What:  Normalizes uploaded photos and logos before they go to remote storage.
Why:   Phone cameras produce 4000px+ images with rotation stored in EXIF.
       Storing them as-is wastes bandwidth and renders sideways in browsers.
How:   Pillow, run in a worker thread so the event loop is never blocked.

Processing order (per image):
    1. Decode              → ValidationError if the bytes are not an image
    2. EXIF auto-rotate    → ImageOps.exif_transpose
    3. Colour mode         → flattened onto white for JPEG, alpha kept otherwise
    4. Bounded resize      → thumbnail(): fits inside max_width × max_height,
                             keeps aspect ratio, never upscales
    5. Re-encode           → target format at the requested quality

Error classification:
    Bytes the client sent that cannot be decoded are the client's problem
    (ValidationError). Anything failing after a successful decode is ours
    (ImageProcessingError).
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence

from PIL import Image, ImageOps, UnidentifiedImageError

from app.exceptions import ImageProcessingError, ValidationError

logger = logging.getLogger(__name__)

# Pillow format name, MIME type and file extension per target format
_FORMATS: Dict[str, tuple] = {
    "jpeg": ("JPEG", "image/jpeg", ".jpg"),
    "webp": ("WEBP", "image/webp", ".webp"),
    "png": ("PNG", "image/png", ".png"),
}


@dataclass(frozen=True)
class CompressionOptions:
    """Output bounds and encoding for one compression call."""
    max_width: int = 2048
    max_height: int = 2048
    quality: int = 80
    target_format: str = "jpeg"

    def __post_init__(self):
        if self.target_format not in _FORMATS:
            raise ValueError(
                f"Unsupported target_format '{self.target_format}'. "
                f"Expected one of: {', '.join(sorted(_FORMATS))}"
            )
        if self.max_width < 1 or self.max_height < 1:
            raise ValueError("max_width and max_height must be positive")
        if not 1 <= self.quality <= 100:
            raise ValueError("quality must be between 1 and 100")

    @property
    def content_type(self) -> str:
        return _FORMATS[self.target_format][1]

    @property
    def extension(self) -> str:
        return _FORMATS[self.target_format][2]


# What: Defaults per storage category
# Dealer logos stay PNG to keep transparency
CATEGORY_OPTIONS: Dict[str, CompressionOptions] = {
    "dealers": CompressionOptions(max_width=1024, max_height=1024, quality=90, target_format="png"),
    "surveys": CompressionOptions(max_width=2048, max_height=2048, quality=80, target_format="jpeg"),
}


def options_for_category(category: str) -> CompressionOptions:
    """Category defaults, falling back to the generic photo settings."""
    return CATEGORY_OPTIONS.get(category, CompressionOptions())


class ImageCompressor:
    """
    Stateless image normalizer.

    compress() is safe to call concurrently: every call opens its own
    Image objects and the work happens in asyncio's default thread pool.
    """

    async def compress(self, content: bytes, options: CompressionOptions = CompressionOptions()) -> bytes:
        """
        Auto-rotate, bound and re-encode one image.

        Raises:
            ValidationError:       empty input, undecodable data, or an image
                                   large enough to trip Pillow's bomb guard
            ImageProcessingError:  transformation or encoding failed
        """
        if not content:
            raise ValidationError(message="Image is empty", field="file")
        return await asyncio.to_thread(self._compress_sync, content, options)

    async def compress_batch(
        self,
        contents: Sequence[bytes],
        options: CompressionOptions = CompressionOptions(),
    ) -> List[bytes]:
        """
        Compress several images concurrently, preserving input order.

        All-or-nothing: the first failure is raised and no partial list is
        returned.
        """
        return list(await asyncio.gather(*(self.compress(c, options) for c in contents)))

    # ── Internals (run in worker thread) ──────────────────────────────────

    def _compress_sync(self, content: bytes, options: CompressionOptions) -> bytes:
        image = self._decode(content)
        original_size = (image.width, image.height)
        try:
            image = ImageOps.exif_transpose(image)
            image = self._convert_mode(image, options.target_format)
            # thumbnail() only ever shrinks
            image.thumbnail((options.max_width, options.max_height), Image.Resampling.LANCZOS)
            output = self._encode(image, options)
        except (OSError, ValueError) as e:
            logger.error("Image processing failed: %s", e, exc_info=True)
            raise ImageProcessingError(
                context={"error": str(e), "target_format": options.target_format},
            )

        logger.debug(
            "Compressed image %dx%d → %dx%d %s (%d → %d bytes)",
            original_size[0], original_size[1],
            image.width, image.height,
            options.target_format,
            len(content), len(output),
        )
        return output

    @staticmethod
    def _decode(content: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(content))
            image.load()
        except Image.DecompressionBombError as e:
            raise ValidationError(
                message="Image dimensions are too large to process",
                field="file",
                context={"error": str(e)},
            )
        except (UnidentifiedImageError, OSError, SyntaxError) as e:
            raise ValidationError(
                message="Uploaded file is not a valid image",
                field="file",
                context={"error": str(e)},
            )
        return image

    @staticmethod
    def _convert_mode(image: Image.Image, target_format: str) -> Image.Image:
        has_alpha = image.mode in ("RGBA", "LA") or (
            image.mode == "P" and "transparency" in image.info
        )
        if target_format == "jpeg":
            if has_alpha:
                rgba = image.convert("RGBA")
                background = Image.new("RGB", rgba.size, (255, 255, 255))
                background.paste(rgba, mask=rgba.split()[-1])
                return background
            return image if image.mode == "RGB" else image.convert("RGB")
        if has_alpha:
            return image if image.mode == "RGBA" else image.convert("RGBA")
        if target_format == "png" and image.mode in ("L", "P"):
            return image
        return image if image.mode == "RGB" else image.convert("RGB")

    @staticmethod
    def _encode(image: Image.Image, options: CompressionOptions) -> bytes:
        pil_format = _FORMATS[options.target_format][0]
        params: Dict[str, object] = {}
        if options.target_format == "jpeg":
            params.update(quality=options.quality, optimize=True, progressive=True)
        elif options.target_format == "webp":
            params.update(quality=options.quality, method=4)
        else:
            params["optimize"] = True

        buffer = io.BytesIO()
        image.save(buffer, format=pil_format, **params)
        return buffer.getvalue()
