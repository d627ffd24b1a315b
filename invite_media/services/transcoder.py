"""
Image normalisation for stored uploads.

Gallery and background images are re-encoded to WebP and get a fixed set of
cover-cropped thumbnails. QR codes and SVG files are stored as uploaded.
"""

import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from PIL import Image, ImageOps, UnidentifiedImageError

from invite_media.domain.models import ThumbnailSpec, UploadCategory
from invite_media.security.uploads import SVG_MIME, TranscodeError

logger = logging.getLogger(__name__)

WEBP_MIME = "image/webp"
MAX_DIMENSION = 1200
DELIVERY_QUALITY = 75
THUMBNAIL_QUALITY = 70
# libwebp effort, 0 (fast) to 6 (small)
WEBP_METHOD = 4


@dataclass(frozen=True)
class TranscodeResult:
    data: bytes
    mime: str
    thumbnails: Optional[Dict[str, bytes]] = None


def _open(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return ImageOps.exif_transpose(image)


def _webp_ready(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    if image.mode in ("LA", "PA") or (image.mode == "P" and "transparency" in image.info):
        return image.convert("RGBA")
    return image.convert("RGB")


def _encode_webp(image: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="WEBP", quality=quality, method=WEBP_METHOD)
    return buf.getvalue()


class ImageTranscoder:
    """Pillow-backed implementation of the delivery format rules."""

    def __init__(
        self,
        thumbnail_sizes: Sequence[ThumbnailSpec],
        max_dimension: int = MAX_DIMENSION,
        quality: int = DELIVERY_QUALITY,
        thumbnail_quality: int = THUMBNAIL_QUALITY,
    ):
        self.thumbnail_sizes = tuple(thumbnail_sizes)
        self.max_dimension = max_dimension
        self.quality = quality
        self.thumbnail_quality = thumbnail_quality

    def transcode(self, data: bytes, category: UploadCategory, detected_mime: str) -> TranscodeResult:
        if detected_mime == SVG_MIME or not category.produces_thumbnails:
            return TranscodeResult(data=data, mime=detected_mime)

        return TranscodeResult(
            data=self.to_delivery_format(data),
            mime=WEBP_MIME,
            thumbnails=self.generate_thumbnails(data),
        )

    def to_delivery_format(self, data: bytes) -> bytes:
        """Fit within the max box (never upscaling) and re-encode as WebP without metadata."""
        try:
            image = _webp_ready(_open(data))
            image.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
            return _encode_webp(image, self.quality)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            logger.error("Error transcoding image: %s", exc)
            raise TranscodeError("Failed to process image") from exc

    def generate_thumbnails(self, data: bytes) -> Dict[str, bytes]:
        """Cover-crop the original bytes to every configured size."""
        try:
            original = _webp_ready(_open(data))
            thumbnails = {}
            for spec in self.thumbnail_sizes:
                fitted = ImageOps.fit(
                    original,
                    (spec.width, spec.height),
                    method=Image.Resampling.LANCZOS,
                    centering=(0.5, 0.5),
                )
                thumbnails[spec.label] = _encode_webp(fitted, self.thumbnail_quality)
            return thumbnails
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            logger.error("Error generating thumbnails: %s", exc)
            raise TranscodeError("Failed to generate thumbnails") from exc
