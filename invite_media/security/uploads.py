"""Upload validation: size limits and content-sniffed MIME allow-lists."""

from __future__ import annotations

from typing import Final, Iterable, List, Optional

import filetype

from invite_media.config import Settings
from invite_media.domain.models import UploadCategory, ValidationResult

SVG_MIME: Final = "image/svg+xml"
UTF8_BOM: Final = b"\xef\xbb\xbf"

MIME_EXTENSIONS: Final[dict[str, str]] = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    SVG_MIME: "svg",
}


class UploadError(Exception):
    """Domain exception for failed uploads."""

    def __init__(self, code: str, message: str, status: int):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(message)


class FileValidationError(UploadError):
    """Size or type constraint violated."""

    def __init__(self, message: str, code: str = "validation_error"):
        super().__init__(code, message, status=400)


class SecurityScanError(UploadError):
    """The security scan rejected the file."""

    def __init__(self, threats: Iterable[str], message: str = "File upload failed security scan"):
        self.threats: List[str] = list(threats)
        super().__init__("security_scan_failed", message, status=400)


class TranscodeError(UploadError):
    """The image could not be decoded or re-encoded."""

    def __init__(self, message: str = "Failed to process image"):
        super().__init__("transcode_failed", message, status=500)


class StorageError(UploadError):
    """The object store rejected or failed an operation."""

    def __init__(self, message: str, provider_code: Optional[str] = None):
        self.provider_code = provider_code
        super().__init__("storage_error", message, status=500)


class BatchUploadError(UploadError):
    """Every file of a batch failed."""

    def __init__(self, errors: Iterable[str], status: int = 400):
        self.errors: List[str] = list(errors)
        super().__init__(
            "batch_upload_failed",
            f"All uploads failed: {', '.join(self.errors)}",
            status=status,
        )


def _looks_like_svg(data: bytes) -> bool:
    head = data[:1024]
    if head.startswith(UTF8_BOM):
        head = head[len(UTF8_BOM):]
    text = head.lstrip().lower()
    if not (text.startswith(b"<?xml") or text.startswith(b"<svg") or text.startswith(b"<!doctype svg")):
        return False
    return b"<svg" in text


def sniff_media_type(data: bytes) -> Optional[str]:
    """Return the MIME type detected from content, or None if unknown."""
    kind = filetype.guess(data)
    if kind is not None:
        return kind.mime
    if _looks_like_svg(data):
        return SVG_MIME
    return None


def extension_for(mime: str) -> str:
    return MIME_EXTENSIONS.get(mime, "bin")


class UploadValidator:
    """Checks raw upload bytes against the limits of an upload category."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def allowed_types(self, category: UploadCategory) -> tuple[str, ...]:
        if category is UploadCategory.QR_CODE:
            return self.settings.allowed_qr_code_types
        return self.settings.allowed_image_types

    def max_size_label(self) -> str:
        megabytes = self.settings.max_file_size / 1024 / 1024
        return f"{megabytes:g}MB"

    def validate_size(self, size: int) -> None:
        if size > self.settings.max_file_size:
            raise FileValidationError(
                f"File size exceeds maximum allowed size of {self.max_size_label()}",
                code="file_too_large",
            )

    def validate(self, data: bytes, category: UploadCategory) -> ValidationResult:
        """
        Validate ``data`` for ``category``.

        The declared filename and client content type are never consulted;
        the MIME type is sniffed from the bytes themselves.
        """
        self.validate_size(len(data))

        media_type = sniff_media_type(data)
        if media_type is None:
            raise FileValidationError("Unable to determine file type", code="unknown_file_type")

        if media_type not in self.allowed_types(category):
            raise FileValidationError(
                f"File type {media_type} is not allowed for {category.value}",
                code="unsupported_media_type",
            )

        return ValidationResult(detected_mime=media_type, size=len(data))
