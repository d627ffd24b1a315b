"""
Upload orchestration: validation, security scan, transcoding and storage
for one file or a batch of files.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from invite_media.adapters.object_store import ObjectStore
from invite_media.domain.models import FileMetadata, UploadCategory, UploadResult
from invite_media.security.scanner import FileSecurityScanner
from invite_media.security.uploads import (
    BatchUploadError,
    FileValidationError,
    SecurityScanError,
    UploadError,
    UploadValidator,
    extension_for,
)
from invite_media.services.security_service import AuditLogger
from invite_media.services.storage_keys import generate_key, thumbnail_key
from invite_media.services.transcoder import WEBP_MIME, ImageTranscoder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingFile:
    """Raw bytes of one upload plus the name the client gave it."""

    data: bytes
    filename: str = ""


@dataclass(frozen=True)
class UploadContext:
    """Who is uploading, for audit logging."""

    user_id: Optional[str] = None
    client_ip: Optional[str] = None


class UploadService:
    """Runs the upload pipeline; every step is attempted at most once."""

    def __init__(
        self,
        validator: UploadValidator,
        scanner: FileSecurityScanner,
        transcoder: ImageTranscoder,
        store: ObjectStore,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.validator = validator
        self.scanner = scanner
        self.transcoder = transcoder
        self.store = store
        self.audit_logger = audit_logger or AuditLogger()

    def screen(self, upload: IncomingFile, context: UploadContext) -> FileMetadata:
        """Security scan, hash blacklist and filename sanitation; returns the file's audit identity."""
        verdict = self.scanner.scan(upload.data, upload.filename)
        if not verdict.is_safe:
            self.audit_logger.log_security_event(
                "upload_rejected",
                context.user_id,
                client_ip=context.client_ip,
                filename=upload.filename,
                size=len(upload.data),
                threats=verdict.threats,
                confidence=verdict.confidence,
            )
            raise SecurityScanError(verdict.threats)

        metadata = self.scanner.extract_metadata(upload.data, upload.filename)
        if self.scanner.is_blacklisted(metadata.hash):
            self.audit_logger.log_security_event(
                "blacklisted_upload",
                context.user_id,
                client_ip=context.client_ip,
                filename=upload.filename,
                hash=metadata.hash,
            )
            raise SecurityScanError(["Blacklisted file"], message="File is not allowed")

        sanitized = self.scanner.sanitize_filename(upload.filename)
        if upload.filename and sanitized != upload.filename:
            logger.info(
                "Filename sanitized from %r to %r (secure name %s, user=%s, ip=%s)",
                upload.filename,
                sanitized,
                self.scanner.generate_secure_filename(upload.filename),
                context.user_id,
                context.client_ip,
            )
        return metadata

    def upload(
        self,
        upload: IncomingFile,
        category: UploadCategory,
        owner_id: str,
        context: Optional[UploadContext] = None,
    ) -> UploadResult:
        context = context or UploadContext(user_id=owner_id)
        try:
            # Executable content must surface as a scan threat, so the scan
            # runs between the size limit and the MIME allow-list.
            self.validator.validate_size(len(upload.data))
            metadata = self.screen(upload, context)
            validation = self.validator.validate(upload.data, category)
        except FileValidationError as exc:
            logger.warning(
                "Upload validation failed: %s (file=%r, size=%s, user=%s, ip=%s)",
                exc.message,
                upload.filename,
                len(upload.data),
                context.user_id,
                context.client_ip,
            )
            raise

        transcoded = self.transcoder.transcode(upload.data, category, validation.detected_mime)

        key = generate_key(category, owner_id, extension_for(transcoded.mime))
        stored = self.store.put(transcoded.data, key, transcoded.mime)

        thumbnails = None
        if transcoded.thumbnails:
            thumbnails = {}
            for label, thumb_bytes in transcoded.thumbnails.items():
                thumb = self.store.put(thumb_bytes, thumbnail_key(key, label), WEBP_MIME)
                thumbnails[label] = thumb.url

        logger.info("File uploaded successfully: %s for user: %s", key, owner_id)
        self.audit_logger.log_event(
            "file_uploaded",
            context.user_id,
            client_ip=context.client_ip,
            key=key,
            filename=upload.filename,
            size=validation.size,
            media_type=validation.detected_mime,
            hash=metadata.hash,
        )
        return UploadResult(
            url=stored.url,
            key=stored.key,
            content_type=validation.detected_mime,
            size=validation.size,
            thumbnails=thumbnails,
        )

    def upload_many(
        self,
        uploads: Sequence[IncomingFile],
        category: UploadCategory,
        owner_id: str,
        context: Optional[UploadContext] = None,
    ) -> List[UploadResult]:
        """Upload each file; succeed with the subset that worked unless none did."""
        results: List[UploadResult] = []
        errors: List[str] = []
        worst_status = 400

        for index, upload in enumerate(uploads, start=1):
            try:
                results.append(self.upload(upload, category, owner_id, context))
            except UploadError as exc:
                errors.append(f"File {index}: {exc.message}")
                worst_status = max(worst_status, exc.status)
                logger.error("Error uploading file %s (%r): %s", index, upload.filename, exc.message)

        if errors and not results:
            raise BatchUploadError(errors, status=worst_status)
        if errors:
            logger.warning("Some uploads failed: %s", ", ".join(errors))
        return results
