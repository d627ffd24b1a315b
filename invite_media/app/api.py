"""FastAPI application for invitation media uploads and storage housekeeping."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Literal, Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Path,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from invite_media.adapters.database import Database
from invite_media.adapters.object_store import ObjectStore, S3ObjectStore
from invite_media.config import Settings
from invite_media.domain.models import Invitation, UploadCategory, UploadResult, User, UserRole
from invite_media.security.rate_limit import UploadRateDecision
from invite_media.security.responses import CORRELATION_HEADER, error_response, success_response
from invite_media.security.scanner import FileSecurityScanner
from invite_media.security.uploads import (
    BatchUploadError,
    SecurityScanError,
    StorageError,
    UploadError,
    UploadValidator,
)
from invite_media.services.cleanup_service import FileCleanupService, register_cleanup_jobs
from invite_media.services.scheduler import (
    DAILY_AT_2AM,
    SCHEDULER_TIMEZONE,
    Clock,
    JobScheduler,
    SystemClock,
)
from invite_media.services.security_service import SecurityService, client_ip
from invite_media.services.transcoder import ImageTranscoder
from invite_media.services.upload_service import IncomingFile, UploadContext, UploadService

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


class UploadQuotaExceeded(UploadError):
    """Raised when a client has used up its upload quota for the window."""

    def __init__(self, decision: UploadRateDecision):
        self.decision = decision
        super().__init__(
            "upload_rate_limit_exceeded",
            "Too many file uploads. Please try again later.",
            status=429,
        )


@dataclass
class Services:
    """Collaborators shared by the request handlers of one application."""

    settings: Settings
    db: Database
    store: ObjectStore
    security: SecurityService
    uploads: UploadService
    cleanup: FileCleanupService
    scheduler: JobScheduler


def build_services(
    settings: Optional[Settings] = None,
    *,
    db: Optional[Database] = None,
    store: Optional[ObjectStore] = None,
    security: Optional[SecurityService] = None,
    clock: Optional[Clock] = None,
) -> Services:
    settings = settings or Settings.from_env()
    db = db or Database()
    store = store or S3ObjectStore(settings)
    security = security or SecurityService.from_settings(settings)
    clock = clock or SystemClock()

    uploads = UploadService(
        validator=UploadValidator(settings),
        scanner=FileSecurityScanner(),
        transcoder=ImageTranscoder(settings.thumbnail_sizes),
        store=store,
        audit_logger=security.audit_logger,
    )
    cleanup = FileCleanupService(
        store=store,
        references=db,
        thumbnail_labels=settings.thumbnail_labels,
        clock=clock,
        min_age=timedelta(seconds=settings.cleanup_orphan_min_age),
    )
    scheduler = JobScheduler(clock=clock, poll_interval=settings.cleanup_poll_interval)
    register_cleanup_jobs(scheduler, cleanup)
    scheduler.add_job("upload-quota-purge", DAILY_AT_2AM, security.upload_limiter.purge_expired)
    scheduler.add_job("request-limit-purge", DAILY_AT_2AM, security.rate_limiter.purge_idle)
    return Services(
        settings=settings,
        db=db,
        store=store,
        security=security,
        uploads=uploads,
        cleanup=cleanup,
        scheduler=scheduler,
    )


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    services: Services = Depends(get_services),
) -> User:
    """Resolve the bearer token to a user."""
    user = services.db.get_user_by_token(credentials.credentials) if credentials else None
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="User not authenticated"
        )
    return user


def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def _owned_invitation(services: Services, invitation_id: str, user: User) -> Invitation:
    invitation = services.db.get_invitation(invitation_id)
    if not invitation or (invitation.user_id != user.id and user.role != UserRole.ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. You do not own this invitation.",
        )
    return invitation


def _ensure_file_owner(key: str, user: User) -> None:
    """Object keys are ``<category>/<user id>/<file>``; only the owner or an admin may touch one."""
    segments = key.split("/")
    if user.role != UserRole.ADMIN and (len(segments) < 3 or segments[1] != user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Access denied. You do not own this file."
        )


def _check_upload_quota(
    request: Request, services: Services, user: User, file_count: int
) -> UploadRateDecision:
    limiter = services.security.upload_limiter
    decision = limiter.check(limiter.client_id(client_ip(request), user.id), file_count)
    if not decision.allowed:
        services.security.audit_logger.log_security_event(
            "upload_rate_limit_exceeded",
            user.id,
            client_ip=client_ip(request),
            file_count=file_count,
        )
        raise UploadQuotaExceeded(decision)
    return decision


async def _read_upload(upload: UploadFile, max_size: int) -> IncomingFile:
    # One byte past the limit is enough to reject the file.
    data = await upload.read(max_size + 1)
    await upload.close()
    return IncomingFile(data=data, filename=upload.filename or "")


def _upload_payload(result: UploadResult, include_thumbnails: bool = True) -> dict[str, Any]:
    payload: dict[str, Any] = {"url": result.url, "key": result.key}
    if include_thumbnails:
        payload["thumbnails"] = result.thumbnails
    return payload


async def _upload_single(
    request: Request,
    services: Services,
    user: User,
    upload: UploadFile,
    category: UploadCategory,
) -> tuple[UploadResult, UploadRateDecision]:
    decision = _check_upload_quota(request, services, user, 1)
    incoming = await _read_upload(upload, services.settings.max_file_size)
    context = UploadContext(user_id=user.id, client_ip=client_ip(request))
    result = await run_in_threadpool(services.uploads.upload, incoming, category, user.id, context)
    return result, decision


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    if services.settings.cleanup_scheduler_enabled:
        services.scheduler.start()
    try:
        yield
    finally:
        if services.scheduler.running:
            services.scheduler.stop()


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    app = FastAPI(
        title="Invitation Media API",
        description="Uploads, storage and cleanup for invitation images",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(services.settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_middleware(request: Request, call_next):
        """Correlation id, API-wide rate limit and security headers."""
        request.state.correlation_id = request.headers.get(CORRELATION_HEADER) or None
        security = services.security
        try:
            security.process_request(request)
        except HTTPException as exc:
            headers = dict(security.get_security_headers())
            if exc.headers:
                headers.update(exc.headers)
            return error_response(
                status=exc.status_code,
                error=exc.detail if isinstance(exc.detail, str) else "Security policy violation",
                code="rate_limit_exceeded",
                headers=headers,
                correlation_id=_correlation_id(request),
            )

        response = await call_next(request)
        for header, value in security.get_security_headers().items():
            response.headers[header] = value
        return response

    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        extras: dict[str, Any] = {}
        headers = None
        if isinstance(exc, SecurityScanError):
            extras["threats"] = exc.threats
        elif isinstance(exc, BatchUploadError):
            extras["errors"] = exc.errors
        elif isinstance(exc, StorageError) and exc.provider_code:
            extras["provider_code"] = exc.provider_code
        elif isinstance(exc, UploadQuotaExceeded):
            extras["retryAfter"] = exc.decision.retry_after
            headers = exc.decision.headers()
            headers["Retry-After"] = str(exc.decision.retry_after)

        log = logger.error if exc.status >= 500 else logger.warning
        log("Upload error %s (%s): %s for %s", exc.code, exc.status, exc.message, request.url.path)
        return error_response(
            status=exc.status,
            error=exc.message,
            code=exc.code,
            extras=extras,
            headers=headers,
            correlation_id=_correlation_id(request),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed for %s: %s", request.url.path, exc.errors())
        return error_response(
            status=status.HTTP_400_BAD_REQUEST,
            error="Invalid request",
            code="validation_error",
            extras={"details": [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]},
            correlation_id=_correlation_id(request),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        code = "http_error"
        if exc.status_code == status.HTTP_401_UNAUTHORIZED:
            code = "not_authenticated"
        elif exc.status_code == status.HTTP_403_FORBIDDEN:
            code = "access_denied"
        elif exc.status_code == status.HTTP_404_NOT_FOUND:
            code = "not_found"
        elif exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
            code = "rate_limit_exceeded"

        logger.warning("HTTPException (%s): %s", exc.status_code, detail)
        return error_response(
            status=exc.status_code,
            error=detail,
            code=code,
            headers=exc.headers,
            correlation_id=_correlation_id(request),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        return error_response(
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="Internal server error",
            code="internal_error",
            correlation_id=_correlation_id(request),
        )

    # File uploads

    @app.post("/api/files/gallery", status_code=status.HTTP_201_CREATED)
    async def upload_gallery_image(
        request: Request,
        file: UploadFile = File(...),
        invitation_id: str = Form(...),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _owned_invitation(services, invitation_id, user)
        result, decision = await _upload_single(
            request, services, user, file, UploadCategory.GALLERY_IMAGE
        )
        services.db.add_gallery_image(invitation_id, result.url)
        logger.info("Gallery image uploaded: %s to invitation: %s", result.url, invitation_id)
        return success_response(
            _upload_payload(result), status=status.HTTP_201_CREATED, headers=decision.headers()
        )

    @app.post("/api/files/gallery/multiple", status_code=status.HTTP_201_CREATED)
    async def upload_multiple_gallery_images(
        request: Request,
        files: List[UploadFile] = File(...),
        invitation_id: str = Form(...),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        max_files = services.settings.max_files_per_request
        if len(files) > max_files:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Too many files uploaded. Maximum allowed is {max_files}",
            )
        _owned_invitation(services, invitation_id, user)
        decision = _check_upload_quota(request, services, user, len(files))

        incoming = [await _read_upload(f, services.settings.max_file_size) for f in files]
        context = UploadContext(user_id=user.id, client_ip=client_ip(request))
        results = await run_in_threadpool(
            services.uploads.upload_many, incoming, UploadCategory.GALLERY_IMAGE, user.id, context
        )
        for result in results:
            services.db.add_gallery_image(invitation_id, result.url)

        logger.info("%s gallery images uploaded to invitation: %s", len(results), invitation_id)
        return success_response(
            [_upload_payload(result) for result in results],
            status=status.HTTP_201_CREATED,
            headers=decision.headers(),
        )

    @app.post("/api/files/qr-code", status_code=status.HTTP_201_CREATED)
    async def upload_qr_code(
        request: Request,
        file: UploadFile = File(...),
        invitation_id: str = Form(...),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _owned_invitation(services, invitation_id, user)
        result, decision = await _upload_single(
            request, services, user, file, UploadCategory.QR_CODE
        )
        services.db.set_qr_url(invitation_id, result.url)
        logger.info("QR code uploaded: %s to invitation: %s", result.url, invitation_id)
        return success_response(
            _upload_payload(result, include_thumbnails=False),
            status=status.HTTP_201_CREATED,
            headers=decision.headers(),
        )

    @app.post("/api/files/background", status_code=status.HTTP_201_CREATED)
    async def upload_background_image(
        request: Request,
        file: UploadFile = File(...),
        invitation_id: str = Form(...),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _owned_invitation(services, invitation_id, user)
        result, decision = await _upload_single(
            request, services, user, file, UploadCategory.BACKGROUND
        )
        services.db.set_background_image(invitation_id, result.url)
        logger.info("Background image uploaded: %s to invitation: %s", result.url, invitation_id)
        return success_response(
            _upload_payload(result), status=status.HTTP_201_CREATED, headers=decision.headers()
        )

    # Stored objects

    @app.get("/api/files/signed-url/{key:path}")
    def get_signed_url(
        key: str = Path(..., min_length=1),
        expires_in: int = Query(3600, alias="expiresIn", ge=1, le=86400),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _ensure_file_owner(key, user)
        expires_in = min(expires_in, services.settings.signed_url_max_ttl)
        url = services.store.signed_url(key, expires_in)
        logger.info("Signed URL generated for key: %s by user: %s", key, user.id)
        return success_response({"url": url, "expiresIn": expires_in})

    @app.delete("/api/files/{key:path}")
    def delete_file(
        key: str = Path(..., min_length=1),
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _ensure_file_owner(key, user)
        if not services.store.delete(key):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete file"
            )
        logger.info("File deleted: %s by user: %s", key, user.id)
        return success_response(None, message="File deleted successfully")

    # Invitations

    @app.delete("/api/invitations/{invitation_id}")
    def delete_invitation(
        invitation_id: str,
        user: User = Depends(get_current_user),
        services: Services = Depends(get_services),
    ):
        _owned_invitation(services, invitation_id, user)
        result = services.cleanup.delete_invitation_files(invitation_id)
        services.db.delete_invitation(invitation_id)
        logger.info("Invitation deleted: %s by user: %s", invitation_id, user.id)
        return success_response({"files_deleted": result.success, "files_failed": result.failed})

    # Administration

    @app.post("/api/admin/cleanup")
    def trigger_cleanup(
        cleanup_type: Literal["daily", "weekly"] = Query("daily", alias="type"),
        admin: User = Depends(get_admin_user),
        services: Services = Depends(get_services),
    ):
        stats = services.cleanup.trigger_cleanup(cleanup_type)
        services.security.audit_logger.log_event(
            "cleanup_triggered", admin.id, cleanup_type=cleanup_type, stats=stats.model_dump()
        )
        return success_response(stats)

    @app.get("/api/admin/cleanup/status")
    def cleanup_status(
        admin: User = Depends(get_admin_user),
        services: Services = Depends(get_services),
    ):
        payload = services.cleanup.get_status().model_dump()
        payload["scheduled_jobs"] = {
            name: job.next_run for name, job in services.scheduler.jobs.items()
        }
        payload["scheduler_timezone"] = SCHEDULER_TIMEZONE
        return success_response(payload)

    @app.get("/api/admin/security/audit-logs")
    def security_audit_logs(
        limit: int = Query(100, ge=1, le=1000),
        admin: User = Depends(get_admin_user),
        services: Services = Depends(get_services),
    ):
        return success_response({"audit_logs": services.security.get_audit_logs(limit)})

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()
