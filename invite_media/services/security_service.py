"""
Security service bundling the request-level controls of the API.
"""

import logging
import math
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from fastapi import HTTPException, Request

from invite_media.config import Settings
from invite_media.security.rate_limit import RequestRateLimiter, UploadRateLimiter

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class AuditLogger:
    """Bounded in-memory audit trail, mirrored to the application log."""

    def __init__(self, max_entries: int = 1000):
        self.logs: Deque[Dict[str, Any]] = deque(maxlen=max_entries)

    def log_event(self, event_type: str, user_id: Optional[str], **kwargs):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "user_id": user_id,
            **kwargs,
        }
        self.logs.append(log_entry)
        logger.info("Audit log: %s", log_entry)

    def log_security_event(self, event_type: str, user_id: Optional[str], **kwargs):
        """Same as :meth:`log_event` but also raised to warning level."""
        self.log_event(event_type, user_id, **kwargs)
        logger.warning("Security event %s for user %s: %s", event_type, user_id, kwargs)

    def get_logs(self, limit: int = 100) -> list:
        return list(self.logs)[-limit:]


class SecurityService:
    """Aggregates the rate limiters, audit trail and response headers."""

    def __init__(
        self,
        request_limiter: RequestRateLimiter,
        upload_limiter: UploadRateLimiter,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self.rate_limiter = request_limiter
        self.upload_limiter = upload_limiter
        self.audit_logger = audit_logger or AuditLogger()
        self.security_headers = {
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "DENY",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Security-Policy": "default-src 'self'",
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityService":
        return cls(
            request_limiter=RequestRateLimiter(
                max_requests=settings.rate_limit_max_requests,
                time_window=settings.rate_limit_window,
                enabled=settings.rate_limiting_enabled,
            ),
            upload_limiter=UploadRateLimiter(
                max_uploads=settings.upload_rate_limit_max,
                window_seconds=settings.upload_rate_limit_window,
            ),
        )

    def process_request(self, request: Request):
        """Apply the API-wide request limiter."""
        ip = client_ip(request)
        decision = self.rate_limiter.check(ip)
        if not decision.allowed:
            retry_after = decision.retry_after or self.rate_limiter.time_window
            self.audit_logger.log_event(
                "rate_limit_exceeded", None, client_ip=ip, path=str(request.url.path)
            )
            raise HTTPException(
                status_code=429,
                detail="Too many requests. Please retry later.",
                headers={"Retry-After": str(max(1, math.ceil(retry_after)))},
            )

    def get_security_headers(self) -> Dict[str, str]:
        return self.security_headers

    def get_audit_logs(self, limit: int = 100) -> list:
        return self.audit_logger.get_logs(limit)
