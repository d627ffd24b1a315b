"""
Rate limiting for the public API and for file uploads.

Both limiters keep their counters in process memory; each application
instance owns its limiter objects.
"""

import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitDecision:
    """Outcome of rate limit evaluation."""

    allowed: bool
    retry_after: Optional[float] = None


class RequestRateLimiter:
    """Sliding-window request limiter keyed by client address."""

    def __init__(
        self,
        max_requests: int = 100,
        time_window: int = 60,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.time_window = time_window
        self.enabled = enabled
        self._clock = clock
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, client_ip: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(True, None)

        now = self._clock()
        with self._lock:
            client_requests = self.requests[client_ip]

            threshold = now - self.time_window
            while client_requests and client_requests[0] <= threshold:
                client_requests.popleft()

            if len(client_requests) < self.max_requests:
                client_requests.append(now)
                return RateLimitDecision(True, None)
            retry_after = max(0.0, self.time_window - (now - client_requests[0]))

        logger.warning(
            "Rate limit exceeded for IP %s (max=%s/window=%ss)",
            client_ip,
            self.max_requests,
            self.time_window,
        )
        return RateLimitDecision(False, retry_after)

    def purge_idle(self) -> int:
        """Forget clients with no request inside the window; returns how many were removed."""
        threshold = self._clock() - self.time_window
        with self._lock:
            idle = [ip for ip, stamps in self.requests.items() if not stamps or stamps[-1] <= threshold]
            for ip in idle:
                del self.requests[ip]
        if idle:
            logger.info("Purged request counters for %s idle clients", len(idle))
        return len(idle)


@dataclass(slots=True)
class UploadRateDecision:
    """Outcome of an upload quota check, with the values for the response headers."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        reset = datetime.fromtimestamp(self.reset_at, tz=timezone.utc)
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": reset.isoformat().replace("+00:00", "Z"),
        }


@dataclass(slots=True)
class _UploadWindow:
    count: int
    reset_at: float


class UploadRateLimiter:
    """
    Fixed-window quota on the number of uploaded files per client.

    A client is ``"{ip}:{user_id}"``. Every file in a request counts, so a
    batch of ten uses the whole default quota at once.
    """

    def __init__(
        self,
        max_uploads: int = 10,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.max_uploads = max_uploads
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _UploadWindow] = {}
        self._lock = threading.Lock()

    @staticmethod
    def client_id(ip: Optional[str], user_id: Optional[str]) -> str:
        return f"{ip or 'unknown'}:{user_id or 'anonymous'}"

    def check(self, client_id: str, file_count: int = 1) -> UploadRateDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.get(client_id)
            if window is None or window.reset_at < now:
                window = _UploadWindow(count=0, reset_at=now + self.window_seconds)
                self._windows[client_id] = window

            window.count += file_count
            count = window.count

        if count > self.max_uploads:
            retry_after = max(1, math.ceil(window.reset_at - now))
            logger.warning(
                "File upload rate limit exceeded for %s (count=%s, max=%s)",
                client_id,
                count,
                self.max_uploads,
            )
            return UploadRateDecision(
                allowed=False,
                limit=self.max_uploads,
                remaining=0,
                reset_at=window.reset_at,
                retry_after=retry_after,
            )

        return UploadRateDecision(
            allowed=True,
            limit=self.max_uploads,
            remaining=max(0, self.max_uploads - count),
            reset_at=window.reset_at,
        )

    def purge_expired(self) -> int:
        """Drop finished windows; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if window.reset_at < now]
            for key in expired:
                del self._windows[key]
        return len(expired)
