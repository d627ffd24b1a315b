from datetime import datetime, timezone

import pytest

from invite_media.config import Settings
from invite_media.security.rate_limit import RequestRateLimiter, UploadRateLimiter


class FakeTime:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        s3_public_domain="https://cdn.example.com",
        upload_rate_limit_max=2,
        rate_limiting_enabled=True,
        rate_limit_max_requests=5,
        rate_limit_window=60,
        cleanup_scheduler_enabled=False,
    )


def test_upload_quota_counts_files():
    clock = FakeTime()
    limiter = UploadRateLimiter(max_uploads=10, window_seconds=3600, clock=clock)
    client = limiter.client_id("10.0.0.1", "u1")
    assert client == "10.0.0.1:u1"

    first = limiter.check(client, 7)
    assert first.allowed and first.remaining == 3

    second = limiter.check(client, 4)
    assert not second.allowed
    assert second.remaining == 0
    assert second.retry_after == 3600


def test_upload_quota_window_resets():
    clock = FakeTime()
    limiter = UploadRateLimiter(max_uploads=1, window_seconds=60, clock=clock)
    assert limiter.check("a:b").allowed
    assert not limiter.check("a:b").allowed
    clock.now += 61
    assert limiter.check("a:b").allowed


def test_upload_quota_is_per_client():
    limiter = UploadRateLimiter(max_uploads=1, clock=FakeTime())
    assert limiter.check(limiter.client_id("1.1.1.1", "u1")).allowed
    assert limiter.check(limiter.client_id("1.1.1.1", "u2")).allowed
    assert limiter.client_id(None, None) == "unknown:anonymous"


def test_purge_expired_windows():
    clock = FakeTime()
    limiter = UploadRateLimiter(max_uploads=5, window_seconds=10, clock=clock)
    limiter.check("x:y")
    clock.now += 11
    assert limiter.purge_expired() == 1


def test_rate_headers():
    clock = FakeTime(0)
    decision = UploadRateLimiter(max_uploads=10, window_seconds=3600, clock=clock).check("c:d", 3)
    headers = decision.headers()
    assert headers["X-RateLimit-Limit"] == "10"
    assert headers["X-RateLimit-Remaining"] == "7"
    assert headers["X-RateLimit-Reset"] == "1970-01-01T01:00:00Z"


def test_request_limiter_sliding_window():
    clock = FakeTime()
    limiter = RequestRateLimiter(max_requests=2, time_window=10, clock=clock)
    assert limiter.check("ip").allowed
    clock.now += 4
    assert limiter.check("ip").allowed
    blocked = limiter.check("ip")
    assert not blocked.allowed
    assert blocked.retry_after == pytest.approx(6)
    clock.now += 6
    assert limiter.check("ip").allowed


def test_purge_idle_forgets_quiet_clients():
    clock = FakeTime()
    limiter = RequestRateLimiter(max_requests=2, time_window=10, clock=clock)
    limiter.check("quiet")
    clock.now += 8
    limiter.check("busy")
    assert limiter.purge_idle() == 0

    clock.now += 3
    assert limiter.purge_idle() == 1
    assert set(limiter.requests) == {"busy"}

    clock.now += 10
    assert limiter.purge_idle() == 1
    assert limiter.requests == {}
    assert limiter.check("quiet").allowed


def test_disabled_request_limiter_allows_everything():
    limiter = RequestRateLimiter(max_requests=1, enabled=False)
    assert all(limiter.check("ip").allowed for _ in range(5))


def test_upload_endpoint_enforces_quota(client, auth_headers, invitation, make_image):
    def upload():
        return client.post(
            "/api/files/gallery",
            files={"file": ("a.jpg", make_image(64, 64), "image/jpeg")},
            data={"invitation_id": invitation.id},
            headers=auth_headers,
        )

    first = upload()
    assert first.status_code == 201
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert upload().status_code == 201

    blocked = upload()
    assert blocked.status_code == 429
    payload = blocked.json()
    assert payload["success"] is False
    assert payload["code"] == "upload_rate_limit_exceeded"
    assert 0 < payload["retryAfter"] <= 3600
    assert blocked.headers["Retry-After"] == str(payload["retryAfter"])
    assert blocked.headers["X-RateLimit-Remaining"] == "0"
    reset = datetime.fromisoformat(blocked.headers["X-RateLimit-Reset"].replace("Z", "+00:00"))
    assert reset > datetime.now(timezone.utc)


def test_batch_counts_every_file(client, auth_headers, invitation, make_image):
    files = [("files", (f"{i}.jpg", make_image(32, 32), "image/jpeg")) for i in range(3)]
    response = client.post(
        "/api/files/gallery/multiple",
        files=files,
        data={"invitation_id": invitation.id},
        headers=auth_headers,
    )
    assert response.status_code == 429


def test_api_request_limit_returns_retry_after(client):
    for _ in range(5):
        assert client.get("/health").status_code == 200
    response = client.get("/health")
    assert response.status_code == 429
    payload = response.json()
    assert payload["code"] == "rate_limit_exceeded"
    assert response.headers["Retry-After"].isdigit()
    assert response.headers["X-Correlation-ID"] == payload["correlation_id"]
    assert response.headers["X-Frame-Options"] == "DENY"
