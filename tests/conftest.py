# tests/conftest.py
import io
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest
from fastapi.testclient import TestClient
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from invite_media.adapters.database import Database  # noqa: E402
from invite_media.adapters.object_store import S3ObjectStore  # noqa: E402
from invite_media.app.api import build_services, create_app  # noqa: E402
from invite_media.config import Settings  # noqa: E402
from invite_media.domain.models import (  # noqa: E402
    DeleteResult,
    ObjectSummary,
    StoredObject,
    UserRole,
)
from invite_media.security.uploads import StorageError  # noqa: E402
from invite_media.services.scheduler import ManualClock  # noqa: E402

PUBLIC_DOMAIN = "https://cdn.example.com"
START = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


@dataclass
class Blob:
    data: bytes
    content_type: str
    last_modified: datetime


class InMemoryObjectStore(S3ObjectStore):
    """Object store double; URL handling comes from the real S3 adapter."""

    def __init__(self, settings: Settings, clock: Optional[ManualClock] = None):
        super().__init__(settings, client=object())
        self.clock = clock or ManualClock(START)
        self.objects: Dict[str, Blob] = {}
        self.delete_batches: List[List[str]] = []
        self.failing_keys: Set[str] = set()
        self.fail_puts = False
        self.fail_listing = False

    def put(self, data: bytes, key: str, content_type: str) -> StoredObject:
        if self.fail_puts:
            raise StorageError("Failed to upload file to storage (AccessDenied: denied)", "AccessDenied")
        self.objects[key] = Blob(data, content_type, self.clock.now())
        return StoredObject(key=key, url=self.public_url(key), content_type=content_type, size=len(data))

    def add(self, key: str, age: timedelta, size: int = 10) -> None:
        self.objects[key] = Blob(b"x" * size, "image/webp", self.clock.now() - age)

    def delete(self, key: str) -> bool:
        if key in self.failing_keys:
            return False
        self.objects.pop(key, None)
        return True

    def delete_many(self, keys: Sequence[str]) -> DeleteResult:
        self.delete_batches.append(list(keys))
        result = DeleteResult()
        for key in keys:
            if key in self.failing_keys:
                result.failed += 1
                result.failed_keys.append(key)
            else:
                self.objects.pop(key, None)
                result.success += 1
        return result

    def signed_url(self, key: str, expires_in: int = 3600) -> str:
        return f"{self.public_url(key)}?X-Amz-Expires={expires_in}&X-Amz-Signature=test"

    def list_objects(self) -> List[ObjectSummary]:
        if self.fail_listing:
            raise StorageError("Failed to list storage objects (NoSuchBucket)", "NoSuchBucket")
        return [
            ObjectSummary(key=key, last_modified=blob.last_modified, size=len(blob.data))
            for key, blob in self.objects.items()
        ]


def image_bytes(width: int, height: int, fmt: str = "JPEG", color=(200, 120, 40), **save_kwargs) -> bytes:
    mode = "RGBA" if fmt == "PNG" and len(color) == 4 else "RGB"
    image = Image.new(mode, (width, height), color)
    # A gradient keeps encoders from collapsing the image to a few bytes.
    for x in range(0, width, max(1, width // 32)):
        for y in range(0, height, max(1, height // 32)):
            image.putpixel((x, y), (x % 256, y % 256, (x + y) % 256) + ((255,) if mode == "RGBA" else ()))
    buf = io.BytesIO()
    image.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


def decode(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        s3_bucket_name="test-bucket",
        s3_public_domain=PUBLIC_DOMAIN,
        rate_limiting_enabled=False,
        cleanup_scheduler_enabled=False,
    )


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture()
def store(settings, clock) -> InMemoryObjectStore:
    return InMemoryObjectStore(settings, clock)


@pytest.fixture()
def db() -> Database:
    return Database()


@pytest.fixture()
def services(settings, db, store, clock):
    return build_services(settings, db=db, store=store, clock=clock)


@pytest.fixture()
def app(services):
    return create_app(services)


@pytest.fixture()
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def owner(db):
    return db.create_user("owner1")


@pytest.fixture()
def admin(db):
    return db.create_user("admin1", role=UserRole.ADMIN)


@pytest.fixture()
def invitation(db, owner):
    return db.create_invitation(owner.id, "ana-and-ben")


@pytest.fixture()
def auth_headers(owner):
    return {"Authorization": f"Bearer {owner.token}"}


@pytest.fixture()
def admin_headers(admin):
    return {"Authorization": f"Bearer {admin.token}"}


@pytest.fixture()
def make_image():
    return image_bytes


@pytest.fixture()
def decode_image():
    return decode
