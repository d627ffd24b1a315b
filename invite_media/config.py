"""
Runtime configuration for the invitation media service.

Values are read from the environment once, at application start-up.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from invite_media.domain.models import ThumbnailSpec

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_IMAGE_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
DEFAULT_QR_CODE_TYPES = DEFAULT_IMAGE_TYPES + ("image/svg+xml",)
DEFAULT_THUMBNAIL_SIZES = (
    ThumbnailSpec(label="small", width=150, height=150),
    ThumbnailSpec(label="medium", width=300, height=300),
    ThumbnailSpec(label="large", width=800, height=600),
)


def _load_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid value '%s' for %s. Falling back to %s.", raw, name, default)
        return default


def _load_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _load_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    values = tuple(item.strip().lower() for item in raw.split(",") if item.strip())
    return values or default


def _optional_env(name: str) -> Optional[str]:
    raw = (os.getenv(name) or "").strip()
    return raw or None


def parse_thumbnail_sizes(raw: str) -> Tuple[ThumbnailSpec, ...]:
    """
    Parse ``label:WIDTHxHEIGHT`` entries separated by commas.

    >>> parse_thumbnail_sizes("small:150x150,large:800x600")[1].height
    600
    """
    specs = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        label, _, dims = chunk.partition(":")
        width, _, height = dims.lower().partition("x")
        if not label or not width.isdigit() or not height.isdigit():
            raise ValueError(f"Invalid thumbnail size entry: {chunk!r}")
        specs.append(ThumbnailSpec(label=label.strip(), width=int(width), height=int(height)))
    if not specs:
        raise ValueError("At least one thumbnail size is required")
    return tuple(specs)


def _load_thumbnail_sizes() -> Tuple[ThumbnailSpec, ...]:
    raw = os.getenv("THUMBNAIL_SIZES")
    if not raw:
        return DEFAULT_THUMBNAIL_SIZES
    try:
        return parse_thumbnail_sizes(raw)
    except ValueError as exc:
        logger.warning("Ignoring THUMBNAIL_SIZES (%s). Using defaults.", exc)
        return DEFAULT_THUMBNAIL_SIZES


@dataclass(frozen=True)
class Settings:
    """Service settings; build with :meth:`from_env` outside of tests."""

    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    allowed_image_types: Tuple[str, ...] = DEFAULT_IMAGE_TYPES
    allowed_qr_code_types: Tuple[str, ...] = DEFAULT_QR_CODE_TYPES
    thumbnail_sizes: Tuple[ThumbnailSpec, ...] = DEFAULT_THUMBNAIL_SIZES
    max_files_per_request: int = 10

    aws_region: str = "us-east-1"
    s3_bucket_name: str = "invitation-uploads"
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_endpoint: Optional[str] = None
    s3_public_domain: Optional[str] = None
    signed_url_max_ttl: int = 86400

    upload_rate_limit_max: int = 10
    upload_rate_limit_window: int = 3600
    rate_limiting_enabled: bool = True
    rate_limit_max_requests: int = 100
    rate_limit_window: int = 60

    cleanup_scheduler_enabled: bool = True
    cleanup_orphan_min_age: int = 3600
    cleanup_poll_interval: int = 30

    cors_origins: Tuple[str, ...] = field(default=("http://localhost:3000",))

    @property
    def thumbnail_labels(self) -> Tuple[str, ...]:
        return tuple(spec.label for spec in self.thumbnail_sizes)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            max_file_size=_load_int_env("MAX_FILE_SIZE", DEFAULT_MAX_FILE_SIZE),
            allowed_image_types=_load_list_env("ALLOWED_IMAGE_TYPES", DEFAULT_IMAGE_TYPES),
            allowed_qr_code_types=_load_list_env("ALLOWED_QR_CODE_TYPES", DEFAULT_QR_CODE_TYPES),
            thumbnail_sizes=_load_thumbnail_sizes(),
            max_files_per_request=_load_int_env("MAX_FILES_PER_REQUEST", 10),
            aws_region=os.getenv("AWS_REGION", "us-east-1"),
            s3_bucket_name=os.getenv("S3_BUCKET_NAME", "invitation-uploads"),
            s3_access_key_id=os.getenv("S3_ACCESS_KEY_ID", ""),
            s3_secret_access_key=os.getenv("S3_SECRET_ACCESS_KEY", ""),
            s3_endpoint=_optional_env("S3_ENDPOINT"),
            s3_public_domain=_optional_env("S3_PUBLIC_DOMAIN"),
            signed_url_max_ttl=_load_int_env("SIGNED_URL_MAX_TTL", 86400),
            upload_rate_limit_max=_load_int_env("UPLOAD_RATE_LIMIT_MAX", 10),
            upload_rate_limit_window=_load_int_env("UPLOAD_RATE_LIMIT_WINDOW_SECONDS", 3600),
            rate_limiting_enabled=_load_bool_env("RATE_LIMITING_ENABLED", True),
            rate_limit_max_requests=_load_int_env("RATE_LIMIT_MAX_REQUESTS", 100),
            rate_limit_window=_load_int_env("RATE_LIMIT_WINDOW_SECONDS", 60),
            cleanup_scheduler_enabled=_load_bool_env("CLEANUP_SCHEDULER_ENABLED", True),
            cleanup_orphan_min_age=_load_int_env("CLEANUP_ORPHAN_MIN_AGE_SECONDS", 3600),
            cleanup_poll_interval=_load_int_env("CLEANUP_POLL_INTERVAL_SECONDS", 30),
            cors_origins=_load_list_env("CORS_ORIGINS", ("http://localhost:3000",)),
        )
