"""
Object key layout.

Originals live under ``{category}/{owner}/{epochMillis}-{hex16}.{ext}``. A
thumbnail reuses the original's key with the first path segment replaced by
``{category}-thumb-{label}``, so thumbnail keys can be derived from an
original key alone.
"""

import secrets
import time
from typing import Iterable, List, Optional, Union

from invite_media.domain.models import UploadCategory

THUMB_MARKER = "-thumb-"


def generate_key(
    category: Union[UploadCategory, str], owner_id: str, extension: str, now_ms: Optional[int] = None
) -> str:
    prefix = category.value if isinstance(category, UploadCategory) else category
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{prefix}/{owner_id}/{timestamp}-{secrets.token_hex(8)}.{extension}"


def is_thumbnail_key(key: str) -> bool:
    return THUMB_MARKER in key.split("/", 1)[0]


def thumbnail_key(key: str, label: str) -> Optional[str]:
    """Key of the ``label`` thumbnail of ``key``, or None if ``key`` has no prefix."""
    prefix, sep, rest = key.partition("/")
    if not sep or not prefix or not rest or is_thumbnail_key(key):
        return None
    return f"{prefix}{THUMB_MARKER}{label}/{rest}"


def thumbnail_variant_keys(key: str, labels: Iterable[str]) -> List[str]:
    variants = []
    for label in labels:
        variant = thumbnail_key(key, label)
        if variant is not None:
            variants.append(variant)
    return variants
