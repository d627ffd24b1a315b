"""
Domain models for the invitation media service.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class UploadCategory(str, enum.Enum):
    """Upload categories; the value doubles as the storage key prefix."""

    GALLERY_IMAGE = "gallery-image"
    QR_CODE = "qr-code"
    BACKGROUND = "background"

    @property
    def produces_thumbnails(self) -> bool:
        return self in (UploadCategory.GALLERY_IMAGE, UploadCategory.BACKGROUND)


class UserRole(str, enum.Enum):
    """User roles."""

    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True, slots=True)
class ThumbnailSpec:
    """A named thumbnail rendition."""

    label: str
    width: int
    height: int


@dataclass(frozen=True, slots=True)
class ObjectSummary:
    """One entry of a bucket listing."""

    key: str
    last_modified: datetime
    size: int = 0


class StoredObject(BaseModel):
    """A blob written to the object store."""

    key: str
    url: str
    content_type: str
    size: int = Field(..., ge=0)


class ValidationResult(BaseModel):
    """Outcome of a successful upload validation."""

    detected_mime: str
    size: int


class SecurityVerdict(BaseModel):
    """Result of scanning one upload."""

    is_safe: bool
    threats: List[str] = Field(default_factory=list)
    confidence: int = Field(100, ge=0, le=100)


class FileMetadata(BaseModel):
    """Identity of an uploaded file for audit purposes."""

    name: str
    size: int
    type: str = "application/octet-stream"
    hash: str


class UploadResult(BaseModel):
    """What the caller gets back for one stored upload."""

    url: str
    key: str
    content_type: str
    size: int
    thumbnails: Optional[Dict[str, str]] = None


class DeleteResult(BaseModel):
    """Counters for a (batch) delete."""

    success: int = 0
    failed: int = 0
    failed_keys: List[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.success + self.failed


class CleanupStats(BaseModel):
    """Counters accumulated by one cleanup run."""

    total_files_scanned: int = 0
    files_deleted: int = 0
    space_freed: int = 0
    errors: List[str] = Field(default_factory=list)


class CleanupStatus(BaseModel):
    """Current state of the cleanup job."""

    is_running: bool
    last_cleanup: Optional[datetime] = None
    last_stats: Optional[CleanupStats] = None


class User(BaseModel):
    """Authenticated caller, resolved from a bearer token."""

    id: str
    username: str = Field(..., min_length=3, max_length=50)
    role: UserRole = UserRole.USER
    token: str


class InvitationSettings(BaseModel):
    """Presentation settings of an invitation."""

    background_image: Optional[str] = None
    primary_color: Optional[str] = None
    font_family: Optional[str] = None


class MoneyGiftDetails(BaseModel):
    """Money-gift section of an invitation."""

    enabled: bool = False
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_holder: Optional[str] = None
    qr_url: Optional[str] = None


class Invitation(BaseModel):
    """Invitation record; only the URL-bearing fields matter to this service."""

    id: str
    user_id: str
    slug: str = Field(..., min_length=1, max_length=100)
    settings: InvitationSettings = Field(default_factory=InvitationSettings)
    money_gift_details: MoneyGiftDetails = Field(default_factory=MoneyGiftDetails)
    created_at: datetime
    updated_at: datetime

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        if not v.replace("-", "").isalnum():
            raise ValueError("Slug must contain only letters, digits and dashes")
        return v.lower()


class GalleryImage(BaseModel):
    """Gallery row attached to an invitation."""

    id: str
    invitation_id: str
    image_url: str
    caption: Optional[str] = None
    display_order: int = 0
