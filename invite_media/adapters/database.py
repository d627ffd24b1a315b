"""
Database adapter for the invitation media service.
In-memory storage for the records that reference stored objects.
"""

import secrets
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from invite_media.domain.models import (
    GalleryImage,
    Invitation,
    InvitationSettings,
    MoneyGiftDetails,
    User,
    UserRole,
)


class ReferenceSource(Protocol):
    """Read side used by the cleanup job to find referenced objects."""

    def list_invitations(self) -> List[Invitation]: ...

    def list_gallery_images(self) -> List[GalleryImage]: ...

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]: ...

    def get_gallery_for_invitation(self, invitation_id: str) -> List[GalleryImage]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """In-memory store of users, invitations and gallery rows."""

    def __init__(self):
        self.users: Dict[str, User] = {}
        self.invitations: Dict[str, Invitation] = {}
        self.gallery: Dict[str, GalleryImage] = {}
        self._lock = threading.Lock()

    # Users

    def create_user(self, username: str, role: UserRole = UserRole.USER) -> User:
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            role=role,
            token=secrets.token_urlsafe(24),
        )
        with self._lock:
            self.users[user.id] = user
        return user

    def get_user_by_token(self, token: str) -> Optional[User]:
        with self._lock:
            users = list(self.users.values())
        for user in users:
            if secrets.compare_digest(user.token, token):
                return user
        return None

    # Invitations

    def create_invitation(
        self,
        user_id: str,
        slug: str,
        settings: Optional[InvitationSettings] = None,
        money_gift_details: Optional[MoneyGiftDetails] = None,
    ) -> Invitation:
        now = _utcnow()
        invitation = Invitation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            slug=slug,
            settings=settings or InvitationSettings(),
            money_gift_details=money_gift_details or MoneyGiftDetails(),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self.invitations[invitation.id] = invitation
        return invitation

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        with self._lock:
            return self.invitations.get(invitation_id)

    def list_invitations(self) -> List[Invitation]:
        with self._lock:
            return list(self.invitations.values())

    def set_background_image(self, invitation_id: str, url: Optional[str]) -> Optional[Invitation]:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            invitation.settings = invitation.settings.model_copy(update={"background_image": url})
            invitation.updated_at = _utcnow()
            return invitation

    def set_qr_url(self, invitation_id: str, url: Optional[str]) -> Optional[Invitation]:
        with self._lock:
            invitation = self.invitations.get(invitation_id)
            if not invitation:
                return None
            invitation.money_gift_details = invitation.money_gift_details.model_copy(
                update={"qr_url": url}
            )
            invitation.updated_at = _utcnow()
            return invitation

    def delete_invitation(self, invitation_id: str) -> bool:
        """Hard delete; gallery rows go with the invitation."""
        with self._lock:
            if self.invitations.pop(invitation_id, None) is None:
                return False
            for image_id in [i.id for i in self.gallery.values() if i.invitation_id == invitation_id]:
                del self.gallery[image_id]
            return True

    # Gallery

    def add_gallery_image(
        self, invitation_id: str, image_url: str, caption: Optional[str] = None
    ) -> GalleryImage:
        with self._lock:
            order = sum(1 for i in self.gallery.values() if i.invitation_id == invitation_id)
            image = GalleryImage(
                id=str(uuid.uuid4()),
                invitation_id=invitation_id,
                image_url=image_url,
                caption=caption,
                display_order=order,
            )
            self.gallery[image.id] = image
            return image

    def list_gallery_images(self) -> List[GalleryImage]:
        with self._lock:
            return list(self.gallery.values())

    def get_gallery_for_invitation(self, invitation_id: str) -> List[GalleryImage]:
        with self._lock:
            images = [i for i in self.gallery.values() if i.invitation_id == invitation_id]
        return sorted(images, key=lambda image: image.display_order)
