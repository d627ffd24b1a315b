"""
File cleanup service.

Finds stored objects that no invitation or gallery row points at any more
and deletes them once they are old enough, plus an immediate purge of an
invitation's files when the invitation itself is deleted.
"""

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List, Literal, Optional, Sequence, Set

from invite_media.adapters.database import ReferenceSource
from invite_media.adapters.object_store import ObjectStore
from invite_media.domain.models import CleanupStats, CleanupStatus, DeleteResult
from invite_media.services.scheduler import (
    DAILY_AT_2AM,
    WEEKLY_SUNDAY_3AM,
    Clock,
    JobScheduler,
    SystemClock,
)
from invite_media.services.storage_keys import thumbnail_variant_keys

logger = logging.getLogger(__name__)

CleanupType = Literal["daily", "weekly"]

ALREADY_RUNNING = "Cleanup already in progress"
DEFAULT_MIN_AGE = timedelta(hours=1)


class FileCleanupService:
    """Orphan sweep and per-invitation file deletion."""

    def __init__(
        self,
        store: ObjectStore,
        references: ReferenceSource,
        thumbnail_labels: Sequence[str],
        clock: Optional[Clock] = None,
        min_age: timedelta = DEFAULT_MIN_AGE,
    ):
        self.store = store
        self.references = references
        self.thumbnail_labels = tuple(thumbnail_labels)
        self.clock = clock or SystemClock()
        self.min_age = min_age
        self._state_lock = threading.Lock()
        self._is_running = False
        self.last_cleanup: Optional[datetime] = None
        self.last_stats: Optional[CleanupStats] = None

    @property
    def is_running(self) -> bool:
        return self._is_running

    def _acquire(self) -> bool:
        with self._state_lock:
            if self._is_running:
                return False
            self._is_running = True
            return True

    def _release(self) -> None:
        with self._state_lock:
            self._is_running = False

    def _run_exclusive(self, label: str, tasks: Callable[[CleanupStats], None]) -> CleanupStats:
        if not self._acquire():
            logger.warning("Cleanup already running, skipping %s run", label)
            return CleanupStats(errors=[ALREADY_RUNNING])

        stats = CleanupStats()
        started = time.monotonic()
        try:
            tasks(stats)
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info("%s cleanup completed in %sms: %s", label.capitalize(), duration_ms, stats.model_dump())
        finally:
            self.last_cleanup = self.clock.now()
            self.last_stats = stats
            self._release()
        return stats

    def _daily_tasks(self, stats: CleanupStats) -> None:
        self.cleanup_orphaned_files(stats)
        self.cleanup_temporary_files(stats)

    def _weekly_tasks(self, stats: CleanupStats) -> None:
        self._daily_tasks(stats)
        self.cleanup_old_thumbnails(stats)
        self.optimize_storage(stats)

    def perform_daily_cleanup(self) -> CleanupStats:
        return self._run_exclusive("daily", self._daily_tasks)

    def perform_weekly_cleanup(self) -> CleanupStats:
        return self._run_exclusive("weekly", self._weekly_tasks)

    def trigger_cleanup(self, cleanup_type: CleanupType = "daily") -> CleanupStats:
        """Manual entry point for administrators."""
        logger.info("Manual %s cleanup triggered", cleanup_type)
        if cleanup_type == "weekly":
            return self.perform_weekly_cleanup()
        return self.perform_daily_cleanup()

    def get_status(self) -> CleanupStatus:
        return CleanupStatus(
            is_running=self._is_running, last_cleanup=self.last_cleanup, last_stats=self.last_stats
        )

    def with_thumbnails(self, keys: Sequence[str]) -> List[str]:
        """``keys`` followed by every thumbnail variant key derived from them."""
        expanded = list(keys)
        for key in keys:
            expanded.extend(thumbnail_variant_keys(key, self.thumbnail_labels))
        return expanded

    def _key(self, url: Optional[str]) -> Optional[str]:
        return self.store.key_from_url(url) if url else None

    def collect_referenced_keys(self) -> Set[str]:
        """Keys (and derived thumbnail keys) referenced by live records."""
        keys = []
        for invitation in self.references.list_invitations():
            keys.append(self._key(invitation.settings.background_image))
            keys.append(self._key(invitation.money_gift_details.qr_url))
        for image in self.references.list_gallery_images():
            keys.append(self._key(image.image_url))
        return set(self.with_thumbnails([key for key in keys if key]))

    def cleanup_orphaned_files(self, stats: CleanupStats) -> None:
        try:
            started_at = self.clock.now()
            referenced = self.collect_referenced_keys()
            objects = self.store.list_objects()
            stats.total_files_scanned += len(objects)

            cutoff = started_at - self.min_age
            candidates = [
                obj for obj in objects if obj.key not in referenced and obj.last_modified < cutoff
            ]
            logger.info(
                "Orphan sweep: %s referenced keys, %s stored objects, %s candidates",
                len(referenced),
                len(objects),
                len(candidates),
            )
            if not candidates:
                return

            result = self.store.delete_many([obj.key for obj in candidates])
            failed = set(result.failed_keys)
            stats.files_deleted += result.success
            stats.space_freed += sum(obj.size for obj in candidates if obj.key not in failed)
            if result.failed:
                stats.errors.append(f"Failed to delete {result.failed} orphaned files")
        except Exception:
            logger.exception("Error cleaning up orphaned files")
            stats.errors.append("Failed to clean up orphaned files")

    def cleanup_temporary_files(self, stats: CleanupStats) -> None:
        # Uploads are written straight to their final key; nothing temporary exists yet.
        logger.info("Temporary file cleanup completed")

    def cleanup_old_thumbnails(self, stats: CleanupStats) -> None:
        # Orphaned thumbnails are already removed by the orphan sweep.
        logger.info("Old thumbnail cleanup completed")

    def optimize_storage(self, stats: CleanupStats) -> None:
        # TODO: move objects untouched for 90 days to a colder storage class.
        logger.info("Storage optimization completed")

    def delete_invitation_files(self, invitation_id: str) -> DeleteResult:
        """Delete every object an invitation points at, thumbnails included."""
        invitation = self.references.get_invitation(invitation_id)
        if invitation is None:
            logger.error("Error deleting files for invitation %s: invitation not found", invitation_id)
            return DeleteResult(success=0, failed=1)

        keys = [self._key(image.image_url) for image in self.references.get_gallery_for_invitation(invitation_id)]
        keys.append(self._key(invitation.money_gift_details.qr_url))
        keys.append(self._key(invitation.settings.background_image))
        files_to_delete = self.with_thumbnails([key for key in keys if key])
        if not files_to_delete:
            return DeleteResult()

        result = self.store.delete_many(files_to_delete)
        logger.info("Deleted %s files for invitation %s", result.success, invitation_id)
        if result.failed:
            logger.warning("Failed to delete %s files for invitation %s", result.failed, invitation_id)
        return result


def register_cleanup_jobs(scheduler: JobScheduler, cleanup: FileCleanupService) -> None:
    """Daily sweep at 02:00 and weekly deep cleanup on Sundays at 03:00."""
    scheduler.add_job("daily-file-cleanup", DAILY_AT_2AM, cleanup.perform_daily_cleanup)
    scheduler.add_job("weekly-file-cleanup", WEEKLY_SUNDAY_3AM, cleanup.perform_weekly_cleanup)
    logger.info("File cleanup tasks scheduled")
