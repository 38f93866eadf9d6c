"""
Background lane that keeps cached ratings and file metadata in step.

Everything here runs on one worker thread, so exiftool calls are
serialized and never hold up a scan or a rating update.
"""
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional

from core.event_system import EventSystem, ratings_refreshed_event
from core.metadata_sync import MetadataSync, clamp_rating
from core.rating_store import RatingStore
from core.records import RatingCacheEntry, mtime_millis
from network.protocol import PhotoRecord

logger = logging.getLogger(__name__)


class RatingReconciler:
    def __init__(self, rating_store: RatingStore, metadata_sync: MetadataSync,
                 event_system: Optional[EventSystem] = None):
        self.rating_store = rating_store
        self.metadata_sync = metadata_sync
        self.event_system = event_system
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rating-sync")

    def reconcile(self, photos: List[PhotoRecord], cached: Dict[str, RatingCacheEntry]) -> Future:
        """Queues *photos* for reconciliation against the *cached* entries seen by the scan."""
        return self._executor.submit(self._reconcile, list(photos), dict(cached))

    def mirror(self, photo_id: str, rating: int) -> Future:
        """Queues a write of a freshly set rating into the file's metadata."""
        return self._executor.submit(self._mirror, photo_id, rating)

    def _reconcile(self, photos: List[PhotoRecord], cached: Dict[str, RatingCacheEntry]) -> None:
        refreshed: Dict[str, int] = {}
        for photo in photos:
            if not self.metadata_sync.is_enabled():
                logger.info("Metadata sync disabled; stopping reconciliation")
                break
            try:
                rating = self._reconcile_one(photo, cached.get(photo.id))
            except Exception as e:  # why: one unreadable file must not stop the rest of the batch
                logger.error(f"Failed to refresh rating metadata for {photo.file_path}: {e}")
                continue
            if rating is not None:
                refreshed[photo.id] = rating
        self._publish(refreshed)

    def _reconcile_one(self, photo: PhotoRecord, cached: Optional[RatingCacheEntry]) -> Optional[int]:
        """Returns the rating when the value visible to listeners changed, else None."""
        current = self.rating_store.get(photo.id)
        if current is not None and current.source_modified_at == photo.modified_at:
            return None
        if cached is not None and current is None:
            # Cleared by the user since the scan.
            return None
        previous = current.rating if current is not None else 0

        if current is not None and current.source_modified_at is None and current.rating > 0:
            rating = clamp_rating(current.rating)
            if not self.metadata_sync.write_rating(photo.file_path, rating):
                return None
            info = os.stat(photo.file_path)
            photo.modified_at = mtime_millis(info)
            photo.size = info.st_size
            if not self.rating_store.upsert_if_unchanged(photo.id, current, rating, photo.modified_at):
                return None
            return rating if rating != previous else None

        # Raises when the file could not be read; the entry then stays as it is.
        metadata_rating = self.metadata_sync.fetch_rating(photo.file_path)
        if not self.metadata_sync.is_enabled():
            return None
        # No rating tag means the file is unrated, e.g. another tool cleared it.
        rating = clamp_rating(metadata_rating) if metadata_rating is not None else 0
        # A 0 entry records that the file was checked, so the next load skips it.
        # The user may have rated the photo while the tool was running; their value wins.
        if not self.rating_store.upsert_if_unchanged(photo.id, current, rating, photo.modified_at):
            return None
        return rating if rating != previous else None

    def _mirror(self, photo_id: str, rating: int) -> None:
        current = self.rating_store.get(photo_id)
        if current is None or current.rating != rating or current.source_modified_at is not None:
            # Superseded by a later update or already verified.
            return
        try:
            if not self.metadata_sync.write_rating(photo_id, rating):
                return
            modified_at = mtime_millis(os.stat(photo_id))
        except Exception as e:  # why: the entry keeps source_modified_at=None, so the next load retries
            logger.warning(f"Could not mirror rating for {photo_id}: {e}")
            return
        self.rating_store.upsert_if_unchanged(photo_id, current, rating, modified_at)

    def _publish(self, refreshed: Dict[str, int]) -> None:
        if not refreshed:
            return
        logger.info(f"Ratings refreshed from metadata for {len(refreshed)} photo(s)")
        if self.event_system is not None:
            self.event_system.publish(ratings_refreshed_event("RatingReconciler", refreshed))

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until everything queued so far has run. Returns False on timeout."""
        marker = self._executor.submit(lambda: None)
        try:
            marker.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
