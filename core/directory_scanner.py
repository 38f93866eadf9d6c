import os
import logging
from typing import Dict, Iterable, List, Optional

from core.records import RatingCacheEntry, mtime_millis
from network.protocol import PhotoRecord, ScanResult, file_url

logger = logging.getLogger(__name__)


def needs_reconciliation(photo: PhotoRecord, cached: Optional[RatingCacheEntry]) -> bool:
    """True unless the cached entry was verified against this exact file mtime."""
    return cached is None or cached.source_modified_at is None or cached.source_modified_at != photo.modified_at


class DirectoryScanner:
    """Handles scanning directories for supported image files."""

    def __init__(self, supported_extensions: Iterable[str], thumbnail_pipeline=None,
                 rating_store=None, reconciler=None, hidden_prefix: str = "."):
        self._supported_extensions = {ext.lower() for ext in supported_extensions}
        self.thumbnail_pipeline = thumbnail_pipeline
        self.rating_store = rating_store
        self.reconciler = reconciler
        self.hidden_prefix = hidden_prefix

    def is_hidden(self, name: str) -> bool:
        return bool(self.hidden_prefix) and name.startswith(self.hidden_prefix)

    def is_supported_file(self, name: str) -> bool:
        """Check if the file name carries a supported extension."""
        _, ext = os.path.splitext(name)
        return ext.lower() in self._supported_extensions

    def scan(self, root: str) -> List[PhotoRecord]:
        """
        Iterative depth-first walk below *root*. Hidden entries are skipped
        together with their subtrees, symlinked directories are not followed,
        unreadable directories and files that cannot be stat'ed are skipped.
        Order of the result is unspecified.
        """
        photos: List[PhotoRecord] = []
        if not os.path.isdir(root):
            logger.warning(f"Directory to scan does not exist or is not a directory: {root}")
            return photos

        stack = [root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = list(it)
            except OSError as e:
                logger.debug(f"Skipping unreadable directory {current}: {e}")
                continue

            for entry in entries:
                if self.is_hidden(entry.name):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        stack.append(entry.path)
                        continue
                    if not entry.is_file():
                        continue
                except OSError:
                    continue

                if not self.is_supported_file(entry.name):
                    continue

                try:
                    photos.append(self.build_record(entry.path, entry.name))
                except OSError as e:
                    logger.debug(f"Skipping unreadable file {entry.path}: {e}")

        logger.info(f"Scan of {root} found {len(photos)} photo(s)")
        return photos

    def build_record(self, path: str, name: Optional[str] = None) -> PhotoRecord:
        """Stats *path* and builds its PhotoRecord, scheduling thumbnails if they are stale.

        Raises OSError when the file cannot be stat'ed.
        """
        info = os.stat(path)
        source_url = file_url(path)
        photo = PhotoRecord(
            id=path,
            name=name or os.path.basename(path),
            file_path=path,
            file_url=source_url,
            thumbnail_url=source_url,
            thumbnail_retina_url=source_url,
            size=info.st_size,
            modified_at=mtime_millis(info),
        )
        if self.thumbnail_pipeline is not None:
            self.thumbnail_pipeline.schedule_if_stale(photo)
        return photo

    def load(self, root: str) -> ScanResult:
        """Scan *root*, join the result with cached ratings and queue stale ratings for reconciliation."""
        directory = os.path.abspath(root)
        photos = self.scan(directory)
        cached: Dict[str, RatingCacheEntry] = self.rating_store.get_all() if self.rating_store else {}

        ratings: Dict[str, int] = {}
        needs_refresh: List[PhotoRecord] = []
        for photo in photos:
            entry = cached.get(photo.id)
            if entry is not None and entry.rating > 0:
                ratings[photo.id] = entry.rating
            if needs_reconciliation(photo, entry):
                needs_refresh.append(photo)

        if needs_refresh and self.reconciler is not None:
            logger.info(f"Queueing {len(needs_refresh)} photo(s) for metadata reconciliation")
            self.reconciler.reconcile(needs_refresh, cached)

        return ScanResult(directory=directory, photos=photos, ratings=ratings)
