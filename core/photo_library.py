import logging
import os
import sqlite3
from typing import Any, Callable, Optional

from core.capabilities import CapabilityRegistry
from core.directory_scanner import DirectoryScanner
from core.event_system import EventSystem
from core.file_ops import InvalidNameError, rename_file, trash_file, validate_new_name
from core.metadata_sync import MetadataSync
from core.rating_reconciler import RatingReconciler
from core.rating_store import RatingStore, get_rating_store, resolve_store_path
from core.thumbnail_pipeline import ThumbnailPipeline
from core.transcode_cache import TranscodeCache
from network.protocol import ActionResult, RenameResult, ScanResult
from plugins.base_plugin import PluginRegistry
from plugins.exiftool_process import ExifToolProcess

logger = logging.getLogger(__name__)


class PhotoLibrary:
    """
    Entry point for callers: scanning, rating, deleting and renaming photos.

    Results are plain protocol objects; thumbnail completions and rating
    refreshes arrive separately on ``events``.
    """

    def __init__(self,
                 rating_store: RatingStore,
                 metadata_sync: MetadataSync,
                 plugin_registry: PluginRegistry,
                 transcode_cache: TranscodeCache,
                 thumbnail_pipeline: ThumbnailPipeline,
                 event_system: EventSystem,
                 hidden_prefix: str = "."):
        self.rating_store = rating_store
        self.metadata_sync = metadata_sync
        self.plugin_registry = plugin_registry
        self.transcode_cache = transcode_cache
        self.thumbnail_pipeline = thumbnail_pipeline
        self.events = event_system
        self.reconciler = RatingReconciler(rating_store, metadata_sync, event_system)
        self.scanner = DirectoryScanner(
            plugin_registry.get_supported_formats(),
            thumbnail_pipeline=thumbnail_pipeline,
            rating_store=rating_store,
            reconciler=self.reconciler,
            hidden_prefix=hidden_prefix,
        )

    @classmethod
    def from_config(cls, config_manager, rating_store: Optional[RatingStore] = None,
                    tool_factory: Callable[[], Any] = ExifToolProcess) -> "PhotoLibrary":
        """Wires every component from configuration. Raises RatingStoreOpenError if the store cannot be opened."""
        if rating_store is None:
            rating_store = get_rating_store(resolve_store_path(config_manager.data_dir))
        capabilities = CapabilityRegistry()
        plugin_registry = PluginRegistry().load_default_plugins(
            transcode_quality=int(config_manager.get("transcode.quality", 92))
        )
        event_system = EventSystem()
        transcode_cache = TranscodeCache(
            config_manager.cache_dir,
            capabilities,
            worker_timeout=float(config_manager.get("transcode.worker_timeout", 120.0)),
        )
        pipeline = ThumbnailPipeline.from_config(
            config_manager, plugin_registry, transcode_cache, capabilities, event_system
        )
        return cls(
            rating_store=rating_store,
            metadata_sync=MetadataSync.from_config(config_manager, tool_factory),
            plugin_registry=plugin_registry,
            transcode_cache=transcode_cache,
            thumbnail_pipeline=pipeline,
            event_system=event_system,
            hidden_prefix=config_manager.get("scan.hidden_prefix", "."),
        )

    def scan(self, directory: str) -> ScanResult:
        return self.scanner.load(directory)

    def update_rating(self, photo_id: str, rating: int) -> ActionResult:
        """Sets a 1-5 rating, or clears it with 0 (the stored entry is removed)."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 0 <= rating <= 5:
            return ActionResult(success=False, message=f"Rating must be a whole number from 0 to 5, got {rating!r}")
        try:
            if rating > 0:
                # No source_modified_at: the file's metadata has not seen this value yet.
                self.rating_store.upsert(photo_id, rating)
                if self.metadata_sync.is_enabled():
                    self.reconciler.mirror(photo_id, rating)
            else:
                self.rating_store.delete(photo_id)
        except (sqlite3.Error, RuntimeError) as e:
            logger.error(f"Failed to update rating for {photo_id}: {e}")
            return ActionResult(success=False, message=str(e))
        return ActionResult(success=True)

    def delete_source_file(self, photo_id: str) -> ActionResult:
        """Moves the photo to the trash and forgets its rating and renditions."""
        try:
            trash_file(photo_id)
        except Exception as e:  # why: send2trash raises platform-specific exceptions beyond OSError
            logger.error(f"Failed to move photo to trash {photo_id}: {e}")
            return ActionResult(success=False, message=str(e))

        try:
            self.rating_store.delete(photo_id)
        except (sqlite3.Error, RuntimeError) as e:
            logger.warning(f"Trashed {photo_id} but could not delete its rating: {e}")
        self._purge_caches(photo_id)
        return ActionResult(success=True)

    def rename_source_file(self, photo_id: str, new_name: str) -> RenameResult:
        try:
            target_path = validate_new_name(photo_id, new_name)
        except InvalidNameError as e:
            return RenameResult(success=False, message=str(e))

        try:
            new_path = rename_file(photo_id, target_path)
            if new_path is not None:
                try:
                    self.rating_store.rename_id(photo_id, new_path)
                except (sqlite3.Error, RuntimeError):
                    # Keep file and store pointing at the same id.
                    os.rename(new_path, photo_id)
                    raise
                self._purge_caches(photo_id)
            photo = self.scanner.build_record(new_path or photo_id)
        except (OSError, sqlite3.Error, RuntimeError) as e:
            logger.error(f"Failed to rename photo {photo_id} to {new_name!r}: {e}")
            return RenameResult(success=False, message=str(e))
        return RenameResult(success=True, photo=photo)

    def _purge_caches(self, source_path: str) -> None:
        self.thumbnail_pipeline.purge(source_path)
        rule = self.plugin_registry.get_transcode_rule(source_path)
        if rule is not None:
            self.transcode_cache.purge(source_path, rule)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Waits for queued thumbnail and rating work to drain."""
        return self.thumbnail_pipeline.wait_idle(timeout) and self.reconciler.wait_idle(timeout)

    def shutdown(self) -> None:
        logger.info("PhotoLibrary: Shutting down.")
        self.reconciler.shutdown()
        self.thumbnail_pipeline.shutdown()
        self.transcode_cache.shutdown()
        self.metadata_sync.shutdown()
        logger.info("PhotoLibrary: Shutdown complete.")
