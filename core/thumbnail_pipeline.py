import logging
import os
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Set, Tuple

from core.capabilities import CapabilityRegistry
from core.event_system import EventSystem, thumbnails_ready_event
from core.records import ThumbnailJob, TranscodeRule, is_fresh, path_digest, remove_quietly
from core.transcode_cache import TranscodeCache
from network.protocol import PhotoRecord, file_url, thumbnail_url
from plugins.base_plugin import BasePlugin, PluginRegistry, is_decode_capability_error

logger = logging.getLogger(__name__)

THUMBNAILS_DIRNAME = "thumbnails"


@dataclass
class ThumbnailState:
    base_path: str
    retina_path: str
    base_fresh: bool
    retina_fresh: bool

    @property
    def is_fresh(self) -> bool:
        return self.base_fresh and self.retina_fresh


class ThumbnailPipeline:
    """
    Keeps two WebP renditions per photo (base and retina width) in
    ``<cache>/thumbnails`` and regenerates them only when stale.

    Jobs go into one FIFO queue and run on at most ``concurrency`` pool
    threads. A job for a base path that is already queued or running is
    dropped. Finished jobs publish THUMBNAILS_READY when at least one
    rendition ended up fresh; total failures are only logged.
    """

    def __init__(self,
                 cache_dir: str,
                 plugin_registry: PluginRegistry,
                 transcode_cache: TranscodeCache,
                 capabilities: CapabilityRegistry,
                 event_system: Optional[EventSystem] = None,
                 base_width: int = 320,
                 retina_width: int = 480,
                 quality: int = 80,
                 concurrency: int = 2):
        self.thumbnails_dir = os.path.join(cache_dir, THUMBNAILS_DIRNAME)
        self.plugin_registry = plugin_registry
        self.transcode_cache = transcode_cache
        self.capabilities = capabilities
        self.event_system = event_system
        self.base_width = base_width
        self.retina_width = retina_width
        self.quality = quality
        self.concurrency = max(1, concurrency)

        self._queue: Deque[ThumbnailJob] = deque()
        self._enqueued_targets: Set[str] = set()
        self._active = 0
        self._closed = False
        self._cond = threading.Condition()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="thumbnail")

        # Instrumentation hooks, called on the worker thread while the job holds its slot.
        self.on_job_started: Optional[Callable[[ThumbnailJob], None]] = None
        self.on_job_finished: Optional[Callable[[ThumbnailJob, bool], None]] = None

    @classmethod
    def from_config(cls, config_manager, plugin_registry, transcode_cache, capabilities, event_system=None):
        return cls(
            cache_dir=config_manager.cache_dir,
            plugin_registry=plugin_registry,
            transcode_cache=transcode_cache,
            capabilities=capabilities,
            event_system=event_system,
            base_width=int(config_manager.get("thumbnails.base_width", 320)),
            retina_width=int(config_manager.get("thumbnails.retina_width", 480)),
            quality=int(config_manager.get("thumbnails.quality", 80)),
            concurrency=int(config_manager.get("thumbnails.concurrency", 2)),
        )

    def rendition_path(self, source_path: str, width: int) -> str:
        return os.path.join(self.thumbnails_dir, f"{path_digest(source_path)}-w{width}.webp")

    def resolve_state(self, source_path: str, source_modified_at: int) -> ThumbnailState:
        base_path = self.rendition_path(source_path, self.base_width)
        retina_path = self.rendition_path(source_path, self.retina_width)
        return ThumbnailState(
            base_path=base_path,
            retina_path=retina_path,
            base_fresh=is_fresh(base_path, source_modified_at),
            retina_fresh=is_fresh(retina_path, source_modified_at),
        )

    @staticmethod
    def rendition_urls(state: ThumbnailState, fallback_url: str) -> Tuple[str, str]:
        """URLs for the two renditions. A stale rendition is stood in for by the other one, then by *fallback_url*."""
        base_url = thumbnail_url(state.base_path) if state.base_fresh else None
        retina_url = thumbnail_url(state.retina_path) if state.retina_fresh else None
        base_url = base_url or retina_url or fallback_url
        return base_url, retina_url or base_url

    def schedule_if_stale(self, photo: PhotoRecord) -> bool:
        """Points *photo*'s thumbnail URLs at whatever is fresh now and queues a job
        if any rendition is stale. Returns True if a job was queued."""
        state = self.resolve_state(photo.file_path, photo.modified_at)
        photo.thumbnail_url, photo.thumbnail_retina_url = self.rendition_urls(
            state, photo.file_url or file_url(photo.file_path)
        )
        if state.is_fresh:
            return False

        return self._enqueue(ThumbnailJob(
            source_path=photo.file_path,
            base_path=state.base_path,
            retina_path=state.retina_path,
            source_modified_at=photo.modified_at,
        ))

    def _enqueue(self, job: ThumbnailJob) -> bool:
        with self._cond:
            if self._closed or job.base_path in self._enqueued_targets:
                return False
            self._enqueued_targets.add(job.base_path)
            self._queue.append(job)
        self._process_queue()
        return True

    def _process_queue(self) -> None:
        with self._cond:
            while self._active < self.concurrency and self._queue and not self._closed:
                job = self._queue.popleft()
                self._active += 1
                self._executor.submit(self._execute, job)

    def _execute(self, job: ThumbnailJob) -> None:
        succeeded = False
        try:
            self._call_hook(self.on_job_started, job)
            try:
                self._run_job(job)
            except Exception as e:
                logger.error(f"Failed to generate thumbnails for {job.source_path}: {e}", exc_info=True)
            succeeded = self._on_job_done(job)
        finally:
            self._call_hook(self.on_job_finished, job, succeeded)
            with self._cond:
                self._enqueued_targets.discard(job.base_path)
                self._active -= 1
                self._cond.notify_all()
            self._process_queue()

    def _call_hook(self, hook, *args) -> None:
        if hook is None:
            return
        try:
            hook(*args)
        except Exception as e:
            logger.warning(f"Thumbnail pipeline hook failed: {e}")

    def _run_job(self, job: ThumbnailJob) -> None:
        plugin = self.plugin_registry.get_plugin_for_path(job.source_path)
        if plugin is None:
            raise ValueError(f"No plugin found for {job.source_path}")

        targets: List[Tuple[int, str]] = []
        if not is_fresh(job.base_path, job.source_modified_at):
            targets.append((self.base_width, job.base_path))
        if not is_fresh(job.retina_path, job.source_modified_at):
            targets.append((self.retina_width, job.retina_path))
        if not targets:
            return

        rule = plugin.transcode_rule
        render_source = job.source_path
        if rule is not None and self._needs_transcode(plugin, rule, job.source_path):
            render_source = self.transcode_cache.ensure(job.source_path, job.source_modified_at, rule)

        try:
            plugin.generate_renditions(render_source, targets, self.quality)
        except Exception as e:
            if rule is None or render_source != job.source_path or not is_decode_capability_error(e):
                raise
            logger.warning(f"Decoder failed on {job.source_path} ({e}); retrying from transcoded copy")
            self.capabilities.mark_unavailable(rule.capability)
            render_source = self.transcode_cache.ensure(job.source_path, job.source_modified_at, rule)
            plugin.generate_renditions(render_source, targets, self.quality)

    def _needs_transcode(self, plugin: BasePlugin, rule: TranscodeRule, source_path: str) -> bool:
        """Probes the first file of a format family once; the verdict is kept in the capability registry."""
        known = self.capabilities.get(rule.capability)
        if known is not None:
            return not known
        try:
            plugin.probe(source_path)
        except Exception as e:
            if not is_decode_capability_error(e):
                raise
            self.capabilities.mark_unavailable(rule.capability)
            return True
        self.capabilities.record(rule.capability, True)
        return False

    def _on_job_done(self, job: ThumbnailJob) -> bool:
        base_fresh = is_fresh(job.base_path, job.source_modified_at)
        retina_fresh = is_fresh(job.retina_path, job.source_modified_at)
        if not base_fresh and not retina_fresh:
            logger.error(f"No thumbnail could be produced for {job.source_path}")
            return False

        state = ThumbnailState(job.base_path, job.retina_path, base_fresh, retina_fresh)
        base_url, retina_url = self.rendition_urls(state, file_url(job.source_path))
        logger.debug(f"Thumbnails ready for {os.path.basename(job.source_path)}")
        if self.event_system is not None:
            self.event_system.publish(
                thumbnails_ready_event("ThumbnailPipeline", job.source_path, base_url, retina_url)
            )
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no job is queued or running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and self._active == 0, timeout)

    def purge(self, source_path: str) -> None:
        """Deletes both renditions of *source_path*."""
        remove_quietly(self.rendition_path(source_path, self.base_width))
        remove_quietly(self.rendition_path(source_path, self.retina_width))

    def shutdown(self, wait: bool = True) -> None:
        logger.info("ThumbnailPipeline: Shutting down.")
        with self._cond:
            self._closed = True
            dropped = len(self._queue)
            for job in self._queue:
                self._enqueued_targets.discard(job.base_path)
            self._queue.clear()
            self._cond.notify_all()
        if dropped:
            logger.info(f"ThumbnailPipeline: dropped {dropped} queued job(s)")
        self._executor.shutdown(wait=wait)
        logger.info("ThumbnailPipeline: Shutdown complete.")
