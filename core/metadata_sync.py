"""
Star rating bridge between the ratings cache and the files' own metadata.

All exiftool traffic goes through one persistent process. Calls are bounded
by a task timeout and retried for transient failures (timeouts, the process
dying mid-task). Anything else counts against a failure tolerance; once it is
exceeded metadata sync is switched off for the rest of the process and the
exiftool process is torn down. There is no way back from disabled.
"""
import json
import logging
import math
import os
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from plugins.exiftool_process import (
    DEFAULT_TIMEOUT,
    ExifToolProcess,
    ExifToolTerminatedError,
)

logger = logging.getLogger(__name__)

RATING_TAG_CANDIDATES = ("Rating", "XMP:Rating", "RatingPercent")

_TRANSIENT_ERRORS = (TimeoutError, ExifToolTerminatedError)
_UPDATED_COUNT = re.compile(rb"(\d+) image files updated")


class ExifToolWriteError(RuntimeError):
    """exiftool answered but reported that no file was updated."""


def clamp_rating(value: float) -> int:
    if not math.isfinite(value):
        return 0
    return int(min(5, max(0, math.floor(value + 0.5))))


def normalize_rating(raw: Any) -> Optional[int]:
    """Map a raw metadata value onto 0..5.

    Percent-style values (> 5) are divided by 20. Missing or unparseable
    values give None ("no rating known"), never 0.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        numeric = float(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            numeric = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(numeric):
        return None
    if numeric > 5:
        numeric = numeric / 20
    return clamp_rating(numeric)


def extract_rating(tags: Dict[str, Any]) -> Optional[int]:
    for name in RATING_TAG_CANDIDATES:
        rating = normalize_rating(tags.get(name))
        if rating is not None:
            return rating
    return None


def is_transient_error(error: BaseException) -> bool:
    if isinstance(error, _TRANSIENT_ERRORS):
        return True
    message = str(error).lower()
    return (
        "process terminated before task completed" in message
        or "task timeout" in message
    )


class MetadataSync:
    def __init__(self,
                 tool_factory: Callable[[], Any] = ExifToolProcess,
                 enabled: bool = True,
                 task_timeout: float = DEFAULT_TIMEOUT,
                 task_retries: int = 2,
                 failure_tolerance: int = 0,
                 slow_volume_threshold: float = 2.0):
        self._tool_factory = tool_factory
        self._tool = None
        self._enabled = enabled
        self.task_timeout = task_timeout
        self.task_retries = max(0, task_retries)
        self.failure_tolerance = max(0, failure_tolerance)
        self.slow_volume_threshold = slow_volume_threshold
        self._consecutive_failures = 0
        self._lock = threading.RLock()
        self._slow_volume_cache: Dict[str, bool] = {}
        self._slow_volume_lock = threading.Lock()
        if not enabled:
            logger.info("Metadata sync disabled by configuration.")

    @classmethod
    def from_config(cls, config_manager, tool_factory: Callable[[], Any] = ExifToolProcess) -> "MetadataSync":
        return cls(
            tool_factory=tool_factory,
            enabled=bool(config_manager.get("metadata.enabled", True)),
            task_timeout=float(config_manager.get("metadata.task_timeout", DEFAULT_TIMEOUT)),
            task_retries=int(config_manager.get("metadata.task_retries", 2)),
            failure_tolerance=int(config_manager.get("metadata.failure_tolerance", 0)),
            slow_volume_threshold=float(config_manager.get("metadata.slow_volume_threshold", 2.0)),
        )

    def is_enabled(self) -> bool:
        with self._lock:
            return self._enabled

    def _ensure_tool(self):
        with self._lock:
            if not self._enabled:
                return None
            if self._tool is None:
                try:
                    self._tool = self._tool_factory()
                except Exception as e:  # why: any failure to bring the tool up trips the breaker
                    self._disable("initialize", e)
                    return None
            return self._tool

    def _disable(self, context: str, error: BaseException) -> None:
        with self._lock:
            if not self._enabled:
                return
            self._enabled = False
            tool, self._tool = self._tool, None
        logger.warning(f"Disabling metadata integration after persistent errors ({context}): {error}")
        if tool is not None and hasattr(tool, "terminate"):
            tool.terminate()

    def _run(self, context: str, args: List[str]) -> Optional[bytes]:
        """Executes one metadata task with retries and breaker bookkeeping.

        Returns None when sync is (or just became) disabled. Transient errors
        that survive every retry are re-raised without touching the breaker.
        """
        tool = self._ensure_tool()
        if tool is None:
            return None

        attempts = 1 + self.task_retries
        for attempt in range(1, attempts + 1):
            try:
                output = tool.execute(args, timeout=self.task_timeout)
            except Exception as e:  # why: classification below decides retry vs breaker
                if is_transient_error(e):
                    logger.debug(f"Transient metadata {context} failure (attempt {attempt}/{attempts}): {e}")
                    if attempt < attempts:
                        continue
                    raise
                self._record_failure(context, e)
                raise
            with self._lock:
                self._consecutive_failures = 0
            return output
        return None

    def _record_failure(self, context: str, error: BaseException) -> None:
        with self._lock:
            self._consecutive_failures += 1
            tripped = self._consecutive_failures > self.failure_tolerance
        if tripped:
            self._disable(context, error)

    def fetch_rating(self, file_path: str) -> Optional[int]:
        """Returns the rating in *file_path*'s metadata, or None if the file carries none.

        Unlike read_rating, a failed read raises, so callers can tell "no tag"
        apart from "could not look". Also None when sync is disabled.
        """
        if not self.is_enabled():
            return None
        output = self._run("read", ["-json", "-n", "-Rating", "-XMP:Rating", "-RatingPercent", file_path])
        if not output or not output.strip():
            return None
        try:
            data = json.loads(output)
        except ValueError as e:
            self._record_failure("read", e)
            raise
        if not data or not isinstance(data, list) or not isinstance(data[0], dict):
            return None
        return extract_rating(data[0])

    def read_rating(self, file_path: str) -> Optional[int]:
        """Returns the rating stored in *file_path*'s metadata, or None if there is none
        (or it could not be read)."""
        try:
            return self.fetch_rating(file_path)
        except Exception as e:  # why: read failures degrade to "no rating found"
            logger.warning(f"Failed to read rating metadata for {file_path}: {e}")
            return None

    def write_rating(self, file_path: str, rating: int) -> bool:
        """Writes *rating* into the file's metadata in place (no backup copy).

        Returns False when the write was skipped (sync disabled, slow volume).
        Raises on failure after updating the breaker state.
        """
        if not self.is_enabled():
            return False
        if self.is_slow_volume(file_path):
            return False

        normalized = clamp_rating(rating)
        args = [
            f"-Rating={normalized}",
            f"-RatingPercent={normalized * 20}",
            "-overwrite_original",
            file_path,
        ]
        try:
            output = self._run("write", args)
            if output is None:
                return False
            updated = _UPDATED_COUNT.search(output)
            if updated is None or int(updated.group(1)) == 0:
                error = ExifToolWriteError(
                    f"exiftool reported no update: {output.decode('utf-8', 'replace').strip()}"
                )
                self._record_failure("write", error)
                raise error
        except Exception as e:
            logger.error(f"Failed to write rating metadata to {file_path}: {e}")
            raise
        logger.info(f"Wrote rating {normalized} to {file_path}.")
        return True

    def is_slow_volume(self, file_path: str) -> bool:
        """Probe how long a stat on *file_path* takes. The verdict is cached per
        directory; the first probe wins. A stat that fails is not "slow"."""
        directory = os.path.dirname(file_path)
        with self._slow_volume_lock:
            cached = self._slow_volume_cache.get(directory)
        if cached is not None:
            return cached

        responded = threading.Event()
        failed = threading.Event()

        def _probe():
            try:
                os.stat(file_path)
            except OSError:
                failed.set()
            finally:
                responded.set()

        start = time.monotonic()
        threading.Thread(target=_probe, daemon=True).start()
        finished = responded.wait(self.slow_volume_threshold)
        elapsed = time.monotonic() - start
        slow = (not finished or elapsed >= self.slow_volume_threshold) and not failed.is_set()

        with self._slow_volume_lock:
            slow = self._slow_volume_cache.setdefault(directory, slow)
        if slow:
            logger.info(f"Skipping metadata writes on slow volume {directory} ({elapsed * 1000:.0f}ms)")
        return slow

    def shutdown(self) -> None:
        with self._lock:
            tool, self._tool = self._tool, None
        if tool is not None and hasattr(tool, "terminate"):
            tool.terminate()
