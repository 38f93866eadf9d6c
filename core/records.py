# core/records.py
"""Plain dataclasses shared by the store, the caches and the pipeline."""
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


def now_millis() -> int:
    return int(time.time() * 1000)


def mtime_millis(stat_result: os.stat_result) -> int:
    """Integer epoch millis of a stat result's modification time."""
    return stat_result.st_mtime_ns // 1_000_000


def path_digest(source_path: str) -> str:
    """Cache key for a source file. Derived from the path, never the content."""
    return hashlib.sha1(source_path.encode("utf-8")).hexdigest()


def is_fresh(cache_path: str, source_modified_at: int) -> bool:
    """A cached artifact is fresh if it exists, is non-empty and is not older
    than its source."""
    try:
        st = os.stat(cache_path)
    except OSError:
        return False
    return st.st_size > 0 and mtime_millis(st) >= source_modified_at


def remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


@dataclass
class RatingCacheEntry:
    rating: int
    updated_at: int
    source_modified_at: Optional[int] = None  # None: verify against metadata on next load


@dataclass
class ThumbnailJob:
    """Queued or running rendition work; deduplicated by ``base_path``."""
    source_path: str
    base_path: str
    retina_path: str
    source_modified_at: int


@dataclass(frozen=True)
class TranscodeRule:
    """Static per-extension decode policy.

    ``capability`` names the flag in the CapabilityRegistry that records
    whether the in-process decoder can be trusted for this format family.
    """
    capability: str
    target_extension: str = "jpg"
    target_format: str = "JPEG"
    quality: int = 92
