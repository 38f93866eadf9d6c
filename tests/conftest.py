"""
Shared pytest fixtures for Pickshot tests.
"""
import os
import sys
import threading

# Ensure project root is on path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from PIL import Image

import core.rating_store as _store_module
from core.capabilities import CapabilityRegistry
from core.event_system import EventSystem
from core.metadata_sync import clamp_rating
from core.photo_library import PhotoLibrary
from core.rating_store import RatingStore
from core.thumbnail_pipeline import ThumbnailPipeline
from core.transcode_cache import TranscodeCache
from plugins.base_plugin import PluginRegistry


class MockConfigManager:
    """Minimal ConfigManager substitute that accepts a plain dict.

    Only implements the interface used by the library wiring (``get`` plus
    the ``cache_dir`` / ``data_dir`` properties).
    """

    def __init__(self, overrides: dict | None = None):
        self._cfg: dict = {
            "cache_dir": None,    # must be overridden per fixture
            "data_dir": None,
            "scan": {"hidden_prefix": "."},
            "thumbnails": {"base_width": 320, "retina_width": 480, "quality": 80, "concurrency": 2},
            "transcode": {"quality": 92, "worker_timeout": 30.0},
            "metadata": {"enabled": True, "task_timeout": 5.0, "task_retries": 2,
                         "failure_tolerance": 0, "slow_volume_threshold": 2.0},
        }
        if overrides:
            self._cfg.update(overrides)

    def get(self, key: str, default=None):
        keys = key.split(".")
        val = self._cfg
        for k in keys:
            if isinstance(val, dict):
                val = val.get(k)
            else:
                return default
        return val if val is not None else default

    @property
    def cache_dir(self) -> str:
        return self._cfg["cache_dir"]

    @property
    def data_dir(self) -> str:
        return self._cfg["data_dir"]


class FakeMetadataSync:
    """In-memory stand-in for MetadataSync: ratings keyed by file path."""

    def __init__(self, ratings: dict | None = None, enabled: bool = True, unreadable=(), on_read=None):
        self.ratings = dict(ratings or {})
        self.enabled = enabled
        self.unreadable = set(unreadable)
        self.on_read = on_read
        self.reads: list[str] = []
        self.writes: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def is_enabled(self) -> bool:
        return self.enabled

    def fetch_rating(self, file_path: str):
        with self._lock:
            self.reads.append(file_path)
        if self.on_read is not None:
            self.on_read(file_path)
        if file_path in self.unreadable:
            raise OSError(f"cannot read metadata of {file_path}")
        return self.ratings.get(file_path)

    def read_rating(self, file_path: str):
        try:
            return self.fetch_rating(file_path)
        except OSError:
            return None

    def write_rating(self, file_path: str, rating: int) -> bool:
        if not self.enabled:
            return False
        with self._lock:
            self.writes.append((file_path, rating))
            self.ratings[file_path] = clamp_rating(rating)
        # A real metadata write rewrites the file and bumps its mtime.
        st = os.stat(file_path)
        os.utime(file_path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
        return True

    def shutdown(self) -> None:
        pass


@pytest.fixture()
def tmp_env(tmp_path):
    """Clean, isolated test environment with a fresh ratings store.

    Yields a dict with:
      tmp_path  : pathlib.Path temp directory (unique per test)
      cache_dir : pathlib.Path cache subdirectory
      data_dir  : pathlib.Path application data subdirectory
      db_path   : str path to the SQLite database
      store     : opened RatingStore instance
      config    : MockConfigManager configured for this environment

    The global RatingStore singleton is reset before and after each test
    so tests never share state through the module-level singleton.
    """
    _store_module._rating_store = None

    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    db_path = str(data_dir / "pickshot" / "ratings.db")

    store = RatingStore(db_path)
    store.open()
    config = MockConfigManager({"cache_dir": str(cache_dir), "data_dir": str(data_dir)})

    yield {
        "tmp_path": tmp_path,
        "cache_dir": cache_dir,
        "data_dir": data_dir,
        "db_path": db_path,
        "store": store,
        "config": config,
    }

    store.close()
    _store_module._rating_store = None


@pytest.fixture()
def sample_images(tmp_env):
    """Creates 5 small JPEG images inside tmp_env and returns their paths."""
    img_dir = tmp_env["tmp_path"] / "images"
    img_dir.mkdir()
    paths: list[str] = []
    for i in range(5):
        path = img_dir / f"image_{i:04d}.jpg"
        color = (i * 12 % 255, i * 7 % 255, i * 3 % 255)
        Image.new("RGB", (800, 600), color=color).save(str(path), "JPEG")
        paths.append(str(path))
    return paths


@pytest.fixture()
def make_library(tmp_env):
    """Factory for a fully wired PhotoLibrary backed by tmp_env and a fake metadata sync."""
    libraries = []

    def _make(metadata_sync=None, concurrency: int = 2) -> PhotoLibrary:
        capabilities = CapabilityRegistry()
        registry = PluginRegistry().load_default_plugins()
        events = EventSystem()
        transcode_cache = TranscodeCache(str(tmp_env["cache_dir"]), capabilities)
        pipeline = ThumbnailPipeline(
            str(tmp_env["cache_dir"]), registry, transcode_cache, capabilities,
            event_system=events, concurrency=concurrency,
        )
        library = PhotoLibrary(
            rating_store=tmp_env["store"],
            metadata_sync=metadata_sync or FakeMetadataSync(),
            plugin_registry=registry,
            transcode_cache=transcode_cache,
            thumbnail_pipeline=pipeline,
            event_system=events,
        )
        libraries.append(library)
        return library

    yield _make

    for library in libraries:
        library.shutdown()
