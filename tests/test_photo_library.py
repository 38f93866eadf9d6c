"""End-to-end tests for core.photo_library using a real store and an in-memory metadata sync."""
import os
import sqlite3
from unittest.mock import patch, MagicMock

import pytest

from conftest import FakeMetadataSync, MockConfigManager
from core.event_system import EventType
from core.photo_library import PhotoLibrary
from core.records import mtime_millis


def _refreshed(library):
    merged = {}
    for event in library.events.get_event_history(EventType.RATINGS_REFRESHED):
        merged.update(event.payload.ratings)
    return merged


class TestUpdateRating:
    def test_update_then_clear_removes_entry(self, make_library, tmp_env):
        library = make_library(FakeMetadataSync(enabled=False))
        assert library.update_rating("p1", 4).success
        assert tmp_env["store"].get_all()["p1"].rating == 4

        assert library.update_rating("p1", 0).success
        assert "p1" not in tmp_env["store"].get_all()

    @pytest.mark.parametrize("rating", [-1, 6, 2.5, None, True])
    def test_invalid_rating_is_rejected(self, make_library, tmp_env, rating):
        result = make_library().update_rating("p1", rating)
        assert result.success is False
        assert result.message
        assert tmp_env["store"].get_all() == {}

    def test_rating_is_mirrored_into_metadata(self, make_library, tmp_env, sample_images):
        sync = FakeMetadataSync()
        library = make_library(sync)
        path = sample_images[0]

        assert library.update_rating(path, 5).success
        assert library.wait_idle(10)

        assert sync.writes == [(path, 5)]
        entry = tmp_env["store"].get(path)
        assert entry.rating == 5
        assert entry.source_modified_at == mtime_millis(os.stat(path))

    def test_unmirrored_rating_stays_unverified(self, make_library, tmp_env):
        library = make_library(FakeMetadataSync(enabled=False))
        library.update_rating("/nowhere/p.jpg", 3)
        assert library.wait_idle(10)
        assert tmp_env["store"].get("/nowhere/p.jpg").source_modified_at is None


class TestScan:
    def test_scan_returns_photos_and_schedules_thumbnails(self, make_library, sample_images):
        library = make_library(FakeMetadataSync(enabled=False))
        result = library.scan(os.path.dirname(sample_images[0]))

        assert sorted(p.id for p in result.photos) == sorted(sample_images)
        assert result.ratings == {}
        assert library.wait_idle(30)
        ready = {e.payload.id for e in library.events.get_event_history(EventType.THUMBNAILS_READY)}
        assert ready == set(sample_images)

    def test_reads_ratings_from_metadata(self, make_library, tmp_env, sample_images):
        sync = FakeMetadataSync({sample_images[0]: 5, sample_images[1]: 100})
        library = make_library(sync)
        library.scan(os.path.dirname(sample_images[0]))
        assert library.wait_idle(30)

        entries = tmp_env["store"].get_all()
        assert entries[sample_images[0]].rating == 5
        assert entries[sample_images[1]].rating == 5
        assert entries[sample_images[2]].rating == 0
        for path in sample_images:
            assert entries[path].source_modified_at == mtime_millis(os.stat(path))
        assert _refreshed(library) == {sample_images[0]: 5, sample_images[1]: 5}

        # A second scan finds everything verified and leaves the tool alone.
        reads = len(sync.reads)
        library.scan(os.path.dirname(sample_images[0]))
        assert library.wait_idle(30)
        assert len(sync.reads) == reads

    def test_unverified_rating_is_written_back(self, make_library, tmp_env, sample_images):
        path = sample_images[2]
        tmp_env["store"].upsert(path, 3)
        sync = FakeMetadataSync(enabled=True)
        library = make_library(sync)

        result = library.scan(os.path.dirname(path))
        assert result.ratings == {path: 3}
        assert library.wait_idle(30)

        assert (path, 3) in sync.writes
        entry = tmp_env["store"].get(path)
        assert entry.rating == 3
        assert entry.source_modified_at == mtime_millis(os.stat(path))
        assert path not in _refreshed(library)

    def test_missing_metadata_tag_clears_rating(self, make_library, tmp_env, sample_images):
        path = sample_images[0]
        tmp_env["store"].upsert(path, 4, 1)  # verified against an older mtime
        library = make_library(FakeMetadataSync())
        library.scan(os.path.dirname(path))
        assert library.wait_idle(30)

        entry = tmp_env["store"].get(path)
        assert entry.rating == 0
        assert entry.source_modified_at == mtime_millis(os.stat(path))
        assert _refreshed(library)[path] == 0

    def test_unreadable_metadata_leaves_entry_alone(self, make_library, tmp_env, sample_images):
        path = sample_images[0]
        tmp_env["store"].upsert(path, 4, 1)
        before = tmp_env["store"].get(path)
        library = make_library(FakeMetadataSync(unreadable=[path]))
        library.scan(os.path.dirname(path))
        assert library.wait_idle(30)

        assert tmp_env["store"].get(path) == before
        assert path not in _refreshed(library)

    def test_rating_set_during_metadata_read_is_kept(self, make_library, tmp_env, sample_images):
        path = sample_images[0]
        tmp_env["store"].upsert(path, 2, 1)
        libraries = []

        def rate_while_reading(file_path):
            if file_path == path:
                libraries[0].update_rating(path, 5)

        sync = FakeMetadataSync({path: 2}, on_read=rate_while_reading)
        library = make_library(sync)
        libraries.append(library)
        library.scan(os.path.dirname(path))
        # The mirror write is queued from inside the reconciliation batch.
        assert library.wait_idle(30)
        assert library.wait_idle(30)

        entry = tmp_env["store"].get(path)
        assert entry.rating == 5
        assert sync.writes == [(path, 5)]
        assert entry.source_modified_at == mtime_millis(os.stat(path))

    def test_disabled_sync_leaves_store_alone(self, make_library, tmp_env, sample_images):
        library = make_library(FakeMetadataSync({sample_images[0]: 5}, enabled=False))
        library.scan(os.path.dirname(sample_images[0]))
        assert library.wait_idle(30)
        assert tmp_env["store"].get_all() == {}


class TestDelete:
    def _patch_send2trash(self, side_effect):
        mock_fn = MagicMock(side_effect=side_effect)
        return patch("core.file_ops._get_send2trash", return_value=mock_fn), mock_fn

    def test_trashes_file_and_forgets_it(self, make_library, tmp_env, sample_images):
        library = make_library(FakeMetadataSync(enabled=False))
        path = sample_images[0]
        library.scan(os.path.dirname(path))
        assert library.wait_idle(30)
        library.update_rating(path, 4)

        patcher, mock_fn = self._patch_send2trash(os.remove)
        with patcher:
            result = library.delete_source_file(path)

        assert result.success is True
        mock_fn.assert_called_once_with(path)
        assert not os.path.exists(path)
        assert tmp_env["store"].get(path) is None
        assert not os.path.exists(library.thumbnail_pipeline.rendition_path(path, 320))

    def test_trash_failure_is_reported(self, make_library, tmp_env, sample_images):
        library = make_library(FakeMetadataSync(enabled=False))
        path = sample_images[0]
        library.update_rating(path, 2)

        def fail(p):
            raise OSError("permission denied")

        patcher, _ = self._patch_send2trash(fail)
        with patcher:
            result = library.delete_source_file(path)

        assert result.success is False
        assert "permission denied" in result.message
        assert os.path.exists(path)
        assert tmp_env["store"].get(path).rating == 2


class TestRename:
    def test_rename_moves_rating_and_renditions(self, make_library, tmp_env, sample_images):
        library = make_library(FakeMetadataSync(enabled=False))
        old = sample_images[0]
        library.scan(os.path.dirname(old))
        assert library.wait_idle(30)
        tmp_env["store"].upsert(old, 5, 77)
        before = tmp_env["store"].get(old)

        result = library.rename_source_file(old, "  keeper.jpg ")

        new = os.path.join(os.path.dirname(old), "keeper.jpg")
        assert result.success is True
        assert result.photo.id == new
        assert result.photo.name == "keeper.jpg"
        assert os.path.exists(new) and not os.path.exists(old)
        entries = tmp_env["store"].get_all()
        assert old not in entries
        assert entries[new] == before
        assert not os.path.exists(library.thumbnail_pipeline.rendition_path(old, 320))
        assert library.wait_idle(30)

    @pytest.mark.parametrize("name", ["", "   ", ".", "..", "a/b.jpg", "a\\b.jpg"])
    def test_invalid_names(self, make_library, sample_images, name):
        result = make_library().rename_source_file(sample_images[0], name)
        assert result.success is False
        assert result.message
        assert os.path.exists(sample_images[0])

    def test_conflict(self, make_library, sample_images):
        result = make_library().rename_source_file(sample_images[0], os.path.basename(sample_images[1]))
        assert result.success is False
        assert os.path.exists(sample_images[0])

    def test_missing_file(self, make_library, tmp_env):
        result = make_library().rename_source_file(str(tmp_env["tmp_path"] / "gone.jpg"), "x.jpg")
        assert result.success is False

    def test_case_only_rename(self, make_library, sample_images):
        old = sample_images[0]
        upper = os.path.basename(old).upper()
        result = make_library(FakeMetadataSync(enabled=False)).rename_source_file(old, upper)
        assert result.success is True
        assert result.photo.name == upper

    def test_same_name_is_a_noop_success(self, make_library, sample_images):
        old = sample_images[0]
        result = make_library(FakeMetadataSync(enabled=False)).rename_source_file(old, os.path.basename(old))
        assert result.success is True
        assert result.photo.id == old

    def test_store_failure_rolls_back_file_rename(self, make_library, tmp_env, sample_images):
        library = make_library(FakeMetadataSync(enabled=False))
        old = sample_images[0]
        with patch.object(tmp_env["store"], "rename_id", side_effect=sqlite3.OperationalError("database is locked")):
            result = library.rename_source_file(old, "new.jpg")

        assert result.success is False
        assert "locked" in result.message
        assert os.path.exists(old)
        assert not os.path.exists(os.path.join(os.path.dirname(old), "new.jpg"))


class TestFromConfig:
    def test_transcode_quality_reaches_heif_rule(self, tmp_env):
        config = MockConfigManager({
            "cache_dir": str(tmp_env["cache_dir"]),
            "data_dir": str(tmp_env["data_dir"]),
            "transcode": {"quality": 70, "worker_timeout": 30.0},
        })
        library = PhotoLibrary.from_config(config, rating_store=tmp_env["store"])
        try:
            assert library.plugin_registry.get_transcode_rule("/x/IMG_0001.heic").quality == 70
            assert library.rating_store is tmp_env["store"]
        finally:
            library.shutdown()
