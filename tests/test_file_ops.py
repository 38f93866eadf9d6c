"""Tests for core.file_ops: trashing and rename validation."""
import os
import pytest
from unittest.mock import patch, MagicMock

from core.file_ops import InvalidNameError, rename_file, trash_file, validate_new_name


class TestTrashFile:
    def _patch_send2trash(self, side_effect):
        """Patch the lazy send2trash loader to return a mock."""
        mock_fn = MagicMock(side_effect=side_effect)
        return patch("core.file_ops._get_send2trash", return_value=mock_fn), mock_fn

    def test_trashes_file(self, tmp_path):
        img = tmp_path / "photo.jpg"
        img.write_text("image")

        patcher, mock_fn = self._patch_send2trash(None)
        with patcher:
            trash_file(str(img))

        mock_fn.assert_called_once_with(str(img))

    def test_failure_propagates(self, tmp_path):
        img = tmp_path / "photo.jpg"
        img.write_text("image")

        patcher, _ = self._patch_send2trash(OSError("permission denied"))
        with patcher, pytest.raises(OSError, match="permission denied"):
            trash_file(str(img))
        assert img.exists()

    def test_home_trash_fallback(self, tmp_path, monkeypatch):
        img = tmp_path / "photo.jpg"
        img.write_text("image")
        home = tmp_path / "home"
        monkeypatch.setenv("HOME", str(home))

        patcher, _ = self._patch_send2trash(OSError("Directory not found: /Volumes/x/.Trashes"))
        with patcher:
            trash_file(str(img))

        assert not img.exists()
        assert (home / ".Trash" / "photo.jpg").read_text() == "image"


class TestValidateNewName:
    @pytest.fixture()
    def photo(self, tmp_path):
        img = tmp_path / "photo.jpg"
        img.write_text("image")
        return str(img)

    def test_returns_target_in_same_directory(self, photo):
        target = validate_new_name(photo, "  renamed.jpg  ")
        assert target == os.path.join(os.path.dirname(photo), "renamed.jpg")

    @pytest.mark.parametrize("name", ["", "   ", ".", "..", "sub/x.jpg", "sub\\x.jpg"])
    def test_rejects_bad_names(self, photo, name):
        with pytest.raises(InvalidNameError):
            validate_new_name(photo, name)

    def test_rejects_missing_source(self, tmp_path):
        with pytest.raises(InvalidNameError, match="no longer exists"):
            validate_new_name(str(tmp_path / "gone.jpg"), "x.jpg")

    def test_rejects_conflict(self, photo, tmp_path):
        (tmp_path / "other.jpg").write_text("other")
        with pytest.raises(InvalidNameError, match="already exists"):
            validate_new_name(photo, "other.jpg")

    def test_allows_case_only_change(self, photo):
        assert validate_new_name(photo, "PHOTO.JPG").endswith("PHOTO.JPG")

    def test_invalid_name_is_a_value_error(self, photo):
        with pytest.raises(ValueError):
            validate_new_name(photo, "")


class TestRenameFile:
    def test_renames(self, tmp_path):
        img = tmp_path / "a.jpg"
        img.write_text("image")
        target = str(tmp_path / "b.jpg")

        assert rename_file(str(img), target) == target
        assert os.path.exists(target)
        assert not img.exists()

    def test_same_path_is_noop(self, tmp_path):
        img = tmp_path / "a.jpg"
        img.write_text("image")
        assert rename_file(str(img), str(img)) is None
        assert img.exists()
