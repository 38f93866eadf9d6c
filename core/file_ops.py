# core/file_ops.py
"""File operations behind delete and rename: trashing and name validation."""
import logging
import os
import shutil
from typing import Optional

logger = logging.getLogger(__name__)


class InvalidNameError(ValueError):
    """A proposed file name was rejected; the message is user-facing."""


def _get_send2trash():
    from send2trash import send2trash
    return send2trash


def trash_file(path: str) -> None:
    """Move *path* to the system trash.

    Home-trash fallback on macOS when volume trash is unavailable. Raises on failure.
    """
    _send2trash = _get_send2trash()
    try:
        _send2trash(path)
    except OSError as e:
        if "Directory not found" not in str(e):
            raise
        home_trash = os.path.expanduser("~/.Trash")
        logger.warning(f"Volume trash unavailable for {path}; moving to {home_trash}")
        os.makedirs(home_trash, exist_ok=True)
        shutil.move(path, home_trash)
    logger.info(f"Trashed {path}")


def _same_name_ignoring_case(a: str, b: str) -> bool:
    return a.casefold() == b.casefold()


def validate_new_name(file_path: str, new_name: str) -> str:
    """Check *new_name* as a rename target for *file_path* and return the target path.

    Raises InvalidNameError with a user-facing message when the name is
    empty, ``.``/``..``, contains a path separator, or collides with another
    file. A collision that differs only in letter case is allowed so that
    case-only renames work on case-insensitive filesystems.
    """
    if not os.path.exists(file_path):
        raise InvalidNameError("The file no longer exists.")

    sanitized = new_name.strip()
    if not sanitized:
        raise InvalidNameError("The new name must not be empty.")
    if sanitized in (".", ".."):
        raise InvalidNameError("The new name is not valid.")
    if "/" in sanitized or "\\" in sanitized:
        raise InvalidNameError("The new name must not contain / or \\.")

    target_path = os.path.join(os.path.dirname(file_path), sanitized)
    current_name = os.path.basename(file_path)
    if (target_path != file_path
            and os.path.exists(target_path)
            and not _same_name_ignoring_case(sanitized, current_name)):
        raise InvalidNameError("A file with that name already exists.")
    return target_path


def rename_file(file_path: str, target_path: str) -> Optional[str]:
    """Renames and returns the new path, or None when the path does not change."""
    if target_path == file_path:
        return None
    os.rename(file_path, target_path)
    logger.info(f"Renamed {file_path} -> {target_path}")
    return target_path
