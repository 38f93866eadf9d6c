import dataclasses
import json
import os
import typing
from typing import Any, List, Dict, Optional
from urllib.parse import quote


PHOTO_SCHEME = "photo"
THUMBNAIL_SCHEME = "photo-thumb"


def build_protocol_url(scheme: str, file_path: str) -> str:
    """``<scheme>://local/<percent-encoded absolute path>``"""
    return f"{scheme}://local{quote(os.path.abspath(file_path))}"


def file_url(file_path: str) -> str:
    return build_protocol_url(PHOTO_SCHEME, file_path)


def thumbnail_url(rendition_path: str) -> str:
    return build_protocol_url(THUMBNAIL_SCHEME, rendition_path)


# ==============================================================================
#  Base Message class
# ==============================================================================

@dataclasses.dataclass
class Message:
    """Base for all payloads crossing the core boundary. Provides dict/JSON round-trip."""

    @classmethod
    def model_validate(cls, data: dict):
        """Construct from dict, recursively hydrating nested Message fields."""
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            val = data[f.name]
            hint = hints.get(f.name)
            origin = getattr(hint, '__origin__', None)
            # List[MessageSubclass]
            if origin is list and val:
                inner = getattr(hint, '__args__', (None,))[0]
                if inner and isinstance(inner, type) and issubclass(inner, Message):
                    val = [inner.model_validate(v) if isinstance(v, dict) else v for v in val]
            # Optional[MessageSubclass]
            elif origin is typing.Union and isinstance(val, dict):
                for inner in getattr(hint, '__args__', ()):
                    if isinstance(inner, type) and issubclass(inner, Message):
                        val = inner.model_validate(val)
                        break
            # Bare MessageSubclass field
            elif isinstance(hint, type) and issubclass(hint, Message) and isinstance(val, dict):
                val = hint.model_validate(val)
            kwargs[f.name] = val
        return cls(**kwargs)

    def model_dump(self) -> dict:
        return dataclasses.asdict(self)

    def model_dump_json(self) -> str:
        return json.dumps(self.model_dump())


# ==============================================================================
#  Records
# ==============================================================================

@dataclasses.dataclass
class PhotoRecord(Message):
    """One image found by a scan. ``id`` is the absolute source path."""
    id: str = ""
    name: str = ""
    file_path: str = ""
    file_url: str = ""
    thumbnail_url: str = ""
    thumbnail_retina_url: str = ""
    size: int = 0
    modified_at: int = 0  # epoch millis


# ==============================================================================
#  Results
# ==============================================================================

@dataclasses.dataclass
class ScanResult(Message):
    directory: str = ""
    photos: List[PhotoRecord] = dataclasses.field(default_factory=list)
    ratings: Dict[str, int] = dataclasses.field(default_factory=dict)

@dataclasses.dataclass
class ActionResult(Message):
    success: bool = True
    message: Optional[str] = None

@dataclasses.dataclass
class RenameResult(ActionResult):
    photo: Optional[PhotoRecord] = None


# ==============================================================================
#  Notification Models
# ==============================================================================

@dataclasses.dataclass
class Notification(Message):
    """Base model for all core-to-listener notifications."""
    type: str = ""
    data: Dict[str, Any] = dataclasses.field(default_factory=dict)  # why: typed at construction (XxxData.model_dump()); validated at consumption (XxxData.model_validate())

@dataclasses.dataclass
class ThumbnailsReadyData(Message):
    id: str = ""
    thumbnail_url: str = ""
    thumbnail_retina_url: str = ""

@dataclasses.dataclass
class RatingsRefreshedData(Message):
    ratings: Dict[str, int] = dataclasses.field(default_factory=dict)
