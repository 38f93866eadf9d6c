import dataclasses
import logging
import os
import threading
from typing import List, Optional

from PIL import Image, ImageOps

from core.capabilities import HEIF_INPROCESS_DECODE
from core.records import TranscodeRule, remove_quietly
from .pil_plugin import PILPlugin, _temp_path_for

logger = logging.getLogger(__name__)

_opener_lock = threading.Lock()
_opener_registered = False


def ensure_heif_opener() -> bool:
    """Registers pillow-heif with Pillow once per process. Returns False if pillow-heif is missing."""
    global _opener_registered
    with _opener_lock:
        if _opener_registered:
            return True
        try:
            from pillow_heif import register_heif_opener
        except ImportError:
            logger.warning("pillow-heif not installed; HEIC/HEIF decoding unavailable in-process")
            return False
        register_heif_opener()
        _opener_registered = True
        logger.debug("pillow-heif opener registered")
        return True


def convert_in_process(source_path: str, target_path: str, rule: TranscodeRule) -> None:
    """Decode a HEIF file through Pillow and write it out in the rule's target format.

    The output appears at *target_path* only once it is complete.
    """
    if not ensure_heif_opener():
        raise OSError(f"no decoding plugin for {os.path.basename(source_path)}: pillow-heif is not installed")
    os.makedirs(os.path.dirname(target_path), exist_ok=True)
    temp_path = _temp_path_for(target_path)
    try:
        with Image.open(source_path) as img:
            img = ImageOps.exif_transpose(img)
            img.convert('RGB').save(temp_path, rule.target_format, quality=rule.quality)
        os.replace(temp_path, target_path)
    except BaseException:
        remove_quietly(temp_path)
        raise


class HeifPlugin(PILPlugin):
    """HEIC/HEIF through pillow-heif. Decoding is native code and may need isolation, see TranscodeCache."""

    transcode_rule = TranscodeRule(capability=HEIF_INPROCESS_DECODE, target_extension="jpg",
                                   target_format="JPEG", quality=92)

    def __init__(self, transcode_quality: Optional[int] = None):
        if transcode_quality is not None:
            self.transcode_rule = dataclasses.replace(HeifPlugin.transcode_rule, quality=int(transcode_quality))

    def is_available(self) -> bool:
        return ensure_heif_opener()

    def get_supported_formats(self) -> List[str]:
        return ['.heic', '.heif']
