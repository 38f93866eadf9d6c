import logging
import os
import threading
from typing import List, Tuple
from PIL import Image, ImageOps
from .base_plugin import BasePlugin
from core.records import remove_quietly

logger = logging.getLogger(__name__)


def _temp_path_for(output_path: str) -> str:
    return f"{output_path}.{os.getpid()}-{threading.get_ident()}.part"


def scale_to_width(img: Image.Image, width: int) -> Image.Image:
    """Resize to *width* keeping the aspect ratio. Never upscales."""
    if img.width <= width:
        return img.copy()
    height = max(1, round(img.height * width / img.width))
    return img.resize((width, height), Image.Resampling.LANCZOS)


class PILPlugin(BasePlugin):
    """Plugin for handling standard image formats using PIL/Pillow."""

    def is_available(self) -> bool:
        return True

    def get_supported_formats(self) -> List[str]:
        """Return list of supported file extensions."""
        return ['.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp', '.tiff', '.tif', '.avif']

    def probe(self, image_path: str) -> Tuple[int, int]:
        with Image.open(image_path) as img:
            return img.size

    def generate_renditions(self, image_source: str, targets: List[Tuple[int, str]], quality: int) -> List[str]:
        """
        Writes WebP renditions through a temporary file and an atomic rename,
        so a half-written file never sits at the final cache path.
        """
        written: List[str] = []
        if not targets:
            return written

        with Image.open(image_source) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ('RGB', 'RGBA'):
                img = img.convert('RGBA' if 'A' in img.getbands() or img.mode == 'P' else 'RGB')

            for width, output_path in targets:
                os.makedirs(os.path.dirname(output_path), exist_ok=True)
                temp_path = _temp_path_for(output_path)
                try:
                    scale_to_width(img, width).save(temp_path, 'WEBP', quality=quality, method=4)
                    os.replace(temp_path, output_path)
                except (OSError, ValueError):
                    remove_quietly(temp_path)
                    raise
                written.append(output_path)
                logger.debug(f"Generated rendition w{width}: {output_path}")

        return written
