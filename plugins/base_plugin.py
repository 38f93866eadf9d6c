import os
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Dict, Set, Tuple

from core.records import TranscodeRule

logger = logging.getLogger(__name__)

# Error messages that mean "this decoder cannot handle the format", as opposed
# to a corrupt or unreadable file. Pillow's "cannot identify image file" is
# not one of them: it is also what any truncated or misnamed file produces.
_DECODE_CAPABILITY_SIGNATURES = (
    re.compile(r"no decoding plugin", re.IGNORECASE),
    re.compile(r"bad seek", re.IGNORECASE),
    re.compile(r"decoder \S+ not available", re.IGNORECASE),
)


def is_decode_capability_error(error: BaseException) -> bool:
    message = str(error)
    return any(sig.search(message) for sig in _DECODE_CAPABILITY_SIGNATURES)


class PluginRegistry:
    """Registry of image format plugins, keyed by lowercase extension."""

    def __init__(self):
        self.plugins: Dict[str, 'BasePlugin'] = {}
        self.format_map: Dict[str, 'BasePlugin'] = {}

    def register_plugin(self, plugin: 'BasePlugin'):
        """Register a plugin and its supported formats."""
        plugin_name = plugin.__class__.__name__
        if plugin_name in self.plugins:
            return

        self.plugins[plugin_name] = plugin

        formats = plugin.get_supported_formats()
        for ext in formats:
            if ext in self.format_map:
                logger.warning(f"Format {ext} already registered by {self.format_map[ext].__class__.__name__}, overriding with {plugin_name}")
            self.format_map[ext] = plugin
            logger.debug(f"Registered format {ext} with plugin {plugin_name}")

        logger.info(f"Plugin {plugin_name} registered with formats: {', '.join(formats)}")

    def get_plugin_for_format(self, file_extension: str) -> Optional['BasePlugin']:
        """Get the plugin that handles a specific file format."""
        if not file_extension.startswith('.'):
            file_extension = '.' + file_extension
        return self.format_map.get(file_extension.lower())

    def get_plugin_for_path(self, file_path: str) -> Optional['BasePlugin']:
        return self.get_plugin_for_format(os.path.splitext(file_path)[1])

    def get_transcode_rule(self, file_path: str) -> Optional[TranscodeRule]:
        plugin = self.get_plugin_for_path(file_path)
        return plugin.transcode_rule if plugin else None

    def get_supported_formats(self) -> Set[str]:
        """Get all supported file formats across all plugins."""
        return set(self.format_map.keys())

    def load_default_plugins(self, transcode_quality: Optional[int] = None) -> 'PluginRegistry':
        """Instantiate the bundled plugins and register those whose dependencies are present.

        *transcode_quality* overrides the JPEG quality of the HEIF transcode rule.
        """
        from plugins.pil_plugin import PILPlugin
        from plugins.heif_plugin import HeifPlugin

        for plugin in (PILPlugin(), HeifPlugin(transcode_quality=transcode_quality)):
            plugin_name = plugin.__class__.__name__
            if plugin.is_available():
                self.register_plugin(plugin)
                logger.info(f"Plugin {plugin_name} loaded successfully")
            else:
                logger.warning(f"Plugin {plugin_name} not available - missing dependencies")
        return self


class BasePlugin(ABC):
    """Base class for all image format plugins."""

    # Formats the in-process decoder may not handle declare how to transcode them.
    transcode_rule: Optional[TranscodeRule] = None

    @abstractmethod
    def is_available(self) -> bool:
        """Check if all required dependencies for this plugin are available."""

    @abstractmethod
    def get_supported_formats(self) -> List[str]:
        """Return list of supported file extensions (with dots, lowercase)."""

    @abstractmethod
    def probe(self, image_path: str) -> Tuple[int, int]:
        """
        Read just enough of the file to learn its dimensions. Raises when the
        decoder cannot handle the file.
        """

    @abstractmethod
    def generate_renditions(self, image_source: str, targets: List[Tuple[int, str]], quality: int) -> List[str]:
        """
        Decode *image_source* once and write one resized rendition per
        ``(width, output_path)`` target. Returns the paths written.
        Raises on failure; partially written outputs are removed.
        """
