import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Flag names used across the pipeline.
HEIF_INPROCESS_DECODE = "heif.inprocess_decode"


class CapabilityRegistry:
    """Process-scoped decode capability flags.

    A flag is unknown until first observed, then set once and read for the
    rest of the session.  Components receive the registry by reference so
    tests can hand each case a fresh one (or call ``reset()``).
    """

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[bool]:
        with self._lock:
            return self._flags.get(name)

    def is_available(self, name: str) -> bool:
        """Unknown capabilities are assumed available until proven otherwise."""
        return self.get(name) is not False

    def record(self, name: str, available: bool) -> bool:
        """Record an observation. The first observation wins; returns the stored value."""
        with self._lock:
            if name in self._flags:
                return self._flags[name]
            self._flags[name] = available
        logger.info(f"Capability '{name}' recorded as {'available' if available else 'unavailable'}")
        return available

    def mark_unavailable(self, name: str) -> None:
        with self._lock:
            if self._flags.get(name) is False:
                return
            self._flags[name] = False
        logger.warning(f"Capability '{name}' marked unavailable for the rest of the session")

    def reset(self) -> None:
        with self._lock:
            self._flags.clear()
