"""
Cache of decodable copies for formats the in-process decoder cannot always handle.

Targets live at ``<cache>/transcoded/<sha1(source path)>.<ext>``. A fresh
target is returned as is. Otherwise one conversion runs per target no matter
how many threads ask for it: the first caller owns the conversion and every
later caller waits on the same future.
"""
import logging
import os
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Optional

from core.capabilities import CapabilityRegistry
from core.records import TranscodeRule, is_fresh, path_digest, remove_quietly
from plugins.base_plugin import is_decode_capability_error
from plugins.heif_plugin import convert_in_process
from plugins.heif_worker import HeifWorkerClient

logger = logging.getLogger(__name__)

TRANSCODED_DIRNAME = "transcoded"


class _InFlight:
    __slots__ = ("future", "waiters")

    def __init__(self):
        self.future: Future = Future()
        self.waiters = 0


class TranscodeCache:
    def __init__(self,
                 cache_dir: str,
                 capabilities: CapabilityRegistry,
                 worker_client: Optional[HeifWorkerClient] = None,
                 primary_converter: Callable[[str, str, TranscodeRule], None] = convert_in_process,
                 worker_timeout: float = 120.0):
        self.transcoded_dir = os.path.join(cache_dir, TRANSCODED_DIRNAME)
        self.capabilities = capabilities
        self._primary_converter = primary_converter
        self._worker_client = worker_client
        self._worker_timeout = worker_timeout
        self._in_flight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()

    def target_path(self, source_path: str, rule: TranscodeRule) -> str:
        return os.path.join(self.transcoded_dir, f"{path_digest(source_path)}.{rule.target_extension}")

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def ensure(self, source_path: str, source_modified_at: int, rule: TranscodeRule) -> str:
        """Returns the path of a fresh transcoded copy of *source_path*, converting if needed."""
        target = self.target_path(source_path, rule)
        if is_fresh(target, source_modified_at):
            return target

        with self._lock:
            flight = self._in_flight.get(target)
            owner = flight is None
            if owner:
                flight = _InFlight()
                self._in_flight[target] = flight
            else:
                flight.waiters += 1

        if owner:
            try:
                # A racing owner may have finished between the freshness check and the lock.
                if not is_fresh(target, source_modified_at):
                    self._convert(source_path, target, rule)
                flight.future.set_result(target)
            except BaseException as e:
                flight.future.set_exception(e)
            finally:
                with self._lock:
                    self._in_flight.pop(target, None)
                if flight.waiters:
                    logger.debug(f"Transcode of {source_path} shared with {flight.waiters} waiter(s)")
        else:
            logger.debug(f"Joining in-flight transcode for {source_path}")

        try:
            return flight.future.result()
        except Exception:
            if is_fresh(target, source_modified_at):
                return target
            raise

    def _convert(self, source_path: str, target: str, rule: TranscodeRule) -> None:
        os.makedirs(self.transcoded_dir, exist_ok=True)
        try:
            if self.capabilities.is_available(rule.capability):
                try:
                    self._primary_converter(source_path, target, rule)
                    self.capabilities.record(rule.capability, True)
                    logger.info(f"Transcoded {source_path} in-process")
                    return
                except Exception as e:
                    if not is_decode_capability_error(e):
                        raise
                    logger.warning(f"In-process decoder cannot handle {source_path} ({e}); using worker")
                    self.capabilities.mark_unavailable(rule.capability)
                    remove_quietly(target)

            self._get_worker_client().convert(source_path, target, rule.quality)
            logger.info(f"Transcoded {source_path} in worker process")
        except BaseException:
            remove_quietly(target)
            raise

    def _get_worker_client(self) -> HeifWorkerClient:
        with self._lock:
            if self._worker_client is None:
                self._worker_client = HeifWorkerClient(request_timeout=self._worker_timeout)
            return self._worker_client

    def purge(self, source_path: str, rule: TranscodeRule) -> None:
        remove_quietly(self.target_path(source_path, rule))

    def shutdown(self) -> None:
        with self._lock:
            client, self._worker_client = self._worker_client, None
        if client is not None:
            client.shutdown()
