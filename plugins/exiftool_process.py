"""
Persistent exiftool process using -stay_open mode.

One long-lived process serves every metadata call, which avoids the Perl
startup cost per file. Numbered execute IDs make sentinel detection safe for
arbitrary output.
"""
import logging
import select
import subprocess
import threading
import time
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 45.0

# Registry of all live processes for orderly shutdown.
_all_processes: List["ExifToolProcess"] = []
_registry_lock = threading.Lock()


class ExifToolTerminatedError(RuntimeError):
    """The exiftool process terminated before the task completed."""


class ExifToolProcess:
    """Wraps a single persistent exiftool -stay_open process.

    Spawning raises OSError (e.g. FileNotFoundError) when exiftool is missing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._process = self._spawn()
        self._counter = 0
        with _registry_lock:
            _all_processes.append(self)

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(
            ["exiftool", "-stay_open", "True", "-@", "-"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )

    def execute(self, args: List[str], timeout: float = DEFAULT_TIMEOUT) -> bytes:
        """Send args to the persistent process and return its stdout bytes.

        On timeout or an unexpected exit the process is restarted so the next
        call starts from a clean stream, and the error is re-raised.
        """
        with self._lock:
            try:
                return self._do_execute(args, timeout)
            except (TimeoutError, ExifToolTerminatedError, OSError) as e:
                logger.warning("ExifToolProcess: execute failed (%s); restarting.", e)
                self._restart()
                raise

    def _do_execute(self, args: List[str], timeout: float) -> bytes:
        if self._process.poll() is not None:
            raise ExifToolTerminatedError("exiftool process terminated before task completed")

        self._counter += 1
        exec_id = self._counter
        sentinel = f"{{ready{exec_id}}}\n".encode()

        cmd = "\n".join(args) + f"\n-execute{exec_id}\n"
        try:
            self._process.stdin.write(cmd.encode())  # type: ignore[union-attr]
            self._process.stdin.flush()              # type: ignore[union-attr]
        except BrokenPipeError as e:
            raise ExifToolTerminatedError("exiftool process terminated before task completed") from e

        output = bytearray()
        sentinel_len = len(sentinel)
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"exiftool task timeout: no response within {timeout}s")
            ready, _, _ = select.select([self._process.stdout], [], [], remaining)
            if not ready:
                raise TimeoutError(f"exiftool task timeout: no response within {timeout}s")
            chunk = self._process.stdout.read1(65536)  # type: ignore[union-attr]
            if not chunk:
                raise ExifToolTerminatedError("exiftool process terminated before task completed")
            output.extend(chunk)
            if len(output) >= sentinel_len and output[-sentinel_len:] == sentinel:
                del output[-sentinel_len:]
                break

        return bytes(output)

    def _restart(self) -> None:
        self._kill()
        try:
            self._process = self._spawn()
        except OSError as e:
            logger.error("ExifToolProcess: restart failed: %s", e)
            raise
        self._counter = 0
        logger.info("ExifToolProcess: restarted successfully.")

    def _kill(self) -> None:
        try:
            self._process.kill()
            self._process.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired):
            pass

    def terminate(self) -> None:
        """Ask exiftool to exit cleanly, then force-kill if needed."""
        try:
            self._process.stdin.write(b"-stay_open\nFalse\n")  # type: ignore[union-attr]
            self._process.stdin.flush()                         # type: ignore[union-attr]
            self._process.wait(timeout=5)
        except (OSError, ValueError, subprocess.TimeoutExpired):
            pass
        finally:
            self._kill()
            with _registry_lock:
                if self in _all_processes:
                    _all_processes.remove(self)


def shutdown_all() -> None:
    """Terminate every registered ExifToolProcess. Called at shutdown."""
    with _registry_lock:
        processes = list(_all_processes)
    for proc in processes:
        proc.terminate()
    logger.info("ExifToolProcess: all %d process(es) terminated.", len(processes))
