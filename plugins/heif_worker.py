"""
Out-of-process HEIF conversion.

Native HEIF decoders can crash the interpreter outright on some files. The
fallback conversion path therefore runs in a separate worker process that
talks to this one over a Pipe. Requests carry monotonically increasing ids;
a reader thread matches responses to pending futures. When the worker dies
every pending request is rejected and the next request starts a new worker.
"""
import itertools
import logging
import multiprocessing
import os
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 120.0


class WorkerCrashedError(RuntimeError):
    """The conversion worker exited while requests were outstanding."""


class WorkerConversionError(RuntimeError):
    """The worker reported that a conversion failed."""


def convert_heif_file(source_path: str, target_path: str, quality: int) -> None:
    """Runs inside the worker: decode with pillow-heif directly and save a JPEG."""
    import pillow_heif
    from PIL import ImageOps

    heif_file = pillow_heif.open_heif(source_path, convert_hdr_to_8bit=True)
    image = ImageOps.exif_transpose(heif_file.to_pillow())
    os.makedirs(os.path.dirname(target_path), exist_ok=True)
    temp_path = f"{target_path}.{os.getpid()}.part"
    try:
        image.convert("RGB").save(temp_path, "JPEG", quality=quality)
        os.replace(temp_path, target_path)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def _worker_main(conn, handler: Callable[[str, str, int], None]) -> None:
    while True:
        try:
            request = conn.recv()
        except (EOFError, OSError):
            break
        if request is None:
            break

        response = {"id": request["id"], "ok": True}
        try:
            handler(request["source_path"], request["target_path"], request["quality"])
        except Exception as e:  # why: any handler failure is reported back instead of killing the worker
            response = {"id": request["id"], "ok": False, "error": f"{type(e).__name__}: {e}"}
        try:
            conn.send(response)
        except (OSError, ValueError):
            break
    conn.close()


class _WorkerHandle:
    def __init__(self, process, conn):
        self.process = process
        self.conn = conn
        self.pending: Dict[int, Future] = {}


class HeifWorkerClient:
    """Client side of the HEIF worker. Safe to call from many threads."""

    def __init__(self,
                 handler: Callable[[str, str, int], None] = convert_heif_file,
                 mp_context: Optional[str] = None,
                 request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self._handler = handler
        self._ctx = multiprocessing.get_context(mp_context or "spawn")
        self.request_timeout = request_timeout
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._worker: Optional[_WorkerHandle] = None
        self._closed = False

    def _ensure_worker(self) -> _WorkerHandle:
        if self._worker is not None and self._worker.process.is_alive():
            return self._worker

        parent_conn, child_conn = self._ctx.Pipe()
        process = self._ctx.Process(
            target=_worker_main,
            args=(child_conn, self._handler),
            name="heif-worker",
            daemon=True,
        )
        process.start()
        child_conn.close()

        handle = _WorkerHandle(process, parent_conn)
        self._worker = handle
        threading.Thread(target=self._read_loop, args=(handle,), name="heif-worker-reader", daemon=True).start()
        logger.info(f"Started HEIF worker process (pid {process.pid})")
        return handle

    def _read_loop(self, handle: _WorkerHandle) -> None:
        while True:
            try:
                message = handle.conn.recv()
            except (EOFError, OSError):
                break
            with self._lock:
                future = handle.pending.pop(message.get("id"), None)
            if future is None:
                continue
            if message.get("ok"):
                future.set_result(None)
            else:
                future.set_exception(WorkerConversionError(message.get("error", "conversion failed")))

        handle.process.join(timeout=5)
        exitcode = handle.process.exitcode
        with self._lock:
            if self._worker is handle:
                self._worker = None
            pending = list(handle.pending.values())
            handle.pending.clear()
        try:
            handle.conn.close()
        except OSError:
            pass

        if pending:
            logger.error(f"HEIF worker exited (code {exitcode}) with {len(pending)} request(s) pending")
        elif not self._closed:
            logger.info(f"HEIF worker exited (code {exitcode})")
        for future in pending:
            future.set_exception(WorkerCrashedError(f"HEIF worker exited with code {exitcode}"))

    def submit(self, source_path: str, target_path: str, quality: int) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("HeifWorkerClient is shut down")
            handle = self._ensure_worker()
            request_id = next(self._ids)
            handle.pending[request_id] = future
            try:
                handle.conn.send({
                    "id": request_id,
                    "source_path": source_path,
                    "target_path": target_path,
                    "quality": quality,
                })
            except (OSError, ValueError) as e:
                handle.pending.pop(request_id, None)
                future.set_exception(WorkerCrashedError(f"HEIF worker unreachable: {e}"))
        return future

    def convert(self, source_path: str, target_path: str, quality: int) -> None:
        """Blocking conversion. A request that outlives the timeout kills the worker."""
        future = self.submit(source_path, target_path, quality)
        try:
            future.result(timeout=self.request_timeout)
        except FutureTimeoutError:
            logger.error(f"HEIF worker timed out after {self.request_timeout}s on {source_path}; killing it")
            self._kill_current()
            raise TimeoutError(f"HEIF worker timed out converting {source_path}")

    def _kill_current(self) -> None:
        with self._lock:
            handle, self._worker = self._worker, None
        if handle is not None:
            handle.process.kill()
            handle.process.join(timeout=5)

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._closed = True
            handle, self._worker = self._worker, None
        if handle is None:
            return
        try:
            handle.conn.send(None)
        except (OSError, ValueError):
            pass
        handle.process.join(timeout=timeout)
        if handle.process.is_alive():
            handle.process.kill()
            handle.process.join(timeout=timeout)
        logger.info("HEIF worker shut down")
