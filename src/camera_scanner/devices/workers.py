"""Single-threaded FIFO workers.

The coordinator runs two of them: ``CameraBackground`` for every device
facing call and callback, ``BarcodeBackground`` for decode CPU work.
Each is a one-thread executor, so tasks posted to a worker never overlap
and run in posting order.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from camera_scanner.observability import get_logger

logger = get_logger(__name__)

CAMERA_WORKER_NAME = "CameraBackground"
BARCODE_WORKER_NAME = "BarcodeBackground"


class Worker:
    """Serial task queue on a dedicated thread.

    Usage:
        worker = Worker("CameraBackground")
        worker.post(lambda: session.capture(request, callback, worker))
        worker.quit()

    Args:
        name: Thread name prefix, also used in log records.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._quit = False
        self._lock = threading.Lock()
        self._thread_ident: int | None = None

    def __repr__(self) -> str:
        return f"Worker(name={self.name!r}, running={not self._quit})"

    @property
    def running(self) -> bool:
        return not self._quit

    def post(self, task: Callable[[], None]) -> bool:
        """Queue a task; False once the worker has quit."""
        with self._lock:
            if self._quit:
                return False
            self._executor.submit(self._run, task)
            return True

    def is_current(self) -> bool:
        """True when called from this worker's thread."""
        return threading.get_ident() == self._thread_ident

    def drain(self, timeout: float = 5.0) -> bool:
        """Block until tasks queued so far have run; False on timeout."""
        if self.is_current():
            return True
        done = threading.Event()
        if not self.post(done.set):
            return True
        return done.wait(timeout)

    def quit(self) -> None:
        """Stop accepting tasks and drop the ones not yet started."""
        with self._lock:
            if self._quit:
                return
            self._quit = True
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("Worker stopped", worker=self.name)

    def _run(self, task: Callable[[], None]) -> None:
        self._thread_ident = threading.get_ident()
        try:
            task()
        except Exception as e:
            logger.exception("Worker task failed", worker=self.name, error=str(e))
