from __future__ import annotations

import logging
import os
import queue
import threading
import time
from typing import Callable, Optional, Tuple

from services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


IDLE = "idle"
DEBOUNCING = "debouncing"

Signature = Optional[Tuple[int, int, int]]


def file_signature(path: str) -> Signature:
    """(inode, size, mtime_ns), or None when the file is missing.

    Create, write, delete and rename-over all change the signature.
    """
    try:
        st = os.stat(path)
    except OSError:
        return None
    return (int(getattr(st, "st_ino", 0) or 0), int(st.st_size), int(st.st_mtime_ns))


class FileWatcher:
    """Polls one path and emits a single notification per burst of changes.

    While a notification is pending (DEBOUNCING) the file is not observed; the
    baseline is re-taken after the handler returns, so duplicate writes from one
    logical edit collapse into one event.
    """

    def __init__(
        self,
        path: str,
        on_change: Callable[[str], None],
        *,
        name: str = "",
        debounce_seconds: float = 0.01,
        poll_interval_seconds: float = 0.5,
        max_queued_events: int = 64,
    ):
        self.path = path
        self.on_change = on_change
        self.name = name or os.path.basename(path)
        self.debounce_seconds = float(debounce_seconds)
        self.poll_interval_seconds = float(poll_interval_seconds)
        # Bounded; notifications are dropped while nobody drains it.
        self.events: "queue.Queue[str]" = queue.Queue(maxsize=max(1, int(max_queued_events)))
        self.state = IDLE

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._baseline: Signature = None

    def start(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._baseline = file_signature(self.path)
            self.state = IDLE
            t = threading.Thread(target=self._loop, name=f"watch-{self.name}", daemon=True)
            self._thread = t
            t.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def poll_once(self) -> bool:
        """Check the file once; returns True if a notification was emitted."""
        if self.state != IDLE:
            return False
        current = file_signature(self.path)
        if current == self._baseline:
            return False
        self._fire(current)
        return True

    def _describe(self, current: Signature) -> str:
        if self._baseline is None and current is not None:
            return "created"
        if current is None:
            return "deleted"
        if self._baseline is not None and current[0] != self._baseline[0]:
            return "renamed"
        return "changed"

    def _fire(self, current: Signature) -> None:
        logger.info("Detected: %s file '%s' was %s.", self.name, self.path, self._describe(current))
        self.state = DEBOUNCING
        try:
            if self.debounce_seconds > 0:
                self._stop.wait(self.debounce_seconds)
            try:
                self.events.put_nowait(self.path)
            except queue.Full:
                logger.debug("Event queue for %s is full; dropping notification", self.path)
            try:
                self.on_change(self.path)
            except Exception:
                log_exception_throttled(
                    logger,
                    f"file_watch.handler.{self.path}",
                    self.path,
                    interval_seconds=60.0,
                    message="File change handler failed for %s",
                )
        finally:
            self._baseline = file_signature(self.path)
            self.state = IDLE

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                log_exception_throttled(
                    logger,
                    f"file_watch.loop.{self.path}",
                    self.path,
                    interval_seconds=300.0,
                    message="File watcher poll failed for %s",
                )
                time.sleep(1.0)
            self._stop.wait(self.poll_interval_seconds)
