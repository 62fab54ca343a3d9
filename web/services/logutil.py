from __future__ import annotations

import logging
import threading
import time
from typing import Dict


_lock = threading.Lock()
_last_log: Dict[str, float] = {}


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def reset_throttle(key: str | None = None) -> None:
    with _lock:
        if key is None:
            _last_log.clear()
        else:
            _last_log.pop(key, None)


def log_exception_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """Log exceptions at most once per interval per key.

    Used by the file watchers and the periodic geosite updater, where a file
    that stays unreadable or an upstream that stays down would otherwise log
    the same traceback on every poll.
    """
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.exception(message, *args)
    except Exception:
        # Never let logging break the worker loop.
        pass


def log_warning_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.log(logging.WARNING, message, *args)
    except Exception:
        pass
