from __future__ import annotations

import logging
import os
from typing import Optional

from services import geosite_config
from services.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


_LOCK_FD: Optional[int] = None


def _close_quietly(fd: int, key: str) -> None:
    try:
        os.close(fd)
    except Exception:
        log_exception_throttled(
            logger,
            key,
            interval_seconds=300.0,
            message="Failed to close background lock fd",
        )


def acquire_background_lock() -> bool:
    """Best-effort multi-process guard for the watchers and the geosite updater.

    App servers may spawn several workers; without a guard each one would
    poll the same files and rewrite pac.txt/dlc.dat concurrently.

    Returns True if this process should start background tasks, False otherwise.

    Env overrides:
      - BACKGROUND_FORCE=1: always start background tasks (no locking)
      - BACKGROUND_LOCK_PATH: lock file path (default: <GEOSITE_DATA_DIR>/background.lock)
    """

    if (os.environ.get("BACKGROUND_FORCE") or "").strip() == "1":
        return True

    lock_path = (os.environ.get("BACKGROUND_LOCK_PATH") or "").strip() or os.path.join(
        geosite_config.data_dir(), "background.lock"
    )
    lock_dir = os.path.dirname(lock_path)
    if lock_dir:
        try:
            os.makedirs(lock_dir, exist_ok=True)
        except Exception:
            # If we can't create directories, don't block startup.
            log_exception_throttled(
                logger,
                "background_guard.makedirs",
                interval_seconds=300.0,
                message="Failed to create BACKGROUND_LOCK_PATH directory; allowing background tasks to start",
            )
            return True

    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    except Exception:
        return True

    try:
        import fcntl  # type: ignore[import-not-found]
    except ImportError:
        # Non-POSIX environment: allow background.
        _close_quietly(fd, "background_guard.close.non_posix")
        return True

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # type: ignore[attr-defined]
    except BlockingIOError:
        _close_quietly(fd, "background_guard.close.blocking")
        return False
    except Exception:
        _close_quietly(fd, "background_guard.close.flock_error")
        return True

    global _LOCK_FD
    _LOCK_FD = fd
    return True
