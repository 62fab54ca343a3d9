from __future__ import annotations

import logging
import threading
import time

from services.logutil import log_exception_throttled
from services.pac_daemon import PACDaemon


logger = logging.getLogger(__name__)


_started = False
_lock = threading.Lock()


def run_once(daemon: PACDaemon) -> bool:
    changed = daemon.update_pac_from_geosite()
    logger.info("Scheduled geosite update finished (pac changed=%s)", changed)
    return changed


def start_geosite_updater(daemon: PACDaemon, *, interval_seconds: int = 24 * 60 * 60, initial_delay_seconds: float = 60.0) -> bool:
    """Start the periodic geosite refresh loop (at most once per process).

    Returns False when the loop is disabled (interval <= 0) or already running.
    """
    global _started
    if int(interval_seconds) <= 0:
        return False
    with _lock:
        if _started:
            return False
        _started = True

    def loop() -> None:
        time.sleep(max(0.0, float(initial_delay_seconds)))
        while True:
            try:
                run_once(daemon)
            except Exception:
                log_exception_throttled(
                    logger,
                    "geosite_updater.loop",
                    interval_seconds=300,
                    message="Geosite update run failed",
                )
            time.sleep(float(interval_seconds))

    t = threading.Thread(target=loop, name="geosite-updater", daemon=True)
    t.start()
    return True
