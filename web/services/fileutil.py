from __future__ import annotations

import os
import tempfile
import threading
from typing import Dict


_registry_lock = threading.Lock()
_path_locks: Dict[str, threading.Lock] = {}


def path_lock(path: str) -> threading.Lock:
    """Return the process-wide writer lock for `path`.

    Write-if-changed is a read-then-write sequence; every writer of a given
    file goes through the same lock.
    """
    key = os.path.abspath(path)
    with _registry_lock:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _path_locks[key] = lock
        return lock


def read_text(path: str) -> str:
    # Plain open() on POSIX does not block other readers or writers.
    with open(path, "r", encoding="utf-8", newline="") as f:
        return f.read()


def read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def atomic_write_bytes(path: str, data: bytes) -> None:
    # Write within the destination directory so os.replace is atomic on POSIX.
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    tmp_path = ""
    try:
        with tempfile.NamedTemporaryFile(mode="wb", delete=False, dir=d, prefix=".tmp-") as f:
            tmp_path = f.name
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path and os.path.exists(tmp_path):
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def atomic_write_text(path: str, content: str) -> None:
    atomic_write_bytes(path, content.encode("utf-8"))
