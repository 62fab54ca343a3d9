from __future__ import annotations

import hashlib
import http.client
import logging
import os
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from services import geosite_config
from services.errors import ChecksumMismatch, GeositeError, GeositeNetworkError, GeositeParseError
from services.file_watch import file_signature
from services.fileutil import atomic_write_bytes, path_lock, read_bytes
from services.geosite_config import GeositeConfig
from services.geosite_db import GeositeIndex, load_geosite_index
from services.geosite_rules import generate_rules
from services.logutil import log_warning_throttled


logger = logging.getLogger(__name__)


RESOURCES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "resources")
DEFAULT_DATABASE_PATH = os.path.join(RESOURCES_DIR, "dlc.dat")
DATABASE_FILE = "dlc.dat"

USER_AGENT = "geosite-pac/1.0"

UNCHANGED = "unchanged"
REPLACED = "replaced"
FAILED = "failed"


@dataclass(frozen=True)
class UpdateResult:
    status: str
    data: Optional[bytes] = None
    reason: str = ""
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status != FAILED


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data or b"").hexdigest().upper()


def _http_get(url: str, *, timeout_seconds: float, max_bytes: int) -> bytes:
    u = urlparse(url or "")
    if u.scheme not in ("http", "https"):
        raise GeositeNetworkError(f"Only http/https URLs are supported: {url}")

    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:
            status = int(getattr(resp, "status", 200) or 200)
            if status < 200 or status >= 300:
                raise GeositeNetworkError(f"HTTP {status} from {url}")

            cl = resp.headers.get("Content-Length")
            if cl is not None and cl.strip().isdigit() and int(cl) > max_bytes:
                raise GeositeNetworkError(f"Download too large (Content-Length={cl}).")

            total = 0
            chunks: List[bytes] = []
            while True:
                chunk = resp.read(256 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise GeositeNetworkError(f"Download exceeded limit ({max_bytes} bytes).")
                chunks.append(chunk)
            return b"".join(chunks)
    except urllib.error.HTTPError as e:
        raise GeositeNetworkError(f"HTTP {e.code} from {url}") from e
    except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
        raise GeositeNetworkError(f"Failed to fetch {url}: {e}") from e


def fetch_remote_checksum(checksum_url: str, *, timeout_seconds: float) -> str:
    body = _http_get(checksum_url, timeout_seconds=timeout_seconds, max_bytes=64 * 1024)
    text = body.decode("utf-8", errors="replace").strip()
    digest = text[:64].upper()
    if len(digest) != 64 or any(c not in "0123456789ABCDEF" for c in digest):
        raise GeositeNetworkError(f"Malformed checksum from {checksum_url}")
    return digest


def check_and_update(
    source_url: str,
    local_bytes: bytes,
    *,
    checksum_url: str,
    timeout_seconds: Optional[float] = None,
    max_bytes: Optional[int] = None,
) -> UpdateResult:
    """Compare the local database with the published checksum and download on change.

    Returns UNCHANGED, REPLACED (with the verified bytes) or FAILED. Nothing is
    written here; persisting the bytes is up to the caller.
    """
    timeout = geosite_config.http_timeout_seconds() if timeout_seconds is None else float(timeout_seconds)
    limit = geosite_config.max_download_bytes() if max_bytes is None else int(max_bytes)

    logger.info("Checking Geosite from %s", source_url)
    try:
        remote_sum = fetch_remote_checksum(checksum_url, timeout_seconds=timeout)
        logger.info("Remote SHA256 sum: %s", remote_sum)

        local_sum = sha256_hex(local_bytes)
        logger.info("Local SHA256 sum: %s", local_sum)
        if remote_sum == local_sum:
            logger.info("Local GeoSite DB is up to date.")
            return UpdateResult(status=UNCHANGED)

        downloaded = _http_get(source_url, timeout_seconds=timeout, max_bytes=limit)
        actual_sum = sha256_hex(downloaded)
        logger.info("Actual SHA256 sum: %s", actual_sum)
        if actual_sum != remote_sum:
            logger.warning("Sha256sum Verification: FAILED. Downloaded GeoSite DB is corrupted. Aborting the update.")
            raise ChecksumMismatch(f"SHA256 sum mismatch (expected {remote_sum}, got {actual_sum})")
        logger.info("Sha256sum Verification: PASSED. Applying to local GeoSite DB.")
        return UpdateResult(status=REPLACED, data=downloaded)
    except GeositeError as e:
        log_warning_throttled(
            logger,
            f"geosite_source.update.{source_url}",
            e,
            interval_seconds=300.0,
            message="Geosite update failed: %s",
        )
        return UpdateResult(status=FAILED, reason=str(e), error=e)


class GeositeSource:
    """Owns the geosite database file, its bytes and the active index."""

    def __init__(
        self,
        config: GeositeConfig,
        database_path: str,
        default_database_path: str = DEFAULT_DATABASE_PATH,
    ):
        self.database_path = database_path
        self.default_database_path = default_database_path
        self._update_lock = threading.Lock()

        raw, index = self._load_database()
        self._disk_signature = file_signature(self.database_path)
        # (bytes, index) is published as one tuple so readers never mix generations.
        self._state: Tuple[bytes, GeositeIndex] = (raw, index)
        self._config = config.validated(index)

    def _seed_database(self) -> bytes:
        raw = read_bytes(self.default_database_path)
        with path_lock(self.database_path):
            atomic_write_bytes(self.database_path, raw)
        logger.info("Seeded geosite database %s from %s", self.database_path, self.default_database_path)
        return raw

    def _load_database(self) -> Tuple[bytes, GeositeIndex]:
        if os.path.exists(self.database_path) and os.path.getsize(self.database_path) > 0:
            raw = read_bytes(self.database_path)
            try:
                return raw, load_geosite_index(raw)
            except GeositeParseError:
                logger.exception("Geosite database %s is corrupt; reseeding from defaults", self.database_path)
        raw = self._seed_database()
        return raw, load_geosite_index(raw)

    @property
    def index(self) -> GeositeIndex:
        return self._state[1]

    @property
    def database_bytes(self) -> bytes:
        return self._state[0]

    @property
    def config(self) -> GeositeConfig:
        return self._config

    def set_config(self, config: GeositeConfig) -> GeositeConfig:
        self._config = config.validated(self.index)
        return self._config

    @property
    def direct_groups(self) -> List[str]:
        return list(self._config.direct_groups)

    @property
    def proxied_groups(self) -> List[str]:
        return list(self._config.proxied_groups)

    @property
    def prefer_direct(self) -> bool:
        return bool(self._config.prefer_direct)

    def reload_if_changed(self) -> bool:
        """Pick up a dlc.dat replaced by another worker process.

        Returns True when a new index was loaded. A file that no longer parses
        is ignored and the current index stays.
        """
        if file_signature(self.database_path) == self._disk_signature:
            return False
        with self._update_lock:
            return self._reload_locked()

    def _reload_locked(self) -> bool:
        sig = file_signature(self.database_path)
        if sig is None or sig == self._disk_signature:
            return False
        try:
            raw = read_bytes(self.database_path)
        except OSError:
            logger.exception("Failed to re-read geosite database %s", self.database_path)
            return False
        self._disk_signature = sig
        if raw == self._state[0]:
            return False
        try:
            index = load_geosite_index(raw)
        except GeositeParseError:
            logger.exception("Geosite database %s changed on disk but does not parse; keeping current index", self.database_path)
            return False
        self._state = (raw, index)
        self._config = self._config.validated(index)
        logger.info("Reloaded geosite database %s (changed on disk)", self.database_path)
        return True

    def generate_rules(self, direct_groups, proxied_groups, prefer_direct: bool) -> List[str]:
        self.reload_if_changed()
        return generate_rules(self.index, direct_groups, proxied_groups, prefer_direct)

    def update_source(self, error: Optional[Callable[[BaseException], None]] = None) -> UpdateResult:
        """Refresh the database from the configured source.

        On failure `error` receives the exception and neither the file nor the
        index changes.
        """
        with self._update_lock:
            self._reload_locked()
            raw, _ = self._state
            result = check_and_update(
                self._config.source_url(),
                raw,
                checksum_url=self._config.checksum_url(),
            )
            if result.status == REPLACED and result.data is not None:
                try:
                    new_index = load_geosite_index(result.data)
                    with path_lock(self.database_path):
                        atomic_write_bytes(self.database_path, result.data)
                    self._disk_signature = file_signature(self.database_path)
                except (GeositeParseError, OSError) as e:
                    logger.exception("Downloaded geosite database could not be applied")
                    result = UpdateResult(status=FAILED, reason=str(e), error=e)
                else:
                    self._state = (result.data, new_index)
                    self._config = self._config.validated(new_index)

            if result.status == FAILED and error is not None and result.error is not None:
                try:
                    error(result.error)
                except Exception:
                    logger.exception("Geosite update error handler failed")
            return result


_source: Optional[GeositeSource] = None
_source_lock = threading.Lock()


def get_geosite_source() -> GeositeSource:
    global _source
    with _source_lock:
        if _source is None:
            _source = GeositeSource(
                GeositeConfig.from_env(),
                database_path=os.path.join(geosite_config.data_dir(), DATABASE_FILE),
            )
    return _source
