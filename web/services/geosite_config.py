from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from services.geosite_db import GeositeIndex
from services.geosite_rules import check_group


logger = logging.getLogger(__name__)


GEOSITE_URL = "https://github.com/v2fly/domain-list-community/raw/release/dlc.dat"
GEOSITE_SHA256SUM_URL = "https://github.com/v2fly/domain-list-community/raw/release/dlc.dat.sha256sum"


def default_direct_groups() -> List[str]:
    return ["cn", "geolocation-!cn@cn"]


def default_proxied_groups() -> List[str]:
    return ["geolocation-!cn"]


def _env_bool(name: str, default: bool) -> bool:
    v = (os.environ.get(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _env_list(name: str, default: Sequence[str]) -> List[str]:
    v = os.environ.get(name)
    if v is None or not v.strip():
        return list(default)
    out: List[str] = []
    for item in v.split(","):
        s = item.strip()
        if s and s not in out:
            out.append(s)
    return out


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return float(default)
    try:
        return float(v)
    except Exception:
        return float(default)


@dataclass(frozen=True)
class GeositeConfig:
    # Custom database source; "" means the upstream release.
    geosite_url: str = ""
    # Custom checksum source; "" derives it from geosite_url.
    geosite_sha256sum_url: str = ""
    direct_groups: List[str] = field(default_factory=default_direct_groups)
    proxied_groups: List[str] = field(default_factory=default_proxied_groups)
    # a.k.a. blacklist mode
    prefer_direct: bool = False

    @classmethod
    def from_env(cls) -> "GeositeConfig":
        return cls(
            geosite_url=(os.environ.get("GEOSITE_URL") or "").strip(),
            geosite_sha256sum_url=(os.environ.get("GEOSITE_SHA256SUM_URL") or "").strip(),
            direct_groups=_env_list("GEOSITE_DIRECT_GROUPS", default_direct_groups()),
            proxied_groups=_env_list("GEOSITE_PROXIED_GROUPS", default_proxied_groups()),
            prefer_direct=_env_bool("GEOSITE_PREFER_DIRECT", False),
        )

    def source_url(self) -> str:
        return self.geosite_url.strip() or GEOSITE_URL

    def checksum_url(self) -> str:
        if self.geosite_sha256sum_url.strip():
            return self.geosite_sha256sum_url.strip()
        if self.geosite_url.strip():
            return self.geosite_url.strip() + ".sha256sum"
        return GEOSITE_SHA256SUM_URL

    def validated(self, index: GeositeIndex) -> "GeositeConfig":
        """Return a copy whose invalid group lists are reset to the defaults."""
        direct = list(self.direct_groups)
        proxied = list(self.proxied_groups)
        if not validate_group_list(index, direct):
            direct = default_direct_groups()
        if not validate_group_list(index, proxied):
            proxied = default_proxied_groups()
        if direct == list(self.direct_groups) and proxied == list(self.proxied_groups):
            return self
        return replace(self, direct_groups=direct, proxied_groups=proxied)


def validate_group_list(index: GeositeIndex, groups: Sequence[str]) -> bool:
    for group in groups:
        if not check_group(index, group):
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug("Available groups: %s", ", ".join(sorted(index.groups())))
            logger.warning("The Geosite group %s doesn't exist. Resetting to default groups.", group)
            return False
    return True


def data_dir() -> str:
    return (os.environ.get("GEOSITE_DATA_DIR") or "").strip() or "/var/lib/geosite-pac"


def pac_dir() -> str:
    return (os.environ.get("PAC_DIR") or "").strip() or data_dir()


def update_interval_seconds() -> int:
    return max(0, _env_int("GEOSITE_UPDATE_INTERVAL", 24 * 60 * 60))


def watch_debounce_seconds() -> float:
    return max(0.0, _env_float("PAC_WATCH_DEBOUNCE_SECONDS", 0.01))


def http_timeout_seconds() -> float:
    return max(1.0, _env_float("GEOSITE_HTTP_TIMEOUT", 30.0))


def max_download_bytes(default: Optional[int] = None) -> int:
    fallback = 64 * 1024 * 1024 if default is None else int(default)
    v = _env_int("GEOSITE_MAX_DOWNLOAD_BYTES", fallback)
    return v if v > 0 else fallback
