from __future__ import annotations

import json
import logging
import os
import threading
from typing import Callable, Iterable, List, Optional

from services import geosite_config
from services.file_watch import FileWatcher
from services.fileutil import atomic_write_text, path_lock, read_text
from services.geosite_source import RESOURCES_DIR, GeositeSource, UpdateResult, get_geosite_source
from services.pac_preview import route_for_url


logger = logging.getLogger(__name__)


PAC_FILE = "pac.txt"
USER_RULE_FILE = "user-rule.txt"
USER_ABP_FILE = "abp.txt"

DEFAULT_ABP_PATH = os.path.join(RESOURCES_DIR, "abp.js")
DEFAULT_USER_RULE_PATH = os.path.join(RESOURCES_DIR, "user-rule.txt")


class Signal:
    """Minimal synchronous event: handlers run in subscription order."""

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable] = []
        self._lock = threading.Lock()

    def connect(self, handler: Callable) -> Callable:
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Callable) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, *args) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for h in handlers:
            try:
                h(*args)
            except Exception:
                logger.exception("Handler for %s failed", self.name)


def process_user_rules(content: str) -> List[str]:
    """Drop blank lines and `!`/`[` comment lines; keep the rest verbatim."""
    valid: List[str] = []
    for line in (content or "").splitlines():
        if not line.strip() or line.startswith("!") or line.startswith("["):
            continue
        valid.append(line)
    return valid


def render_pac(user_rules: List[str], rules: List[str], template: str) -> str:
    return (
        f"var __USERRULES__ = {json.dumps(user_rules, indent=2, ensure_ascii=False)};\n"
        f"var __RULES__ = {json.dumps(rules, indent=2, ensure_ascii=False)};\n"
        f"{template}"
    )


class PACDaemon:
    """Keeps pac.txt in sync with the geosite rules, user-rule.txt and the ABP template."""

    def __init__(
        self,
        source: GeositeSource,
        pac_dir: str,
        *,
        debounce_seconds: float = 0.01,
        poll_interval_seconds: float = 0.5,
        default_abp_path: str = DEFAULT_ABP_PATH,
        default_user_rule_path: str = DEFAULT_USER_RULE_PATH,
    ):
        self.source = source
        self.pac_dir = pac_dir
        self.pac_path = os.path.join(pac_dir, PAC_FILE)
        self.user_rule_path = os.path.join(pac_dir, USER_RULE_FILE)
        self.user_abp_path = os.path.join(pac_dir, USER_ABP_FILE)
        self.default_abp_path = default_abp_path
        self.default_user_rule_path = default_user_rule_path
        self.last_update_result: Optional[UpdateResult] = None

        self.update_completed = Signal("update_completed")
        self.error = Signal("error")
        self.pac_file_changed = Signal("pac_file_changed")
        self.user_rule_file_changed = Signal("user_rule_file_changed")

        self._pac_watcher = FileWatcher(
            self.pac_path,
            lambda _p: self.pac_file_changed.emit(),
            name="PAC",
            debounce_seconds=debounce_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        self._user_rule_watcher = FileWatcher(
            self.user_rule_path,
            lambda _p: self.user_rule_file_changed.emit(),
            name="User Rule",
            debounce_seconds=debounce_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )

    # Files

    def ensure_defaults(self) -> None:
        self.touch_user_rule_file()
        self.touch_pac_file()

    def touch_pac_file(self) -> str:
        if not os.path.exists(self.pac_path):
            self.merge_and_write()
        return self.pac_path

    def touch_user_rule_file(self) -> str:
        with path_lock(self.user_rule_path):
            if not os.path.exists(self.user_rule_path):
                atomic_write_text(self.user_rule_path, read_text(self.default_user_rule_path))
        return self.user_rule_path

    def get_content(self) -> str:
        self.touch_pac_file()
        return read_text(self.pac_path)

    def _read_template(self) -> str:
        if os.path.exists(self.user_abp_path):
            return read_text(self.user_abp_path)
        return read_text(self.default_abp_path)

    def _read_user_rules(self) -> List[str]:
        if not os.path.exists(self.user_rule_path):
            return []
        return process_user_rules(read_text(self.user_rule_path))

    # Merge

    def merge_pac(
        self,
        direct_groups: Optional[Iterable[str]] = None,
        proxied_groups: Optional[Iterable[str]] = None,
        prefer_direct: Optional[bool] = None,
    ) -> str:
        direct = self.source.direct_groups if direct_groups is None else list(direct_groups)
        proxied = self.source.proxied_groups if proxied_groups is None else list(proxied_groups)
        blacklist = self.source.prefer_direct if prefer_direct is None else bool(prefer_direct)

        template = self._read_template()
        user_rules = self._read_user_rules()
        rules = self.source.generate_rules(direct, proxied, blacklist)
        return render_pac(user_rules, rules, template)

    def route_for(self, url: str) -> str:
        """PROXY or DIRECT for url under the current user rules and policy."""
        rules = self.source.generate_rules(self.source.direct_groups, self.source.proxied_groups, self.source.prefer_direct)
        return route_for_url(self._read_user_rules(), rules, url)

    def merge_and_write(
        self,
        direct_groups: Optional[Iterable[str]] = None,
        proxied_groups: Optional[Iterable[str]] = None,
        prefer_direct: Optional[bool] = None,
    ) -> bool:
        """Regenerate pac.txt; returns True only if the file content changed."""
        with path_lock(self.pac_path):
            content = self.merge_pac(direct_groups, proxied_groups, prefer_direct)
            if os.path.exists(self.pac_path):
                if read_text(self.pac_path) == content:
                    return False
            atomic_write_text(self.pac_path, content)
        logger.info("Wrote %s (%d bytes)", self.pac_path, len(content))
        return True

    def update_pac_from_geosite(self) -> bool:
        result = self.source.update_source(error=self.error.emit)
        self.last_update_result = result
        if not result.ok:
            self.update_completed.emit(False)
            return False
        try:
            changed = self.merge_and_write()
        except Exception as e:
            logger.exception("Failed to regenerate PAC after geosite update")
            self.error.emit(e)
            self.update_completed.emit(False)
            return False
        self.update_completed.emit(changed)
        return changed

    # Watching

    def start_watching(self) -> None:
        self._pac_watcher.start()
        self._user_rule_watcher.start()

    def stop_watching(self) -> None:
        self._pac_watcher.stop()
        self._user_rule_watcher.stop()

    @property
    def watchers(self) -> List[FileWatcher]:
        return [self._pac_watcher, self._user_rule_watcher]


def _regenerate_on_user_rule_change(daemon: PACDaemon) -> Callable[[], None]:
    def handler() -> None:
        try:
            daemon.merge_and_write()
        except Exception as e:
            logger.exception("Failed to regenerate PAC after user rule change")
            daemon.error.emit(e)

    return handler


_daemon: Optional[PACDaemon] = None
_daemon_lock = threading.Lock()


def get_pac_daemon() -> PACDaemon:
    global _daemon
    with _daemon_lock:
        if _daemon is None:
            d = PACDaemon(
                get_geosite_source(),
                geosite_config.pac_dir(),
                debounce_seconds=geosite_config.watch_debounce_seconds(),
            )
            d.user_rule_file_changed.connect(_regenerate_on_user_rule_change(d))
            d.pac_file_changed.connect(lambda: logger.info("PAC file changed on disk: %s", d.pac_path))
            d.ensure_defaults()
            _daemon = d
    return _daemon
