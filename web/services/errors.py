from __future__ import annotations

import os
import re


class GeositeError(Exception):
    """Base class for geosite/PAC pipeline failures."""


class GeositeParseError(GeositeError, ValueError):
    """The database bytes are truncated or malformed."""


class GeositeSelectorError(GeositeError, ValueError):
    """A group selector is malformed (e.g. `a@b@c`)."""


class GeositeGroupNotFound(GeositeError, KeyError):
    """A selector references a group that is not in the database."""

    def __init__(self, group: str):
        super().__init__(group)
        self.group = group

    def __str__(self) -> str:
        return f"Geosite group not found: {self.group}"


class GeositeNetworkError(GeositeError):
    """Fetching the checksum or the database failed (status, timeout, size)."""


class ChecksumMismatch(GeositeError):
    """Downloaded database does not match the published SHA-256 digest."""


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: int = 200,
) -> str:
    """Return a user-safe error message.

    - By default, avoids leaking internal exception details.
    - For ValueError (bad selectors, corrupt database) and the geosite errors
      that describe configuration or upstream problems, returns the message.
    - If EXPOSE_INTERNAL_ERRORS is set, returns the exception type + message.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (ValueError, GeositeError)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default
