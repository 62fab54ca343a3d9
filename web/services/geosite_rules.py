from __future__ import annotations

from typing import Iterable, List, Tuple

from services.errors import GeositeError, GeositeSelectorError
from services.geosite_db import DOMAIN, FULL, PLAIN, REGEX, DomainEntry, GeositeIndex


MATCH_ALL_RULE = "/.*/"
EXCEPTION_PREFIX = "@@"


def split_group_selector(selector: str) -> Tuple[str, str]:
    """Split `group` or `group@attribute` into (group, attribute).

    The attribute is "" when absent. More than one `@` is rejected.
    """
    parts = (selector or "").split("@")
    if len(parts) == 1:
        return parts[0], ""
    if len(parts) == 2:
        return parts[0], parts[1]
    raise GeositeSelectorError(f"Invalid geosite group selector (more than one '@'): {selector}")


def _entry_rules(entry: DomainEntry) -> List[str]:
    if entry.type == PLAIN:
        return [entry.value]
    if entry.type == REGEX:
        return [f"/{entry.value}/"]
    if entry.type == DOMAIN:
        return [f"||{entry.value}"]
    if entry.type == FULL:
        return [f"|http://{entry.value}", f"|https://{entry.value}"]
    # Types added upstream later are ignored.
    return []


def generate_blocking_rules(index: GeositeIndex, selectors: Iterable[str]) -> List[str]:
    """Rules matching the domains of `selectors`, in selector then database order."""
    lines: List[str] = []
    for selector in selectors:
        group, attribute = split_group_selector(selector)
        entries = index.get(group)
        for entry in entries:
            if attribute and not entry.has_attribute(attribute):
                continue
            lines.extend(_entry_rules(entry))
    return lines


def generate_exception_rules(index: GeositeIndex, selectors: Iterable[str]) -> List[str]:
    return [EXCEPTION_PREFIX + line for line in generate_blocking_rules(index, selectors)]


def generate_rules(
    index: GeositeIndex,
    direct_groups: Iterable[str],
    proxied_groups: Iterable[str],
    prefer_direct: bool,
) -> List[str]:
    """Rule lines for the PAC `__RULES__` array.

    prefer_direct (blacklist): proxy the proxied groups, except the direct ones.
    Otherwise (whitelist): proxy everything, except the direct groups.
    """
    if prefer_direct:
        lines = generate_blocking_rules(index, proxied_groups)
    else:
        lines = [MATCH_ALL_RULE]
    lines.extend(generate_exception_rules(index, direct_groups))
    return lines


def check_group(index: GeositeIndex, selector: str) -> bool:
    try:
        group, _ = split_group_selector(selector)
    except GeositeError:
        return False
    return group in index
