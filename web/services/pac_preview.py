from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Tuple

from adblockparser import AdblockRule

from services.geosite_rules import EXCEPTION_PREFIX


logger = logging.getLogger(__name__)


PROXY = "PROXY"
DIRECT = "DIRECT"


def compile_rule(line: str) -> Optional[Tuple[bool, re.Pattern]]:
    """Compile one ABP line to (is_exception, pattern), or None if it never matches a URL.

    Mirrors compileRule() in resources/abp.js line for line: comments,
    element hiding and `$option` rules are skipped, `/.../` is a raw regex,
    everything else goes through adblockparser's filter translation.
    """
    text = (line or "").strip()
    if not text or text.startswith(("!", "[Adblock")) or "##" in text or "#@#" in text:
        return None
    is_exception = text.startswith(EXCEPTION_PREFIX)
    if is_exception:
        text = text[len(EXCEPTION_PREFIX):]
    is_regex = text.startswith("/") and text.endswith("/")
    if (len(text) <= 2) if is_regex else (not text or "$" in text):
        return None
    source = text[1:-1] if is_regex else AdblockRule.rule_to_regex(text)
    try:
        return is_exception, re.compile(source, re.IGNORECASE)
    except re.error as e:
        logger.debug("Skipping rule %r: %s", line, e)
        return None


class RuleSet:
    """One list of ABP lines evaluated the way the PAC template does it.

    An exception (`@@`) match wins over a blocking match; no match at all
    defers to the next list.
    """

    def __init__(self, lines: Iterable[str]):
        self._blocking: List[re.Pattern] = []
        self._exceptions: List[re.Pattern] = []
        for raw in lines:
            compiled = compile_rule(raw)
            if compiled is None:
                continue
            is_exception, pattern = compiled
            (self._exceptions if is_exception else self._blocking).append(pattern)

    @property
    def blocking_count(self) -> int:
        return len(self._blocking)

    @property
    def exception_count(self) -> int:
        return len(self._exceptions)

    def decide(self, url: str) -> Optional[str]:
        if any(p.search(url) for p in self._exceptions):
            return DIRECT
        if any(p.search(url) for p in self._blocking):
            return PROXY
        return None


def route_for_url(user_rules: Iterable[str], rules: Iterable[str], url: str) -> str:
    """Return PROXY or DIRECT for url: user rules first, then generated rules."""
    for ruleset in (RuleSet(user_rules), RuleSet(rules)):
        decision = ruleset.decide(url)
        if decision is not None:
            logger.debug("Route for %s: %s", url, decision)
            return decision
    logger.debug("Route for %s: %s (no rule matched)", url, DIRECT)
    return DIRECT
