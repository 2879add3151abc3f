"""Deterministic reply matching against a content pack.

Replies are normalized, then compared with the pack's rules in order. The
first rule whose scope and patterns match wins; there is no scoring.
"""

import re
from typing import Any, Optional

from toc_orchestrator.rules.models import ContentPack, ProtocolRule

_NUMBER = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)")
# "8/10", "8 / 10", "8 out of 10"
_SCORE = re.compile(r"(?<![\w.])(\d+(?:\.\d+)?)\s*(?:/|out of)\s*10(?!\d)")
_WHITESPACE = re.compile(r"\s+")
_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'"})


def normalize_text(text: str | None) -> str:
    """Lowercase, unify apostrophes and collapse whitespace."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.translate(_APOSTROPHES).lower()).strip()


def payload_text(payload: dict[str, Any]) -> str:
    """Pull the reply text out of an inbound payload."""
    for key in ("text", "body", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    if payload.get("value_number") is not None:
        return str(payload["value_number"])
    return ""


def extract_number(normalized_text: str, payload: dict[str, Any] | None = None) -> Optional[float]:
    """Structured value wins, then a score out of ten, then the last number.

    "took 2 pills, pain is 8" and "2 days in, pain 8/10" both yield 8.
    """
    if payload is not None and payload.get("value_number") is not None:
        try:
            return float(payload["value_number"])
        except (TypeError, ValueError):
            return None

    score = _SCORE.search(normalized_text)
    if score is not None:
        return float(score.group(1))

    found = _NUMBER.findall(normalized_text)
    if not found:
        return None
    return float(found[-1])


def match_reply(
    pack: ContentPack,
    normalized_text: str,
    condition: str | None,
    category: str | None,
) -> Optional[ProtocolRule]:
    """Return the first applicable rule that matches, or None."""
    if not normalized_text:
        return None

    for rule in pack.rules:
        if rule.applies_to(condition, category) and rule.matches(normalized_text):
            return rule

    return None
