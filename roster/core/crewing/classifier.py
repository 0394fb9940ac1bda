# roster/core/crewing/classifier.py
from __future__ import annotations

import re

from roster.core.crewing.domain import ReplyClass

POSITIVE_REPLIES = frozenset({"yes", "y", "ok", "okay", "sure"})
NEGATIVE_REPLIES = frozenset({"no", "n", "not interested"})

_WHITESPACE = re.compile(r"\s+")


def normalize_reply(body: str | None) -> str:
    """Trim, lowercase and collapse inner whitespace ("Not  Interested " → "not interested")."""
    if not body:
        return ""
    return _WHITESPACE.sub(" ", body.strip().lower())


def classify_reply(body: str | None) -> ReplyClass:
    """
    Map an inbound message body to Positive / Negative / Unknown.

    Exact match against fixed vocabularies after normalisation; anything
    else ("yes please", "maybe", "👍") is Unknown and the caller must not act.
    """
    text = normalize_reply(body)
    if text in POSITIVE_REPLIES:
        return ReplyClass.POSITIVE
    if text in NEGATIVE_REPLIES:
        return ReplyClass.NEGATIVE
    return ReplyClass.UNKNOWN
