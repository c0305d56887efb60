"""Pattern-based turn and answer classifiers.

Each classifier exposes ``classify(text) -> Category`` so the conversation
router and the example selector depend only on the :class:`Classifier`
protocol; a model-backed classifier can replace any of them.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Protocol


class Category(str, Enum):
    FOLLOW_UP = "follow_up"
    STANDALONE = "standalone"
    HEDGED = "hedged"
    CONFIDENT = "confident"


class Classifier(Protocol):
    def classify(self, text: str) -> Category: ...


# ---------------------------------------------------------------------------
# Follow-up detection
# ---------------------------------------------------------------------------

_FOLLOW_UP_RE = re.compile(
    r"^\s*(?:what about|how about|and\s+what|what\s+else|ok,\s*but|and\b|also\b)",
    re.IGNORECASE,
)


class FollowUpClassifier:
    """A turn is a follow-up if it opens with a continuation cue or is short.

    Args:
        min_standalone_tokens: Turns with fewer whitespace-separated tokens
            than this are treated as follow-ups.
    """

    def __init__(self, min_standalone_tokens: int = 6) -> None:
        self.min_standalone_tokens = min_standalone_tokens

    def classify(self, text: str) -> Category:
        if _FOLLOW_UP_RE.match(text or ""):
            return Category.FOLLOW_UP
        if len((text or "").split()) < self.min_standalone_tokens:
            return Category.FOLLOW_UP
        return Category.STANDALONE


# ---------------------------------------------------------------------------
# Hedge detection
# ---------------------------------------------------------------------------

_HEDGE_RE = re.compile(
    r"not.*public(?:ly)? (?:disclosed|available)"
    r"|check (?:their|the) official website"
    r"|contact (?:them|support)"
    r"|cannot (?:determine|confirm)",
    re.IGNORECASE,
)
_DONT_KNOW_RE = re.compile(r"\bi don['’]?t know\b", re.IGNORECASE)
_NOT_ENOUGH_RE = re.compile(r"not enough info", re.IGNORECASE)


class HedgeDetector:
    """Flag generated text that should not be trusted as an answer.

    Stock non-answers ("not publicly disclosed", "contact support"), explicit
    "I don't know" replies, and replies shorter than ``min_length`` are hedged.
    """

    def __init__(self, min_length: int = 8) -> None:
        self.min_length = min_length

    def classify(self, text: str) -> Category:
        stripped = (text or "").strip()
        if len(stripped) < self.min_length:
            return Category.HEDGED
        if _HEDGE_RE.search(stripped) or _DONT_KNOW_RE.search(stripped) or _NOT_ENOUGH_RE.search(stripped):
            return Category.HEDGED
        return Category.CONFIDENT

    def is_hedged(self, text: str) -> bool:
        return self.classify(text) is Category.HEDGED


def says_dont_know(text: str) -> bool:
    return bool(_DONT_KNOW_RE.search(text or ""))


# ---------------------------------------------------------------------------
# Objective inference
# ---------------------------------------------------------------------------

_TASK_CUE_RE = re.compile(
    r"\b(?:summarize|compare|explain|list|find|give|show|calculate|convert|estimate|translate)\b.*$",
    re.IGNORECASE | re.DOTALL,
)
_QUESTION_CUE_RE = re.compile(r"\b(?:how|why|what|which|when)\b.*$", re.IGNORECASE | re.DOTALL)


def infer_objective(text: str, previous: str | None = None) -> str | None:
    """Return the suffix of *text* starting at its first task or question cue.

    Task verbs win over question words. Falls back to *previous* when the
    turn carries no cue.
    """
    m = _TASK_CUE_RE.search(text or "") or _QUESTION_CUE_RE.search(text or "")
    if m:
        return " ".join(m.group(0).split())
    return previous
