"""Cleanup of raw speech-to-text output before it reaches the transcript log."""

from __future__ import annotations

import re

__all__ = ["FILLER_WORDS", "sanitize"]

# (music), (laughs), [BLANK_AUDIO], [inaudible] ...
_ANNOTATION_RE = re.compile(r"\([^()]*\)|\[[^\[\]]*\]")
_WHITESPACE_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s']+")

FILLER_WORDS = frozenset(
    {
        "um",
        "umm",
        "uh",
        "uhh",
        "uh huh",
        "hmm",
        "mm",
        "mhm",
        "ah",
        "oh",
        "er",
        "okay",
        "ok",
        "yeah",
        "yes",
        "no",
        "so",
        "you",
        "bye",
        "thanks",
        "thank you",
        "thank you for watching",
    }
)


def _is_filler(text: str) -> bool:
    bare = _WHITESPACE_RE.sub(" ", _PUNCT_RE.sub(" ", text)).strip().lower()
    if not bare:
        # punctuation only
        return True
    return bare in FILLER_WORDS


def sanitize(text: str) -> str:
    """Return the cleaned transcript text, or "" when it should be discarded."""
    if not text:
        return ""
    previous = None
    cleaned = text
    # nested annotations like "((music))" need more than one pass
    while previous != cleaned:
        previous = cleaned
        cleaned = _ANNOTATION_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if len(cleaned) < 2:
        return ""
    if _is_filler(cleaned):
        return ""
    return cleaned
