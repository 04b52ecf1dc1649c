"""Heuristics deciding whether buffered speech reads as a finished question."""

from __future__ import annotations

import re

from ...utils.text import word_count, words

QUESTION_WORDS = frozenset(
    {
        "what",
        "how",
        "why",
        "when",
        "where",
        "who",
        "which",
        "can",
        "could",
        "would",
        "should",
        "is",
        "are",
        "do",
        "does",
        "did",
        "will",
        "have",
        "has",
        "define",
    }
)

MAX_BUFFER_WORDS = 40
MAX_BUFFER_CHARS = 200
MIN_QUESTION_CHARS = 3

_TERMINAL_PUNCTUATION = re.compile(r"[?.!]$")
_EDGE_PUNCTUATION = re.compile(r"^[^\w]+|[^\w']+$")


def _first_word(text: str) -> str:
    tokens = words(text)
    if not tokens:
        return ""
    return _EDGE_PUNCTUATION.sub("", tokens[0].lower())


def is_complete_question(text: str) -> bool:
    """A question mark anywhere, or a question word followed by at least three more words."""

    stripped = (text or "").strip()
    if len(stripped) < MIN_QUESTION_CHARS:
        return False
    if "?" in stripped:
        return True
    return _first_word(stripped) in QUESTION_WORDS and word_count(stripped) >= 4


def is_semantically_complete(
    text: str,
    max_words: int = MAX_BUFFER_WORDS,
    max_chars: int = MAX_BUFFER_CHARS,
) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    if is_complete_question(stripped):
        return True
    if word_count(stripped) >= max_words or len(stripped) >= max_chars:
        return True
    return bool(_TERMINAL_PUNCTUATION.search(stripped))


def hit_buffer_ceiling(text: str, max_words: int = MAX_BUFFER_WORDS, max_chars: int = MAX_BUFFER_CHARS) -> bool:
    """True when completeness is only reached by the forced size ceiling."""

    stripped = (text or "").strip()
    if not stripped or is_complete_question(stripped) or _TERMINAL_PUNCTUATION.search(stripped):
        return False
    return word_count(stripped) >= max_words or len(stripped) >= max_chars


__all__ = [
    "MAX_BUFFER_CHARS",
    "MAX_BUFFER_WORDS",
    "QUESTION_WORDS",
    "hit_buffer_ceiling",
    "is_complete_question",
    "is_semantically_complete",
]
