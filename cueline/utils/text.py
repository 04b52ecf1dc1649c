"""Text helpers shared by the transcription and response pipelines."""

from __future__ import annotations

import re
from typing import Iterable, List, Tuple

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")
_FORMAT_CHARS = re.compile("[\ufffd\ufeff\u200b-\u200d]")
_WHITESPACE = re.compile(r"\s+")


def sanitize_text(text: object, strip: bool = True) -> str:
    """Remove control and invisible formatting characters from ``text``.

    Non-string input yields an empty string. Streamed fragments should pass
    ``strip=False`` so the whitespace separating tokens survives.
    """

    if not isinstance(text, str) or not text:
        return ""
    cleaned = _FORMAT_CHARS.sub("", _CONTROL_CHARS.sub("", text))
    return cleaned.strip() if strip else cleaned


def words(text: str) -> List[str]:
    stripped = text.strip()
    if not stripped:
        return []
    return _WHITESPACE.split(stripped)


def word_count(text: str) -> int:
    return len(words(text))


def normalise(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip().lower())


def is_contained(candidate: str, reference: str) -> bool:
    """Return True when either text contains the other after normalisation."""

    left = normalise(candidate)
    right = normalise(reference)
    if not left or not right:
        return False
    return left == right or left in right or right in left


PhrasePatterns = List[Tuple[str, re.Pattern]]


def compile_phrases(phrases: Iterable[str], plurals: bool = False) -> PhrasePatterns:
    """Compile one whole-phrase, case-insensitive pattern per phrase.

    With ``plurals`` a trailing "s" or "es" is accepted after each phrase.
    """

    suffix = "(?:e?s)?" if plurals else ""
    compiled: PhrasePatterns = []
    for phrase in phrases:
        body = re.escape(phrase.lower()).replace(r"\ ", r"\s+") + suffix
        compiled.append((phrase, re.compile(rf"(?<![\w']){body}(?![\w'])", re.IGNORECASE)))
    return compiled


def matched_phrases(patterns: PhrasePatterns, text: str) -> List[str]:
    """Return the phrases from ``patterns`` that occur in ``text``."""

    return [phrase for phrase, pattern in patterns if pattern.search(text)]


__all__ = [
    "compile_phrases",
    "is_contained",
    "matched_phrases",
    "normalise",
    "sanitize_text",
    "word_count",
    "words",
]
