"""Text normalization for note matching."""

from __future__ import annotations

import re
from typing import FrozenSet, List

STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "and", "for", "that", "with", "from", "this", "have", "will",
    "your", "you", "are", "was", "were", "been", "into", "about", "during",
    "after", "before", "across", "their", "them", "they", "then", "than",
    "there", "where", "which", "while", "would", "could", "should", "also",
    "our", "out", "use", "using", "used", "can", "may", "more", "most",
    "some", "such", "over", "under", "each",
    # noise words from meeting material
    "phase", "meeting", "meetings", "kickoff", "notes",
})

MIN_TOKEN_LENGTH = 3

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def token_sequence(text: str | None) -> List[str]:
    """Significant words of ``text`` in reading order, duplicates kept."""
    if not text:
        return []
    normalized = _NON_WORD.sub(" ", text.lower())
    return [
        token
        for token in _WHITESPACE.split(normalized)
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOP_WORDS
    ]


def tokenize(text: str | None) -> FrozenSet[str]:
    """Normalize free text into its set of significant words.

    Lowercases, turns every character outside ``[a-z0-9]`` and whitespace
    into a space, splits on whitespace runs and drops short tokens and stop
    words. Empty or whitespace-only input yields an empty set.
    """
    return frozenset(token_sequence(text))


def key_sentences(text: str | None, limit: int = 5, min_length: int = 36) -> List[str]:
    """Return up to ``limit`` distinct sentences worth quoting from ``text``."""
    if not text:
        return []
    collapsed = _WHITESPACE.sub(" ", text).strip()
    if not collapsed:
        return []

    sentences: List[str] = []
    seen = set()
    for sentence in _SENTENCE_END.split(collapsed):
        sentence = sentence.strip()
        if len(sentence) < min_length:
            continue
        key = sentence.lower()
        if key in seen:
            continue
        seen.add(key)
        sentences.append(sentence)
        if len(sentences) >= limit:
            break
    return sentences
