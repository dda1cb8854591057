"""Utility helpers for the AnimeShelf service."""

from __future__ import annotations

import re
import unicodedata
from typing import Any


NON_WORD_RE = re.compile(r"[^\w\s]+")
WHITESPACE_RE = re.compile(r"\s+")
LATIN_DIACRITIC_RE = re.compile("[\u0300-\u036f]")
NGRAM_SIZE = 3


def fold_text(value: str) -> str:
    """Return a lower-cased, diacritic-free version of ``value``.

    Latin combining diacritics are dropped, so "Shōnen" folds to "shonen".
    Kana voicing marks survive the round trip: "ポ" stays "ポ".
    """

    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(char for char in decomposed if not LATIN_DIACRITIC_RE.match(char))
    return unicodedata.normalize("NFC", stripped).casefold()


def normalize_title(value: str) -> str:
    """Return the canonical form used for exact title comparisons."""

    folded = NON_WORD_RE.sub(" ", fold_text(value))
    return WHITESPACE_RE.sub(" ", folded).strip()


def tokenize(value: str) -> list[str]:
    """Split ``value`` into normalised word tokens."""

    normalized = normalize_title(value)
    if not normalized:
        return []
    return normalized.split(" ")


def coerce_int(value: Any, *, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def coerce_float(value: Any, *, default: float | None = None) -> float | None:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def split_csv_param(value: str | None) -> list[str]:
    """Split a comma separated query parameter, dropping blanks."""

    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def ngrams(token: str, size: int = NGRAM_SIZE) -> set[str]:
    """Return the distinct character n-grams of ``token`` (empty if shorter)."""

    return {token[start : start + size] for start in range(len(token) - size + 1)}
