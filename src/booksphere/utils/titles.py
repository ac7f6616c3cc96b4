"""Title folding shared by catalog search and candidate ranking."""

from __future__ import annotations

import re
import unicodedata

_APOSTROPHE_RE = re.compile(r"['’ʼ`]")
_NON_WORD_RE = re.compile(r"[^\w\s]|_", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")
_LEADING_ARTICLE_RE = re.compile(r"^(the|a|an)\s+")
STOPWORDS = frozenset({"the", "a", "an", "of", "and", "le", "la", "les", "der", "die", "das"})


def normalize_title(value: str | None) -> str:
    """Lowercase, accent-free, punctuation-free title without a leading article.

    Apostrophes are dropped rather than split on, so ``Philosopher's`` folds
    to ``philosophers``.
    """

    if not value:
        return ""
    text = unicodedata.normalize("NFKD", value)
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = _APOSTROPHE_RE.sub("", text)
    text = _NON_WORD_RE.sub(" ", text)
    text = _SPACE_RE.sub(" ", text).strip()
    return _LEADING_ARTICLE_RE.sub("", text)


def search_stems(normalized_title: str, *, max_terms: int = 4) -> list[str]:
    """Prefixes of the longest distinctive words, for substring search.

    Trimming the last two letters of longer words lets a search survive
    plural forms and typos near the end of a word.
    """

    words = {word for word in normalized_title.split() if len(word) > 1 and word not in STOPWORDS}
    longest = sorted(words, key=lambda word: (-len(word), word))[:max_terms]
    return [word[: max(4, len(word) - 2)] for word in longest]


__all__ = ["STOPWORDS", "normalize_title", "search_stems"]
