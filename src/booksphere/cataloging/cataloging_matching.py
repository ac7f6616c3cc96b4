"""Rank existing catalog editions against extracted metadata.

Tiers, strongest first: exact ISBN, exact normalized title + author + year,
fuzzy title. The result is always a ranked list; choosing an edition is left
to the person finalizing the job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from difflib import SequenceMatcher

from ..repositories.catalog_edition_repository import CatalogEdition, CatalogEditionRepository
from ..utils.titles import normalize_title
from .cataloging_models import MAX_MATCHED_EDITIONS, CandidateMatch, ExtractedMetadata, MatchType
from .cataloging_validation import isbn10_to_isbn13, isbn13_to_isbn10, normalize_isbn

logger = logging.getLogger(__name__)

FUZZY_TITLE_THRESHOLD = 0.85
_TIER_RANK = {MatchType.ISBN: 0, MatchType.EXACT: 1, MatchType.FUZZY: 2}


def normalize_person(value: str | None) -> str:
    """Order-insensitive form so ``Orwell, George`` equals ``George Orwell``."""

    tokens = normalize_title(value).split()
    return " ".join(sorted(tokens))


def _isbn_keys(raw: Iterable[str | None]) -> set[str]:
    keys: set[str] = set()
    for value in raw:
        normalized = normalize_isbn(value)
        if normalized is None:
            continue
        keys.add(normalized)
        if len(normalized) == 10:
            keys.add(isbn10_to_isbn13(normalized))
        else:
            converted = isbn13_to_isbn10(normalized)
            if converted:
                keys.add(converted)
    return keys


def _edition_isbn_keys(edition: CatalogEdition) -> set[str]:
    return _isbn_keys([edition.isbn13, edition.isbn10])


@dataclass(slots=True)
class _Scored:
    edition: CatalogEdition
    match_type: MatchType
    score: float


def _score(
    edition: CatalogEdition,
    *,
    title: str,
    authors: set[str],
    year: int | None,
    isbns: set[str],
) -> _Scored | None:
    if isbns and isbns & _edition_isbn_keys(edition):
        return _Scored(edition, MatchType.ISBN, 1.0)
    if not title:
        return None
    edition_title = normalize_title(edition.title)
    if (
        edition_title == title
        and year is not None
        and edition.publication_year == year
        and authors
        and authors & {normalize_person(name) for name in edition.authors}
    ):
        return _Scored(edition, MatchType.EXACT, 0.95)
    ratio = SequenceMatcher(None, title, edition_title).ratio()
    if ratio >= FUZZY_TITLE_THRESHOLD:
        return _Scored(edition, MatchType.FUZZY, round(ratio * 0.9, 4))
    return None


def rank_candidates(
    metadata: ExtractedMetadata | None,
    editions: Iterable[CatalogEdition],
    *,
    isbn_hint: str | None = None,
    limit: int = MAX_MATCHED_EDITIONS,
) -> list[CandidateMatch]:
    """Return at most ``limit`` candidate matches, best first."""

    title = normalize_title(metadata.title if metadata else None)
    authors = {normalize_person(name) for name in (metadata.author_names if metadata else [])}
    authors.discard("")
    year = metadata.publication_year if metadata else None
    isbns = _isbn_keys([isbn_hint, metadata.isbn if metadata else None])

    scored = []
    for edition in editions:
        result = _score(edition, title=title, authors=authors, year=year, isbns=isbns)
        if result is not None:
            scored.append(result)
    scored.sort(key=lambda item: (_TIER_RANK[item.match_type], -item.score, item.edition.edition_id))
    return [
        CandidateMatch(
            edition_id=item.edition.edition_id,
            match_type=item.match_type,
            score=item.score,
            title=item.edition.title,
            authors=list(item.edition.authors),
            publication_year=item.edition.publication_year,
            isbn=item.edition.isbn13 or item.edition.isbn10,
        )
        for item in scored[:limit]
    ]


class CatalogMatcher:
    """Fetch plausible editions from the catalog and rank them."""

    def __init__(self, editions: CatalogEditionRepository, *, limit: int = MAX_MATCHED_EDITIONS) -> None:
        self._editions = editions
        self._limit = limit

    def find_matches(
        self, metadata: ExtractedMetadata | None, *, isbn_hint: str | None = None
    ) -> list[CandidateMatch]:
        isbns = _isbn_keys([isbn_hint, metadata.isbn if metadata else None])
        candidates = self._editions.search_candidates(
            title=metadata.title if metadata else None,
            isbns=sorted(isbns),
        )
        matches = rank_candidates(metadata, candidates, isbn_hint=isbn_hint, limit=self._limit)
        logger.info(
            "cataloging.matching.ranked",
            extra={"candidates": len(candidates), "matches": len(matches)},
        )
        return matches


__all__ = [
    "CatalogMatcher",
    "FUZZY_TITLE_THRESHOLD",
    "normalize_person",
    "normalize_title",
    "rank_candidates",
]
