"""Persistence layer for the existing catalog (editions) and inventory records."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from ..db.db_models import CatalogEditionModel, InventoryRecordModel
from ..utils.titles import normalize_title, search_stems

AUTHOR_SEPARATOR = "; "


@dataclass(slots=True)
class CatalogEdition:
    """Lightweight view of a catalog edition used for matching."""

    edition_id: str
    title: str
    authors: list[str] = field(default_factory=list)
    publisher: str | None = None
    publication_year: int | None = None
    isbn13: str | None = None
    isbn10: str | None = None


def _to_edition(model: CatalogEditionModel) -> CatalogEdition:
    authors = [name for name in (model.authors or "").split(AUTHOR_SEPARATOR) if name]
    return CatalogEdition(
        edition_id=model.edition_id,
        title=model.title,
        authors=authors,
        publisher=model.publisher,
        publication_year=model.publication_year,
        isbn13=model.isbn13,
        isbn10=model.isbn10,
    )


class CatalogEditionRepository:
    """Look up catalog editions and store inventory records."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def add_edition(
        self,
        *,
        title: str,
        authors: Iterable[str] = (),
        publisher: str | None = None,
        publication_year: int | None = None,
        isbn13: str | None = None,
        isbn10: str | None = None,
        edition_id: str | None = None,
    ) -> str:
        identifier = edition_id or uuid.uuid4().hex
        with self._session_factory() as session:
            session.add(
                CatalogEditionModel(
                    edition_id=identifier,
                    title=title,
                    title_key=normalize_title(title),
                    authors=AUTHOR_SEPARATOR.join(authors),
                    publisher=publisher,
                    publication_year=publication_year,
                    isbn13=isbn13,
                    isbn10=isbn10,
                )
            )
            session.commit()
        return identifier

    def get_edition(self, edition_id: str) -> CatalogEdition | None:
        with self._session_factory() as session:
            model = session.get(CatalogEditionModel, edition_id)
            return _to_edition(model) if model is not None else None

    def search_candidates(
        self,
        *,
        title: str | None,
        isbns: Iterable[str] = (),
        limit: int = 200,
    ) -> list[CatalogEdition]:
        """Return editions sharing an ISBN or title words, most relevant first.

        Relevance: ISBN hits, then an identical folded title, then the number
        of shared title words, then the closest title length.
        """

        isbn_values = [isbn for isbn in isbns if isbn]
        key = normalize_title(title)
        title_key = CatalogEditionModel.title_key
        word_hits = [title_key.contains(stem, autoescape=True) for stem in search_stems(key)]
        conditions = list(word_hits)
        ordering = []
        if isbn_values:
            isbn_hit = or_(
                CatalogEditionModel.isbn13.in_(isbn_values),
                CatalogEditionModel.isbn10.in_(isbn_values),
            )
            conditions.append(isbn_hit)
            ordering.append(case((isbn_hit, 0), else_=1))
        if not conditions:
            return []
        if word_hits:
            shared_words = case((word_hits[0], 1), else_=0)
            for hit in word_hits[1:]:
                shared_words = shared_words + case((hit, 1), else_=0)
            ordering.extend(
                [
                    case((title_key == key, 0), else_=1),
                    shared_words.desc(),
                    func.abs(func.length(title_key) - len(key)),
                ]
            )
        with self._session_factory() as session:
            models = session.execute(
                select(CatalogEditionModel)
                .where(or_(*conditions))
                .order_by(*ordering, CatalogEditionModel.edition_id)
                .limit(limit)
            ).scalars()
            return [_to_edition(model) for model in models]

    @staticmethod
    def add_inventory_record(session: Session, model: InventoryRecordModel) -> None:
        session.add(model)
        session.flush()

    def get_inventory_record(self, record_id: str) -> InventoryRecordModel | None:
        with self._session_factory() as session:
            return session.get(InventoryRecordModel, record_id)


__all__ = ["CatalogEdition", "CatalogEditionRepository", "AUTHOR_SEPARATOR"]
