"""Data structures for the cataloging pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class JobStatus(StrEnum):
    """Lifecycle statuses of a cataloging job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SourceType(StrEnum):
    """How the bookseller captured the book."""

    IMAGE_CAPTURE = "image_capture"
    ISBN_SCAN = "isbn_scan"
    MANUAL_ISBN = "manual_isbn"


class ImageSlot(StrEnum):
    COVER = "cover"
    TITLE_PAGE = "title_page"
    COPYRIGHT_PAGE = "copyright_page"


class MatchType(StrEnum):
    """Match tiers, strongest first."""

    ISBN = "isbn"
    EXACT = "exact"
    FUZZY = "fuzzy"


class JobSortField(StrEnum):
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    STATUS = "status"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


IMAGE_SLOT_ORDER: tuple[ImageSlot, ...] = (
    ImageSlot.COVER,
    ImageSlot.TITLE_PAGE,
    ImageSlot.COPYRIGHT_PAGE,
)

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
MAX_AUTHORS = 10
MAX_MATCHED_EDITIONS = 10


@dataclass(slots=True, frozen=True)
class ImageRef:
    """Reference to one uploaded image (storage key or URL)."""

    slot: ImageSlot
    ref: str

    def to_dict(self) -> dict[str, str]:
        return {"slot": self.slot.value, "ref": self.ref}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageRef":
        return cls(slot=ImageSlot(data["slot"]), ref=str(data["ref"]))


@dataclass(slots=True)
class Contributor:
    name: str
    role: str = "author"
    confidence: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "role": self.role, "confidence": self.confidence}


@dataclass(slots=True)
class ExtractedMetadata:
    """Bibliographic data read off the book images."""

    title: str | None = None
    subtitle: str | None = None
    authors: list[Contributor] = field(default_factory=list)
    publisher: str | None = None
    publication_year: int | None = None
    publication_location: str | None = None
    edition_statement: str | None = None
    has_dust_jacket: bool | None = None
    isbn: str | None = None
    extraction_confidence: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "subtitle": self.subtitle,
            "authors": [author.to_dict() for author in self.authors],
            "publisher": self.publisher,
            "publication_year": self.publication_year,
            "publication_location": self.publication_location,
            "edition_statement": self.edition_statement,
            "has_dust_jacket": self.has_dust_jacket,
            "isbn": self.isbn,
            "extraction_confidence": dict(self.extraction_confidence),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExtractedMetadata":
        authors = [
            Contributor(
                name=str(item["name"]),
                role=str(item.get("role") or "author"),
                confidence=item.get("confidence"),
            )
            for item in data.get("authors") or []
            if isinstance(item, dict) and item.get("name")
        ]
        return cls(
            title=data.get("title"),
            subtitle=data.get("subtitle"),
            authors=authors,
            publisher=data.get("publisher"),
            publication_year=data.get("publication_year"),
            publication_location=data.get("publication_location"),
            edition_statement=data.get("edition_statement"),
            has_dust_jacket=data.get("has_dust_jacket"),
            isbn=data.get("isbn"),
            extraction_confidence=dict(data.get("extraction_confidence") or {}),
        )

    @property
    def author_names(self) -> list[str]:
        return [author.name for author in self.authors]


@dataclass(slots=True)
class CandidateMatch:
    """Existing catalog edition that may correspond to the extracted book."""

    edition_id: str
    match_type: MatchType
    score: float
    title: str
    authors: list[str] = field(default_factory=list)
    publication_year: int | None = None
    isbn: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "edition_id": self.edition_id,
            "match_type": self.match_type.value,
            "score": self.score,
            "title": self.title,
            "authors": list(self.authors),
            "publication_year": self.publication_year,
            "isbn": self.isbn,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CandidateMatch":
        return cls(
            edition_id=str(data["edition_id"]),
            match_type=MatchType(data["match_type"]),
            score=float(data["score"]),
            title=str(data.get("title") or ""),
            authors=list(data.get("authors") or []),
            publication_year=data.get("publication_year"),
            isbn=data.get("isbn"),
        )


@dataclass(slots=True)
class CatalogingJob:
    """Snapshot of a cataloging job as stored in the job store."""

    job_id: str
    tenant_id: str
    submitter_id: str
    status: JobStatus
    source_type: SourceType
    images: tuple[ImageRef, ...]
    created_at: datetime
    updated_at: datetime
    isbn: str | None = None
    metadata: ExtractedMetadata | None = None
    matches: list[CandidateMatch] = field(default_factory=list)
    error_message: str | None = None
    retry_of_job_id: str | None = None
    inventory_record_id: str | None = None
    finalized_at: datetime | None = None


@dataclass(slots=True)
class JobListFilters:
    """Closed set of listing filters; values are validated before querying."""

    status: JobStatus | None = None
    submitter_id: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort_by: JobSortField = JobSortField.CREATED_AT
    sort_order: SortOrder = SortOrder.DESC
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE


@dataclass(slots=True)
class JobPage:
    items: list[CatalogingJob]
    total_count: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total_count


@dataclass(slots=True)
class JobStats:
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    finalized: int = 0


@dataclass(slots=True)
class BulkDeleteResult:
    deleted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


__all__ = [
    "BulkDeleteResult",
    "CandidateMatch",
    "CatalogingJob",
    "Contributor",
    "DEFAULT_PAGE_SIZE",
    "ExtractedMetadata",
    "IMAGE_SLOT_ORDER",
    "ImageRef",
    "ImageSlot",
    "JobListFilters",
    "JobPage",
    "JobSortField",
    "JobStats",
    "JobStatus",
    "MAX_AUTHORS",
    "MAX_MATCHED_EDITIONS",
    "MAX_PAGE_SIZE",
    "MatchType",
    "SortOrder",
    "SourceType",
]
