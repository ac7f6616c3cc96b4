"""Validation of cataloging requests.

Everything here runs before any state is touched: a request that fails
validation raises :class:`~src.booksphere.exceptions.ValidationError` and
leaves the job store and outbox as they were.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..exceptions import ValidationError
from .cataloging_models import (
    IMAGE_SLOT_ORDER,
    MAX_AUTHORS,
    MAX_PAGE_SIZE,
    ExtractedMetadata,
    ImageRef,
    ImageSlot,
    JobListFilters,
)

logger = logging.getLogger(__name__)

MIN_PUBLICATION_YEAR = 1000
PUBLICATION_YEAR_LEEWAY = 5
MAX_IMAGE_REF_LENGTH = 2048
MAX_TITLE_LENGTH = 512

_ISBN_STRIP_RE = re.compile(r"[\s-]")


def normalize_isbn(raw: str | None) -> str | None:
    """Return a checksum-valid ISBN-10/13 without separators, else ``None``."""

    if not raw:
        return None
    candidate = _ISBN_STRIP_RE.sub("", str(raw)).upper()
    if len(candidate) == 13 and candidate.isdigit():
        total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(candidate[:12]))
        if (10 - total % 10) % 10 == int(candidate[12]):
            return candidate
        return None
    if len(candidate) == 10 and candidate[:9].isdigit() and (
        candidate[9].isdigit() or candidate[9] == "X"
    ):
        total = sum(int(d) * (10 - i) for i, d in enumerate(candidate[:9]))
        check = 10 if candidate[9] == "X" else int(candidate[9])
        if (total + check) % 11 == 0:
            return candidate
    return None


def isbn10_to_isbn13(isbn10: str) -> str:
    body = "978" + isbn10[:9]
    total = sum(int(d) * (1 if i % 2 == 0 else 3) for i, d in enumerate(body))
    return body + str((10 - total % 10) % 10)


def isbn13_to_isbn10(isbn13: str) -> str | None:
    if not isbn13.startswith("978"):
        return None
    body = isbn13[3:12]
    total = sum(int(d) * (10 - i) for i, d in enumerate(body))
    check = (11 - total % 11) % 11
    return body + ("X" if check == 10 else str(check))


@dataclass(slots=True)
class SubmissionValidator:
    """Check image sets, ISBN hints and corrected metadata."""

    required_slots: Sequence[str] = field(default_factory=lambda: [ImageSlot.COVER.value])

    def __post_init__(self) -> None:
        unknown = [slot for slot in self.required_slots if slot not in ImageSlot._value2member_map_]
        if unknown:
            raise ValueError(f"unknown required image slots: {unknown}")

    def validate_images(self, images: Iterable[Mapping[str, Any] | ImageRef]) -> tuple[ImageRef, ...]:
        """Return the image set ordered cover, title page, copyright page."""

        by_slot: dict[ImageSlot, ImageRef] = {}
        for item in images:
            if isinstance(item, ImageRef):
                slot_value, ref = item.slot.value, item.ref
            else:
                slot_value, ref = item.get("slot"), item.get("ref")
            try:
                slot = ImageSlot(slot_value)
            except ValueError as exc:
                raise ValidationError(f"unknown image slot: {slot_value!r}", field="images") from exc
            if slot in by_slot:
                raise ValidationError(f"duplicate image slot: {slot.value}", field="images")
            if not isinstance(ref, str) or not ref.strip():
                raise ValidationError(
                    f"image slot {slot.value} must reference a non-empty image", field="images"
                )
            if len(ref) > MAX_IMAGE_REF_LENGTH:
                raise ValidationError(f"image reference for {slot.value} is too long", field="images")
            by_slot[slot] = ImageRef(slot=slot, ref=ref.strip())

        missing = [slot for slot in self.required_slots if ImageSlot(slot) not in by_slot]
        if missing:
            logger.info("cataloging.submission.missing_slots", extra={"missing": missing})
            raise ValidationError(
                f"missing required image slots: {', '.join(missing)}", field="images"
            )
        if not by_slot:
            raise ValidationError("at least one image is required", field="images")
        return tuple(by_slot[slot] for slot in IMAGE_SLOT_ORDER if slot in by_slot)

    def validate_isbn_hint(self, isbn: str | None) -> str | None:
        if isbn is None or not str(isbn).strip():
            return None
        normalized = normalize_isbn(isbn)
        if normalized is None:
            raise ValidationError(f"invalid ISBN: {isbn!r}", field="isbn")
        return normalized

    def validate_corrected_metadata(
        self, metadata: ExtractedMetadata, *, now: datetime
    ) -> ExtractedMetadata:
        """Validate metadata a human corrected before finalizing."""

        title = (metadata.title or "").strip()
        if not title:
            raise ValidationError("title is required", field="title")
        if len(title) > MAX_TITLE_LENGTH:
            raise ValidationError("title is too long", field="title")
        metadata.title = title
        year = metadata.publication_year
        if year is not None:
            if not MIN_PUBLICATION_YEAR <= year <= now.year + PUBLICATION_YEAR_LEEWAY:
                raise ValidationError(
                    f"publication_year must be between {MIN_PUBLICATION_YEAR} "
                    f"and {now.year + PUBLICATION_YEAR_LEEWAY}",
                    field="publication_year",
                )
        if len(metadata.authors) > MAX_AUTHORS:
            raise ValidationError(f"at most {MAX_AUTHORS} authors are allowed", field="authors")
        if any(not author.name.strip() for author in metadata.authors):
            raise ValidationError("author names must be non-empty", field="authors")
        if metadata.isbn:
            metadata.isbn = self.validate_isbn_hint(metadata.isbn)
        return metadata


def validate_job_ids(job_ids: Sequence[str], *, limit: int) -> list[str]:
    """De-duplicate job ids keeping their order; reject empty or oversized input."""

    if not job_ids:
        raise ValidationError("job_ids must not be empty", field="job_ids")
    unique = list(dict.fromkeys(str(job_id).strip() for job_id in job_ids if str(job_id).strip()))
    if not unique:
        raise ValidationError("job_ids must not be empty", field="job_ids")
    if len(unique) > limit:
        raise ValidationError(f"at most {limit} job ids per request", field="job_ids")
    return unique


def validate_list_filters(filters: JobListFilters) -> JobListFilters:
    if filters.page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if not 1 <= filters.page_size <= MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}", field="page_size")
    if (
        filters.created_after is not None
        and filters.created_before is not None
        and filters.created_after > filters.created_before
    ):
        raise ValidationError("created_after must not be later than created_before", field="created_after")
    return filters


__all__ = [
    "SubmissionValidator",
    "isbn10_to_isbn13",
    "isbn13_to_isbn10",
    "normalize_isbn",
    "validate_job_ids",
    "validate_list_filters",
]
