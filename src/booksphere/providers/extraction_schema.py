"""Prompt and response contract of the bibliographic extraction call."""

from __future__ import annotations

import json
import re
from typing import Any

from jsonschema import Draft202012Validator

from ..cataloging.cataloging_models import MAX_AUTHORS, Contributor, ExtractedMetadata
from ..exceptions import UpstreamError

UNREADABLE = "unreadable"

_CONFIDENCE = {"type": ["string", "null"], "enum": ["high", "medium", "low", None]}
_TEXT = {"type": ["string", "null"]}

EXTRACTION_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": _TEXT,
        "subtitle": _TEXT,
        "authors": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "role": _TEXT,
                    "confidence": _CONFIDENCE,
                },
                "required": ["name"],
            },
        },
        "publisher": _TEXT,
        "publication_year": {"type": ["integer", "string", "null"]},
        "publication_location": _TEXT,
        "edition_statement": _TEXT,
        "has_dust_jacket": {"type": ["boolean", "null"]},
        "isbn": _TEXT,
        "extraction_confidence": {
            "type": ["object", "null"],
            "properties": {
                "title": _CONFIDENCE,
                "contributors": _CONFIDENCE,
                "publication_info": _CONFIDENCE,
            },
        },
    },
    "required": ["title"],
}

_VALIDATOR = Draft202012Validator(EXTRACTION_RESPONSE_SCHEMA)

EXTRACTION_PROMPT = """\
You are an experienced antiquarian bookseller cataloguing a single book from
up to three photographs: the cover, the title page and the copyright page.
Return the bibliographic data as one raw JSON object and nothing else.

Work in three passes: read every image on its own, compare what the images
say, then settle conflicts with this order of authority:

1. Title, subtitle and contributors come from the title page. The cover only
   confirms spellings. Keep the title page's capitalisation unless it is set
   in all capitals for style; then use title case, keeping acronyms and
   brand names as printed.
2. Publication year and edition come from the copyright page. Use the latest
   copyright year. Report explicit edition statements ("First Edition"); if
   only a number line is present, report the printing its lowest digit gives.
3. Publisher and place of publication come from the title page, falling back
   to the copyright page.
4. Whether a dust jacket is present is judged from the cover photo alone.

Contributors: give full names exactly as printed. Use explicit role phrases
("Edited by", "Translated by", "Illustrated by", "Introduction by"); infer
the role from typography only when no phrase exists, and use "Contributor"
when unsure. Rate each contributor "high", "medium" or "low".

A field with no evidence is null. A field that is present but illegible is
the string "unreadable". Ignore handwriting and stickers. Report an ISBN
only if one is printed.
"""

EXTRACTION_FIELDS_HINT = (
    "JSON fields: title (string|null), subtitle (string|null), "
    "authors ([{name, role, confidence: high|medium|low}]|null), publisher (string|null), "
    "publication_year (number|null), publication_location (string|null), "
    "edition_statement (string|null), has_dust_jacket (boolean|null), isbn (string|null), "
    "extraction_confidence ({title, contributors, publication_info}: high|medium|low)"
)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def _clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text or text.lower() == UNREADABLE:
        return None
    return text


def _coerce_year(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        match = re.search(r"\b(\d{4})\b", value)
        if match:
            return int(match.group(1))
    return None


def parse_extraction_text(raw_text: str) -> ExtractedMetadata:
    """Turn the model's reply into :class:`ExtractedMetadata`.

    Markdown fences are stripped, the JSON is checked against
    :data:`EXTRACTION_RESPONSE_SCHEMA` and "unreadable" markers become ``None``.
    Raises :class:`UpstreamError` for anything else.
    """

    text = _FENCE_RE.sub("", raw_text or "").strip()
    if not text:
        raise UpstreamError("extraction service returned an empty response")
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise UpstreamError("extraction service returned malformed JSON") from exc
    if not isinstance(data, dict):
        raise UpstreamError("extraction service returned an unexpected response structure")

    errors = sorted(_VALIDATOR.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "$"
        raise UpstreamError(f"extraction response violates contract at {location}: {first.message}")

    authors: list[Contributor] = []
    for item in (data.get("authors") or [])[:MAX_AUTHORS]:
        name = _clean_text(item.get("name"))
        if name is None:
            continue
        authors.append(
            Contributor(
                name=name,
                role=_clean_text(item.get("role")) or "Contributor",
                confidence=item.get("confidence"),
            )
        )
    confidence = {
        key: value
        for key, value in (data.get("extraction_confidence") or {}).items()
        if value in {"high", "medium", "low"}
    }
    has_dust_jacket = data.get("has_dust_jacket")
    return ExtractedMetadata(
        title=_clean_text(data.get("title")),
        subtitle=_clean_text(data.get("subtitle")),
        authors=authors,
        publisher=_clean_text(data.get("publisher")),
        publication_year=_coerce_year(data.get("publication_year")),
        publication_location=_clean_text(data.get("publication_location")),
        edition_statement=_clean_text(data.get("edition_statement")),
        has_dust_jacket=has_dust_jacket if isinstance(has_dust_jacket, bool) else None,
        isbn=_clean_text(data.get("isbn")),
        extraction_confidence=confidence,
    )


__all__ = [
    "EXTRACTION_FIELDS_HINT",
    "EXTRACTION_PROMPT",
    "EXTRACTION_RESPONSE_SCHEMA",
    "parse_extraction_text",
]
