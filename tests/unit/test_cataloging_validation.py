from datetime import datetime

import pytest

from src.booksphere.cataloging.cataloging_models import (
    Contributor,
    ExtractedMetadata,
    ImageRef,
    ImageSlot,
    JobListFilters,
)
from src.booksphere.cataloging.cataloging_validation import (
    SubmissionValidator,
    isbn10_to_isbn13,
    isbn13_to_isbn10,
    normalize_isbn,
    validate_job_ids,
    validate_list_filters,
)
from src.booksphere.exceptions import ValidationError

NOW = datetime(2025, 1, 6, 12, 0, 0)


def test_images_are_ordered_cover_title_copyright() -> None:
    validator = SubmissionValidator()
    images = validator.validate_images(
        [
            {"slot": "copyright_page", "ref": "c.jpg"},
            {"slot": "cover", "ref": " a.jpg "},
            ImageRef(slot=ImageSlot.TITLE_PAGE, ref="b.jpg"),
        ]
    )

    assert [image.slot for image in images] == [
        ImageSlot.COVER,
        ImageSlot.TITLE_PAGE,
        ImageSlot.COPYRIGHT_PAGE,
    ]
    assert images[0].ref == "a.jpg"


@pytest.mark.parametrize(
    "images, message",
    [
        ([], "missing required image slots: cover"),
        ([{"slot": "title_page", "ref": "t.jpg"}], "missing required image slots: cover"),
        ([{"slot": "back_cover", "ref": "x.jpg"}], "unknown image slot"),
        (
            [{"slot": "cover", "ref": "a.jpg"}, {"slot": "cover", "ref": "b.jpg"}],
            "duplicate image slot: cover",
        ),
        ([{"slot": "cover", "ref": "   "}], "must reference a non-empty image"),
    ],
)
def test_invalid_image_sets_are_rejected(images, message) -> None:
    with pytest.raises(ValidationError) as excinfo:
        SubmissionValidator().validate_images(images)

    assert message in str(excinfo.value)
    assert excinfo.value.field == "images"


def test_required_slots_are_configurable() -> None:
    validator = SubmissionValidator(required_slots=["cover", "title_page"])

    with pytest.raises(ValidationError, match="title_page"):
        validator.validate_images([{"slot": "cover", "ref": "a.jpg"}])


def test_unknown_required_slot_is_a_configuration_error() -> None:
    with pytest.raises(ValueError):
        SubmissionValidator(required_slots=["spine"])


def test_normalize_isbn_accepts_valid_forms() -> None:
    assert normalize_isbn("978-0-15-144647-6") == "9780151446476"
    assert normalize_isbn("0 15 144647 4") == "0151446474"
    assert normalize_isbn("080442957x") == "080442957X"


@pytest.mark.parametrize("raw", [None, "", "978-0-15-144647-7", "12345", "abcdefghij"])
def test_normalize_isbn_rejects_garbage(raw) -> None:
    assert normalize_isbn(raw) is None


def test_isbn_conversions_round_trip() -> None:
    assert isbn10_to_isbn13("0151446474") == "9780151446476"
    assert isbn13_to_isbn10("9780151446476") == "0151446474"
    assert isbn13_to_isbn10("9791234567896") is None


def test_isbn_hint_blank_is_none_and_invalid_raises() -> None:
    validator = SubmissionValidator()

    assert validator.validate_isbn_hint("  ") is None
    with pytest.raises(ValidationError) as excinfo:
        validator.validate_isbn_hint("not an isbn")
    assert excinfo.value.field == "isbn"


def test_corrected_metadata_requires_title_and_plausible_year() -> None:
    validator = SubmissionValidator()

    with pytest.raises(ValidationError, match="title is required"):
        validator.validate_corrected_metadata(ExtractedMetadata(title="  "), now=NOW)
    with pytest.raises(ValidationError, match="publication_year"):
        validator.validate_corrected_metadata(
            ExtractedMetadata(title="Dune", publication_year=2040), now=NOW
        )
    with pytest.raises(ValidationError, match="author names"):
        validator.validate_corrected_metadata(
            ExtractedMetadata(title="Dune", authors=[Contributor(name=" ")]), now=NOW
        )


def test_corrected_metadata_is_trimmed_and_isbn_normalized() -> None:
    metadata = SubmissionValidator().validate_corrected_metadata(
        ExtractedMetadata(title="  Dune ", publication_year=1965, isbn="978-0-15-144647-6"),
        now=NOW,
    )

    assert metadata.title == "Dune"
    assert metadata.isbn == "9780151446476"


def test_validate_job_ids_deduplicates_and_limits() -> None:
    assert validate_job_ids(["a", "b", "a", " "], limit=5) == ["a", "b"]
    with pytest.raises(ValidationError):
        validate_job_ids([], limit=5)
    with pytest.raises(ValidationError, match="at most 2"):
        validate_job_ids(["a", "b", "c"], limit=2)


def test_list_filters_reject_bad_paging_and_inverted_range() -> None:
    with pytest.raises(ValidationError):
        validate_list_filters(JobListFilters(page=0))
    with pytest.raises(ValidationError):
        validate_list_filters(JobListFilters(page_size=101))
    with pytest.raises(ValidationError, match="created_after"):
        validate_list_filters(
            JobListFilters(created_after=datetime(2025, 2, 1), created_before=datetime(2025, 1, 1))
        )
