from src.booksphere.cataloging.cataloging_matching import (
    CatalogMatcher,
    normalize_person,
    normalize_title,
    rank_candidates,
)
from src.booksphere.cataloging.cataloging_models import Contributor, ExtractedMetadata, MatchType
from src.booksphere.repositories.catalog_edition_repository import (
    CatalogEdition,
    CatalogEditionRepository,
)


def _metadata(**overrides) -> ExtractedMetadata:
    values = {
        "title": "The Name of the Rose",
        "authors": [Contributor(name="Umberto Eco")],
        "publication_year": 1983,
    }
    values.update(overrides)
    return ExtractedMetadata(**values)


def test_normalize_title_drops_accents_punctuation_and_leading_article() -> None:
    assert normalize_title("The Name of the RosÃ©!") == "name of the rose"
    assert normalize_title(None) == ""


def test_normalize_title_folds_apostrophes_into_the_word() -> None:
    assert normalize_title("Harry Potter and the Philosopher’s Stone") == normalize_title(
        "Harry Potter and the Philosophers Stone"
    )


def test_normalize_person_ignores_name_order() -> None:
    assert normalize_person("Orwell, George") == normalize_person("George Orwell")


def test_tiers_rank_isbn_then_exact_then_fuzzy() -> None:
    editions = [
        CatalogEdition(edition_id="fuzzy", title="The Name of the Roses", authors=["Someone Else"]),
        CatalogEdition(
            edition_id="exact",
            title="Name of the Rose",
            authors=["Eco, Umberto"],
            publication_year=1983,
        ),
        CatalogEdition(
            edition_id="isbn",
            title="Il nome della rosa",
            authors=["Umberto Eco"],
            isbn13="9780151446476",
        ),
        CatalogEdition(edition_id="other", title="Foucault's Pendulum", authors=["Umberto Eco"]),
    ]

    matches = rank_candidates(_metadata(), editions, isbn_hint="0151446474")

    assert [match.edition_id for match in matches] == ["isbn", "exact", "fuzzy"]
    assert [match.match_type for match in matches] == [
        MatchType.ISBN,
        MatchType.EXACT,
        MatchType.FUZZY,
    ]
    assert matches[0].score == 1.0
    assert matches[1].score == 0.95
    assert 0 < matches[2].score < 0.9


def test_exact_tier_requires_matching_year() -> None:
    editions = [
        CatalogEdition(
            edition_id="other-year",
            title="The Name of the Rose",
            authors=["Umberto Eco"],
            publication_year=1994,
        )
    ]

    matches = rank_candidates(_metadata(), editions)

    assert len(matches) == 1
    assert matches[0].match_type is MatchType.FUZZY
    assert matches[0].score == 0.9


def test_results_are_capped_at_limit() -> None:
    editions = [
        CatalogEdition(edition_id=f"ed-{index:02d}", title="The Name of the Rose")
        for index in range(15)
    ]

    matches = rank_candidates(_metadata(), editions)

    assert len(matches) == 10
    assert matches[0].edition_id == "ed-00"


def test_no_title_and_no_isbn_means_no_matches() -> None:
    editions = [CatalogEdition(edition_id="a", title="Anything")]

    assert rank_candidates(ExtractedMetadata(title=None), editions) == []
    assert rank_candidates(None, editions) == []


def test_matcher_reads_candidates_from_catalog(session_factory) -> None:
    repo = CatalogEditionRepository(session_factory)
    repo.add_edition(
        edition_id="rose-1983",
        title="The Name of the Rose",
        authors=["Umberto Eco"],
        publication_year=1983,
    )
    repo.add_edition(edition_id="pendulum", title="Foucault's Pendulum", authors=["Umberto Eco"])
    repo.add_edition(edition_id="by-isbn", title="Der Name der Rose", isbn10="0151446474")

    matches = CatalogMatcher(repo).find_matches(_metadata(), isbn_hint="9780151446476")

    assert [match.edition_id for match in matches] == ["by-isbn", "rose-1983"]
    assert matches[1].authors == ["Umberto Eco"]


def test_matcher_tolerates_punctuation_and_typos_in_titles(session_factory) -> None:
    repo = CatalogEditionRepository(session_factory)
    repo.add_edition(
        edition_id="hp1",
        title="Harry Potter and the Philosopher's Stone",
        authors=["J. K. Rowling"],
        publication_year=1997,
    )
    matcher = CatalogMatcher(repo)

    unpunctuated = matcher.find_matches(
        _metadata(
            title="Harry Potter and the Philosophers Stone",
            authors=[Contributor(name="J. K. Rowling")],
            publication_year=1997,
        )
    )
    misspelled = matcher.find_matches(
        _metadata(title="Harry Potter and the Philosopers Stone", authors=[], publication_year=None)
    )

    assert [(match.edition_id, match.match_type) for match in unpunctuated] == [("hp1", MatchType.EXACT)]
    assert [(match.edition_id, match.match_type) for match in misspelled] == [("hp1", MatchType.FUZZY)]


def test_identical_title_survives_a_crowd_sharing_its_word(session_factory) -> None:
    repo = CatalogEditionRepository(session_factory)
    for index in range(250):
        repo.add_edition(edition_id=f"vol-{index:03d}", title=f"Collected Essays Volume {index}")
    repo.add_edition(
        edition_id="zz-essays",
        title="Essays",
        authors=["Michel de Montaigne"],
        publication_year=1580,
    )

    candidates = repo.search_candidates(title="Essays")
    matches = CatalogMatcher(repo).find_matches(
        _metadata(title="Essays", authors=[Contributor(name="Michel de Montaigne")], publication_year=1580)
    )

    assert len(candidates) == 200
    assert candidates[0].edition_id == "zz-essays"
    assert [(match.edition_id, match.match_type) for match in matches] == [("zz-essays", MatchType.EXACT)]
