import pytest

from src.booksphere.cataloging.cataloging_models import (
    JobListFilters,
    JobSortField,
    JobStatus,
    SortOrder,
)
from src.booksphere.repositories.cataloging_job_repository import CatalogingJobRepository
from tests.mocks.extraction import sample_metadata
from tests.mocks.samples import THREE_IMAGES


@pytest.fixture
def jobs(state_machine, clock):
    """Five jobs of shop-1 one minute apart plus one of shop-2."""

    created = []
    for index in range(5):
        submitter = "alice" if index % 2 == 0 else "bob"
        created.append(state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id=submitter))
        clock.advance(minutes=1)
    state_machine.submit(THREE_IMAGES, tenant_id="shop-2", submitter_id="carol")

    state_machine.begin_processing(created[1].job_id)
    state_machine.complete_extraction(created[1].job_id, sample_metadata())
    state_machine.begin_processing(created[3].job_id)
    state_machine.fail_extraction(created[3].job_id, "extraction service returned status 500")
    state_machine.finalize(
        created[1].job_id,
        tenant_id="shop-1",
        user_id="bob",
        corrected_metadata=sample_metadata(),
    )
    return created


@pytest.fixture
def repo(session_factory) -> CatalogingJobRepository:
    return CatalogingJobRepository(session_factory)


def test_default_listing_is_newest_first_and_tenant_scoped(repo, jobs):
    page = repo.list_jobs("shop-1", JobListFilters())

    assert page.total_count == 5
    assert [job.job_id for job in page.items] == [job.job_id for job in reversed(jobs)]
    assert not page.has_more


def test_filters_by_status_and_submitter(repo, jobs):
    pending = repo.list_jobs("shop-1", JobListFilters(status=JobStatus.PENDING))
    by_alice = repo.list_jobs("shop-1", JobListFilters(submitter_id="alice", sort_order=SortOrder.ASC))

    assert {job.job_id for job in pending.items} == {jobs[0].job_id, jobs[2].job_id, jobs[4].job_id}
    assert [job.job_id for job in by_alice.items] == [jobs[0].job_id, jobs[2].job_id, jobs[4].job_id]


def test_created_range_is_inclusive(repo, jobs):
    page = repo.list_jobs(
        "shop-1",
        JobListFilters(
            created_after=jobs[1].created_at,
            created_before=jobs[3].created_at,
            sort_order=SortOrder.ASC,
        ),
    )

    assert [job.job_id for job in page.items] == [jobs[1].job_id, jobs[2].job_id, jobs[3].job_id]


def test_sort_by_updated_at(repo, jobs):
    page = repo.list_jobs("shop-1", JobListFilters(sort_by=JobSortField.UPDATED_AT))

    # jobs 1 and 3 were touched after the last submission
    assert {job.job_id for job in page.items[:2]} == {jobs[1].job_id, jobs[3].job_id}


def test_paging_reports_has_more(repo, jobs):
    first = repo.list_jobs("shop-1", JobListFilters(page=1, page_size=2))
    last = repo.list_jobs("shop-1", JobListFilters(page=3, page_size=2))

    assert len(first.items) == 2
    assert first.has_more
    assert [job.job_id for job in last.items] == [jobs[0].job_id]
    assert not last.has_more


def test_job_stats_per_tenant(repo, jobs):
    stats = repo.job_stats("shop-1")

    assert (stats.total, stats.pending, stats.processing, stats.completed, stats.failed) == (5, 3, 0, 1, 1)
    assert stats.finalized == 1
    assert repo.job_stats("shop-2").total == 1
    assert repo.job_stats("nobody").total == 0


def test_count_by_status_covers_every_status(repo, jobs):
    assert repo.count_by_status() == {"pending": 4, "processing": 0, "completed": 1, "failed": 1}
