import json
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from src.booksphere.cataloging.cataloging_models import (
    CandidateMatch,
    ExtractedMetadata,
    JobStatus,
    MatchType,
)
from src.booksphere.cataloging.cataloging_state_machine import STALE_JOB_MESSAGE
from src.booksphere.db.db_models import CatalogingJobModel, InventoryRecordModel, OutboxEventModel
from src.booksphere.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    OutboxPayloadError,
    ValidationError,
)
from src.booksphere.repositories.cataloging_job_repository import CatalogingJobRepository
from tests.mocks.samples import THREE_IMAGES
from tests.mocks.extraction import sample_metadata


def _events(session_factory, tenant_id: str | None = None) -> list[OutboxEventModel]:
    with session_factory() as session:
        stmt = select(OutboxEventModel).order_by(OutboxEventModel.event_id)
        if tenant_id is not None:
            stmt = stmt.where(OutboxEventModel.tenant_id == tenant_id)
        return list(session.execute(stmt).scalars())


def _job_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count()).select_from(CatalogingJobModel)).scalar_one()


def _completed_job(state_machine, tenant_id: str = "shop-1"):
    job = state_machine.submit(THREE_IMAGES, tenant_id=tenant_id, submitter_id="alice")
    state_machine.begin_processing(job.job_id)
    return state_machine.complete_extraction(job.job_id, sample_metadata())


def test_submit_stores_pending_job_and_job_created_event(state_machine, session_factory, clock):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice", isbn="0-15-144647-4")

    assert job.status is JobStatus.PENDING
    assert [image.slot.value for image in job.images] == ["cover", "title_page", "copyright_page"]
    assert job.isbn == "0151446474"
    assert job.created_at == clock()
    events = _events(session_factory)
    assert [event.event_type for event in events] == ["job_created"]
    assert events[0].entity_id == job.job_id
    assert json.loads(events[0].event_data) == {
        "job_id": job.job_id,
        "status": "pending",
        "source_type": "image_capture",
        "created_at": clock().isoformat(),
    }


def test_invalid_submission_leaves_no_trace(state_machine, session_factory):
    with pytest.raises(ValidationError):
        state_machine.submit([{"slot": "title_page", "ref": "t.jpg"}], tenant_id="shop-1", submitter_id="alice")
    with pytest.raises(ValidationError):
        state_machine.submit(THREE_IMAGES, tenant_id=" ", submitter_id="alice")

    assert _job_count(session_factory) == 0
    assert _events(session_factory) == []


def test_event_failure_rolls_back_the_job_row(state_machine, writer, session_factory, monkeypatch):
    def broken_append(*args, **kwargs):
        raise OutboxPayloadError("simulated outbox failure")

    monkeypatch.setattr(writer, "append", broken_append)

    with pytest.raises(OutboxPayloadError):
        state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")

    assert _job_count(session_factory) == 0
    assert _events(session_factory) == []


def test_failed_transition_write_keeps_previous_state(state_machine, writer, session_factory, monkeypatch):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(job.job_id)
    original_append = writer.append

    def crash_on_update(session, **kwargs):
        original_append(session, **kwargs)
        raise RuntimeError("process died before commit")

    monkeypatch.setattr(writer, "append", crash_on_update)
    with pytest.raises(RuntimeError):
        state_machine.complete_extraction(job.job_id, sample_metadata())

    stored = CatalogingJobRepository(session_factory).get_job(job.job_id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.metadata is None
    assert [event.event_type for event in _events(session_factory)] == ["job_created", "job_updated"]


def test_begin_processing_is_idempotent(state_machine, session_factory):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")

    first = state_machine.begin_processing(job.job_id)
    second = state_machine.begin_processing(job.job_id)

    assert first.status is JobStatus.PROCESSING
    assert second.status is JobStatus.PROCESSING
    events = _events(session_factory)
    assert [event.event_type for event in events] == ["job_created", "job_updated"]
    assert json.loads(events[1].event_data)["status"] == "processing"


def test_begin_processing_rejects_finished_jobs(state_machine):
    job = _completed_job(state_machine)

    with pytest.raises(InvalidTransitionError):
        state_machine.begin_processing(job.job_id)


def test_complete_extraction_stores_metadata_and_caps_matches(state_machine, session_factory):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(job.job_id)
    matches = [
        CandidateMatch(edition_id=f"ed-{index}", match_type=MatchType.FUZZY, score=0.8, title="Rose")
        for index in range(12)
    ]

    completed = state_machine.complete_extraction(job.job_id, sample_metadata(), matches)

    assert completed.status is JobStatus.COMPLETED
    assert completed.metadata.title == "The Name of the Rose"
    assert len(completed.matches) == 10
    last = _events(session_factory)[-1]
    payload = json.loads(last.event_data)
    assert payload["status"] == "completed"
    assert payload["completed_at"] is not None
    assert "title" not in last.event_data


def test_complete_and_fail_require_processing(state_machine):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")

    with pytest.raises(InvalidTransitionError):
        state_machine.complete_extraction(job.job_id, sample_metadata())
    with pytest.raises(InvalidTransitionError):
        state_machine.fail_extraction(job.job_id, "boom")


def test_fail_extraction_sanitizes_and_emits_job_failed(state_machine, session_factory):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(job.job_id)

    failed = state_machine.fail_extraction(
        job.job_id, "upstream https://api.example.com/x?key=1 failed\nTraceback (most recent call last):"
    )

    assert failed.status is JobStatus.FAILED
    assert failed.error_message == "upstream [url] failed"
    assert _events(session_factory)[-1].event_type == "job_failed"


def test_retry_creates_new_job_with_same_images(state_machine, session_factory):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(job.job_id)
    state_machine.fail_extraction(job.job_id, "timeout")

    retried = state_machine.retry(job.job_id, tenant_id="shop-1", submitter_id="bob")

    assert retried.job_id != job.job_id
    assert retried.status is JobStatus.PENDING
    assert retried.images == job.images
    assert retried.retry_of_job_id == job.job_id
    assert retried.submitter_id == "bob"
    original = CatalogingJobRepository(session_factory).get_job(job.job_id)
    assert original.status is JobStatus.FAILED


def test_retry_only_from_failed_and_reprocess_only_from_completed(state_machine):
    completed = _completed_job(state_machine)

    with pytest.raises(InvalidTransitionError):
        state_machine.retry(completed.job_id, tenant_id="shop-1", submitter_id="alice")

    reprocessed = state_machine.reprocess(completed.job_id, tenant_id="shop-1", submitter_id="alice")
    assert reprocessed.status is JobStatus.PENDING
    assert reprocessed.retry_of_job_id == completed.job_id

    with pytest.raises(InvalidTransitionError):
        state_machine.reprocess(reprocessed.job_id, tenant_id="shop-1", submitter_id="alice")


def test_other_tenants_jobs_look_missing(state_machine):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")

    with pytest.raises(NotFoundError):
        state_machine.begin_processing(job.job_id, tenant_id="shop-2")
    with pytest.raises(NotFoundError):
        state_machine.retry("does-not-exist", tenant_id="shop-1", submitter_id="alice")


def test_finalize_creates_inventory_record_once(state_machine, session_factory):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(job.job_id)
    state_machine.complete_extraction(
        job.job_id,
        sample_metadata(),
        [CandidateMatch(edition_id="ed-1", match_type=MatchType.EXACT, score=0.95, title="Rose")],
    )

    record_id = state_machine.finalize(
        job.job_id,
        tenant_id="shop-1",
        user_id="carol",
        corrected_metadata=ExtractedMetadata(title=" The Name of the Rose ", publication_year=1983),
        chosen_edition_id="ed-1",
    )

    with session_factory() as session:
        record = session.get(InventoryRecordModel, record_id)
        assert record.title == "The Name of the Rose"
        assert record.edition_id == "ed-1"
        assert record.created_by == "carol"
    stored = CatalogingJobRepository(session_factory).get_job(job.job_id)
    assert stored.inventory_record_id == record_id
    assert stored.finalized_at is not None
    finalized_event = _events(session_factory)[-1]
    assert finalized_event.event_type == "job_finalized"
    assert json.loads(finalized_event.event_data)["inventory_record_id"] == record_id

    with pytest.raises(InvalidTransitionError, match="finalized"):
        state_machine.finalize(
            job.job_id,
            tenant_id="shop-1",
            user_id="carol",
            corrected_metadata=ExtractedMetadata(title="Again"),
        )


def test_finalize_rejects_unknown_edition_and_bad_metadata(state_machine, session_factory):
    job = _completed_job(state_machine)
    events_before = len(_events(session_factory))

    with pytest.raises(ValidationError, match="chosen edition"):
        state_machine.finalize(
            job.job_id,
            tenant_id="shop-1",
            user_id="carol",
            corrected_metadata=ExtractedMetadata(title="Rose"),
            chosen_edition_id="not-a-candidate",
        )
    with pytest.raises(ValidationError):
        state_machine.finalize(
            job.job_id, tenant_id="shop-1", user_id="carol", corrected_metadata=ExtractedMetadata(title="")
        )

    assert len(_events(session_factory)) == events_before


def test_finalize_requires_completed_job(state_machine):
    job = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")

    with pytest.raises(InvalidTransitionError):
        state_machine.finalize(
            job.job_id, tenant_id="shop-1", user_id="carol", corrected_metadata=ExtractedMetadata(title="Rose")
        )


def test_bulk_delete_only_touches_callers_jobs(state_machine, session_factory):
    mine = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    theirs = state_machine.submit(THREE_IMAGES, tenant_id="shop-2", submitter_id="zed")

    result = state_machine.bulk_delete([mine.job_id, theirs.job_id, "ghost"], tenant_id="shop-1")

    assert result.deleted == [mine.job_id]
    assert result.rejected == [theirs.job_id, "ghost"]
    repo = CatalogingJobRepository(session_factory)
    assert repo.get_job(mine.job_id) is None
    assert repo.get_job(theirs.job_id) is not None
    deleted_events = [event for event in _events(session_factory, "shop-1") if event.event_type == "job_deleted"]
    assert [event.entity_id for event in deleted_events] == [mine.job_id]
    assert _events(session_factory, "shop-2")[-1].event_type == "job_created"


def test_bulk_delete_limit(state_machine):
    with pytest.raises(ValidationError):
        state_machine.bulk_delete([f"job-{index}" for index in range(3)], tenant_id="shop-1", limit=2)


def test_stale_processing_jobs_are_failed(state_machine, clock, session_factory):
    stale = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(stale.job_id)
    clock.advance(minutes=9)
    fresh = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    state_machine.begin_processing(fresh.job_id)
    clock.advance(minutes=2)

    failed = state_machine.fail_stale_processing(stale_after=timedelta(minutes=10))

    assert failed == [stale.job_id]
    repo = CatalogingJobRepository(session_factory)
    assert repo.get_job(stale.job_id).error_message == STALE_JOB_MESSAGE.format(seconds=600)
    assert repo.get_job(fresh.job_id).status is JobStatus.PROCESSING


def test_stale_sweep_fails_jobs_in_tenant_order(state_machine, clock, session_factory):
    submitted = []
    for tenant_id in ("shop-b", "shop-a", "shop-b", "shop-a"):
        job = state_machine.submit(THREE_IMAGES, tenant_id=tenant_id, submitter_id="alice")
        state_machine.begin_processing(job.job_id)
        submitted.append(job)
        clock.advance(seconds=1)
    clock.advance(minutes=11)

    failed = state_machine.fail_stale_processing(stale_after=timedelta(minutes=10))

    expected = sorted(submitted, key=lambda job: (job.tenant_id, job.job_id))
    assert failed == [job.job_id for job in expected]
    failure_events = [event for event in _events(session_factory) if event.event_type == "job_failed"]
    assert [event.tenant_id for event in failure_events] == ["shop-a", "shop-a", "shop-b", "shop-b"]


def test_claim_next_pending_takes_oldest_first(state_machine, clock):
    first = state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    clock.advance(seconds=1)
    state_machine.submit(THREE_IMAGES, tenant_id="shop-2", submitter_id="zed")

    claimed = state_machine.claim_next_pending()

    assert claimed.job_id == first.job_id
    assert claimed.status is JobStatus.PROCESSING
    assert state_machine.claim_next_pending() is not None
    assert state_machine.claim_next_pending() is None
