import asyncio

import pytest

from src.booksphere.cataloging.cataloging_models import JobStatus
from src.booksphere.dependencies import build_services
from src.booksphere.lifecycle import maintenance_once, start_background_tasks, stop_background_tasks
from tests.mocks.extraction import FakeExtractionClient
from tests.mocks.samples import THREE_IMAGES
from tests.mocks.transports import RecordingTransport


def test_maintenance_fails_stale_jobs_unless_dry_run(api_services, clock):
    job = api_services.state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    api_services.state_machine.begin_processing(job.job_id)
    clock.advance(seconds=api_services.config.settings.processing_stale_after_seconds + 1)

    preview = maintenance_once(api_services, dry_run=True)

    assert preview.outbox.dry_run
    assert preview.stale_jobs_failed == []
    assert api_services.job_repo.get_job(job.job_id).status is JobStatus.PROCESSING

    report = maintenance_once(api_services)

    assert report.stale_jobs_failed == [job.job_id]
    assert api_services.job_repo.get_job(job.job_id).status is JobStatus.FAILED


@pytest.mark.asyncio
async def test_background_tasks_extract_and_notify(config, clock):
    transport = RecordingTransport()
    services = build_services(
        config, transport=transport, extraction_client=FakeExtractionClient(), clock=clock
    )
    job = services.state_machine.submit(THREE_IMAGES, tenant_id="shop-1", submitter_id="alice")
    shutdown = asyncio.Event()

    tasks = start_background_tasks(services, shutdown)
    try:
        for _ in range(500):
            if len(transport.delivered("shop-1")) >= 3:
                break
            await asyncio.sleep(0.01)
    finally:
        await stop_background_tasks(tasks, shutdown)

    statuses = [event["data"]["status"] for event in transport.delivered("shop-1")]
    assert statuses == ["pending", "processing", "completed"]
    assert services.job_repo.get_job(job.job_id).status is JobStatus.COMPLETED
    assert all(task.done() for task in tasks)
