"""Background extraction: pending job -> extraction call -> completed | failed."""

from __future__ import annotations

import asyncio
import logging

from ..exceptions import InvalidTransitionError, UpstreamError
from ..providers.providers_base import ExtractionClient
from .cataloging_matching import CatalogMatcher
from .cataloging_models import CatalogingJob
from .cataloging_state_machine import CatalogingStateMachine

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Extraction timed out after {seconds:g} seconds"
UNEXPECTED_MESSAGE = "Extraction failed unexpectedly"


class ExtractionWorker:
    """Run the extraction client for processing jobs under a hard timeout.

    The outcome always lands on the job: completed with metadata and ranked
    candidates, or failed with a sanitized message. Jobs orphaned by a crash
    mid-call are failed later by the stale-job sweep.
    """

    def __init__(
        self,
        *,
        state_machine: CatalogingStateMachine,
        client: ExtractionClient,
        matcher: CatalogMatcher,
        timeout_seconds: float,
    ) -> None:
        self._state_machine = state_machine
        self._client = client
        self._matcher = matcher
        self._timeout = timeout_seconds

    async def process(self, job_id: str, *, tenant_id: str | None = None) -> CatalogingJob:
        """Start (idempotently) and run one job; returns its final snapshot."""

        job = await asyncio.to_thread(self._state_machine.begin_processing, job_id, tenant_id=tenant_id)
        return await self.process_claimed(job)

    async def run_once(self) -> CatalogingJob | None:
        job = await asyncio.to_thread(self._state_machine.claim_next_pending)
        if job is None:
            return None
        return await self.process_claimed(job)

    async def process_claimed(self, job: CatalogingJob) -> CatalogingJob:
        logger.info(
            "cataloging.extraction.start",
            extra={"tenant_id": job.tenant_id, "job_id": job.job_id, "images": len(job.images)},
        )
        try:
            metadata = await asyncio.wait_for(self._client.extract(job.images), timeout=self._timeout)
            matches = await asyncio.to_thread(self._matcher.find_matches, metadata, isbn_hint=job.isbn)
        except asyncio.TimeoutError:
            logger.warning(
                "cataloging.extraction.timeout",
                extra={"job_id": job.job_id, "timeout_seconds": self._timeout},
            )
            return await self._fail(job, TIMEOUT_MESSAGE.format(seconds=self._timeout))
        except UpstreamError as exc:
            logger.warning(
                "cataloging.extraction.upstream_error",
                extra={"job_id": job.job_id, "error_type": exc.__class__.__name__},
            )
            return await self._fail(job, str(exc))
        except Exception:
            logger.exception("cataloging.extraction.crashed", extra={"job_id": job.job_id})
            return await self._fail(job, UNEXPECTED_MESSAGE)

        try:
            return await asyncio.to_thread(
                self._state_machine.complete_extraction, job.job_id, metadata, matches
            )
        except InvalidTransitionError:
            # the stale-job sweep got there first; its outcome stands
            logger.warning("cataloging.extraction.late_result", extra={"job_id": job.job_id})
            return job

    async def _fail(self, job: CatalogingJob, message: str) -> CatalogingJob:
        try:
            return await asyncio.to_thread(self._state_machine.fail_extraction, job.job_id, message)
        except InvalidTransitionError:
            logger.warning("cataloging.extraction.late_failure", extra={"job_id": job.job_id})
            return job

    async def run(self, shutdown_event: asyncio.Event, *, idle_interval: float = 2.0) -> None:
        """Claim and process pending jobs until ``shutdown_event`` is set."""

        while not shutdown_event.is_set():
            try:
                job = await self.run_once()
            except Exception:
                logger.exception("cataloging.worker.iteration_failed")
                job = None
            if job is not None:
                continue
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=idle_interval)
            except asyncio.TimeoutError:
                continue


__all__ = ["ExtractionWorker", "TIMEOUT_MESSAGE"]
