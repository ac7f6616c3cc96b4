"""Service layer behind the cataloging HTTP routes."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from ..exceptions import NotFoundError, UpstreamError, ValidationError
from ..repositories.cataloging_job_repository import CatalogingJobRepository
from .cataloging_models import (
    BulkDeleteResult,
    CatalogingJob,
    ExtractedMetadata,
    ImageRef,
    JobListFilters,
    JobPage,
    JobStats,
    SourceType,
)
from .cataloging_state_machine import CatalogingStateMachine
from .cataloging_validation import validate_list_filters
from .cataloging_worker import ExtractionWorker

logger = logging.getLogger(__name__)


class CatalogingService:
    """Scope every read and write to the calling tenant."""

    def __init__(
        self,
        *,
        state_machine: CatalogingStateMachine,
        repository: CatalogingJobRepository,
        worker: ExtractionWorker | None = None,
        max_bulk_job_ids: int = 50,
    ) -> None:
        self._state_machine = state_machine
        self._repository = repository
        self._worker = worker
        self._max_bulk_job_ids = max_bulk_job_ids

    @property
    def extraction_enabled(self) -> bool:
        return self._worker is not None

    def submit(
        self,
        images: Iterable[Mapping[str, Any] | ImageRef],
        *,
        tenant_id: str,
        user_id: str,
        source_type: SourceType | str = SourceType.IMAGE_CAPTURE,
        isbn: str | None = None,
    ) -> CatalogingJob:
        return self._state_machine.submit(
            images,
            tenant_id=tenant_id,
            submitter_id=user_id,
            source_type=source_type,
            isbn=isbn,
        )

    def get_job(self, job_id: str, *, tenant_id: str) -> CatalogingJob:
        _require_tenant(tenant_id)
        job = self._repository.get_job(job_id, tenant_id=tenant_id)
        if job is None:
            raise NotFoundError(f"cataloging job '{job_id}' not found")
        return job

    def list_jobs(self, *, tenant_id: str, filters: JobListFilters) -> JobPage:
        _require_tenant(tenant_id)
        return self._repository.list_jobs(tenant_id, validate_list_filters(filters))

    def job_stats(self, *, tenant_id: str) -> JobStats:
        _require_tenant(tenant_id)
        return self._repository.job_stats(tenant_id)

    def retry(self, job_id: str, *, tenant_id: str, user_id: str) -> CatalogingJob:
        return self._state_machine.retry(job_id, tenant_id=tenant_id, submitter_id=user_id)

    def reprocess(self, job_id: str, *, tenant_id: str, user_id: str) -> CatalogingJob:
        return self._state_machine.reprocess(job_id, tenant_id=tenant_id, submitter_id=user_id)

    async def process(self, job_id: str, *, tenant_id: str) -> CatalogingJob:
        """Run extraction for one job right away instead of waiting for the worker."""

        _require_tenant(tenant_id)
        if self._worker is None:
            logger.warning("cataloging.process.disabled", extra={"job_id": job_id})
            raise UpstreamError("extraction service is not configured")
        return await self._worker.process(job_id, tenant_id=tenant_id)

    def finalize(
        self,
        job_id: str,
        *,
        tenant_id: str,
        user_id: str,
        corrected_metadata: ExtractedMetadata,
        chosen_edition_id: str | None = None,
    ) -> CatalogingJob:
        self._state_machine.finalize(
            job_id,
            tenant_id=tenant_id,
            user_id=user_id,
            corrected_metadata=corrected_metadata,
            chosen_edition_id=chosen_edition_id,
        )
        return self.get_job(job_id, tenant_id=tenant_id)

    def bulk_delete(self, job_ids: Sequence[str], *, tenant_id: str) -> BulkDeleteResult:
        return self._state_machine.bulk_delete(
            job_ids, tenant_id=tenant_id, limit=self._max_bulk_job_ids
        )


def _require_tenant(tenant_id: str) -> None:
    if not tenant_id or not tenant_id.strip():
        raise ValidationError("tenant_id is required", field="tenant_id")


__all__ = ["CatalogingService"]
