"""HTTP routes for cataloging jobs."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status

from ..api.identity import require_tenant_id, require_user_id
from ..utils.clock import to_naive_utc
from .cataloging_models import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    JobListFilters,
    JobSortField,
    JobStatus,
    SortOrder,
)
from .cataloging_schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    FinalizeJobRequest,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    SubmitJobRequest,
)
from .cataloging_service import CatalogingService

router = APIRouter(prefix="/api/cataloging/jobs", tags=["cataloging"])


def get_cataloging_service(request: Request) -> CatalogingService:
    try:
        return request.app.state.cataloging_service  # type: ignore[attr-defined]
    except AttributeError as exc:  # pragma: no cover - defensive path
        raise RuntimeError("CatalogingService is not configured") from exc


@router.post("", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def submit_job(
    payload: SubmitJobRequest,
    tenant_id: str = Depends(require_tenant_id),
    user_id: str = Depends(require_user_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    job = service.submit(
        [image.model_dump() for image in payload.images],
        tenant_id=tenant_id,
        user_id=user_id,
        source_type=payload.source_type,
        isbn=payload.isbn,
    )
    return JobResponse.from_domain(job)


@router.get("", response_model=JobListResponse)
def list_jobs(
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    submitter_id: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    sort_by: JobSortField = Query(default=JobSortField.CREATED_AT),
    sort_order: SortOrder = Query(default=SortOrder.DESC),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    tenant_id: str = Depends(require_tenant_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobListResponse:
    filters = JobListFilters(
        status=status_filter,
        submitter_id=submitter_id,
        created_after=to_naive_utc(created_after) if created_after else None,
        created_before=to_naive_utc(created_before) if created_before else None,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    return JobListResponse.from_domain(service.list_jobs(tenant_id=tenant_id, filters=filters))


@router.get("/stats", response_model=JobStatsResponse)
def job_stats(
    tenant_id: str = Depends(require_tenant_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobStatsResponse:
    return JobStatsResponse.from_domain(service.job_stats(tenant_id=tenant_id))


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
def bulk_delete(
    payload: BulkDeleteRequest,
    tenant_id: str = Depends(require_tenant_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> BulkDeleteResponse:
    return BulkDeleteResponse.from_domain(service.bulk_delete(payload.job_ids, tenant_id=tenant_id))


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    return JobResponse.from_domain(service.get_job(job_id, tenant_id=tenant_id))


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def retry_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant_id),
    user_id: str = Depends(require_user_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    return JobResponse.from_domain(service.retry(job_id, tenant_id=tenant_id, user_id=user_id))


@router.post("/{job_id}/reprocess", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def reprocess_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant_id),
    user_id: str = Depends(require_user_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    return JobResponse.from_domain(service.reprocess(job_id, tenant_id=tenant_id, user_id=user_id))


@router.post("/{job_id}/process", response_model=JobResponse)
async def process_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    """Run extraction for the job now; the response carries the final status."""
    job = await service.process(job_id, tenant_id=tenant_id)
    return JobResponse.from_domain(job)


@router.post("/{job_id}/finalize", response_model=JobResponse)
def finalize_job(
    job_id: str,
    payload: FinalizeJobRequest,
    tenant_id: str = Depends(require_tenant_id),
    user_id: str = Depends(require_user_id),
    service: CatalogingService = Depends(get_cataloging_service),
) -> JobResponse:
    job = service.finalize(
        job_id,
        tenant_id=tenant_id,
        user_id=user_id,
        corrected_metadata=payload.corrected_metadata.to_domain(),
        chosen_edition_id=payload.chosen_edition_id,
    )
    return JobResponse.from_domain(job)
