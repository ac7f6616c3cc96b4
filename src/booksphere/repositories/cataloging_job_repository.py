"""Persistence layer for cataloging jobs (the job store)."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..cataloging.cataloging_models import (
    CandidateMatch,
    CatalogingJob,
    ExtractedMetadata,
    ImageRef,
    JobListFilters,
    JobPage,
    JobSortField,
    JobStats,
    JobStatus,
    SortOrder,
    SourceType,
)
from ..db.db_models import CatalogingJobModel
from ..exceptions import handle_sqlalchemy_errors

_SORT_COLUMNS = {
    JobSortField.CREATED_AT: CatalogingJobModel.created_at,
    JobSortField.UPDATED_AT: CatalogingJobModel.updated_at,
    JobSortField.STATUS: CatalogingJobModel.status,
}


def to_domain(model: CatalogingJobModel) -> CatalogingJob:
    """Build an immutable-ish snapshot from an ORM row."""

    images = tuple(ImageRef.from_dict(item) for item in json.loads(model.images_json or "[]"))
    metadata = None
    if model.extracted_json:
        metadata = ExtractedMetadata.from_dict(json.loads(model.extracted_json))
    matches = [CandidateMatch.from_dict(item) for item in json.loads(model.matches_json or "[]")]
    return CatalogingJob(
        job_id=model.job_id,
        tenant_id=model.tenant_id,
        submitter_id=model.submitter_id,
        status=JobStatus(model.status),
        source_type=SourceType(model.source_type),
        images=images,
        created_at=model.created_at,
        updated_at=model.updated_at,
        isbn=model.isbn,
        metadata=metadata,
        matches=matches,
        error_message=model.error_message,
        retry_of_job_id=model.retry_of_job_id,
        inventory_record_id=model.inventory_record_id,
        finalized_at=model.finalized_at,
    )


class CatalogingJobRepository:
    """Read jobs in their own sessions; lock and add rows inside a caller's one."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # -- helpers used inside the state machine's transaction ---------------

    @staticmethod
    def add(session: Session, model: CatalogingJobModel) -> None:
        with handle_sqlalchemy_errors(entity="cataloging_job"):
            session.add(model)
            session.flush()

    @staticmethod
    def lock(session: Session, job_id: str) -> CatalogingJobModel | None:
        """Return the job row locked for update, or ``None``."""

        stmt = (
            select(CatalogingJobModel)
            .where(CatalogingJobModel.job_id == job_id)
            .with_for_update()
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def lock_many(session: Session, job_ids: list[str]) -> list[CatalogingJobModel]:
        stmt = (
            select(CatalogingJobModel)
            .where(CatalogingJobModel.job_id.in_(job_ids))
            .order_by(CatalogingJobModel.job_id)
            .with_for_update()
        )
        return list(session.execute(stmt).scalars())

    @staticmethod
    def claim_oldest_pending(session: Session) -> CatalogingJobModel | None:
        """Lock the oldest pending job no other worker has locked."""

        stmt = (
            select(CatalogingJobModel)
            .where(CatalogingJobModel.status == JobStatus.PENDING.value)
            .order_by(CatalogingJobModel.created_at, CatalogingJobModel.job_id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def lock_stale_processing(
        session: Session, *, updated_before: datetime, limit: int
    ) -> list[CatalogingJobModel]:
        stmt = (
            select(CatalogingJobModel)
            .where(
                CatalogingJobModel.status == JobStatus.PROCESSING.value,
                CatalogingJobModel.updated_at < updated_before,
            )
            .order_by(CatalogingJobModel.updated_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(session.execute(stmt).scalars())

    # -- read side ---------------------------------------------------------

    def get_job(self, job_id: str, *, tenant_id: str | None = None) -> CatalogingJob | None:
        with self._session_factory() as session:
            model = session.get(CatalogingJobModel, job_id)
            if model is None:
                return None
            if tenant_id is not None and model.tenant_id != tenant_id:
                return None
            return to_domain(model)

    def list_jobs(self, tenant_id: str, filters: JobListFilters) -> JobPage:
        conditions = [CatalogingJobModel.tenant_id == tenant_id]
        if filters.status is not None:
            conditions.append(CatalogingJobModel.status == filters.status.value)
        if filters.submitter_id is not None:
            conditions.append(CatalogingJobModel.submitter_id == filters.submitter_id)
        if filters.created_after is not None:
            conditions.append(CatalogingJobModel.created_at >= filters.created_after)
        if filters.created_before is not None:
            conditions.append(CatalogingJobModel.created_at <= filters.created_before)

        column = _SORT_COLUMNS[filters.sort_by]
        if filters.sort_order is SortOrder.ASC:
            ordering = (column.asc(), CatalogingJobModel.job_id.asc())
        else:
            ordering = (column.desc(), CatalogingJobModel.job_id.desc())

        offset = (filters.page - 1) * filters.page_size
        with self._session_factory() as session:
            total = session.execute(
                select(func.count()).select_from(CatalogingJobModel).where(*conditions)
            ).scalar_one()
            models = session.execute(
                select(CatalogingJobModel)
                .where(*conditions)
                .order_by(*ordering)
                .offset(offset)
                .limit(filters.page_size)
            ).scalars()
            items = [to_domain(model) for model in models]
        return JobPage(items=items, total_count=int(total), page=filters.page, page_size=filters.page_size)

    def job_stats(self, tenant_id: str) -> JobStats:
        with self._session_factory() as session:
            rows = session.execute(
                select(CatalogingJobModel.status, func.count())
                .where(CatalogingJobModel.tenant_id == tenant_id)
                .group_by(CatalogingJobModel.status)
            ).all()
            finalized = session.execute(
                select(func.count())
                .select_from(CatalogingJobModel)
                .where(
                    CatalogingJobModel.tenant_id == tenant_id,
                    CatalogingJobModel.finalized_at.is_not(None),
                )
            ).scalar_one()
        stats = JobStats(finalized=int(finalized))
        for status, count in rows:
            setattr(stats, JobStatus(status).value, int(count))
            stats.total += int(count)
        return stats

    def count_by_status(self) -> dict[str, int]:
        """Global per-status counts for the metrics exporter."""

        with self._session_factory() as session:
            rows = session.execute(
                select(CatalogingJobModel.status, func.count()).group_by(CatalogingJobModel.status)
            ).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts


__all__ = ["CatalogingJobRepository", "to_domain"]
