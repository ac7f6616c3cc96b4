"""Legal transitions of a cataloging job.

Every mutation below runs in one transaction together with the outbox event
describing it: either the job row changes and its event exists, or neither.

    pending -> processing -> completed | failed

``retry`` (from failed) and ``reprocess`` (from completed) never touch the
original job; they create a fresh pending job carrying the same images.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from ..db.db_models import CatalogingJobModel, InventoryRecordModel
from ..exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    sanitize_error_message,
)
from ..outbox.outbox_models import EventType
from ..outbox.outbox_writer import OutboxWriter
from ..repositories.cataloging_job_repository import CatalogingJobRepository, to_domain
from ..repositories.catalog_edition_repository import CatalogEditionRepository
from ..utils.clock import Clock, utcnow
from .cataloging_models import (
    MAX_MATCHED_EDITIONS,
    BulkDeleteResult,
    CandidateMatch,
    CatalogingJob,
    ExtractedMetadata,
    ImageRef,
    JobStatus,
    SourceType,
)
from .cataloging_validation import SubmissionValidator, validate_job_ids

logger = logging.getLogger(__name__)

STALE_JOB_MESSAGE = "Extraction timed out: no result within {seconds} seconds"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class CatalogingStateMachine:
    """Owns every write to the job store."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        writer: OutboxWriter,
        validator: SubmissionValidator | None = None,
        clock: Clock = utcnow,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._writer = writer
        self._validator = validator or SubmissionValidator()
        self._clock = clock
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    # -- creation ----------------------------------------------------------

    def submit(
        self,
        images: Iterable[Mapping[str, Any] | ImageRef],
        *,
        tenant_id: str,
        submitter_id: str,
        source_type: SourceType | str = SourceType.IMAGE_CAPTURE,
        isbn: str | None = None,
    ) -> CatalogingJob:
        """Validate and store a new pending job, appending ``job_created``."""

        _require_identity(tenant_id, submitter_id)
        validated_images = self._validator.validate_images(images)
        isbn_hint = self._validator.validate_isbn_hint(isbn)
        try:
            resolved_source = SourceType(source_type)
        except ValueError as exc:
            raise ValidationError(f"unknown source type: {source_type!r}", field="source_type") from exc

        with self._session_factory() as session, session.begin():
            model = self._create_job(
                session,
                tenant_id=tenant_id,
                submitter_id=submitter_id,
                images=validated_images,
                source_type=resolved_source,
                isbn=isbn_hint,
                retry_of_job_id=None,
            )
            job = to_domain(model)
        logger.info(
            "cataloging.job.submitted",
            extra={"tenant_id": tenant_id, "job_id": job.job_id, "images": len(validated_images)},
        )
        return job

    def retry(self, job_id: str, *, tenant_id: str, submitter_id: str) -> CatalogingJob:
        """Create a new pending job from a failed one."""

        return self._clone(job_id, tenant_id=tenant_id, submitter_id=submitter_id,
                           expected=JobStatus.FAILED, action="retry")

    def reprocess(self, job_id: str, *, tenant_id: str, submitter_id: str) -> CatalogingJob:
        """Create a new pending job from a completed one, keeping the original auditable."""

        return self._clone(job_id, tenant_id=tenant_id, submitter_id=submitter_id,
                           expected=JobStatus.COMPLETED, action="reprocess")

    def _clone(
        self,
        job_id: str,
        *,
        tenant_id: str,
        submitter_id: str,
        expected: JobStatus,
        action: str,
    ) -> CatalogingJob:
        _require_identity(tenant_id, submitter_id)
        with self._session_factory() as session, session.begin():
            original = self._lock(session, job_id, tenant_id=tenant_id)
            if original.status != expected.value:
                raise InvalidTransitionError(job_id, original.status, action)
            model = self._create_job(
                session,
                tenant_id=tenant_id,
                submitter_id=submitter_id,
                images=tuple(ImageRef.from_dict(item) for item in json.loads(original.images_json)),
                source_type=SourceType(original.source_type),
                isbn=original.isbn,
                retry_of_job_id=original.job_id,
            )
            job = to_domain(model)
        logger.info(
            f"cataloging.job.{action}",
            extra={"tenant_id": tenant_id, "job_id": job.job_id, "retry_of_job_id": job_id},
        )
        return job

    def _create_job(
        self,
        session: Session,
        *,
        tenant_id: str,
        submitter_id: str,
        images: Sequence[ImageRef],
        source_type: SourceType,
        isbn: str | None,
        retry_of_job_id: str | None,
    ) -> CatalogingJobModel:
        now = self._clock()
        model = CatalogingJobModel(
            job_id=self._id_factory(),
            tenant_id=tenant_id,
            submitter_id=submitter_id,
            status=JobStatus.PENDING.value,
            source_type=source_type.value,
            isbn=isbn,
            images_json=json.dumps([image.to_dict() for image in images]),
            retry_of_job_id=retry_of_job_id,
            created_at=now,
            updated_at=now,
        )
        CatalogingJobRepository.add(session, model)
        self._writer.append(
            session,
            tenant_id=tenant_id,
            event_type=EventType.JOB_CREATED,
            entity_id=model.job_id,
            data={
                "job_id": model.job_id,
                "status": model.status,
                "source_type": model.source_type,
                "created_at": _iso(now),
            },
        )
        return model

    # -- extraction lifecycle ----------------------------------------------

    def begin_processing(self, job_id: str, *, tenant_id: str | None = None) -> CatalogingJob:
        """Move ``pending`` to ``processing``; a second call is a no-op."""

        with self._session_factory() as session, session.begin():
            model = self._lock(session, job_id, tenant_id=tenant_id)
            if model.status == JobStatus.PROCESSING.value:
                logger.info("cataloging.job.already_processing", extra={"job_id": job_id})
                return to_domain(model)
            self._start(session, model)
            job = to_domain(model)
        return job

    def claim_next_pending(self) -> CatalogingJob | None:
        """Claim the oldest pending job of any tenant and mark it processing."""

        with self._session_factory() as session, session.begin():
            model = CatalogingJobRepository.claim_oldest_pending(session)
            if model is None:
                return None
            self._start(session, model)
            job = to_domain(model)
        return job

    def _start(self, session: Session, model: CatalogingJobModel) -> None:
        if model.status != JobStatus.PENDING.value:
            raise InvalidTransitionError(model.job_id, model.status, "begin processing")
        now = self._clock()
        model.status = JobStatus.PROCESSING.value
        model.updated_at = now
        session.flush()
        self._writer.append(
            session,
            tenant_id=model.tenant_id,
            event_type=EventType.JOB_UPDATED,
            entity_id=model.job_id,
            data={
                "job_id": model.job_id,
                "status": model.status,
                "updated_at": _iso(now),
                "completed_at": None,
            },
        )
        logger.info(
            "cataloging.job.processing",
            extra={"tenant_id": model.tenant_id, "job_id": model.job_id},
        )

    def complete_extraction(
        self,
        job_id: str,
        metadata: ExtractedMetadata,
        candidate_matches: Sequence[CandidateMatch] = (),
        *,
        tenant_id: str | None = None,
    ) -> CatalogingJob:
        with self._session_factory() as session, session.begin():
            model = self._lock(session, job_id, tenant_id=tenant_id)
            if model.status != JobStatus.PROCESSING.value:
                raise InvalidTransitionError(job_id, model.status, "complete")
            now = self._clock()
            model.status = JobStatus.COMPLETED.value
            model.extracted_json = json.dumps(metadata.to_dict())
            model.matches_json = json.dumps(
                [match.to_dict() for match in list(candidate_matches)[:MAX_MATCHED_EDITIONS]]
            )
            model.error_message = None
            model.updated_at = now
            session.flush()
            self._writer.append(
                session,
                tenant_id=model.tenant_id,
                event_type=EventType.JOB_UPDATED,
                entity_id=job_id,
                data={
                    "job_id": job_id,
                    "status": model.status,
                    "updated_at": _iso(now),
                    "completed_at": _iso(now),
                },
            )
            job = to_domain(model)
        logger.info(
            "cataloging.job.completed",
            extra={"tenant_id": job.tenant_id, "job_id": job_id, "matches": len(job.matches)},
        )
        return job

    def fail_extraction(
        self, job_id: str, error: object, *, tenant_id: str | None = None
    ) -> CatalogingJob:
        with self._session_factory() as session, session.begin():
            model = self._lock(session, job_id, tenant_id=tenant_id)
            if model.status != JobStatus.PROCESSING.value:
                raise InvalidTransitionError(job_id, model.status, "fail")
            self._fail(session, model, error)
            job = to_domain(model)
        logger.warning(
            "cataloging.job.failed",
            extra={"tenant_id": job.tenant_id, "job_id": job_id},
        )
        return job

    def _fail(self, session: Session, model: CatalogingJobModel, error: object) -> None:
        now = self._clock()
        model.status = JobStatus.FAILED.value
        model.error_message = sanitize_error_message(error)
        model.extracted_json = None
        model.matches_json = None
        model.updated_at = now
        session.flush()
        self._writer.append(
            session,
            tenant_id=model.tenant_id,
            event_type=EventType.JOB_FAILED,
            entity_id=model.job_id,
            data={"job_id": model.job_id, "status": model.status, "updated_at": _iso(now)},
        )

    def fail_stale_processing(self, *, stale_after: timedelta, limit: int = 100) -> list[str]:
        """Fail ``processing`` jobs nobody has touched for ``stale_after``."""

        cutoff = self._clock() - stale_after
        message = STALE_JOB_MESSAGE.format(seconds=int(stale_after.total_seconds()))
        with self._session_factory() as session, session.begin():
            models = CatalogingJobRepository.lock_stale_processing(
                session, updated_before=cutoff, limit=limit
            )
            # tenant head rows are locked in one global order across sweepers
            models.sort(key=lambda model: (model.tenant_id, model.job_id))
            for model in models:
                self._fail(session, model, message)
            failed = [model.job_id for model in models]
        if failed:
            logger.warning("cataloging.watchdog.failed_stale", extra={"job_ids": failed})
        return failed

    # -- human decisions ---------------------------------------------------

    def finalize(
        self,
        job_id: str,
        *,
        tenant_id: str,
        user_id: str,
        corrected_metadata: ExtractedMetadata,
        chosen_edition_id: str | None = None,
    ) -> str:
        """Turn a completed job into an inventory record; returns its id."""

        _require_identity(tenant_id, user_id)
        now = self._clock()
        metadata = self._validator.validate_corrected_metadata(corrected_metadata, now=now)
        with self._session_factory() as session, session.begin():
            model = self._lock(session, job_id, tenant_id=tenant_id)
            if model.status != JobStatus.COMPLETED.value or model.finalized_at is not None:
                state = "finalized" if model.finalized_at is not None else model.status
                raise InvalidTransitionError(job_id, state, "finalize")
            if chosen_edition_id is not None:
                candidates = {match["edition_id"] for match in json.loads(model.matches_json or "[]")}
                if chosen_edition_id not in candidates:
                    raise ValidationError(
                        "chosen edition is not one of the job's candidate matches",
                        field="chosen_edition_id",
                    )
            record_id = self._id_factory()
            CatalogEditionRepository.add_inventory_record(
                session,
                InventoryRecordModel(
                    record_id=record_id,
                    tenant_id=tenant_id,
                    job_id=job_id,
                    edition_id=chosen_edition_id,
                    title=metadata.title or "",
                    metadata_json=json.dumps(metadata.to_dict()),
                    created_by=user_id,
                    created_at=now,
                ),
            )
            model.finalized_at = now
            model.inventory_record_id = record_id
            model.updated_at = now
            session.flush()
            self._writer.append(
                session,
                tenant_id=tenant_id,
                event_type=EventType.JOB_FINALIZED,
                entity_id=job_id,
                data={
                    "job_id": job_id,
                    "status": model.status,
                    "finalized_at": _iso(now),
                    "inventory_record_id": record_id,
                },
            )
        logger.info(
            "cataloging.job.finalized",
            extra={"tenant_id": tenant_id, "job_id": job_id, "inventory_record_id": record_id},
        )
        return record_id

    def bulk_delete(self, job_ids: Sequence[str], *, tenant_id: str, limit: int = 50) -> BulkDeleteResult:
        """Delete the caller's jobs; ids of other tenants or unknown ids are rejected."""

        if not tenant_id:
            raise ValidationError("tenant_id is required", field="tenant_id")
        requested = validate_job_ids(job_ids, limit=limit)
        result = BulkDeleteResult()
        with self._session_factory() as session, session.begin():
            models = {
                model.job_id: model
                for model in CatalogingJobRepository.lock_many(session, requested)
            }
            for job_id in requested:
                model = models.get(job_id)
                if model is None or model.tenant_id != tenant_id:
                    result.rejected.append(job_id)
                    continue
                self._writer.append(
                    session,
                    tenant_id=tenant_id,
                    event_type=EventType.JOB_DELETED,
                    entity_id=job_id,
                    data={"job_id": job_id, "status": model.status},
                )
                session.delete(model)
                result.deleted.append(job_id)
        logger.info(
            "cataloging.job.bulk_deleted",
            extra={
                "tenant_id": tenant_id,
                "deleted": len(result.deleted),
                "rejected": len(result.rejected),
            },
        )
        return result

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _lock(session: Session, job_id: str, *, tenant_id: str | None) -> CatalogingJobModel:
        model = CatalogingJobRepository.lock(session, job_id)
        # another tenant's job is reported exactly like an unknown one
        if model is None or (tenant_id is not None and model.tenant_id != tenant_id):
            raise NotFoundError(f"cataloging job '{job_id}' not found")
        return model


def _require_identity(tenant_id: str, user_id: str) -> None:
    if not tenant_id or not tenant_id.strip():
        raise ValidationError("tenant_id is required", field="tenant_id")
    if not user_id or not user_id.strip():
        raise ValidationError("user_id is required", field="user_id")


__all__ = ["CatalogingStateMachine", "STALE_JOB_MESSAGE"]
