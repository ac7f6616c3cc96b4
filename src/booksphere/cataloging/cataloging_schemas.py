"""Pydantic schemas for the cataloging API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .cataloging_models import (
    BulkDeleteResult,
    CandidateMatch,
    CatalogingJob,
    Contributor,
    ExtractedMetadata,
    ImageSlot,
    JobPage,
    JobStats,
    JobStatus,
    SourceType,
)


class ImageRefSchema(BaseModel):
    slot: ImageSlot
    ref: str


class ContributorSchema(BaseModel):
    name: str
    role: str = "author"
    confidence: str | None = None


class MetadataSchema(BaseModel):
    title: str | None = None
    subtitle: str | None = None
    authors: list[ContributorSchema] = Field(default_factory=list)
    publisher: str | None = None
    publication_year: int | None = None
    publication_location: str | None = None
    edition_statement: str | None = None
    has_dust_jacket: bool | None = None
    isbn: str | None = None
    extraction_confidence: dict[str, str] = Field(default_factory=dict)

    def to_domain(self) -> ExtractedMetadata:
        return ExtractedMetadata(
            title=self.title,
            subtitle=self.subtitle,
            authors=[Contributor(name=item.name, role=item.role, confidence=item.confidence) for item in self.authors],
            publisher=self.publisher,
            publication_year=self.publication_year,
            publication_location=self.publication_location,
            edition_statement=self.edition_statement,
            has_dust_jacket=self.has_dust_jacket,
            isbn=self.isbn,
            extraction_confidence=dict(self.extraction_confidence),
        )

    @classmethod
    def from_domain(cls, metadata: ExtractedMetadata) -> "MetadataSchema":
        return cls(**metadata.to_dict())


class CandidateMatchSchema(BaseModel):
    edition_id: str
    match_type: str
    score: float
    title: str
    authors: list[str] = Field(default_factory=list)
    publication_year: int | None = None
    isbn: str | None = None

    @classmethod
    def from_domain(cls, match: CandidateMatch) -> "CandidateMatchSchema":
        return cls(**match.to_dict())


class SubmitJobRequest(BaseModel):
    images: list[ImageRefSchema]
    source_type: SourceType = SourceType.IMAGE_CAPTURE
    isbn: str | None = None


class FinalizeJobRequest(BaseModel):
    corrected_metadata: MetadataSchema
    chosen_edition_id: str | None = None


class BulkDeleteRequest(BaseModel):
    job_ids: list[str]


class JobResponse(BaseModel):
    job_id: str
    tenant_id: str
    submitter_id: str
    status: JobStatus
    source_type: SourceType
    images: list[ImageRefSchema]
    isbn: str | None = None
    metadata: MetadataSchema | None = None
    matches: list[CandidateMatchSchema] = Field(default_factory=list)
    error_message: str | None = None
    retry_of_job_id: str | None = None
    inventory_record_id: str | None = None
    created_at: datetime
    updated_at: datetime
    finalized_at: datetime | None = None

    @classmethod
    def from_domain(cls, job: CatalogingJob) -> "JobResponse":
        return cls(
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            submitter_id=job.submitter_id,
            status=job.status,
            source_type=job.source_type,
            images=[ImageRefSchema(slot=image.slot, ref=image.ref) for image in job.images],
            isbn=job.isbn,
            metadata=MetadataSchema.from_domain(job.metadata) if job.metadata else None,
            matches=[CandidateMatchSchema.from_domain(match) for match in job.matches],
            error_message=job.error_message,
            retry_of_job_id=job.retry_of_job_id,
            inventory_record_id=job.inventory_record_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            finalized_at=job.finalized_at,
        )


class JobListResponse(BaseModel):
    items: list[JobResponse]
    total_count: int
    page: int
    page_size: int
    has_more: bool

    @classmethod
    def from_domain(cls, page: JobPage) -> "JobListResponse":
        return cls(
            items=[JobResponse.from_domain(job) for job in page.items],
            total_count=page.total_count,
            page=page.page,
            page_size=page.page_size,
            has_more=page.has_more,
        )


class JobStatsResponse(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    finalized: int

    @classmethod
    def from_domain(cls, stats: JobStats) -> "JobStatsResponse":
        return cls(
            total=stats.total,
            pending=stats.pending,
            processing=stats.processing,
            completed=stats.completed,
            failed=stats.failed,
            finalized=stats.finalized,
        )


class BulkDeleteResponse(BaseModel):
    deleted: list[str]
    rejected: list[str]

    @classmethod
    def from_domain(cls, result: BulkDeleteResult) -> "BulkDeleteResponse":
        return cls(deleted=list(result.deleted), rejected=list(result.rejected))
