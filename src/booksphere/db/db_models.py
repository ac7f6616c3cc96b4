"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils.clock import utcnow

# SQLite only autoincrements an INTEGER PRIMARY KEY
EventId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base declarative class."""


class CatalogingJobModel(Base):
    __tablename__ = "cataloging_job"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    submitter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False, default="image_capture")
    isbn: Mapped[str | None] = mapped_column(String(20))
    images_json: Mapped[str] = mapped_column(Text, nullable=False)  # [{"slot", "ref"}]
    extracted_json: Mapped[str | None] = mapped_column(Text)
    matches_json: Mapped[str | None] = mapped_column(Text)
    error_message: Mapped[str | None] = mapped_column(Text)
    retry_of_job_id: Mapped[str | None] = mapped_column(String(64))
    inventory_record_id: Mapped[str | None] = mapped_column(String(64))
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_cataloging_job_tenant_created", "tenant_id", "created_at"),
    )


class OutboxEventModel(Base):
    __tablename__ = "outbox_event"

    event_id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime)
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        Index("ix_outbox_event_tenant_event", "tenant_id", "event_id"),
        Index("ix_outbox_event_delivered_at", "delivered_at"),
        Index("ix_outbox_event_entity", "entity_type", "entity_id"),
        # event ids are never reused, even after pruning
        {"sqlite_autoincrement": True},
    )


class OutboxTenantHeadModel(Base):
    """Per-tenant row locked by every outbox append to serialise id assignment."""

    __tablename__ = "outbox_tenant_head"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    events_written: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime)


class ProcessorCursorModel(Base):
    __tablename__ = "processor_cursor"

    processor_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_processed_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class DeadLetterEventModel(Base):
    __tablename__ = "outbox_dead_letter"

    id: Mapped[int] = mapped_column(EventId, primary_key=True, autoincrement=True)
    original_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    delivery_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    last_error: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    failed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("original_event_id", name="uq_outbox_dead_letter_original"),
    )


class DispatcherLockModel(Base):
    __tablename__ = "dispatcher_lock"

    name: Mapped[str] = mapped_column(String(160), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CatalogEditionModel(Base):
    """Existing catalog entry that extracted metadata is matched against."""

    __tablename__ = "catalog_edition"

    edition_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    isbn13: Mapped[str | None] = mapped_column(String(13), index=True)
    isbn10: Mapped[str | None] = mapped_column(String(10), index=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    # normalize_title(title); searched and compared instead of the raw title
    title_key: Mapped[str] = mapped_column(String(512), nullable=False, default="", index=True)
    authors: Mapped[str] = mapped_column(String(1024), nullable=False, default="")  # "; "-joined
    publisher: Mapped[str | None] = mapped_column(String(256))
    publication_year: Mapped[int | None] = mapped_column(Integer)


class InventoryRecordModel(Base):
    __tablename__ = "inventory_record"

    record_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    edition_id: Mapped[str | None] = mapped_column(String(64))
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
