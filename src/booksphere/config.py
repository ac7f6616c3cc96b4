"""Application configuration builder.

Policy knobs (batch size, retention, dead-letter ceiling, rate limits, lock
leases, extraction timeouts) are read from ``BOOKSPHERE_*`` environment
variables through :class:`PipelineSettings`; :func:`load_config` turns them
into an :class:`AppConfig` with a ready SQLAlchemy engine.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .db.db_init import init_db
from .utils.postgres_dsn import is_sqlite_url, normalize_database_url


class PipelineSettings(BaseSettings):
    """Pydantic settings container for the cataloging pipeline."""

    model_config = SettingsConfigDict(env_prefix="BOOKSPHERE_", extra="ignore")

    database_url: str = Field(
        default="sqlite:///booksphere.db",
        description="SQLAlchemy URL or libpq DSN of the job store / outbox database.",
    )
    consumer_name: str = Field(
        default="notification-processor",
        min_length=1,
        max_length=64,
        description="Name under which dispatcher cursors and locks are kept.",
    )
    batch_size: int = Field(
        default=100,
        ge=1,
        le=1_000,
        description="Maximum number of outbox events delivered per tick.",
    )
    poll_interval_min_ms: int = Field(
        default=200,
        ge=10,
        description="Poll interval used while a tenant has traffic (ms).",
    )
    poll_interval_max_ms: int = Field(
        default=5_000,
        ge=10,
        description="Ceiling of the idle back-off between polls (ms).",
    )
    rate_limit_per_minute: int = Field(
        default=1_000,
        ge=1,
        description="Delivered events allowed per tenant per minute.",
    )
    max_delivery_attempts: int = Field(
        default=3,
        ge=1,
        description="Delivery attempts after which an event is dead-lettered.",
    )
    dead_letter_grace_seconds: int = Field(
        default=300,
        ge=0,
        description="Minimum event age before a failing event is dead-lettered.",
    )
    retention_hours: int = Field(
        default=72,
        ge=1,
        description="How long delivered events are kept before pruning.",
    )
    prune_batch_size: int = Field(
        default=5_000,
        ge=1,
        description="Rows deleted per prune batch.",
    )
    lock_ttl_seconds: int = Field(
        default=30,
        ge=1,
        description="Lease length of a per-tenant dispatcher lock.",
    )
    maintenance_interval_seconds: float = Field(
        default=60.0,
        ge=1.0,
        description="Period of the dead-letter / prune / watchdog loop.",
    )
    extraction_provider: str = Field(
        default="gemini",
        description="Extraction adapter used by the worker.",
    )
    gemini_api_key: str | None = Field(
        default=None,
        description="API key for the Gemini extraction adapter.",
    )
    gemini_model: str = Field(default="gemini-2.5-pro")
    gemini_api_url_base: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta"
    )
    image_storage_root: str = Field(
        default="media/cataloging",
        description="Directory that non-URL image references are resolved against.",
    )
    request_budget_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Budget of the enclosing extraction request.",
    )
    cleanup_margin_seconds: float = Field(
        default=5.0,
        ge=0,
        description="Time reserved to record the outcome after a timeout.",
    )
    processing_stale_after_seconds: int = Field(
        default=600,
        ge=1,
        description="Processing jobs idle for longer are failed by the watchdog.",
    )
    required_image_slots: list[str] = Field(
        default_factory=lambda: ["cover"],
        description="Image slots that must be present on submission.",
    )
    max_bulk_job_ids: int = Field(default=50, ge=1, le=500)
    run_background_workers: bool = Field(
        default=True,
        description="Start dispatcher, worker and maintainer with the app.",
    )
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True, description="JSON log lines; console rendering when false.")

    @model_validator(mode="after")
    def _check_intervals(self) -> "PipelineSettings":
        if self.poll_interval_max_ms < self.poll_interval_min_ms:
            raise ValueError("poll_interval_max_ms must be >= poll_interval_min_ms")
        if self.cleanup_margin_seconds >= self.request_budget_seconds:
            raise ValueError("cleanup_margin_seconds must be below request_budget_seconds")
        return self

    @property
    def extraction_timeout_seconds(self) -> float:
        """Hard timeout of one extraction call."""

        return self.request_budget_seconds - self.cleanup_margin_seconds


@dataclass(slots=True)
class AppConfig:
    settings: PipelineSettings
    database_url: str
    engine: Engine
    session_factory: sessionmaker[Session]


def build_engine(database_url: str) -> Engine:
    url = normalize_database_url(database_url)
    if is_sqlite_url(url):
        # worker threads share the engine through asyncio.to_thread
        return create_engine(
            url, future=True, connect_args={"check_same_thread": False}
        )
    return create_engine(url, future=True, pool_pre_ping=True)


def load_config(settings: PipelineSettings | None = None) -> AppConfig:
    """Load configuration from environment (SQLite by default)."""
    resolved = settings or PipelineSettings()
    engine = build_engine(resolved.database_url)
    session_factory: sessionmaker[Session] = sessionmaker(bind=engine, expire_on_commit=False)

    init_db(engine)

    return AppConfig(
        settings=resolved,
        database_url=resolved.database_url,
        engine=engine,
        session_factory=session_factory,
    )


__all__ = ["AppConfig", "PipelineSettings", "build_engine", "load_config"]
