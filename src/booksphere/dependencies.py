"""Dependency wiring helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI

from .api.errors import install_error_handlers
from .cataloging.cataloging_api import router as cataloging_router
from .cataloging.cataloging_matching import CatalogMatcher
from .cataloging.cataloging_service import CatalogingService
from .cataloging.cataloging_state_machine import CatalogingStateMachine
from .cataloging.cataloging_validation import SubmissionValidator
from .cataloging.cataloging_worker import ExtractionWorker
from .config import AppConfig
from .outbox.outbox_api import router as outbox_router
from .outbox.outbox_api import ws_router as notifications_router
from .outbox.outbox_dispatcher import DispatcherPolicy, OutboxDispatcher
from .outbox.outbox_locks import NamedLockManager
from .outbox.outbox_maintenance import DeadLetterQueue, MaintenancePolicy, OutboxMaintainer
from .outbox.outbox_monitor import OutboxMonitor
from .outbox.outbox_rate_limit import TenantRateLimiter
from .outbox.outbox_repository import OutboxRepository
from .outbox.outbox_transport import BroadcastTransport, WebSocketBroadcastHub
from .outbox.outbox_writer import OutboxWriter
from .providers.providers_base import ExtractionClient
from .providers.providers_factory import create_extraction_client
from .repositories.catalog_edition_repository import CatalogEditionRepository
from .repositories.cataloging_job_repository import CatalogingJobRepository
from .stats.metrics_api import router as metrics_router
from .stats.metrics_exporter import MetricsExporter
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineServices:
    """Every long-lived object of one process, built from one :class:`AppConfig`."""

    config: AppConfig
    writer: OutboxWriter
    job_repo: CatalogingJobRepository
    edition_repo: CatalogEditionRepository
    outbox_repo: OutboxRepository
    state_machine: CatalogingStateMachine
    worker: ExtractionWorker | None
    cataloging_service: CatalogingService
    hub: WebSocketBroadcastHub
    dispatcher: OutboxDispatcher
    maintainer: OutboxMaintainer
    dead_letter_queue: DeadLetterQueue
    monitor: OutboxMonitor
    metrics_exporter: MetricsExporter


def _resolve_extraction_client(config: AppConfig) -> ExtractionClient | None:
    try:
        return create_extraction_client(config.settings)
    except ValueError as exc:
        logger.warning("providers.extraction.disabled", extra={"reason": str(exc)})
        return None


def build_services(
    config: AppConfig,
    *,
    transport: BroadcastTransport | None = None,
    extraction_client: ExtractionClient | None = None,
    clock: Clock = utcnow,
) -> PipelineServices:
    """Compose repositories, the state machine and the outbox pipeline.

    ``transport`` defaults to the WebSocket hub; ``extraction_client`` to the
    adapter named in the settings (extraction is disabled when it cannot be
    built, e.g. without an API key).
    """

    settings = config.settings
    session_factory = config.session_factory

    writer = OutboxWriter(clock=clock)
    job_repo = CatalogingJobRepository(session_factory)
    edition_repo = CatalogEditionRepository(session_factory)
    outbox_repo = OutboxRepository(session_factory)

    state_machine = CatalogingStateMachine(
        session_factory,
        writer=writer,
        validator=SubmissionValidator(required_slots=tuple(settings.required_image_slots)),
        clock=clock,
    )
    client = extraction_client or _resolve_extraction_client(config)
    worker = (
        ExtractionWorker(
            state_machine=state_machine,
            client=client,
            matcher=CatalogMatcher(edition_repo),
            timeout_seconds=settings.extraction_timeout_seconds,
        )
        if client is not None
        else None
    )
    cataloging_service = CatalogingService(
        state_machine=state_machine,
        repository=job_repo,
        worker=worker,
        max_bulk_job_ids=settings.max_bulk_job_ids,
    )

    hub = WebSocketBroadcastHub()
    dispatcher = OutboxDispatcher(
        repository=outbox_repo,
        transport=transport or hub,
        locks=NamedLockManager(session_factory, ttl_seconds=settings.lock_ttl_seconds, clock=clock),
        rate_limiter=TenantRateLimiter(
            outbox_repo, limit_per_minute=settings.rate_limit_per_minute, clock=clock
        ),
        policy=DispatcherPolicy(
            consumer_name=settings.consumer_name,
            batch_size=settings.batch_size,
            max_delivery_attempts=settings.max_delivery_attempts,
            poll_interval_min=settings.poll_interval_min_ms / 1000,
            poll_interval_max=settings.poll_interval_max_ms / 1000,
        ),
        clock=clock,
    )
    writer.set_commit_hook(dispatcher.wake.notify)

    maintainer = OutboxMaintainer(
        outbox_repo,
        policy=MaintenancePolicy(
            max_delivery_attempts=settings.max_delivery_attempts,
            dead_letter_grace_seconds=settings.dead_letter_grace_seconds,
            retention_hours=settings.retention_hours,
            prune_batch_size=settings.prune_batch_size,
        ),
        clock=clock,
    )
    monitor = OutboxMonitor(outbox_repo, processor_name=settings.consumer_name, clock=clock)

    return PipelineServices(
        config=config,
        writer=writer,
        job_repo=job_repo,
        edition_repo=edition_repo,
        outbox_repo=outbox_repo,
        state_machine=state_machine,
        worker=worker,
        cataloging_service=cataloging_service,
        hub=hub,
        dispatcher=dispatcher,
        maintainer=maintainer,
        dead_letter_queue=DeadLetterQueue(outbox_repo, writer),
        monitor=monitor,
        metrics_exporter=MetricsExporter(job_repo=job_repo, monitor=monitor, hub=hub),
    )


def include_routers(
    app: FastAPI, config: AppConfig, services: PipelineServices | None = None
) -> PipelineServices:
    """Mount module routers and attach services."""
    services = services or build_services(config)

    app.state.config = config
    app.state.services = services
    app.state.cataloging_service = services.cataloging_service
    app.state.outbox_monitor = services.monitor
    app.state.dead_letter_queue = services.dead_letter_queue
    app.state.broadcast_hub = services.hub
    app.state.metrics_exporter = services.metrics_exporter

    install_error_handlers(app)
    app.include_router(cataloging_router)
    app.include_router(outbox_router)
    app.include_router(notifications_router)
    app.include_router(metrics_router)
    return services


__all__ = ["PipelineServices", "build_services", "include_routers"]
