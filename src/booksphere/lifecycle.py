"""Lifecycle helpers wiring background tasks for FastAPI startup."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from .outbox.outbox_maintenance import MaintenanceSummary

if TYPE_CHECKING:
    from .dependencies import PipelineServices

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenanceReport:
    outbox: MaintenanceSummary
    stale_jobs_failed: list[str] = field(default_factory=list)


def maintenance_once(services: "PipelineServices", *, dry_run: bool = False) -> MaintenanceReport:
    """Run a single maintenance iteration: dead letters, pruning, stale jobs."""

    outbox_summary = services.maintainer.run_once(dry_run=dry_run)
    stale: list[str] = []
    if not dry_run:
        stale = services.state_machine.fail_stale_processing(
            stale_after=timedelta(seconds=services.config.settings.processing_stale_after_seconds)
        )
    return MaintenanceReport(outbox=outbox_summary, stale_jobs_failed=stale)


async def run_periodic_maintenance(
    *,
    services: "PipelineServices",
    shutdown_event: asyncio.Event,
    interval_seconds: float = 60.0,
) -> None:
    """Execute maintenance until ``shutdown_event`` is signalled."""

    interval = max(1.0, float(interval_seconds))
    while not shutdown_event.is_set():
        try:
            report = await asyncio.to_thread(maintenance_once, services)
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("maintenance.iteration_failed")
        else:
            if report.outbox.dead_lettered or report.outbox.pruned or report.stale_jobs_failed:
                logger.info(
                    "maintenance.iteration_done",
                    extra={
                        "dead_lettered": report.outbox.dead_lettered,
                        "pruned": report.outbox.pruned,
                        "stale_jobs_failed": len(report.stale_jobs_failed),
                    },
                )
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue


def start_background_tasks(
    services: "PipelineServices", shutdown_event: asyncio.Event
) -> list[asyncio.Task[None]]:
    """Start dispatcher, extraction worker and maintenance loops."""

    settings = services.config.settings
    tasks = [
        asyncio.create_task(services.dispatcher.run(shutdown_event), name="outbox-dispatcher"),
        asyncio.create_task(
            run_periodic_maintenance(
                services=services,
                shutdown_event=shutdown_event,
                interval_seconds=settings.maintenance_interval_seconds,
            ),
            name="maintenance",
        ),
    ]
    if services.worker is not None:
        tasks.append(asyncio.create_task(services.worker.run(shutdown_event), name="extraction-worker"))
    else:
        logger.warning("lifecycle.extraction_worker.disabled")
    return tasks


async def stop_background_tasks(
    tasks: list[asyncio.Task[None]], shutdown_event: asyncio.Event, *, timeout: float = 10.0
) -> None:
    shutdown_event.set()
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=timeout)
    for task in pending:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "lifecycle.task_crashed",
                extra={"task": task.get_name()},
                exc_info=task.exception(),
            )


def pipeline_lifespan(
    services: "PipelineServices",
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """FastAPI lifespan running the background loops while the app serves."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        services.dispatcher.wake.bind(asyncio.get_running_loop())
        if not services.config.settings.run_background_workers:
            yield
            return
        shutdown_event = asyncio.Event()
        tasks = start_background_tasks(services, shutdown_event)
        logger.info("lifecycle.started", extra={"tasks": [task.get_name() for task in tasks]})
        try:
            yield
        finally:
            await stop_background_tasks(tasks, shutdown_event)
            logger.info("lifecycle.stopped")

    return lifespan


__all__ = [
    "MaintenanceReport",
    "maintenance_once",
    "pipeline_lifespan",
    "run_periodic_maintenance",
    "start_background_tasks",
    "stop_background_tasks",
]
