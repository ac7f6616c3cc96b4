"""Prometheus text exposition of cataloging and outbox gauges."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from ..outbox.outbox_models import TenantOutboxHealth
from ..outbox.outbox_monitor import OutboxMonitor
from ..outbox.outbox_transport import WebSocketBroadcastHub
from ..repositories.cataloging_job_repository import CatalogingJobRepository


@dataclass(slots=True)
class MetricsSnapshot:
    jobs_by_status: Mapping[str, int]
    outbox_totals: Mapping[str, int]
    tenants: Sequence[TenantOutboxHealth] = field(default_factory=list)
    ws_subscribers: int = 0


class MetricsExporter:
    """Collects pipeline counters and renders them as Prometheus text format."""

    def __init__(
        self,
        job_repo: CatalogingJobRepository,
        monitor: OutboxMonitor,
        hub: WebSocketBroadcastHub | None = None,
    ) -> None:
        self._job_repo = job_repo
        self._monitor = monitor
        self._hub = hub

    def collect(self) -> str:
        """Build metrics text for Prometheus scraping."""
        snapshot = MetricsSnapshot(
            jobs_by_status=self._job_repo.count_by_status(),
            outbox_totals=self._monitor.totals(),
            tenants=self._monitor.all_tenants(),
            ws_subscribers=self._hub.subscriber_count() if self._hub is not None else 0,
        )
        return format_prometheus(snapshot)


def format_prometheus(snapshot: MetricsSnapshot) -> str:
    """Render metrics snapshot into Prometheus text format."""
    lines: list[str] = []

    lines.append("# HELP cataloging_jobs Cataloging jobs per status.")
    lines.append("# TYPE cataloging_jobs gauge")
    for status, count in sorted(snapshot.jobs_by_status.items()):
        lines.append(f'cataloging_jobs{{status="{status}"}} {count}')

    lines.append("# HELP outbox_events_undelivered Outbox events not yet delivered.")
    lines.append("# TYPE outbox_events_undelivered gauge")
    lines.append(f"outbox_events_undelivered {snapshot.outbox_totals.get('undelivered', 0)}")

    lines.append("# HELP outbox_events_delivered_retained Delivered events still inside retention.")
    lines.append("# TYPE outbox_events_delivered_retained gauge")
    lines.append(f"outbox_events_delivered_retained {snapshot.outbox_totals.get('delivered_retained', 0)}")

    lines.append("# HELP outbox_dead_letters Events in the dead-letter queue.")
    lines.append("# TYPE outbox_dead_letters gauge")
    lines.append(f"outbox_dead_letters {snapshot.outbox_totals.get('dead_letters', 0)}")

    lines.append("# HELP outbox_tenant_lag_events Undelivered events past the tenant cursor.")
    lines.append("# TYPE outbox_tenant_lag_events gauge")
    for health in snapshot.tenants:
        lines.append(f'outbox_tenant_lag_events{{tenant_id="{_escape(health.tenant_id)}"}} {health.events_behind_cursor}')

    lines.append("# HELP outbox_tenant_oldest_undelivered_seconds Age of the oldest undelivered event.")
    lines.append("# TYPE outbox_tenant_oldest_undelivered_seconds gauge")
    for health in snapshot.tenants:
        age = health.oldest_undelivered_age_seconds or 0.0
        lines.append(
            f'outbox_tenant_oldest_undelivered_seconds{{tenant_id="{_escape(health.tenant_id)}"}} {age:.3f}'
        )

    lines.append("# HELP outbox_tenant_success_ratio Delivered share of finished events over 24h.")
    lines.append("# TYPE outbox_tenant_success_ratio gauge")
    for health in snapshot.tenants:
        if health.success_rate is None:
            continue
        lines.append(
            f'outbox_tenant_success_ratio{{tenant_id="{_escape(health.tenant_id)}"}} {health.success_rate:.6f}'
        )

    lines.append("# HELP notification_ws_subscribers Connected notification sockets.")
    lines.append("# TYPE notification_ws_subscribers gauge")
    lines.append(f"notification_ws_subscribers {snapshot.ws_subscribers}")

    return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


__all__ = ["MetricsExporter", "MetricsSnapshot", "format_prometheus"]
