"""Read-only delivery health reporting."""

from __future__ import annotations

from datetime import timedelta

from ..utils.clock import Clock, utcnow
from .outbox_models import TenantOutboxHealth
from .outbox_repository import OutboxRepository

SUCCESS_RATE_WINDOW = timedelta(hours=24)


class OutboxMonitor:
    """Per-tenant cursor lag, dead-letter count and delivery success rate."""

    def __init__(
        self,
        repository: OutboxRepository,
        *,
        processor_name: str = "notification-processor",
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._processor_name = processor_name
        self._clock = clock

    def tenant_health(self, tenant_id: str) -> TenantOutboxHealth:
        now = self._clock()
        counters = self._repository.tenant_counters(
            tenant_id=tenant_id,
            processor_name=self._processor_name,
            since=now - SUCCESS_RATE_WINDOW,
        )
        oldest = counters["oldest_undelivered_at"]
        age = (now - oldest).total_seconds() if oldest is not None else None
        return TenantOutboxHealth(
            tenant_id=tenant_id,
            processor_name=self._processor_name,
            cursor_event_id=counters["cursor_event_id"],
            undelivered_count=counters["undelivered"],
            events_behind_cursor=counters["behind_cursor"],
            retrying_count=counters["retrying"],
            oldest_undelivered_age_seconds=max(0.0, age) if age is not None else None,
            dead_letter_count=counters["dead_letters"],
            delivered_last_24h=counters["delivered_since"],
            dead_lettered_last_24h=counters["dead_lettered_since"],
        )

    def all_tenants(self) -> list[TenantOutboxHealth]:
        return [self.tenant_health(tenant_id) for tenant_id in self._repository.known_tenants()]

    def totals(self) -> dict[str, int]:
        return self._repository.global_counters()


__all__ = ["OutboxMonitor", "SUCCESS_RATE_WINDOW"]
