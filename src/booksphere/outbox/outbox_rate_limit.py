"""Per-tenant cap on delivered events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..utils.clock import Clock, utcnow
from .outbox_repository import OutboxRepository

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


@dataclass(slots=True)
class TenantRateLimiter:
    """Fixed-window limiter counting deliveries recorded in the outbox.

    The count comes from ``delivered_at`` stamps, so every dispatcher
    instance sees the same budget. Events over the budget are not dropped;
    they stay undelivered until the next window opens.
    """

    repository: OutboxRepository
    limit_per_minute: int = 1000
    window_seconds: int = 60
    clock: Clock = utcnow

    def window_start(self, now: datetime | None = None) -> datetime:
        current = now or self.clock()
        elapsed = int((current - _EPOCH).total_seconds())
        return _EPOCH + timedelta(seconds=elapsed - elapsed % self.window_seconds)

    def remaining(self, tenant_id: str) -> int:
        """How many more events may be delivered to the tenant in this window."""

        delivered = self.repository.delivered_in_window(tenant_id, since=self.window_start())
        left = max(0, self.limit_per_minute - delivered)
        if left == 0:
            logger.info(
                "outbox.rate_limit.exhausted",
                extra={"tenant_id": tenant_id, "limit_per_minute": self.limit_per_minute},
            )
        return left

    def seconds_until_reset(self) -> float:
        now = self.clock()
        reset_at = self.window_start(now) + timedelta(seconds=self.window_seconds)
        return max(0.0, (reset_at - now).total_seconds())


__all__ = ["TenantRateLimiter"]
