"""Cursor-tracked outbox poller and dispatcher.

One tick for one tenant:

1. take the (consumer, tenant) lock or skip the tick;
2. ask the rate limiter how many events may still go out;
3. read undelivered events after the cursor, ``event_id`` ascending;
4. publish them on the tenant channel;
5. in one transaction mark them delivered and move the cursor.

A crash between 4 and 5 leaves the events undelivered and the cursor where
it was, so they are published again (at-least-once). Tenants are ticked
concurrently and independently.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from ..exceptions import DeliveryError
from ..utils.clock import Clock, utcnow
from .outbox_locks import NamedLockManager, dispatcher_lock_name
from .outbox_models import DispatchResult, OutboxEvent
from .outbox_rate_limit import TenantRateLimiter
from .outbox_repository import OutboxRepository
from .outbox_transport import BroadcastTransport

logger = logging.getLogger(__name__)

SKIP_LOCKED = "locked"
SKIP_RATE_LIMITED = "rate_limited"


@dataclass(slots=True)
class DispatcherPolicy:
    consumer_name: str = "notification-processor"
    batch_size: int = 100
    max_delivery_attempts: int = 3
    poll_interval_min: float = 0.2
    poll_interval_max: float = 5.0
    idle_rounds_before_release: int = 3


class WakeSignal:
    """Thread-safe "new events for tenant X" notification.

    ``notify`` may be called from any thread (it is used as the outbox
    writer's after-commit hook); waiting happens on the bound event loop.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tenants: dict[str, asyncio.Event] = {}
        self._any = asyncio.Event()

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def notify(self, tenant_id: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._set, tenant_id)

    def _set(self, tenant_id: str) -> None:
        self.for_tenant(tenant_id).set()
        self._any.set()

    def for_tenant(self, tenant_id: str) -> asyncio.Event:
        event = self._tenants.get(tenant_id)
        if event is None:
            event = self._tenants[tenant_id] = asyncio.Event()
        return event

    @property
    def any(self) -> asyncio.Event:
        return self._any

    def forget(self, tenant_id: str) -> None:
        self._tenants.pop(tenant_id, None)


async def _wait_any(events: Sequence[asyncio.Event], timeout: float) -> None:
    """Return when one of ``events`` is set or ``timeout`` elapses."""

    waiters = [asyncio.create_task(event.wait()) for event in events]
    try:
        await asyncio.wait(waiters, timeout=max(0.0, timeout), return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
        await asyncio.gather(*waiters, return_exceptions=True)


class OutboxDispatcher:
    """Deliver outbox events to a broadcast transport, tenant by tenant."""

    def __init__(
        self,
        *,
        repository: OutboxRepository,
        transport: BroadcastTransport,
        locks: NamedLockManager,
        rate_limiter: TenantRateLimiter,
        policy: DispatcherPolicy | None = None,
        clock: Clock = utcnow,
        wake: WakeSignal | None = None,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._locks = locks
        self._rate_limiter = rate_limiter
        self._policy = policy or DispatcherPolicy()
        self._clock = clock
        self.wake = wake or WakeSignal()

    @property
    def policy(self) -> DispatcherPolicy:
        return self._policy

    # -- one tick ----------------------------------------------------------

    async def dispatch_tenant(self, tenant_id: str) -> DispatchResult:
        lock_name = dispatcher_lock_name(self._policy.consumer_name, tenant_id)
        if not await asyncio.to_thread(self._locks.try_acquire, lock_name):
            logger.debug("outbox.dispatch.skipped_locked", extra={"tenant_id": tenant_id})
            return DispatchResult(tenant_id=tenant_id, skipped_reason=SKIP_LOCKED)
        try:
            return await self._dispatch_locked(tenant_id)
        finally:
            await asyncio.to_thread(self._locks.release, lock_name)

    async def _dispatch_locked(self, tenant_id: str) -> DispatchResult:
        allowance = await asyncio.to_thread(self._rate_limiter.remaining, tenant_id)
        if allowance <= 0:
            return DispatchResult(tenant_id=tenant_id, skipped_reason=SKIP_RATE_LIMITED)

        limit = min(self._policy.batch_size, allowance)
        cursor, batch = await asyncio.to_thread(self._load_batch, tenant_id, limit)
        if not batch:
            return DispatchResult(tenant_id=tenant_id, cursor=cursor)

        messages = [event.to_message() for event in batch]
        try:
            await self._transport.publish(tenant_id, messages)
        except DeliveryError as exc:
            accepted = min(exc.accepted, len(batch))
            return await self._handle_failure(tenant_id, batch, accepted, exc)
        except Exception as exc:
            logger.exception("outbox.dispatch.transport_crashed", extra={"tenant_id": tenant_id})
            return await self._handle_failure(tenant_id, batch, 0, exc)

        await asyncio.to_thread(self._confirm, tenant_id, batch, None, None)
        logger.info(
            "outbox.dispatch.delivered",
            extra={
                "tenant_id": tenant_id,
                "count": len(batch),
                "first_event_id": batch[0].event_id,
                "last_event_id": batch[-1].event_id,
            },
        )
        return DispatchResult(tenant_id=tenant_id, delivered=len(batch), cursor=batch[-1].event_id)

    async def _handle_failure(
        self,
        tenant_id: str,
        batch: list[OutboxEvent],
        accepted: int,
        error: Exception,
    ) -> DispatchResult:
        delivered = batch[:accepted]
        failed = batch[accepted] if accepted < len(batch) else None
        await asyncio.to_thread(self._confirm, tenant_id, delivered, failed, error)
        logger.warning(
            "outbox.dispatch.failed",
            extra={
                "tenant_id": tenant_id,
                "delivered": len(delivered),
                "failed_event_id": failed.event_id if failed else None,
            },
        )
        return DispatchResult(
            tenant_id=tenant_id,
            delivered=len(delivered),
            failed_event_id=failed.event_id if failed else None,
            cursor=delivered[-1].event_id if delivered else None,
        )

    def _load_batch(self, tenant_id: str, limit: int) -> tuple[int, list[OutboxEvent]]:
        with self._repository.session_factory() as session, session.begin():
            cursor = self._repository.get_or_create_cursor(
                session,
                processor_name=self._policy.consumer_name,
                tenant_id=tenant_id,
                now=self._clock(),
            )
            cursor_id = cursor.last_processed_event_id
            batch = self._repository.fetch_pending(
                session,
                tenant_id=tenant_id,
                after_event_id=cursor_id,
                limit=limit,
                max_attempts=self._policy.max_delivery_attempts,
            )
        return cursor_id, batch

    def _confirm(
        self,
        tenant_id: str,
        delivered: Sequence[OutboxEvent],
        failed: OutboxEvent | None,
        error: object | None,
    ) -> None:
        """Record a publish outcome; delivery stamps and cursor move together."""

        now = self._clock()
        with self._repository.session_factory() as session, session.begin():
            if delivered:
                self._repository.confirm_delivered(
                    session,
                    tenant_id=tenant_id,
                    event_ids=[event.event_id for event in delivered],
                    now=now,
                )
                self._repository.advance_cursor(
                    session,
                    processor_name=self._policy.consumer_name,
                    tenant_id=tenant_id,
                    event_id=delivered[-1].event_id,
                    now=now,
                )
            if failed is not None:
                self._repository.record_failure(
                    session, tenant_id=tenant_id, event_id=failed.event_id, error=error
                )

    async def run_once(self) -> list[DispatchResult]:
        """Tick every tenant with pending events once, concurrently."""

        tenants = await asyncio.to_thread(
            self._repository.active_tenants, max_attempts=self._policy.max_delivery_attempts
        )
        if not tenants:
            return []
        outcomes = await asyncio.gather(
            *(self.dispatch_tenant(tenant_id) for tenant_id in tenants),
            return_exceptions=True,
        )
        results: list[DispatchResult] = []
        for tenant_id, outcome in zip(tenants, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "outbox.dispatch.tenant_failed",
                    extra={"tenant_id": tenant_id},
                    exc_info=outcome,
                )
                continue
            results.append(outcome)
        return results

    # -- long running loop -------------------------------------------------

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Keep one poll loop per tenant with pending events until shutdown."""

        self.wake.bind(asyncio.get_running_loop())
        tasks: dict[str, asyncio.Task[None]] = {}
        try:
            while not shutdown_event.is_set():
                self.wake.any.clear()
                try:
                    tenants = await asyncio.to_thread(
                        self._repository.active_tenants,
                        max_attempts=self._policy.max_delivery_attempts,
                    )
                except Exception:
                    logger.exception("outbox.dispatch.discovery_failed")
                    tenants = []
                for tenant_id in tenants:
                    task = tasks.get(tenant_id)
                    if task is None or task.done():
                        tasks[tenant_id] = asyncio.create_task(
                            self._tenant_loop(tenant_id, shutdown_event),
                            name=f"outbox-dispatch-{tenant_id}",
                        )
                for tenant_id in [key for key, task in tasks.items() if task.done()]:
                    tasks.pop(tenant_id)
                await _wait_any(
                    [shutdown_event, self.wake.any], self._policy.poll_interval_max
                )
        finally:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)

    async def _tenant_loop(self, tenant_id: str, shutdown_event: asyncio.Event) -> None:
        policy = self._policy
        interval = policy.poll_interval_min
        idle_rounds = 0
        wake = self.wake.for_tenant(tenant_id)
        while not shutdown_event.is_set():
            wake.clear()
            try:
                result = await self.dispatch_tenant(tenant_id)
            except Exception:
                logger.exception("outbox.dispatch.tenant_failed", extra={"tenant_id": tenant_id})
                result = DispatchResult(tenant_id=tenant_id)

            if result.failed_event_id is not None:
                # the failing event heads the next batch again; do not hammer the transport
                idle_rounds = 0
                interval = min(interval * 2, policy.poll_interval_max)
            elif result.delivered:
                interval = policy.poll_interval_min
                idle_rounds = 0
                # more may be waiting right behind a full batch
                if result.delivered >= policy.batch_size:
                    continue
            elif result.skipped_reason == SKIP_RATE_LIMITED:
                # new events cannot go out before the window resets
                reset_in = max(policy.poll_interval_min, self._rate_limiter.seconds_until_reset())
                await _wait_any([shutdown_event], reset_in)
                continue
            else:
                idle_rounds += 1
                if idle_rounds > policy.idle_rounds_before_release and interval >= policy.poll_interval_max:
                    self.wake.forget(tenant_id)
                    return
                interval = min(interval * 2, policy.poll_interval_max)
            await _wait_any([shutdown_event, wake], interval)


__all__ = ["DispatcherPolicy", "OutboxDispatcher", "WakeSignal"]
