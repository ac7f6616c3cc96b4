"""Broadcast transports the dispatcher publishes tenant batches to.

A transport is reliable only within an open connection; anything lost on a
reconnect is recovered from the cursor, never from the transport.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class BroadcastTransport(Protocol):
    """Per-tenant channel abstraction.

    ``publish`` returns once the batch is accepted. A transport that accepts
    only the first ``n`` events raises
    :class:`~src.booksphere.exceptions.DeliveryError` with ``accepted=n``.
    """

    async def publish(self, tenant_id: str, events: Sequence[dict[str, Any]]) -> None: ...


def tenant_channel(tenant_id: str) -> str:
    return f"notifications:{tenant_id}"


@dataclass(slots=True)
class InMemoryBroadcastTransport:
    """Keep every published message per channel; used by scripts and tests."""

    channels: dict[str, list[dict[str, Any]]] = field(default_factory=lambda: defaultdict(list))

    async def publish(self, tenant_id: str, events: Sequence[dict[str, Any]]) -> None:
        self.channels[tenant_channel(tenant_id)].extend(dict(event) for event in events)

    def messages(self, tenant_id: str) -> list[dict[str, Any]]:
        return list(self.channels.get(tenant_channel(tenant_id), []))


class Subscription:
    """Bounded buffer between the hub and one connected client."""

    def __init__(self, tenant_id: str, max_pending: int) -> None:
        self.tenant_id = tenant_id
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # wake a reader blocked on get(); drop buffered messages if needed
        while True:
            try:
                self._queue.put_nowait(None)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def get(self) -> dict[str, Any] | None:
        """Next message, or ``None`` once the subscription was closed."""

        message = await self._queue.get()
        if message is None:
            self.closed = True
        return message


class WebSocketBroadcastHub:
    """Fan tenant batches out to the WebSocket clients of that tenant.

    Publishing to a tenant with no subscribers succeeds. A subscriber whose
    buffer is full is disconnected; it catches up from the cursor on
    reconnect like any other client.
    """

    def __init__(self, *, max_pending_per_subscriber: int = 1000) -> None:
        self._max_pending = max_pending_per_subscriber
        self._subscribers: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, tenant_id: str) -> Subscription:
        subscription = Subscription(tenant_id, self._max_pending)
        self._subscribers[tenant_id].add(subscription)
        logger.info(
            "outbox.ws.subscribed",
            extra={"tenant_id": tenant_id, "subscribers": len(self._subscribers[tenant_id])},
        )
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.tenant_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.tenant_id, None)
        subscription.close()

    def subscriber_count(self, tenant_id: str | None = None) -> int:
        if tenant_id is not None:
            return len(self._subscribers.get(tenant_id, ()))
        return sum(len(items) for items in self._subscribers.values())

    async def publish(self, tenant_id: str, events: Sequence[dict[str, Any]]) -> None:
        for subscription in list(self._subscribers.get(tenant_id, ())):
            for event in events:
                if not subscription.offer(event):
                    logger.warning(
                        "outbox.ws.subscriber_overflow",
                        extra={"tenant_id": tenant_id},
                    )
                    self.unsubscribe(subscription)
                    break


__all__ = [
    "BroadcastTransport",
    "InMemoryBroadcastTransport",
    "Subscription",
    "WebSocketBroadcastHub",
    "tenant_channel",
]
