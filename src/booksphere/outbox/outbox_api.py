"""Operator routes for the outbox and the tenant notification socket."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from ..api.identity import require_tenant_id, tenant_id_from_headers
from .outbox_maintenance import DeadLetterQueue
from .outbox_models import DeadLetter, TenantOutboxHealth
from .outbox_monitor import OutboxMonitor
from .outbox_transport import Subscription, WebSocketBroadcastHub

router = APIRouter(prefix="/api/outbox", tags=["outbox"])
ws_router = APIRouter()
logger = logging.getLogger(__name__)


class TenantHealthSchema(BaseModel):
    tenant_id: str
    processor_name: str
    cursor_event_id: int
    undelivered_count: int
    events_behind_cursor: int
    retrying_count: int
    oldest_undelivered_age_seconds: float | None = None
    dead_letter_count: int
    delivered_last_24h: int
    dead_lettered_last_24h: int
    success_rate: float | None = None

    @classmethod
    def from_domain(cls, health: TenantOutboxHealth) -> "TenantHealthSchema":
        return cls(
            tenant_id=health.tenant_id,
            processor_name=health.processor_name,
            cursor_event_id=health.cursor_event_id,
            undelivered_count=health.undelivered_count,
            events_behind_cursor=health.events_behind_cursor,
            retrying_count=health.retrying_count,
            oldest_undelivered_age_seconds=health.oldest_undelivered_age_seconds,
            dead_letter_count=health.dead_letter_count,
            delivered_last_24h=health.delivered_last_24h,
            dead_lettered_last_24h=health.dead_lettered_last_24h,
            success_rate=health.success_rate,
        )


class OutboxHealthResponse(BaseModel):
    totals: dict[str, int]
    tenants: list[TenantHealthSchema]


class DeadLetterSchema(BaseModel):
    id: int
    original_event_id: int
    tenant_id: str
    event_type: str
    entity_type: str
    entity_id: str
    data: dict[str, Any]
    delivery_attempts: int
    last_error: str
    created_at: datetime
    failed_at: datetime

    @classmethod
    def from_domain(cls, item: DeadLetter) -> "DeadLetterSchema":
        return cls(
            id=item.id,
            original_event_id=item.original_event_id,
            tenant_id=item.tenant_id,
            event_type=item.event_type,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            data=dict(item.data),
            delivery_attempts=item.delivery_attempts,
            last_error=item.last_error,
            created_at=item.created_at,
            failed_at=item.failed_at,
        )


class ReplayResponse(BaseModel):
    dlq_id: int
    event_id: int


def get_outbox_monitor(request: Request) -> OutboxMonitor:
    try:
        return request.app.state.outbox_monitor  # type: ignore[attr-defined]
    except AttributeError as exc:  # pragma: no cover - defensive path
        raise RuntimeError("OutboxMonitor is not configured") from exc


def get_dead_letter_queue(request: Request) -> DeadLetterQueue:
    try:
        return request.app.state.dead_letter_queue  # type: ignore[attr-defined]
    except AttributeError as exc:  # pragma: no cover - defensive path
        raise RuntimeError("DeadLetterQueue is not configured") from exc


@router.get("/health", response_model=OutboxHealthResponse)
def outbox_health(
    tenant_id: str | None = Query(default=None),
    monitor: OutboxMonitor = Depends(get_outbox_monitor),
) -> OutboxHealthResponse:
    tenants = [monitor.tenant_health(tenant_id)] if tenant_id else monitor.all_tenants()
    return OutboxHealthResponse(
        totals=monitor.totals(),
        tenants=[TenantHealthSchema.from_domain(item) for item in tenants],
    )


@router.get("/dead-letters", response_model=list[DeadLetterSchema])
def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(require_tenant_id),
    queue: DeadLetterQueue = Depends(get_dead_letter_queue),
) -> list[DeadLetterSchema]:
    items = queue.list_for_tenant(tenant_id, limit=limit, offset=offset)
    return [DeadLetterSchema.from_domain(item) for item in items]


@router.post("/dead-letters/{dlq_id}/replay", response_model=ReplayResponse)
def replay_dead_letter(
    dlq_id: int,
    tenant_id: str = Depends(require_tenant_id),
    queue: DeadLetterQueue = Depends(get_dead_letter_queue),
) -> ReplayResponse:
    event_id = queue.replay(dlq_id, tenant_id=tenant_id)
    return ReplayResponse(dlq_id=dlq_id, event_id=event_id)


@ws_router.websocket("/ws/notifications/{tenant_id}")
async def tenant_notifications(websocket: WebSocket, tenant_id: str) -> None:
    """Stream the caller's own tenant events until either side disconnects."""

    caller_tenant = tenant_id_from_headers(websocket.headers)
    if caller_tenant != tenant_id:
        logger.warning(
            "outbox.ws.rejected",
            extra={"tenant_id": tenant_id, "caller_tenant_id": caller_tenant},
        )
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: WebSocketBroadcastHub = websocket.app.state.broadcast_hub
    await websocket.accept()
    subscription = hub.subscribe(tenant_id)
    pump = asyncio.create_task(_pump(websocket, subscription))
    drain = asyncio.create_task(_drain(websocket))
    try:
        await asyncio.wait({pump, drain}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        hub.unsubscribe(subscription)
        logger.info("outbox.ws.disconnected", extra={"tenant_id": tenant_id})
        for task in (pump, drain):
            task.cancel()
        await asyncio.gather(pump, drain, return_exceptions=True)


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    while True:
        message = await subscription.get()
        if message is None:
            await websocket.close(code=1013)
            return
        await websocket.send_json(message)


async def _drain(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


__all__ = ["router", "ws_router"]
