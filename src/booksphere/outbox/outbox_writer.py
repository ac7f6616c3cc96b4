"""The only component allowed to insert outbox rows."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from ..db.db_models import OutboxEventModel, OutboxTenantHeadModel
from ..utils.clock import Clock, utcnow
from .outbox_models import EntityType, EventType, serialize_event_data
from .outbox_repository import dialect_insert

logger = logging.getLogger(__name__)

_WAKE_KEY = "outbox_wake_tenants"


class OutboxWriter:
    """Append outbox events inside the caller's transaction.

    ``append`` never commits: the event becomes visible exactly when the job
    mutation sharing ``session`` commits, and disappears with it on rollback.
    ``on_commit`` (if given) is called with the tenant id after a commit that
    appended events, so a waiting dispatcher can poll right away.
    """

    def __init__(
        self,
        *,
        clock: Clock = utcnow,
        on_commit: Callable[[str], None] | None = None,
    ) -> None:
        self._clock = clock
        self._on_commit = on_commit

    def set_commit_hook(self, on_commit: Callable[[str], None] | None) -> None:
        self._on_commit = on_commit

    def append(
        self,
        session: Session,
        *,
        tenant_id: str,
        event_type: EventType | str,
        entity_id: str,
        data: dict[str, Any],
        entity_type: EntityType | str = EntityType.CATALOGING_JOB,
    ) -> OutboxEventModel:
        encoded = serialize_event_data(event_type, data)
        now = self._clock()

        self._lock_tenant_head(session, tenant_id, now)
        model = OutboxEventModel(
            tenant_id=tenant_id,
            event_type=EventType(event_type).value,
            entity_type=EntityType(entity_type).value,
            entity_id=entity_id,
            event_data=encoded,
            created_at=now,
            delivery_attempts=0,
        )
        session.add(model)
        session.flush()
        logger.debug(
            "outbox.event.appended",
            extra={
                "tenant_id": tenant_id,
                "event_id": model.event_id,
                "event_type": model.event_type,
                "entity_id": entity_id,
            },
        )
        self._schedule_wake(session, tenant_id)
        return model

    def append_raw(
        self,
        session: Session,
        *,
        tenant_id: str,
        event_type: str,
        entity_type: str,
        entity_id: str,
        event_data: str,
    ) -> OutboxEventModel:
        """Re-append a previously stored event (dead-letter replay)."""

        return self.append(
            session,
            tenant_id=tenant_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=json.loads(event_data or "{}"),
        )

    def _lock_tenant_head(self, session: Session, tenant_id: str, now) -> None:
        # Upserting the head row holds its lock until commit, so appends of one
        # tenant commit in the order their event ids were assigned.
        stmt = dialect_insert(session, OutboxTenantHeadModel).values(
            tenant_id=tenant_id, events_written=1, last_event_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id"],
            set_={
                "events_written": OutboxTenantHeadModel.events_written + 1,
                "last_event_at": stmt.excluded.last_event_at,
            },
        )
        session.execute(stmt)

    def _schedule_wake(self, session: Session, tenant_id: str) -> None:
        if self._on_commit is None:
            return
        pending: set[str] = session.info.setdefault(_WAKE_KEY, set())
        if not pending:
            event.listen(session, "after_commit", self._fire_wakes, once=True)
        pending.add(tenant_id)

    def _fire_wakes(self, session: Session) -> None:
        tenants = session.info.pop(_WAKE_KEY, set())
        if self._on_commit is None:
            return
        for tenant_id in sorted(tenants):
            self._on_commit(tenant_id)


__all__ = ["OutboxWriter"]
