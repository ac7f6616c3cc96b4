"""SQL used by the dispatcher, the maintainer and the monitoring endpoints.

Helpers taking a ``session`` run inside the caller's transaction; the
others open and commit their own.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, union, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..db.db_models import DeadLetterEventModel, OutboxEventModel, ProcessorCursorModel
from ..exceptions import sanitize_error_message
from .outbox_models import DeadLetter, OutboxEvent

DEFAULT_DEAD_LETTER_ERROR = "Max delivery attempts exceeded"

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(session: Session, model: type) -> object:
    """Return an INSERT supporting ``ON CONFLICT`` for the session's dialect."""

    dialect = session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise RuntimeError(f"outbox storage does not support the {dialect!r} dialect")
    return insert(model)


def to_event(model: OutboxEventModel) -> OutboxEvent:
    return OutboxEvent(
        event_id=model.event_id,
        tenant_id=model.tenant_id,
        event_type=model.event_type,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        data=json.loads(model.event_data or "{}"),
        created_at=model.created_at,
        delivery_attempts=model.delivery_attempts,
    )


def to_dead_letter(model: DeadLetterEventModel) -> DeadLetter:
    return DeadLetter(
        id=model.id,
        original_event_id=model.original_event_id,
        tenant_id=model.tenant_id,
        event_type=model.event_type,
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        data=json.loads(model.event_data or "{}"),
        delivery_attempts=model.delivery_attempts,
        last_error=model.last_error,
        created_at=model.created_at,
        failed_at=model.failed_at,
    )


class OutboxRepository:
    """Cursor, delivery, dead-letter and retention queries over the outbox."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> Callable[[], Session]:
        return self._session_factory

    # -- dispatcher --------------------------------------------------------

    def active_tenants(self, *, max_attempts: int) -> list[str]:
        """Tenants with undelivered events that still have delivery attempts left."""

        with self._session_factory() as session:
            rows = session.execute(
                select(OutboxEventModel.tenant_id)
                .where(
                    OutboxEventModel.delivered_at.is_(None),
                    OutboxEventModel.delivery_attempts < max_attempts,
                )
                .distinct()
                .order_by(OutboxEventModel.tenant_id)
            ).scalars()
            return list(rows)

    @staticmethod
    def get_or_create_cursor(
        session: Session, *, processor_name: str, tenant_id: str, now: datetime
    ) -> ProcessorCursorModel:
        """Return the cursor, creating it just before the oldest undelivered event."""

        cursor = session.get(ProcessorCursorModel, (processor_name, tenant_id))
        if cursor is not None:
            return cursor

        oldest_pending = session.execute(
            select(func.min(OutboxEventModel.event_id)).where(
                OutboxEventModel.tenant_id == tenant_id,
                OutboxEventModel.delivered_at.is_(None),
            )
        ).scalar_one_or_none()
        if oldest_pending is not None:
            start = int(oldest_pending) - 1
        else:
            newest = session.execute(
                select(func.max(OutboxEventModel.event_id)).where(
                    OutboxEventModel.tenant_id == tenant_id
                )
            ).scalar_one_or_none()
            start = int(newest or 0)

        stmt = dialect_insert(session, ProcessorCursorModel).values(
            processor_name=processor_name,
            tenant_id=tenant_id,
            last_processed_event_id=start,
            last_processed_at=None,
            created_at=now,
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=["processor_name", "tenant_id"]))
        return session.get(ProcessorCursorModel, (processor_name, tenant_id), populate_existing=True)

    @staticmethod
    def fetch_pending(
        session: Session,
        *,
        tenant_id: str,
        after_event_id: int,
        limit: int,
        max_attempts: int,
    ) -> list[OutboxEvent]:
        """Undelivered events after the cursor, oldest first.

        Events that used up their attempts are left for the dead-letter pass.
        """

        rows = session.execute(
            select(OutboxEventModel)
            .where(
                OutboxEventModel.tenant_id == tenant_id,
                OutboxEventModel.event_id > after_event_id,
                OutboxEventModel.delivered_at.is_(None),
                OutboxEventModel.delivery_attempts < max_attempts,
            )
            .order_by(OutboxEventModel.event_id)
            .limit(limit)
        ).scalars()
        return [to_event(model) for model in rows]

    @staticmethod
    def confirm_delivered(
        session: Session, *, tenant_id: str, event_ids: Sequence[int], now: datetime
    ) -> int:
        if not event_ids:
            return 0
        result = session.execute(
            update(OutboxEventModel)
            .where(
                OutboxEventModel.tenant_id == tenant_id,
                OutboxEventModel.event_id.in_(list(event_ids)),
                OutboxEventModel.delivered_at.is_(None),
            )
            .values(
                delivered_at=now,
                delivery_attempts=OutboxEventModel.delivery_attempts + 1,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    @staticmethod
    def record_failure(
        session: Session, *, tenant_id: str, event_id: int, error: object
    ) -> None:
        session.execute(
            update(OutboxEventModel)
            .where(
                OutboxEventModel.tenant_id == tenant_id,
                OutboxEventModel.event_id == event_id,
                OutboxEventModel.delivered_at.is_(None),
            )
            .values(
                delivery_attempts=OutboxEventModel.delivery_attempts + 1,
                last_error=sanitize_error_message(error),
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def advance_cursor(
        session: Session,
        *,
        processor_name: str,
        tenant_id: str,
        event_id: int,
        now: datetime,
    ) -> None:
        """Move the cursor forward; an older value never overwrites a newer one."""

        session.execute(
            update(ProcessorCursorModel)
            .where(
                ProcessorCursorModel.processor_name == processor_name,
                ProcessorCursorModel.tenant_id == tenant_id,
                ProcessorCursorModel.last_processed_event_id < event_id,
            )
            .values(last_processed_event_id=event_id, last_processed_at=now)
            .execution_options(synchronize_session=False)
        )

    def get_cursor(self, *, processor_name: str, tenant_id: str) -> int | None:
        with self._session_factory() as session:
            cursor = session.get(ProcessorCursorModel, (processor_name, tenant_id))
            return cursor.last_processed_event_id if cursor is not None else None

    def delivered_in_window(self, tenant_id: str, *, since: datetime) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(OutboxEventModel)
                    .where(
                        OutboxEventModel.tenant_id == tenant_id,
                        OutboxEventModel.delivered_at >= since,
                    )
                ).scalar_one()
            )

    # -- maintenance -------------------------------------------------------

    @staticmethod
    def move_exhausted_to_dead_letters(
        session: Session,
        *,
        max_attempts: int,
        created_before: datetime,
        limit: int,
        now: datetime,
    ) -> list[int]:
        """Copy exhausted events to the dead-letter table and delete them."""

        models = list(
            session.execute(
                select(OutboxEventModel)
                .where(
                    OutboxEventModel.delivered_at.is_(None),
                    OutboxEventModel.delivery_attempts >= max_attempts,
                    OutboxEventModel.created_at < created_before,
                )
                .order_by(OutboxEventModel.event_id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).scalars()
        )
        if not models:
            return []
        rows = [
            {
                "original_event_id": model.event_id,
                "tenant_id": model.tenant_id,
                "event_type": model.event_type,
                "entity_type": model.entity_type,
                "entity_id": model.entity_id,
                "event_data": model.event_data,
                "delivery_attempts": model.delivery_attempts,
                "last_error": model.last_error or DEFAULT_DEAD_LETTER_ERROR,
                "created_at": model.created_at,
                "failed_at": now,
            }
            for model in models
        ]
        stmt = dialect_insert(session, DeadLetterEventModel).values(rows)
        session.execute(stmt.on_conflict_do_nothing(index_elements=["original_event_id"]))
        event_ids = [model.event_id for model in models]
        session.execute(
            delete(OutboxEventModel)
            .where(OutboxEventModel.event_id.in_(event_ids))
            .execution_options(synchronize_session=False)
        )
        return event_ids

    @staticmethod
    def prune_delivered(session: Session, *, delivered_before: datetime, limit: int) -> int:
        """Delete one batch of delivered events older than the retention window."""

        event_ids = list(
            session.execute(
                select(OutboxEventModel.event_id)
                .where(
                    OutboxEventModel.delivered_at.is_not(None),
                    OutboxEventModel.delivered_at < delivered_before,
                )
                .order_by(OutboxEventModel.event_id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).scalars()
        )
        if not event_ids:
            return 0
        result = session.execute(
            delete(OutboxEventModel)
            .where(OutboxEventModel.event_id.in_(event_ids))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    def count_prunable(self, *, delivered_before: datetime) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(OutboxEventModel)
                    .where(OutboxEventModel.delivered_at < delivered_before)
                ).scalar_one()
            )

    def count_dead_letter_candidates(self, *, max_attempts: int, created_before: datetime) -> int:
        with self._session_factory() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(OutboxEventModel)
                    .where(
                        OutboxEventModel.delivered_at.is_(None),
                        OutboxEventModel.delivery_attempts >= max_attempts,
                        OutboxEventModel.created_at < created_before,
                    )
                ).scalar_one()
            )

    # -- dead letters ------------------------------------------------------

    def list_dead_letters(self, tenant_id: str, *, limit: int = 50, offset: int = 0) -> list[DeadLetter]:
        with self._session_factory() as session:
            models = session.execute(
                select(DeadLetterEventModel)
                .where(DeadLetterEventModel.tenant_id == tenant_id)
                .order_by(DeadLetterEventModel.failed_at.desc(), DeadLetterEventModel.id.desc())
                .offset(offset)
                .limit(limit)
            ).scalars()
            return [to_dead_letter(model) for model in models]

    @staticmethod
    def lock_dead_letter(session: Session, dlq_id: int) -> DeadLetterEventModel | None:
        return session.execute(
            select(DeadLetterEventModel)
            .where(DeadLetterEventModel.id == dlq_id)
            .with_for_update()
        ).scalar_one_or_none()

    # -- monitoring --------------------------------------------------------

    def known_tenants(self) -> list[str]:
        with self._session_factory() as session:
            stmt = union(
                select(OutboxEventModel.tenant_id),
                select(ProcessorCursorModel.tenant_id),
                select(DeadLetterEventModel.tenant_id),
            )
            return sorted(row[0] for row in session.execute(stmt))

    def tenant_counters(self, *, tenant_id: str, processor_name: str, since: datetime) -> dict[str, object]:
        """Raw numbers behind a tenant's health report."""

        pending = OutboxEventModel.delivered_at.is_(None)
        tenant = OutboxEventModel.tenant_id == tenant_id
        with self._session_factory() as session:
            cursor = session.get(ProcessorCursorModel, (processor_name, tenant_id))
            cursor_id = cursor.last_processed_event_id if cursor is not None else 0
            undelivered, retrying, oldest = session.execute(
                select(
                    func.count(),
                    func.count().filter(OutboxEventModel.delivery_attempts > 0),
                    func.min(OutboxEventModel.created_at),
                ).where(tenant, pending)
            ).one()
            behind = session.execute(
                select(func.count()).where(tenant, pending, OutboxEventModel.event_id > cursor_id)
            ).scalar_one()
            delivered = session.execute(
                select(func.count()).where(tenant, OutboxEventModel.delivered_at >= since)
            ).scalar_one()
            dead_letters = session.execute(
                select(func.count()).where(DeadLetterEventModel.tenant_id == tenant_id)
            ).scalar_one()
            dead_lettered = session.execute(
                select(func.count()).where(
                    DeadLetterEventModel.tenant_id == tenant_id,
                    DeadLetterEventModel.failed_at >= since,
                )
            ).scalar_one()
        return {
            "cursor_event_id": int(cursor_id),
            "undelivered": int(undelivered),
            "retrying": int(retrying),
            "oldest_undelivered_at": oldest,
            "behind_cursor": int(behind),
            "delivered_since": int(delivered),
            "dead_letters": int(dead_letters),
            "dead_lettered_since": int(dead_lettered),
        }

    def global_counters(self) -> dict[str, int]:
        with self._session_factory() as session:
            undelivered = session.execute(
                select(func.count()).where(OutboxEventModel.delivered_at.is_(None))
            ).scalar_one()
            delivered = session.execute(
                select(func.count()).where(OutboxEventModel.delivered_at.is_not(None))
            ).scalar_one()
            dead_letters = session.execute(
                select(func.count()).select_from(DeadLetterEventModel)
            ).scalar_one()
        return {
            "undelivered": int(undelivered),
            "delivered_retained": int(delivered),
            "dead_letters": int(dead_letters),
        }


__all__ = [
    "DEFAULT_DEAD_LETTER_ERROR",
    "OutboxRepository",
    "dialect_insert",
    "to_dead_letter",
    "to_event",
]
