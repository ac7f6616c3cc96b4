"""Dead-lettering and retention pruning for the outbox."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from ..exceptions import NotFoundError
from ..utils.clock import Clock, utcnow
from .outbox_models import DeadLetter
from .outbox_repository import OutboxRepository
from .outbox_writer import OutboxWriter

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenancePolicy:
    max_delivery_attempts: int = 3
    dead_letter_grace_seconds: int = 300
    retention_hours: int = 72
    prune_batch_size: int = 5000
    max_batches_per_run: int = 20


@dataclass(slots=True)
class MaintenanceSummary:
    dead_lettered: int
    pruned: int
    dry_run: bool = False


class OutboxMaintainer:
    """Move exhausted events to the dead-letter table and prune delivered ones.

    Both passes lock their batch with ``FOR UPDATE SKIP LOCKED`` (a no-op on
    SQLite), so overlapping runs split the work instead of waiting on each
    other or touching the same rows twice.
    """

    def __init__(
        self,
        repository: OutboxRepository,
        *,
        policy: MaintenancePolicy | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._policy = policy or MaintenancePolicy()
        self._clock = clock

    def migrate_dead_letters(self) -> int:
        policy = self._policy
        now = self._clock()
        created_before = now - timedelta(seconds=policy.dead_letter_grace_seconds)
        moved = 0
        for _ in range(policy.max_batches_per_run):
            with self._repository.session_factory() as session, session.begin():
                event_ids = self._repository.move_exhausted_to_dead_letters(
                    session,
                    max_attempts=policy.max_delivery_attempts,
                    created_before=created_before,
                    limit=policy.prune_batch_size,
                    now=now,
                )
            moved += len(event_ids)
            if event_ids:
                logger.warning(
                    "outbox.dead_letter.moved",
                    extra={"count": len(event_ids), "event_ids": event_ids[:20]},
                )
            if len(event_ids) < policy.prune_batch_size:
                break
        return moved

    def prune_delivered(self) -> int:
        policy = self._policy
        delivered_before = self._clock() - timedelta(hours=policy.retention_hours)
        pruned = 0
        for _ in range(policy.max_batches_per_run):
            with self._repository.session_factory() as session, session.begin():
                deleted = self._repository.prune_delivered(
                    session, delivered_before=delivered_before, limit=policy.prune_batch_size
                )
            pruned += deleted
            if deleted < policy.prune_batch_size:
                break
        if pruned:
            logger.info("outbox.prune.deleted", extra={"count": pruned})
        return pruned

    def run_once(self, *, dry_run: bool = False) -> MaintenanceSummary:
        if dry_run:
            now = self._clock()
            policy = self._policy
            return MaintenanceSummary(
                dead_lettered=self._repository.count_dead_letter_candidates(
                    max_attempts=policy.max_delivery_attempts,
                    created_before=now - timedelta(seconds=policy.dead_letter_grace_seconds),
                ),
                pruned=self._repository.count_prunable(
                    delivered_before=now - timedelta(hours=policy.retention_hours)
                ),
                dry_run=True,
            )
        return MaintenanceSummary(
            dead_lettered=self.migrate_dead_letters(),
            pruned=self.prune_delivered(),
        )


class DeadLetterQueue:
    """Operator tooling over dead-lettered events; nothing here runs automatically."""

    def __init__(self, repository: OutboxRepository, writer: OutboxWriter) -> None:
        self._repository = repository
        self._writer = writer

    def list_for_tenant(self, tenant_id: str, *, limit: int = 50, offset: int = 0) -> list[DeadLetter]:
        return self._repository.list_dead_letters(tenant_id, limit=limit, offset=offset)

    def replay(self, dlq_id: int, *, tenant_id: str) -> int:
        """Re-append the event as a fresh outbox row and drop the dead letter.

        Returns the new event id.
        """

        with self._repository.session_factory() as session, session.begin():
            model = self._repository.lock_dead_letter(session, dlq_id)
            if model is None or model.tenant_id != tenant_id:
                raise NotFoundError(f"dead letter '{dlq_id}' not found")
            event = self._writer.append_raw(
                session,
                tenant_id=model.tenant_id,
                event_type=model.event_type,
                entity_type=model.entity_type,
                entity_id=model.entity_id,
                event_data=model.event_data,
            )
            original_event_id = model.original_event_id
            session.delete(model)
            session.flush()
            new_event_id = event.event_id
        logger.info(
            "outbox.dead_letter.replayed",
            extra={
                "tenant_id": tenant_id,
                "original_event_id": original_event_id,
                "event_id": new_event_id,
            },
        )
        return new_event_id


__all__ = ["DeadLetterQueue", "MaintenancePolicy", "MaintenanceSummary", "OutboxMaintainer"]
