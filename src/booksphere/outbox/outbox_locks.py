"""Short-lived named locks stored as lease rows.

A lock is cooperative: it keeps two dispatcher instances from polling the
same (consumer, tenant) cursor at once, nothing more. Acquisition never
waits; a caller that does not get the lock skips its turn. A lease that is
not released (crashed holder) expires after ``ttl_seconds``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.db_models import DispatcherLockModel
from ..utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


def dispatcher_lock_name(consumer: str, tenant_id: str) -> str:
    return f"outbox:{consumer}:{tenant_id}"


class NamedLockManager:
    """Non-blocking lease locks keyed by name, owned by one process."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        ttl_seconds: float = 30,
        owner: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = timedelta(seconds=ttl_seconds)
        self._owner = owner or uuid.uuid4().hex
        self._clock = clock

    @property
    def owner(self) -> str:
        return self._owner

    def try_acquire(self, name: str) -> bool:
        """Take or renew the lease; ``False`` if someone else holds it."""

        now = self._clock()
        expires_at = now + self._ttl
        with self._session_factory() as session:
            try:
                with session.begin():
                    session.add(
                        DispatcherLockModel(
                            name=name,
                            owner=self._owner,
                            acquired_at=now,
                            expires_at=expires_at,
                        )
                    )
                return True
            except IntegrityError:
                pass

            # the row exists: take it over only if it expired or is ours
            with session.begin():
                result = session.execute(
                    update(DispatcherLockModel)
                    .where(
                        DispatcherLockModel.name == name,
                        or_(
                            DispatcherLockModel.expires_at <= now,
                            DispatcherLockModel.owner == self._owner,
                        ),
                    )
                    .values(owner=self._owner, acquired_at=now, expires_at=expires_at)
                    .execution_options(synchronize_session=False)
                )
                acquired = result.rowcount == 1
        if not acquired:
            logger.debug("outbox.lock.busy", extra={"lock": name})
        return acquired

    def release(self, name: str) -> None:
        with self._session_factory() as session, session.begin():
            session.execute(
                delete(DispatcherLockModel)
                .where(DispatcherLockModel.name == name, DispatcherLockModel.owner == self._owner)
                .execution_options(synchronize_session=False)
            )

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        """Yield whether the lock was taken; release it afterwards if so."""

        acquired = self.try_acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)


__all__ = ["NamedLockManager", "dispatcher_lock_name"]
