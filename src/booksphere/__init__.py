"""Booksphere cataloging pipeline.

The package hosts the asynchronous part of the cataloging workflow: the job
state machine that moves captured books through AI extraction, and the
transactional outbox that fans job state changes out to live subscribers.
HTTP routers stay thin facades over the services in :mod:`.cataloging` and
:mod:`.outbox`.
"""

__all__: list[str] = []
