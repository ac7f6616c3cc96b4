import pytest
from sqlalchemy import update

from src.booksphere.db.db_models import OutboxEventModel
from src.booksphere.exceptions import NotFoundError
from src.booksphere.outbox.outbox_maintenance import (
    DeadLetterQueue,
    MaintenancePolicy,
    OutboxMaintainer,
)
from src.booksphere.outbox.outbox_repository import DEFAULT_DEAD_LETTER_ERROR
from tests.mocks.outbox_seed import append_events, load_event


def _set_attempts(session_factory, event_id: int, attempts: int, error: str | None = "channel down") -> None:
    with session_factory() as session, session.begin():
        session.execute(
            update(OutboxEventModel)
            .where(OutboxEventModel.event_id == event_id)
            .values(delivery_attempts=attempts, last_error=error)
        )


@pytest.fixture
def maintainer(outbox_repo, clock) -> OutboxMaintainer:
    return OutboxMaintainer(
        outbox_repo,
        policy=MaintenancePolicy(
            max_delivery_attempts=3,
            dead_letter_grace_seconds=300,
            retention_hours=72,
            prune_batch_size=2,
        ),
        clock=clock,
    )


def test_only_events_at_the_ceiling_are_dead_lettered(session_factory, writer, outbox_repo, maintainer, clock):
    at_ceiling, below_ceiling = append_events(session_factory, writer, "shop-1", 2)
    _set_attempts(session_factory, at_ceiling, 3)
    _set_attempts(session_factory, below_ceiling, 2)
    clock.advance(minutes=6)

    moved = maintainer.migrate_dead_letters()

    assert moved == 1
    assert load_event(session_factory, at_ceiling) is None
    assert load_event(session_factory, below_ceiling) is not None
    [dead] = outbox_repo.list_dead_letters("shop-1")
    assert dead.original_event_id == at_ceiling
    assert dead.delivery_attempts == 3
    assert dead.last_error == "channel down"
    assert dead.data == {"job_id": "shop-1-job-0", "status": "pending"}
    assert dead.failed_at == clock()


def test_grace_period_protects_young_events(session_factory, writer, maintainer, clock):
    [event_id] = append_events(session_factory, writer, "shop-1", 1)
    _set_attempts(session_factory, event_id, 3)
    clock.advance(minutes=4)

    assert maintainer.migrate_dead_letters() == 0

    clock.advance(minutes=2)
    assert maintainer.migrate_dead_letters() == 1


def test_missing_error_gets_default_reason(session_factory, writer, outbox_repo, maintainer, clock):
    [event_id] = append_events(session_factory, writer, "shop-1", 1)
    _set_attempts(session_factory, event_id, 5, error=None)
    clock.advance(minutes=10)

    maintainer.migrate_dead_letters()

    assert outbox_repo.list_dead_letters("shop-1")[0].last_error == DEFAULT_DEAD_LETTER_ERROR


@pytest.mark.asyncio
async def test_prune_removes_only_old_delivered_events(
    session_factory, writer, maintainer, clock, transport, make_dispatcher
):
    old = append_events(session_factory, writer, "shop-1", 5)
    await make_dispatcher(transport).dispatch_tenant("shop-1")
    clock.advance(hours=73)
    recent = append_events(session_factory, writer, "shop-1", 1)
    await make_dispatcher(transport).dispatch_tenant("shop-1")
    pending = append_events(session_factory, writer, "shop-1", 1)

    pruned = maintainer.prune_delivered()

    assert pruned == 5
    assert all(load_event(session_factory, event_id) is None for event_id in old)
    assert load_event(session_factory, recent[0]) is not None
    assert load_event(session_factory, pending[0]) is not None


@pytest.mark.asyncio
async def test_dry_run_counts_without_touching_rows(
    session_factory, writer, maintainer, clock, transport, make_dispatcher
):
    delivered = append_events(session_factory, writer, "shop-1", 2)
    await make_dispatcher(transport).dispatch_tenant("shop-1")
    [exhausted] = append_events(session_factory, writer, "shop-2", 1)
    _set_attempts(session_factory, exhausted, 3)
    clock.advance(hours=80)

    summary = maintainer.run_once(dry_run=True)

    assert summary.dry_run
    assert (summary.dead_lettered, summary.pruned) == (1, 2)
    assert load_event(session_factory, exhausted) is not None
    assert load_event(session_factory, delivered[0]) is not None

    applied = maintainer.run_once()

    assert (applied.dead_lettered, applied.pruned, applied.dry_run) == (1, 2, False)


@pytest.mark.asyncio
async def test_replay_reappends_event_and_dispatcher_delivers_it(
    session_factory, writer, outbox_repo, maintainer, clock, transport, make_dispatcher
):
    [event_id] = append_events(session_factory, writer, "shop-1", 1)
    _set_attempts(session_factory, event_id, 3)
    clock.advance(minutes=6)
    maintainer.migrate_dead_letters()
    [dead] = outbox_repo.list_dead_letters("shop-1")
    queue = DeadLetterQueue(outbox_repo, writer)

    with pytest.raises(NotFoundError):
        queue.replay(dead.id, tenant_id="shop-2")

    new_event_id = queue.replay(dead.id, tenant_id="shop-1")

    assert new_event_id > event_id
    assert outbox_repo.list_dead_letters("shop-1") == []
    await make_dispatcher(transport).dispatch_tenant("shop-1")
    [message] = transport.delivered("shop-1")
    assert message["event_id"] == new_event_id
    assert message["data"] == dead.data

    with pytest.raises(NotFoundError):
        queue.replay(dead.id, tenant_id="shop-1")


def test_dead_letters_are_listed_per_tenant_newest_first(session_factory, writer, outbox_repo, maintainer, clock):
    first = append_events(session_factory, writer, "shop-1", 1)[0]
    other = append_events(session_factory, writer, "shop-2", 1)[0]
    _set_attempts(session_factory, first, 3)
    _set_attempts(session_factory, other, 3)
    clock.advance(minutes=6)
    maintainer.migrate_dead_letters()
    second = append_events(session_factory, writer, "shop-1", 1)[0]
    _set_attempts(session_factory, second, 3)
    clock.advance(minutes=6)
    maintainer.migrate_dead_letters()

    queue = DeadLetterQueue(outbox_repo, writer)

    assert [item.original_event_id for item in queue.list_for_tenant("shop-1")] == [second, first]
    assert [item.original_event_id for item in queue.list_for_tenant("shop-1", limit=1, offset=1)] == [first]
    assert [item.original_event_id for item in queue.list_for_tenant("shop-2")] == [other]
