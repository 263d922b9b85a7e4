"""Property-based tests for the device outbox.

**Feature: fieldsync, Property 13: Per-entity FIFO**
**Feature: fieldsync, Property 14: Monotonic client timestamps**
"""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from fieldsync.client.outbox import Outbox, create_idempotency_key
from fieldsync.models.entity import ChangeLogEntry, ChangeStatus, EntityType, Operation
from fieldsync.storage.client_tables import ClientBase
from fieldsync.storage.database import Database

START = datetime(2024, 9, 1, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _outbox(clock: FakeClock | None = None, **kwargs) -> Outbox:
    database = Database("sqlite://", ClientBase.metadata)
    database.create_all()
    return Outbox(database, clock=clock or FakeClock(), **kwargs)


def _entry(client_id: str, operation: Operation = Operation.UPDATE, base_version: int | None = 1, **payload):
    if operation is Operation.CREATE:
        base_version = None
    return ChangeLogEntry(
        entity_type=EntityType.SUPPLIER,
        client_id=client_id,
        operation=operation,
        base_version=base_version,
        payload=payload,
    )


@given(
    targets=st.lists(st.integers(min_value=0, max_value=3), min_size=1, max_size=20),
    batch_size=st.integers(min_value=1, max_value=25),
)
@settings(max_examples=30, deadline=None)
def test_property_13_entries_of_one_entity_leave_in_order(targets: list[int], batch_size: int):
    """Property 13: Per-entity FIFO.

    Draining the outbox batch by batch yields every entity's entries in the
    order they were enqueued.

    **Feature: fieldsync, Property 13: Per-entity FIFO**
    """
    outbox = _outbox()
    enqueued: dict[str, list[int]] = {}
    for n, target in enumerate(targets):
        entry = outbox.enqueue(_entry(f"cid-{target}", base_version=n + 1))
        enqueued.setdefault(entry.client_id, []).append(entry.id)

    delivered: dict[str, list[int]] = {}
    for _ in range(len(targets)):
        batch = outbox.dequeue_batch(batch_size)
        if not batch:
            break
        assert len(batch) <= batch_size
        for entry in batch:
            delivered.setdefault(entry.client_id, []).append(entry.id)
            outbox.mark_synced(entry)

    assert delivered == enqueued


@given(offsets=st.lists(st.integers(min_value=-3600, max_value=3600), min_size=2, max_size=15))
@settings(max_examples=30, deadline=None)
def test_property_14_client_timestamps_never_go_backwards(offsets: list[int]):
    """Property 14: Monotonic client timestamps.

    Even when the device clock jumps around, each enqueued entry is stamped
    no earlier than the one before it.

    **Feature: fieldsync, Property 14: Monotonic client timestamps**
    """
    clock = FakeClock()
    outbox = _outbox(clock)

    stamps = []
    for offset in offsets:
        clock.now = START + timedelta(seconds=offset)
        stamps.append(outbox.enqueue(_entry("cid-1")).client_timestamp)

    assert stamps == sorted(stamps)
    assert [e.client_timestamp for e in outbox.list_entries()] == stamps


def test_enqueue_assigns_create_key_and_pending_status():
    outbox = _outbox()

    entry = outbox.enqueue(_entry("cid-1", Operation.CREATE, name="Hill"))

    assert entry.id is not None
    assert entry.status is ChangeStatus.PENDING
    assert entry.attempts == 0
    assert entry.idempotency_key == create_idempotency_key("cid-1") == "create:cid-1"


def test_in_flight_entry_holds_back_later_entries_of_its_entity():
    outbox = _outbox()
    outbox.enqueue(_entry("a", base_version=1))
    outbox.enqueue(_entry("a", base_version=2))
    outbox.enqueue(_entry("b", base_version=1))

    [first] = outbox.dequeue_batch(1)
    second = outbox.dequeue_batch(10)

    assert first.client_id == "a" and first.base_version == 1
    assert [(e.client_id, e.base_version) for e in second] == [("b", 1)]


def test_failed_entry_in_backoff_blocks_only_its_entity():
    clock = FakeClock()
    outbox = _outbox(clock, retry_base_delay=2.0)
    outbox.enqueue(_entry("a", base_version=1))
    outbox.enqueue(_entry("a", base_version=2))
    outbox.enqueue(_entry("b", base_version=1))

    batch = outbox.dequeue_batch(10)
    failed = outbox.mark_failed(batch[0], "timeout")
    outbox.release(batch[1:])

    assert failed.status is ChangeStatus.FAILED
    assert failed.attempts == 1
    assert [(e.client_id, e.base_version) for e in outbox.dequeue_batch(10)] == [("b", 1)]

    clock.advance(1)
    assert outbox.dequeue_batch(10) == []

    clock.advance(1)
    retried = outbox.dequeue_batch(10)
    assert [(e.client_id, e.base_version) for e in retried] == [("a", 1), ("a", 2)]


def test_backoff_doubles_with_each_failure():
    clock = FakeClock()
    outbox = _outbox(clock, retry_base_delay=2.0, retry_max_delay=5.0)
    outbox.enqueue(_entry("a"))

    waits = []
    for _ in range(3):
        [entry] = outbox.dequeue_batch(1)
        outbox.mark_failed(entry, "server unavailable")
        waited = 0
        while not outbox.dequeue_batch(1):
            clock.advance(1)
            waited += 1
        outbox.release(outbox.list_entries(ChangeStatus.IN_FLIGHT))
        waits.append(waited)

    assert waits == [2, 4, 5]


def test_non_retryable_failure_waits_for_manual_retry():
    clock = FakeClock()
    outbox = _outbox(clock)
    outbox.enqueue(_entry("a"))

    [entry] = outbox.dequeue_batch(1)
    outbox.mark_failed(entry, "validation_failed", retryable=False)
    clock.advance(10_000)

    assert outbox.dequeue_batch(10) == []
    assert outbox.retry_failed() == 1

    [again] = outbox.dequeue_batch(10)
    assert again.attempts == 0
    assert again.last_error == "validation_failed"


def test_entry_is_parked_after_max_attempts():
    clock = FakeClock()
    outbox = _outbox(clock, max_attempts=2, retry_base_delay=1.0)
    outbox.enqueue(_entry("a"))

    [entry] = outbox.dequeue_batch(1)
    outbox.mark_failed(entry, "boom")
    clock.advance(5)
    [entry] = outbox.dequeue_batch(1)
    exhausted = outbox.mark_failed(entry, "boom")
    clock.advance(10_000)

    assert exhausted.attempts == 2
    assert outbox.dequeue_batch(1) == []
    assert outbox.counts()[ChangeStatus.FAILED] == 1


def test_requeue_in_flight_recovers_an_interrupted_push():
    outbox = _outbox()
    outbox.enqueue(_entry("a"))
    outbox.enqueue(_entry("b"))
    outbox.dequeue_batch(10)

    assert outbox.counts()[ChangeStatus.IN_FLIGHT] == 2
    assert outbox.requeue_in_flight() == 2
    assert outbox.counts() == {
        ChangeStatus.PENDING: 2,
        ChangeStatus.IN_FLIGHT: 0,
        ChangeStatus.FAILED: 0,
    }


def test_mark_synced_and_mark_conflicted_remove_the_entry():
    outbox = _outbox()
    synced = outbox.enqueue(_entry("a"))
    conflicted = outbox.enqueue(_entry("b"))

    outbox.mark_synced(synced)
    moved = outbox.mark_conflicted(conflicted)

    assert moved.status is ChangeStatus.CONFLICTED
    assert outbox.list_entries() == []


def test_take_for_entity_removes_only_that_entity():
    outbox = _outbox()
    outbox.enqueue(_entry("a", base_version=1))
    outbox.enqueue(_entry("b", base_version=1))
    outbox.enqueue(_entry("a", base_version=2))

    taken = outbox.take_for_entity(EntityType.SUPPLIER, "a")

    assert [e.base_version for e in taken] == [1, 2]
    assert not outbox.has_pending_for(EntityType.SUPPLIER, "a")
    assert outbox.has_pending_for(EntityType.SUPPLIER, "b")


def test_enqueue_inside_a_failed_transaction_is_rolled_back():
    database = Database("sqlite://", ClientBase.metadata)
    database.create_all()
    outbox = Outbox(database, clock=FakeClock())

    with pytest.raises(RuntimeError):
        with database.transaction() as session:
            outbox.enqueue(_entry("a"), session=session)
            raise RuntimeError("local write failed")

    assert outbox.list_entries() == []
