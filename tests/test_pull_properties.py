"""Property-based tests for the pull change feed and its cursor.

**Feature: fieldsync, Property 11: Cursor stability**
**Feature: fieldsync, Property 12: Complete pagination**
"""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from fieldsync.errors import InvalidCursorError
from fieldsync.models.config import SyncConfig
from fieldsync.models.entity import EntityType, Operation
from fieldsync.models.protocol import PullRequest
from fieldsync.server.pull import CursorPosition, PullCursor
from fieldsync.server.service import SyncServer
from fieldsync.storage.database import Database
from fieldsync.storage.tables import ServerBase

FIXED = datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)


def _server(page_size: int = 500, clock=lambda: FIXED) -> SyncServer:
    database = Database("sqlite://", ServerBase.metadata)
    database.create_all()
    return SyncServer(database, SyncConfig(pull_page_size=page_size), clock=clock)


def _create_supplier(server: SyncServer, client_id: str, name: str = "Supplier"):
    return server.resolver.apply(
        EntityType.SUPPLIER,
        Operation.CREATE,
        client_id=client_id,
        payload={"name": name},
        idempotency_key=f"create:{client_id}",
    ).entity


def _pull(server: SyncServer, cursor: str | None = None, **kwargs):
    return server.pull(PullRequest(device_id="device-a", cursor=cursor, **kwargs))


@given(
    positions=st.dictionaries(
        st.sampled_from(list(EntityType)),
        st.tuples(
            st.datetimes(
                min_value=datetime(2000, 1, 1),
                max_value=datetime(2100, 1, 1),
                timezones=st.just(timezone.utc),
            ),
            st.one_of(st.none(), st.integers(min_value=1, max_value=2**31)),
        ),
    )
)
@settings(max_examples=100, deadline=None)
def test_property_11_cursor_survives_the_wire(positions):
    """Property 11: Cursor stability.

    An encoded cursor decodes to the same keyset position for every entity
    type, and the token is URL-safe.

    **Feature: fieldsync, Property 11: Cursor stability**
    """
    cursor = PullCursor(
        positions={t: CursorPosition(updated_at=at, id=last_id) for t, (at, last_id) in positions.items()}
    )

    token = cursor.encode()
    decoded = PullCursor.decode(token)

    assert "=" not in token
    assert "+" not in token and "/" not in token
    for entity_type in EntityType:
        assert decoded.position(entity_type) == cursor.position(entity_type)


def test_iso_timestamp_cursor_applies_to_every_type():
    cursor = PullCursor.decode("2024-05-01T00:00:00Z")

    for entity_type in EntityType:
        assert cursor.position(entity_type) == (datetime(2024, 5, 1, tzinfo=timezone.utc), None)


def test_naive_iso_timestamp_is_read_as_utc():
    cursor = PullCursor.decode("2024-05-01T10:15:00")

    updated_at, _ = cursor.position(EntityType.RATE)
    assert updated_at == datetime(2024, 5, 1, 10, 15, tzinfo=timezone.utc)


@pytest.mark.parametrize("token", [None, "", "   "])
def test_empty_cursor_means_full_pull(token):
    assert PullCursor.decode(token).positions == {}


@pytest.mark.parametrize("token", ["not a cursor", "yesterday", "2024-13-45"])
def test_unreadable_cursor_is_rejected(token):
    with pytest.raises(InvalidCursorError):
        PullCursor.decode(token)


@given(
    rows=st.integers(min_value=0, max_value=12),
    page_size=st.integers(min_value=1, max_value=5),
)
@settings(max_examples=30, deadline=None)
def test_property_12_pagination_never_skips_rows_with_equal_timestamps(rows: int, page_size: int):
    """Property 12: Complete pagination.

    Following the cursor page by page delivers every row exactly once, even
    when all rows share one updated_at.

    **Feature: fieldsync, Property 12: Complete pagination**
    """
    server = _server(page_size=page_size)
    expected = {_create_supplier(server, f"cid-{n}").id for n in range(rows)}

    seen: list[int] = []
    cursor = None
    for _ in range(rows + 2):
        response = _pull(server, cursor, entity_types=[EntityType.SUPPLIER])
        page = response.entities[EntityType.SUPPLIER]
        assert len(page) <= page_size
        seen.extend(entity.id for entity in page)
        cursor = response.cursor
        if not response.has_more:
            break

    assert sorted(seen) == sorted(expected)
    assert len(seen) == len(set(seen))


def test_pull_with_the_same_cursor_is_repeatable():
    server = _server()
    for n in range(3):
        _create_supplier(server, f"cid-{n}")

    first = _pull(server)
    again = _pull(server)

    assert first.cursor == again.cursor
    assert [e.id for e in first.entities[EntityType.SUPPLIER]] == [
        e.id for e in again.entities[EntityType.SUPPLIER]
    ]


def test_tombstones_are_delivered_after_the_cursor():
    ticks = iter(FIXED + timedelta(seconds=n) for n in range(100))
    server = _server(clock=lambda: next(ticks))
    entity = _create_supplier(server, "cid-1")
    cursor = _pull(server).cursor

    server.resolver.apply(
        EntityType.SUPPLIER, Operation.DELETE, entity_id=entity.id, base_version=1
    )
    response = _pull(server, cursor)

    [row] = response.entities[EntityType.SUPPLIER]
    assert row.id == entity.id
    assert row.version == 2
    assert row.is_deleted


def test_nothing_new_returns_empty_pages_and_the_same_cursor():
    server = _server()
    _create_supplier(server, "cid-1")
    cursor = _pull(server).cursor

    response = _pull(server, cursor)

    assert response.total == 0
    assert response.has_more is False
    assert response.cursor == cursor


def test_entity_type_filter_and_request_limit():
    server = _server(page_size=10)
    for n in range(4):
        _create_supplier(server, f"cid-{n}")

    response = _pull(server, entity_types=[EntityType.SUPPLIER], limit=3)

    assert list(response.entities) == [EntityType.SUPPLIER]
    assert len(response.entities[EntityType.SUPPLIER]) == 3
    assert response.has_more is True


def test_request_limit_never_exceeds_the_page_size():
    server = _server(page_size=2)
    for n in range(5):
        _create_supplier(server, f"cid-{n}")

    response = _pull(server, limit=100)

    assert len(response.entities[EntityType.SUPPLIER]) == 2


def test_pull_stores_the_cursor_on_the_device():
    server = _server()
    _create_supplier(server, "cid-1")

    response = _pull(server)
    device = server.devices.get("device-a")

    assert device is not None
    assert device.last_cursor == response.cursor
    assert device.last_pull_at == FIXED


def test_status_counts_rows_changed_since_the_last_pull():
    ticks = iter(FIXED + timedelta(seconds=n) for n in range(100))
    server = _server(clock=lambda: next(ticks))
    _create_supplier(server, "cid-1")
    _pull(server)

    _create_supplier(server, "cid-2")
    _create_supplier(server, "cid-3")
    status = server.status("device-a")

    assert status.device is not None
    assert status.pending_changes[EntityType.SUPPLIER] == 2
    assert status.pending_changes[EntityType.PAYMENT] == 0


def test_status_of_unknown_device_counts_everything():
    server = _server()
    _create_supplier(server, "cid-1")

    status = server.status("never-seen")

    assert status.device is None
    assert status.pending_changes[EntityType.SUPPLIER] == 1


def test_rows_newer_than_the_settle_window_are_held_back():
    now = [FIXED]
    database = Database("sqlite://", ServerBase.metadata)
    database.create_all()
    server = SyncServer(database, SyncConfig(pull_settle_seconds=5), clock=lambda: now[0])
    _create_supplier(server, "cid-1")

    early = _pull(server)
    assert early.entities[EntityType.SUPPLIER] == []

    now[0] = FIXED + timedelta(seconds=5)
    late = _pull(server, early.cursor)
    assert [e.client_id for e in late.entities[EntityType.SUPPLIER]] == ["cid-1"]
