"""Property-based tests for the conflict resolver.

**Feature: fieldsync, Property 8: Idempotent create**
**Feature: fieldsync, Property 9: Version monotonicity**
**Feature: fieldsync, Property 10: Conflict detection**
"""

from datetime import datetime, timezone

from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fieldsync.models.entity import ConflictReason, EntityType, Operation, ResolutionStrategy
from fieldsync.models.protocol import Conflict, Created, Deleted, ErrorCode, PushChange, Rejected, Updated
from fieldsync.server.resolver import ConflictResolver
from fieldsync.storage.database import Database
from fieldsync.storage.repository import SqlAlchemyEntityRepository
from fieldsync.storage.tables import ServerBase, SupplierRow

supplier_payloads = st.fixed_dictionaries(
    {"name": st.text(min_size=1, max_size=40)},
    optional={
        "phone": st.text(min_size=1, max_size=20),
        "address": st.text(max_size=60),
        "is_active": st.booleans(),
    },
)


def _database() -> Database:
    database = Database("sqlite://", ServerBase.metadata)
    database.create_all()
    return database


def _create(resolver: ConflictResolver, client_id: str = "abc", payload: dict | None = None):
    return resolver.apply(
        EntityType.SUPPLIER,
        Operation.CREATE,
        client_id=client_id,
        payload=payload or {"name": "Green Valley"},
        idempotency_key=f"create:{client_id}",
        device_id="device-a",
    )


def _row_count(database: Database) -> int:
    with database.transaction() as session:
        return session.execute(select(func.count()).select_from(SupplierRow)).scalar_one()


@given(payload=supplier_payloads, repeats=st.integers(min_value=2, max_value=4))
@settings(max_examples=25, deadline=None)
def test_property_8_idempotent_create(payload: dict, repeats: int):
    """Property 8: Idempotent create.

    Submitting the same create any number of times yields exactly one row;
    every repeat returns the same entity and version.

    **Feature: fieldsync, Property 8: Idempotent create**
    """
    database = _database()
    resolver = ConflictResolver(database)

    first = _create(resolver, payload=payload)
    assert isinstance(first, Created)
    assert first.replayed is False
    assert first.entity.version == 1

    for _ in range(repeats - 1):
        again = _create(resolver, payload=payload)
        assert isinstance(again, Created)
        assert again.replayed is True
        assert again.entity.id == first.entity.id
        assert again.entity.version == first.entity.version

    assert _row_count(database) == 1


def test_create_with_known_client_id_under_new_key_is_a_replay():
    database = _database()
    resolver = ConflictResolver(database)
    first = _create(resolver)

    again = resolver.apply(
        EntityType.SUPPLIER,
        Operation.CREATE,
        client_id="abc",
        payload={"name": "Other"},
        idempotency_key="a-different-key",
    )

    assert isinstance(again, Created)
    assert again.replayed is True
    assert again.entity.id == first.entity.id
    assert again.entity.payload == {"name": "Green Valley"}
    assert _row_count(database) == 1


def test_idempotency_keys_are_scoped_per_entity_type():
    database = _database()
    resolver = ConflictResolver(database)
    _create(resolver, client_id="abc")

    product = resolver.apply(
        EntityType.PRODUCT,
        Operation.CREATE,
        client_id="prod-1",
        payload={"name": "Tea leaves", "unit_type": "kg"},
        idempotency_key="create:abc",
    )

    assert isinstance(product, Created)
    assert product.replayed is False


@given(updates=st.lists(supplier_payloads, min_size=1, max_size=8))
@settings(max_examples=25, deadline=None)
def test_property_9_version_monotonicity(updates: list[dict]):
    """Property 9: Version monotonicity.

    Every accepted mutation increments the version by exactly one.

    **Feature: fieldsync, Property 9: Version monotonicity**
    """
    database = _database()
    resolver = ConflictResolver(database)
    created = _create(resolver)
    entity_id = created.entity.id
    expected = {"name": "Green Valley"}

    for version, payload in enumerate(updates, start=1):
        outcome = resolver.apply(
            EntityType.SUPPLIER,
            Operation.UPDATE,
            entity_id=entity_id,
            base_version=version,
            payload=payload,
        )
        expected.update(payload)
        assert isinstance(outcome, Updated)
        assert outcome.entity.version == version + 1
        assert outcome.entity.payload == expected


@given(
    accepted=st.integers(min_value=1, max_value=6),
    stale_offset=st.integers(min_value=1, max_value=6),
)
@settings(max_examples=25, deadline=None)
def test_property_10_conflict_detection(accepted: int, stale_offset: int):
    """Property 10: Conflict detection.

    A change made against any version other than the current one is never
    applied; it returns a Conflict carrying the server's state.

    **Feature: fieldsync, Property 10: Conflict detection**
    """
    database = _database()
    resolver = ConflictResolver(database)
    entity_id = _create(resolver).entity.id
    for version in range(1, accepted + 1):
        resolver.apply(
            EntityType.SUPPLIER,
            Operation.UPDATE,
            entity_id=entity_id,
            base_version=version,
            payload={"phone": f"07{version}"},
        )
    current_version = accepted + 1

    stale_base = current_version - stale_offset
    if stale_base < 1:
        stale_base = current_version + stale_offset

    outcome = resolver.apply(
        EntityType.SUPPLIER,
        Operation.UPDATE,
        entity_id=entity_id,
        base_version=stale_base,
        payload={"name": "Overwritten"},
    )

    assert isinstance(outcome, Conflict)
    record = outcome.record
    assert record.reason is ConflictReason.VERSION_MISMATCH
    assert record.server_version == current_version
    assert record.server_payload["name"] == "Green Valley"
    assert record.client_payload == {"name": "Overwritten"}
    assert record.client_base_version == stale_base
    assert record.suggested_strategy is ResolutionStrategy.KEEP_SERVER

    with database.transaction() as session:
        row = session.get(SupplierRow, entity_id)
        assert row.version == current_version
        assert row.payload["name"] == "Green Valley"


def test_concurrent_writers_on_the_same_base_exactly_one_wins():
    database = _database()
    resolver = ConflictResolver(database)
    entity_id = _create(resolver).entity.id

    first = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=entity_id, base_version=1,
        payload={"phone": "0771"}, device_id="device-a",
    )
    second = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=entity_id, base_version=1,
        payload={"phone": "0772"}, device_id="device-b",
    )

    assert isinstance(first, Updated)
    assert first.entity.version == 2
    assert isinstance(second, Conflict)
    assert second.record.server_version == 2
    assert second.record.server_payload["phone"] == "0771"


def test_update_resolves_target_by_client_id():
    database = _database()
    resolver = ConflictResolver(database)
    created = _create(resolver)

    outcome = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, client_id="abc", base_version=1, payload={"phone": "1"}
    )

    assert isinstance(outcome, Updated)
    assert outcome.entity.id == created.entity.id


def test_update_of_unknown_entity_is_a_retryable_missing_target():
    resolver = ConflictResolver(_database())

    outcome = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, client_id="never-created", base_version=1, payload={}
    )

    assert isinstance(outcome, Rejected)
    assert outcome.error.code is ErrorCode.MISSING_TARGET
    assert outcome.error.retryable is True


def test_delete_is_version_checked_and_leaves_a_tombstone():
    database = _database()
    resolver = ConflictResolver(database)
    entity_id = _create(resolver).entity.id

    stale = resolver.apply(EntityType.SUPPLIER, Operation.DELETE, entity_id=entity_id, base_version=5)
    assert isinstance(stale, Conflict)

    deleted = resolver.apply(EntityType.SUPPLIER, Operation.DELETE, entity_id=entity_id, base_version=1)
    assert isinstance(deleted, Deleted)
    assert deleted.entity.version == 2
    assert deleted.entity.deleted_at is not None
    assert deleted.entity.payload == {"name": "Green Valley"}
    assert _row_count(database) == 1


def test_update_of_tombstone_with_current_version_restores_the_row():
    resolver = ConflictResolver(_database())
    entity_id = _create(resolver).entity.id
    resolver.apply(EntityType.SUPPLIER, Operation.DELETE, entity_id=entity_id, base_version=1)

    restored = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=entity_id, base_version=2, payload={"phone": "9"}
    )

    assert isinstance(restored, Updated)
    assert restored.entity.version == 3
    assert restored.entity.deleted_at is None
    assert restored.entity.payload == {"name": "Green Valley", "phone": "9"}


def test_managed_and_unknown_fields_are_not_written():
    resolver = ConflictResolver(_database())

    outcome = _create(
        resolver,
        payload={"name": "Hill Top", "version": 99, "id": 7, "deleted_at": "x", "colour": "red"},
    )

    assert isinstance(outcome, Created)
    assert outcome.entity.payload == {"name": "Hill Top"}
    assert outcome.entity.version == 1


def test_non_object_payload_is_rejected_without_retry():
    resolver = ConflictResolver(_database())

    outcome = resolver.apply(
        EntityType.SUPPLIER,
        Operation.CREATE,
        client_id="abc",
        payload=["not", "an", "object"],
        idempotency_key="create:abc",
    )

    assert isinstance(outcome, Rejected)
    assert outcome.error.code is ErrorCode.VALIDATION_FAILED
    assert outcome.error.retryable is False


def test_updated_at_never_moves_backwards():
    now = [datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)]
    resolver = ConflictResolver(_database(), clock=lambda: now[0])
    created = _create(resolver)

    now[0] = datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)
    updated = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=created.entity.id, base_version=1, payload={}
    )

    assert isinstance(updated, Updated)
    assert updated.entity.version == 2
    assert updated.entity.updated_at == created.entity.updated_at


class _FlakyRepository(SqlAlchemyEntityRepository):
    def compare_and_set(self, *args, **kwargs):
        raise OperationalError("UPDATE suppliers", {}, Exception("database is locked"))


def test_database_errors_become_retryable_transient_rejections():
    database = _database()
    resolver = ConflictResolver(database, repository=_FlakyRepository())
    entity_id = _create(resolver).entity.id

    outcome = resolver.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=entity_id, base_version=1, payload={"phone": "1"}
    )

    assert isinstance(outcome, Rejected)
    assert outcome.error.code is ErrorCode.TRANSIENT
    assert outcome.error.retryable is True

    healthy = ConflictResolver(database)
    retried = healthy.apply(
        EntityType.SUPPLIER, Operation.UPDATE, entity_id=entity_id, base_version=1, payload={"phone": "1"}
    )
    assert isinstance(retried, Updated)


def test_conflict_for_reports_preceding_change_reason():
    resolver = ConflictResolver(_database())
    _create(resolver)

    change = PushChange(
        entity_type=EntityType.SUPPLIER,
        operation=Operation.UPDATE,
        client_id="abc",
        base_version=2,
        payload={"phone": "5"},
    )
    outcome = resolver.conflict_for(change, ConflictReason.PRECEDING_CHANGE_CONFLICTED)

    assert isinstance(outcome, Conflict)
    assert outcome.record.reason is ConflictReason.PRECEDING_CHANGE_CONFLICTED
    assert outcome.record.server_version == 1


def test_conflict_reports_the_client_payload_as_the_server_would_store_it():
    resolver = ConflictResolver(_database())
    entity_id = _create(resolver).entity.id

    outcome = resolver.apply(
        EntityType.SUPPLIER,
        Operation.UPDATE,
        entity_id=entity_id,
        base_version=7,
        payload={"phone": "0771", "nickname": "GV", "version": 99},
    )

    assert isinstance(outcome, Conflict)
    assert outcome.record.client_payload == {"phone": "0771"}


def test_conflict_for_reports_the_client_payload_as_the_server_would_store_it():
    resolver = ConflictResolver(_database())
    _create(resolver)

    update = PushChange(
        entity_type=EntityType.SUPPLIER,
        operation=Operation.UPDATE,
        client_id="abc",
        base_version=2,
        payload={"phone": "5", "nickname": "GV", "updated_at": "2024-01-01T00:00:00Z"},
    )
    delete = PushChange(
        entity_type=EntityType.SUPPLIER,
        operation=Operation.DELETE,
        client_id="abc",
        base_version=3,
        payload={"name": "ignored"},
    )

    updated = resolver.conflict_for(update, ConflictReason.PRECEDING_CHANGE_CONFLICTED)
    deleted = resolver.conflict_for(delete, ConflictReason.PRECEDING_CHANGE_CONFLICTED)

    assert updated.record.client_payload == {"phone": "5"}
    assert deleted.record.client_payload == {}


class _UnreachableRepository(SqlAlchemyEntityRepository):
    def resolve(self, *args, **kwargs):
        raise OperationalError("SELECT suppliers", {}, Exception("server closed the connection"))


def test_conflict_for_turns_database_errors_into_transient_rejections():
    resolver = ConflictResolver(_database(), repository=_UnreachableRepository())
    change = PushChange(
        entity_type=EntityType.SUPPLIER,
        operation=Operation.UPDATE,
        client_id="abc",
        base_version=2,
        payload={"phone": "5"},
    )

    outcome = resolver.conflict_for(change, ConflictReason.PRECEDING_CHANGE_CONFLICTED)

    assert isinstance(outcome, Rejected)
    assert outcome.error.code is ErrorCode.TRANSIENT
    assert outcome.error.retryable is True


class _BrokenRepository(SqlAlchemyEntityRepository):
    def resolve(self, *args, **kwargs):
        raise KeyError("suppliers")


def test_unexpected_errors_become_internal_rejections():
    resolver = ConflictResolver(_database(), repository=_BrokenRepository())
    change = PushChange(
        entity_type=EntityType.SUPPLIER,
        operation=Operation.UPDATE,
        client_id="abc",
        base_version=2,
        payload={"phone": "5"},
    )

    applied = resolver.apply_change(change)
    refused = resolver.conflict_for(change, ConflictReason.PRECEDING_CHANGE_CONFLICTED)

    for outcome in (applied, refused):
        assert isinstance(outcome, Rejected)
        assert outcome.error.code is ErrorCode.INTERNAL
        assert outcome.error.retryable is True
