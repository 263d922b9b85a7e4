"""Tests for the idempotency guard used by server-side creates."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fieldsync.models.entity import EntityType
from fieldsync.server.idempotency import Existing, IdempotencyGuard, Reserved
from fieldsync.storage.database import Database
from fieldsync.storage.repository import SqlAlchemyEntityRepository
from fieldsync.storage.tables import IdempotencyKeyRow, ServerBase

NOW = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)


@pytest.fixture
def database():
    database = Database("sqlite://", ServerBase.metadata)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def repository():
    return SqlAlchemyEntityRepository()


@pytest.fixture
def guard(repository):
    return IdempotencyGuard(repository, clock=lambda: NOW)


def _create(database, guard, repository, key="create:abc", client_id="abc"):
    with database.transaction() as session:
        check = guard.check_or_reserve(session, EntityType.SUPPLIER, key, client_id)
        if isinstance(check, Existing):
            return check.entity
        entity = repository.insert(session, EntityType.SUPPLIER, client_id, {"name": "Hill"}, NOW)
        guard.bind(session, check, entity.id)
        return entity


def test_first_create_reserves_the_key(database, guard):
    with database.transaction() as session:
        check = guard.check_or_reserve(session, EntityType.SUPPLIER, "create:abc", "abc")

    assert isinstance(check, Reserved)
    assert check.key == "create:abc"


def test_bound_key_returns_the_existing_entity(database, guard, repository):
    created = _create(database, guard, repository)

    with database.transaction() as session:
        check = guard.check_or_reserve(session, EntityType.SUPPLIER, "create:abc", "abc")

    assert isinstance(check, Existing)
    assert check.entity.id == created.id
    assert check.entity.version == 1


def test_failed_create_leaves_no_reservation(database, guard):
    with pytest.raises(RuntimeError):
        with database.transaction() as session:
            guard.check_or_reserve(session, EntityType.SUPPLIER, "create:abc", "abc")
            raise RuntimeError("insert failed")

    with database.transaction() as session:
        rows = session.execute(select(IdempotencyKeyRow)).scalars().all()
    assert rows == []


def test_known_client_id_under_new_key_binds_the_new_key(database, guard, repository):
    created = _create(database, guard, repository)

    with database.transaction() as session:
        check = guard.check_or_reserve(session, EntityType.SUPPLIER, "retry-key", "abc")
    assert isinstance(check, Existing)
    assert check.entity.id == created.id

    with database.transaction() as session:
        row = session.execute(
            select(IdempotencyKeyRow).where(IdempotencyKeyRow.key == "retry-key")
        ).scalar_one()
    assert row.entity_id == created.id


def test_same_key_under_another_entity_type_is_independent(database, guard, repository):
    _create(database, guard, repository)

    with database.transaction() as session:
        check = guard.check_or_reserve(session, EntityType.PRODUCT, "create:abc", "prod-1")

    assert isinstance(check, Reserved)


def test_duplicate_reservation_violates_the_unique_constraint(database):
    with pytest.raises(IntegrityError):
        with database.transaction() as session:
            for _ in range(2):
                session.add(
                    IdempotencyKeyRow(
                        entity_type=EntityType.SUPPLIER.value,
                        key="create:abc",
                        entity_id=None,
                        created_at=NOW,
                    )
                )
                session.flush()


def test_bind_of_vanished_reservation_raises(database, guard):
    with database.transaction() as session:
        with pytest.raises(LookupError):
            guard.bind(session, Reserved(reservation_id=999, key="gone"), 1)
