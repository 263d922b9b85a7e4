"""Entity repository interface and its SQLAlchemy implementation."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from fieldsync.models.entity import EntityType, SyncableEntity
from fieldsync.storage.tables import ENTITY_TABLES, SyncableMixin

log = structlog.stdlib.get_logger()

# (updated_at, id) of the last row already delivered; id None means
# "strictly after updated_at" for cursors that only carry a timestamp.
KeysetPosition = tuple[datetime, int | None]


class EntityRepository(ABC):
    """Abstract interface for persisting syncable entities.

    One interface covers all entity types; implementations differ only in the
    storage backend they talk to.
    """

    @abstractmethod
    def get(self, session: Session, entity_type: EntityType, entity_id: int) -> SyncableEntity | None:
        """Load a row by server id, including soft-deleted rows."""
        pass

    @abstractmethod
    def get_by_client_id(
        self, session: Session, entity_type: EntityType, client_id: str
    ) -> SyncableEntity | None:
        """Load a row by its client-generated identifier."""
        pass

    def resolve(
        self,
        session: Session,
        entity_type: EntityType,
        entity_id: int | None = None,
        client_id: str | None = None,
    ) -> SyncableEntity | None:
        """Load a row by server id, falling back to client_id."""
        if entity_id is not None:
            entity = self.get(session, entity_type, entity_id)
            if entity is not None:
                return entity
        if client_id is not None:
            return self.get_by_client_id(session, entity_type, client_id)
        return None

    @abstractmethod
    def insert(
        self,
        session: Session,
        entity_type: EntityType,
        client_id: str,
        payload: dict[str, Any],
        now: datetime,
        device_id: str | None = None,
    ) -> SyncableEntity:
        """Insert a new row at version 1."""
        pass

    @abstractmethod
    def compare_and_set(
        self,
        session: Session,
        entity_type: EntityType,
        entity_id: int,
        expected_version: int,
        payload: dict[str, Any],
        deleted_at: datetime | None,
        updated_at: datetime,
        device_id: str | None = None,
    ) -> SyncableEntity | None:
        """Write the row only if its version still equals ``expected_version``.

        The version is set to ``expected_version + 1``.

        Returns:
            The updated entity, or None if another writer got there first
        """
        pass

    @abstractmethod
    def changed_since(
        self,
        session: Session,
        entity_type: EntityType,
        after: KeysetPosition | None,
        limit: int,
        until: datetime | None = None,
    ) -> list[SyncableEntity]:
        """Rows after a keyset position, ordered by (updated_at, id), tombstones included.

        Rows stamped after ``until`` are left out when it is given.
        """
        pass

    @abstractmethod
    def count_changed_since(
        self, session: Session, entity_type: EntityType, after: KeysetPosition | None
    ) -> int:
        pass


def _to_entity(entity_type: EntityType, row: SyncableMixin) -> SyncableEntity:
    return SyncableEntity(
        entity_type=entity_type,
        id=row.id,
        client_id=row.client_id,
        version=row.version,
        payload=dict(row.payload or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


class SqlAlchemyEntityRepository(EntityRepository):
    """EntityRepository backed by the per-type tables in ``fieldsync.storage.tables``."""

    def get(self, session: Session, entity_type: EntityType, entity_id: int) -> SyncableEntity | None:
        table = ENTITY_TABLES[entity_type]
        row = session.execute(
            select(table).where(table.id == entity_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _to_entity(entity_type, row) if row is not None else None

    def get_by_client_id(
        self, session: Session, entity_type: EntityType, client_id: str
    ) -> SyncableEntity | None:
        table = ENTITY_TABLES[entity_type]
        row = session.execute(
            select(table)
            .where(table.client_id == client_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _to_entity(entity_type, row) if row is not None else None

    def insert(
        self,
        session: Session,
        entity_type: EntityType,
        client_id: str,
        payload: dict[str, Any],
        now: datetime,
        device_id: str | None = None,
    ) -> SyncableEntity:
        table = ENTITY_TABLES[entity_type]
        row = table(
            client_id=client_id,
            version=1,
            payload=dict(payload),
            created_at=now,
            updated_at=now,
            deleted_at=None,
            last_device_id=device_id,
        )
        session.add(row)
        session.flush()
        log.debug("entity_inserted", entity_type=entity_type.value, entity_id=row.id, client_id=client_id)
        return _to_entity(entity_type, row)

    def compare_and_set(
        self,
        session: Session,
        entity_type: EntityType,
        entity_id: int,
        expected_version: int,
        payload: dict[str, Any],
        deleted_at: datetime | None,
        updated_at: datetime,
        device_id: str | None = None,
    ) -> SyncableEntity | None:
        table = ENTITY_TABLES[entity_type]
        result = session.execute(
            update(table)
            .where(table.id == entity_id, table.version == expected_version)
            .values(
                version=expected_version + 1,
                payload=dict(payload),
                deleted_at=deleted_at,
                updated_at=updated_at,
                last_device_id=device_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            log.info(
                "compare_and_set_lost",
                entity_type=entity_type.value,
                entity_id=entity_id,
                expected_version=expected_version,
            )
            return None
        return self.get(session, entity_type, entity_id)

    def changed_since(
        self,
        session: Session,
        entity_type: EntityType,
        after: KeysetPosition | None,
        limit: int,
        until: datetime | None = None,
    ) -> list[SyncableEntity]:
        table = ENTITY_TABLES[entity_type]
        query = select(table)
        if after is not None:
            query = query.where(self._after_clause(table, after))
        if until is not None:
            query = query.where(table.updated_at <= until)
        rows = session.execute(
            query.order_by(table.updated_at, table.id).limit(limit)
        ).scalars().all()
        return [_to_entity(entity_type, row) for row in rows]

    def count_changed_since(
        self, session: Session, entity_type: EntityType, after: KeysetPosition | None
    ) -> int:
        table = ENTITY_TABLES[entity_type]
        query = select(func.count()).select_from(table)
        if after is not None:
            query = query.where(self._after_clause(table, after))
        return int(session.execute(query).scalar_one())

    @staticmethod
    def _after_clause(table: type[SyncableMixin], after: KeysetPosition):
        updated_at, last_id = after
        if last_id is None:
            return table.updated_at > updated_at
        return or_(
            table.updated_at > updated_at,
            and_(table.updated_at == updated_at, table.id > last_id),
        )
