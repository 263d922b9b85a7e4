"""Device-local replica of the synced entities."""

import uuid
from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.errors import LocalEntityExistsError, LocalEntityNotFoundError
from fieldsync.models.entity import EntityType, Operation, SyncableEntity
from fieldsync.storage.client_tables import LocalEntityRow
from fieldsync.storage.database import Database
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class LocalEntity(BaseModel):
    """Local view of an entity, possibly ahead of the server."""

    entity_type: EntityType
    client_id: str
    server_id: int | None = Field(default=None, description="Server id, once the create is acknowledged")
    version: int = Field(default=1, ge=1, description="Speculative local version")
    server_version: int | None = Field(default=None, description="Last version confirmed by the server")
    payload: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime
    deleted_at: datetime | None = None
    dirty: bool = Field(default=False, description="Has local changes the server has not acknowledged")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


def _to_local(row: LocalEntityRow) -> LocalEntity:
    return LocalEntity(
        entity_type=EntityType(row.entity_type),
        client_id=row.client_id,
        server_id=row.server_id,
        version=row.version,
        server_version=row.server_version,
        payload=dict(row.payload or {}),
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        dirty=row.dirty,
    )


class LocalEntityStore:
    """Local-first entity storage.

    Reads and local mutations never touch the network. Every method accepts an
    optional session so that callers can combine a mutation with its outbox
    entry in one local transaction.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self._database = database
        self._clock = clock

    def get(
        self, entity_type: EntityType, server_id: int, session: Session | None = None
    ) -> LocalEntity | None:
        """Look up an entity by server id."""
        with self._database.scope(session) as s:
            row = self._row_by_server_id(s, entity_type, server_id)
            return _to_local(row) if row is not None else None

    def get_by_client_id(
        self, entity_type: EntityType, client_id: str, session: Session | None = None
    ) -> LocalEntity | None:
        with self._database.scope(session) as s:
            row = self._row_by_client_id(s, entity_type, client_id)
            return _to_local(row) if row is not None else None

    def list(
        self,
        entity_type: EntityType,
        include_deleted: bool = False,
        session: Session | None = None,
    ) -> list[LocalEntity]:
        with self._database.scope(session) as s:
            query = select(LocalEntityRow).where(LocalEntityRow.entity_type == entity_type.value)
            if not include_deleted:
                query = query.where(LocalEntityRow.deleted_at.is_(None))
            rows = s.execute(query.order_by(LocalEntityRow.local_id)).scalars().all()
            return [_to_local(row) for row in rows]

    def upsert_from_server(self, entity: SyncableEntity, session: Session | None = None) -> bool:
        """
        Overwrite the local row with the server's state.

        Args:
            entity: Server row from a pull or push response
            session: Optional enclosing transaction

        Returns:
            True if the local row changed, False for stale or identical rows
        """
        with self._database.scope(session) as s:
            row = self._row_by_client_id(s, entity.entity_type, entity.client_id)
            if row is None:
                row = self._row_by_server_id(s, entity.entity_type, entity.id)

            if row is None:
                s.add(
                    LocalEntityRow(
                        entity_type=entity.entity_type.value,
                        client_id=entity.client_id,
                        server_id=entity.id,
                        version=entity.version,
                        server_version=entity.version,
                        payload=dict(entity.payload),
                        updated_at=entity.updated_at,
                        deleted_at=entity.deleted_at,
                        dirty=False,
                    )
                )
                s.flush()
                return True

            if row.server_version is not None and entity.version < row.server_version:
                log.debug(
                    "stale_server_row_ignored",
                    entity_type=entity.entity_type.value,
                    client_id=entity.client_id,
                    version=entity.version,
                    server_version=row.server_version,
                )
                return False

            unchanged = (
                row.server_id == entity.id
                and row.server_version == entity.version
                and row.version == entity.version
                and row.payload == entity.payload
                and row.deleted_at == entity.deleted_at
                and not row.dirty
            )
            if unchanged:
                return False

            row.server_id = entity.id
            row.version = entity.version
            row.server_version = entity.version
            row.payload = dict(entity.payload)
            row.updated_at = entity.updated_at
            row.deleted_at = entity.deleted_at
            row.dirty = False
            s.flush()
            return True

    def record_server_version(self, entity: SyncableEntity, session: Session | None = None) -> None:
        """Remember the server id and version without touching local edits.

        Used when more local changes for the entity are still waiting in the
        outbox, so the speculative local state must survive.
        """
        with self._database.scope(session) as s:
            row = self._row_by_client_id(s, entity.entity_type, entity.client_id)
            if row is None:
                return
            row.server_id = entity.id
            if row.server_version is None or entity.version > row.server_version:
                row.server_version = entity.version
            s.flush()

    def detach_from_server(
        self, entity_type: EntityType, client_id: str, session: Session | None = None
    ) -> LocalEntity | None:
        """Forget the server copy of an entity the server no longer knows.

        The row becomes a local-only entity at version 1, ready to be created again.
        """
        with self._database.scope(session) as s:
            row = self._row_by_client_id(s, entity_type, client_id)
            if row is None:
                return None
            row.server_id = None
            row.server_version = None
            row.version = 1
            row.dirty = True
            s.flush()
            log.info("local_entity_detached", entity_type=entity_type.value, client_id=client_id)
            return _to_local(row)

    def apply_local_mutation(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: dict[str, Any] | None = None,
        entity_id: int | None = None,
        client_id: str | None = None,
        session: Session | None = None,
    ) -> LocalEntity:
        """
        Write a mutation locally, ahead of the server.

        The local version is bumped speculatively so that the next mutation
        can state the version it was made against.

        Args:
            entity_type: Entity table
            operation: create, update or delete
            payload: Fields to write (merged into the row for update)
            entity_id: Server id of the target (update/delete)
            client_id: Client id of the target; generated for create when omitted
            session: Optional enclosing transaction

        Returns:
            The local entity after the mutation

        Raises:
            LocalEntityExistsError: If a create reuses a client_id
            LocalEntityNotFoundError: If an update/delete targets an unknown entity
        """
        payload = dict(payload or {})
        now = self._clock()

        with self._database.scope(session) as s:
            if operation is Operation.CREATE:
                client_id = client_id or uuid.uuid4().hex
                if self._row_by_client_id(s, entity_type, client_id) is not None:
                    raise LocalEntityExistsError(f"{entity_type.value} {client_id} already exists")
                row = LocalEntityRow(
                    entity_type=entity_type.value,
                    client_id=client_id,
                    server_id=None,
                    version=1,
                    server_version=None,
                    payload=payload,
                    updated_at=now,
                    deleted_at=None,
                    dirty=True,
                )
                s.add(row)
                s.flush()
                return _to_local(row)

            row = None
            if client_id is not None:
                row = self._row_by_client_id(s, entity_type, client_id)
            if row is None and entity_id is not None:
                row = self._row_by_server_id(s, entity_type, entity_id)
            if row is None:
                raise LocalEntityNotFoundError(
                    f"{entity_type.value} {client_id or entity_id} is not in the local store"
                )

            if operation is Operation.UPDATE:
                row.payload = {**(row.payload or {}), **payload}
                row.deleted_at = None
            else:
                row.deleted_at = row.deleted_at or now
            row.version += 1
            row.updated_at = now
            row.dirty = True
            s.flush()
            return _to_local(row)

    def _row_by_client_id(
        self, session: Session, entity_type: EntityType, client_id: str
    ) -> LocalEntityRow | None:
        return session.execute(
            select(LocalEntityRow).where(
                LocalEntityRow.entity_type == entity_type.value,
                LocalEntityRow.client_id == client_id,
            )
        ).scalar_one_or_none()

    def _row_by_server_id(
        self, session: Session, entity_type: EntityType, server_id: int
    ) -> LocalEntityRow | None:
        return session.execute(
            select(LocalEntityRow).where(
                LocalEntityRow.entity_type == entity_type.value,
                LocalEntityRow.server_id == server_id,
            )
        ).scalar_one_or_none()
