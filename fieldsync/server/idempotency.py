"""Idempotency guard that makes retried creates safe."""

from typing import Callable, Union

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from fieldsync.models.entity import EntityType, SyncableEntity
from fieldsync.storage.repository import EntityRepository
from fieldsync.storage.tables import IdempotencyKeyRow
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class Existing(BaseModel):
    """A previous create under this key already produced ``entity``."""

    entity: SyncableEntity


class Reserved(BaseModel):
    """The key is reserved for a create in the current transaction."""

    reservation_id: int
    key: str


IdempotencyCheck = Union[Existing, Reserved]


class IdempotencyGuard:
    """Dedups creates by a client-supplied key, scoped per entity type.

    The reservation row is written in the same transaction as the entity row,
    so a create that fails leaves no reservation behind. Two concurrent
    creates with the same key collide on the unique constraint; the loser's
    transaction raises IntegrityError and the caller retries the lookup.
    """

    def __init__(self, repository: EntityRepository, clock: Callable = utc_now):
        self._repository = repository
        self._clock = clock

    def check_or_reserve(
        self,
        session: Session,
        entity_type: EntityType,
        idempotency_key: str,
        client_id: str,
    ) -> IdempotencyCheck:
        """Return the entity of a prior create, or reserve the key.

        Args:
            session: Open transaction
            entity_type: Entity type the key is scoped to
            idempotency_key: Client-supplied key of the create
            client_id: Client identifier of the entity being created

        Returns:
            Existing if the create was already applied, Reserved otherwise
        """
        row = session.execute(
            select(IdempotencyKeyRow).where(
                IdempotencyKeyRow.entity_type == entity_type.value,
                IdempotencyKeyRow.key == idempotency_key,
            )
        ).scalar_one_or_none()

        if row is not None and row.entity_id is not None:
            entity = self._repository.get(session, entity_type, row.entity_id)
            if entity is not None:
                log.info(
                    "idempotent_create_replayed",
                    entity_type=entity_type.value,
                    entity_id=entity.id,
                    idempotency_key=idempotency_key,
                )
                return Existing(entity=entity)

        # client_id is globally unique, so a row carrying it is the same logical create
        entity = self._repository.get_by_client_id(session, entity_type, client_id)
        if entity is not None:
            log.warning(
                "create_matched_by_client_id",
                entity_type=entity_type.value,
                entity_id=entity.id,
                client_id=client_id,
                idempotency_key=idempotency_key,
            )
            if row is None:
                session.add(
                    IdempotencyKeyRow(
                        entity_type=entity_type.value,
                        key=idempotency_key,
                        entity_id=entity.id,
                        created_at=self._clock(),
                    )
                )
                session.flush()
            else:
                row.entity_id = entity.id
            return Existing(entity=entity)

        if row is None:
            row = IdempotencyKeyRow(
                entity_type=entity_type.value,
                key=idempotency_key,
                entity_id=None,
                created_at=self._clock(),
            )
            session.add(row)
            session.flush()

        return Reserved(reservation_id=row.id, key=idempotency_key)

    def bind(self, session: Session, reservation: Reserved, entity_id: int) -> None:
        """Attach the created entity to its reservation."""
        row = session.get(IdempotencyKeyRow, reservation.reservation_id)
        if row is None:
            raise LookupError(f"Idempotency reservation {reservation.reservation_id} vanished")
        row.entity_id = entity_id
        session.flush()
