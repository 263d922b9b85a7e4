"""Conflict inbox: changes the server refused, kept until the user decides."""

from datetime import datetime
from typing import Callable, Sequence

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fieldsync.client.entity_store import LocalEntityStore
from fieldsync.client.outbox import Outbox
from fieldsync.errors import UnknownConflictError
from fieldsync.models.entity import (
    ChangeLogEntry,
    ConflictReason,
    ConflictRecord,
    EntityType,
    Operation,
    ResolutionStrategy,
)
from fieldsync.storage.client_tables import ConflictRow
from fieldsync.storage.database import Database
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


def is_own_write_echo(entries: Sequence[ChangeLogEntry], record: ConflictRecord) -> bool:
    """Whether a conflict only reports this device's own, already-applied writes.

    This happens when a push timed out after the server applied it and the
    identical batch was sent again. ``entries`` are consecutive outbox
    entries of one entity, oldest first: the server must be exactly one
    version past the last entry's base and already hold what they wrote.
    """
    if not entries:
        return False
    last = entries[-1]
    if last.base_version is None or record.server_version != last.base_version + 1:
        return False

    written: dict = {}
    deleted = False
    for entry in entries:
        if entry.operation is Operation.DELETE:
            deleted = True
        else:
            written.update(entry.payload)
            deleted = False

    if deleted:
        return record.server_deleted_at is not None
    if record.server_deleted_at is not None:
        return False
    return all(
        key in record.server_payload and record.server_payload[key] == value
        for key, value in written.items()
    )


def _to_record(row: ConflictRow) -> ConflictRecord:
    return ConflictRecord(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        client_id=row.client_id,
        reason=ConflictReason(row.reason),
        server_version=row.server_version,
        server_payload=dict(row.server_payload or {}),
        server_updated_at=row.server_updated_at,
        server_deleted_at=row.server_deleted_at,
        client_operation=Operation(row.client_operation),
        client_base_version=row.client_base_version,
        client_payload=dict(row.client_payload or {}),
        suggested_strategy=ResolutionStrategy(row.suggested_strategy),
        created_at=row.created_at,
    )


class ConflictInbox:
    """Stores at most one open conflict per entity.

    A later conflict on the same entity is merged into the open record: the
    client payloads are combined in the order they were written and the
    newest server state wins. Records leave the inbox only through resolve().
    """

    def __init__(
        self,
        database: Database,
        store: LocalEntityStore,
        outbox: Outbox,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._database = database
        self._store = store
        self._outbox = outbox
        self._clock = clock

    def add(
        self,
        record: ConflictRecord,
        entries: Sequence[ChangeLogEntry] = (),
        session: Session | None = None,
    ) -> ConflictRecord:
        """
        File a conflict reported by the server.

        Args:
            record: Conflict as returned by the server
            entries: Outbox entries of the entity that are folded into the record,
                oldest first; their payloads are merged after record.client_payload
            session: Optional enclosing transaction

        Returns:
            The stored (possibly merged) record
        """
        client_payload = dict(record.client_payload)
        client_operation = record.client_operation
        for entry in entries:
            client_payload.update(entry.payload)
            client_operation = self._combine(client_operation, entry.operation)

        with self._database.scope(session) as s:
            row = s.execute(
                select(ConflictRow).where(
                    ConflictRow.entity_type == record.entity_type.value,
                    ConflictRow.client_id == record.client_id,
                )
            ).scalar_one_or_none()

            if row is None:
                row = ConflictRow(
                    entity_type=record.entity_type.value,
                    client_id=record.client_id,
                    reason=record.reason.value,
                    client_base_version=record.client_base_version,
                    client_payload=client_payload,
                    client_operation=client_operation.value,
                    suggested_strategy=record.suggested_strategy.value,
                    created_at=record.created_at or self._clock(),
                )
                s.add(row)
                self._set_server_state(row, record)
                log.info(
                    "conflict_recorded",
                    entity_type=record.entity_type.value,
                    client_id=record.client_id,
                    server_version=record.server_version,
                    reason=record.reason.value,
                )
            else:
                row.client_payload = {**(row.client_payload or {}), **client_payload}
                row.client_operation = self._combine(
                    Operation(row.client_operation), client_operation
                ).value
                if record.server_version >= row.server_version:
                    self._set_server_state(row, record)
                log.info(
                    "conflict_merged",
                    entity_type=record.entity_type.value,
                    client_id=record.client_id,
                    server_version=row.server_version,
                )
            s.flush()
            return _to_record(row)

    def count(self) -> int:
        with self._database.transaction() as s:
            return int(s.execute(select(func.count()).select_from(ConflictRow)).scalar_one())

    def resolve(self, record_id: int, strategy: ResolutionStrategy) -> ChangeLogEntry | None:
        """
        Close a conflict with the user's choice.

        keep_server drops the client's change; the server state is kept.
        retry_client_wins replays the client's change as a new outbox entry
        written against the current server version, so it competes fairly with
        whatever the server holds now.

        Args:
            record_id: Inbox record id
            strategy: Resolution chosen by the user

        Returns:
            The new outbox entry for retry_client_wins, None for keep_server

        Raises:
            UnknownConflictError: If the record is not in the inbox
        """
        with self._database.transaction() as s:
            row = s.get(ConflictRow, record_id)
            if row is None:
                raise UnknownConflictError(f"Conflict {record_id} is not in the inbox")
            record = _to_record(row)
            s.delete(row)
            s.flush()

            if strategy is ResolutionStrategy.KEEP_SERVER:
                if not self._outbox.has_pending_for(record.entity_type, record.client_id, session=s):
                    self._store.upsert_from_server(record.server_entity(), session=s)
                log.info(
                    "conflict_resolved",
                    entity_type=record.entity_type.value,
                    client_id=record.client_id,
                    strategy=strategy.value,
                )
                return None

            local = self._store.get_by_client_id(record.entity_type, record.client_id, session=s)
            if local is None:
                self._store.upsert_from_server(record.server_entity(), session=s)
                local = self._store.get_by_client_id(record.entity_type, record.client_id, session=s)

            operation = Operation.DELETE if record.client_operation is Operation.DELETE else Operation.UPDATE
            base_version = local.version
            payload = record.client_payload if operation is Operation.UPDATE else {}
            self._store.apply_local_mutation(
                record.entity_type, operation, payload, client_id=record.client_id, session=s
            )
            entry = self._outbox.enqueue(
                ChangeLogEntry(
                    entity_type=record.entity_type,
                    entity_id=local.server_id or record.entity_id,
                    client_id=record.client_id,
                    operation=operation,
                    base_version=base_version,
                    payload=payload,
                ),
                session=s,
            )
            log.info(
                "conflict_resolved",
                entity_type=record.entity_type.value,
                client_id=record.client_id,
                strategy=strategy.value,
                base_version=base_version,
                entry_id=entry.id,
            )
            return entry

    def list(self) -> list[ConflictRecord]:
        """Open conflicts, oldest first."""
        with self._database.transaction() as s:
            rows = s.execute(select(ConflictRow).order_by(ConflictRow.created_at, ConflictRow.id)).scalars().all()
            return [_to_record(row) for row in rows]

    @staticmethod
    def _combine(earlier: Operation, later: Operation) -> Operation:
        # a delete followed by an update restores the row, so the later op wins
        if later is Operation.CREATE:
            return earlier
        return later

    @staticmethod
    def _set_server_state(row: ConflictRow, record: ConflictRecord) -> None:
        row.entity_id = record.entity_id
        row.server_version = record.server_version
        row.server_payload = dict(record.server_payload)
        row.server_updated_at = record.server_updated_at
        row.server_deleted_at = record.server_deleted_at
