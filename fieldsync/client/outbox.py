"""Durable outbox of local mutations waiting to be pushed."""

from datetime import datetime, timedelta
from typing import Callable, Iterable

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from fieldsync.models.entity import ChangeLogEntry, ChangeStatus, EntityType, Operation
from fieldsync.storage.client_tables import OutboxRow, SyncMetaRow
from fieldsync.storage.database import Database
from fieldsync.storage.types import as_utc, utc_now
from fieldsync.utils.retry import backoff_delay

log = structlog.stdlib.get_logger()

LAST_TIMESTAMP_KEY = "outbox_last_timestamp"


def create_idempotency_key(client_id: str) -> str:
    """Key of the create of ``client_id``; stable across every retry."""
    return f"create:{client_id}"


def _to_entry(row: OutboxRow) -> ChangeLogEntry:
    return ChangeLogEntry(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        client_id=row.client_id,
        operation=Operation(row.operation),
        base_version=row.base_version,
        payload=dict(row.payload or {}),
        idempotency_key=row.idempotency_key,
        client_timestamp=row.client_timestamp,
        status=ChangeStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
    )


class Outbox:
    """Ordered queue of ChangeLogEntries, persisted in the local database.

    Entries of one entity leave the outbox in the order they were enqueued:
    a batch only contains an entry if every earlier entry of the same entity
    is in the batch too. Entries of different entities are independent, so a
    failing entity never holds back the others.
    """

    def __init__(
        self,
        database: Database,
        max_attempts: int = 8,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 900.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._database = database
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._clock = clock

    def enqueue(self, entry: ChangeLogEntry, session: Session | None = None) -> ChangeLogEntry:
        """
        Append a change to the outbox.

        ``client_timestamp`` is stamped here and never goes backwards, so
        timestamp order is insertion order even if the device clock jumps.

        Args:
            entry: Change to store; its id, status and timestamp are assigned
            session: Optional enclosing transaction

        Returns:
            The stored entry
        """
        with self._database.scope(session) as s:
            stamp = self._next_timestamp(s)
            idempotency_key = entry.idempotency_key
            if entry.operation is Operation.CREATE and idempotency_key is None:
                idempotency_key = create_idempotency_key(entry.client_id)

            row = OutboxRow(
                entity_type=entry.entity_type.value,
                entity_id=entry.entity_id,
                client_id=entry.client_id,
                operation=entry.operation.value,
                base_version=entry.base_version,
                payload=dict(entry.payload),
                idempotency_key=idempotency_key,
                client_timestamp=stamp,
                status=ChangeStatus.PENDING.value,
                attempts=0,
                last_error=None,
                next_attempt_at=None,
            )
            s.add(row)
            s.flush()
            log.debug(
                "outbox_entry_enqueued",
                entry_id=row.id,
                entity_type=row.entity_type,
                client_id=row.client_id,
                operation=row.operation,
                base_version=row.base_version,
            )
            return _to_entry(row)

    def dequeue_batch(self, max_n: int) -> list[ChangeLogEntry]:
        """
        Take up to ``max_n`` entries ready to send and mark them in flight.

        Failed entries still in backoff, and entries already in flight, hold
        back every later entry of their entity.

        Args:
            max_n: Maximum batch size

        Returns:
            Entries ordered by client_timestamp
        """
        now = self._clock()
        batch: list[OutboxRow] = []
        blocked: set[tuple[str, str]] = set()

        with self._database.transaction() as s:
            rows = s.execute(
                select(OutboxRow).order_by(OutboxRow.client_timestamp, OutboxRow.id)
            ).scalars().all()

            for row in rows:
                if len(batch) >= max_n:
                    break
                key = (row.entity_type, row.client_id)
                if key in blocked:
                    continue
                if not self._is_ready(row, now):
                    blocked.add(key)
                    continue
                batch.append(row)

            for row in batch:
                row.status = ChangeStatus.IN_FLIGHT.value
            s.flush()
            entries = [_to_entry(row) for row in batch]

        if entries:
            log.info("outbox_batch_dequeued", size=len(entries), held_back_entities=len(blocked))
        return entries

    def mark_synced(self, entry: ChangeLogEntry, session: Session | None = None) -> None:
        """Drop an entry the server has applied."""
        with self._database.scope(session) as s:
            s.execute(delete(OutboxRow).where(OutboxRow.id == entry.id))

    def mark_failed(
        self,
        entry: ChangeLogEntry,
        error: str,
        retryable: bool = True,
        session: Session | None = None,
    ) -> ChangeLogEntry | None:
        """
        Record a failed delivery attempt.

        Retryable failures are retried after an exponential backoff until
        ``max_attempts`` is reached; after that, or for non-retryable errors,
        the entry waits for retry_failed().

        Args:
            entry: Entry that failed
            error: Error message to keep on the entry
            retryable: Whether another automatic attempt makes sense
            session: Optional enclosing transaction

        Returns:
            The updated entry, or None if it is no longer in the outbox
        """
        with self._database.scope(session) as s:
            row = s.get(OutboxRow, entry.id)
            if row is None:
                return None
            row.attempts += 1
            row.status = ChangeStatus.FAILED.value
            row.last_error = error
            if retryable and row.attempts < self._max_attempts:
                delay = backoff_delay(row.attempts, self._retry_base_delay, self._retry_max_delay)
                row.next_attempt_at = self._clock() + timedelta(seconds=delay)
            else:
                row.next_attempt_at = None
            s.flush()
            log.warning(
                "outbox_entry_failed",
                entry_id=row.id,
                entity_type=row.entity_type,
                client_id=row.client_id,
                attempts=row.attempts,
                retryable=retryable,
                next_attempt_at=row.next_attempt_at.isoformat() if row.next_attempt_at else None,
                error=error,
            )
            return _to_entry(row)

    def mark_conflicted(self, entry: ChangeLogEntry, session: Session | None = None) -> ChangeLogEntry:
        """Remove an entry whose change now lives in the conflict inbox."""
        with self._database.scope(session) as s:
            s.execute(delete(OutboxRow).where(OutboxRow.id == entry.id))
        return entry.model_copy(update={"status": ChangeStatus.CONFLICTED})

    def release(self, entries: Iterable[ChangeLogEntry], session: Session | None = None) -> int:
        """Put in-flight entries back to pending without counting an attempt."""
        ids = [entry.id for entry in entries]
        with self._database.scope(session) as s:
            return self._reset_status(s, ids, ChangeStatus.IN_FLIGHT)

    def requeue_in_flight(self) -> int:
        """Return entries stranded in flight by an interrupted push to pending.

        Their outcome is unknown; re-sending them is safe because creates
        are keyed and updates/deletes are version-checked.
        """
        with self._database.transaction() as s:
            count = self._reset_status(s, None, ChangeStatus.IN_FLIGHT)
        if count:
            log.info("outbox_in_flight_requeued", count=count)
        return count

    def retry_failed(self) -> int:
        """Make every failed entry eligible again, including exhausted ones."""
        with self._database.transaction() as s:
            rows = s.execute(
                select(OutboxRow).where(OutboxRow.status == ChangeStatus.FAILED.value)
            ).scalars().all()
            for row in rows:
                row.status = ChangeStatus.PENDING.value
                row.attempts = 0
                row.next_attempt_at = None
        if rows:
            log.info("outbox_failed_entries_reset", count=len(rows))
        return len(rows)

    def take_for_entity(
        self, entity_type: EntityType, client_id: str, session: Session | None = None
    ) -> list[ChangeLogEntry]:
        """Remove and return every queued entry of one entity, oldest first."""
        with self._database.scope(session) as s:
            rows = s.execute(
                self._entity_query(entity_type, client_id).order_by(
                    OutboxRow.client_timestamp, OutboxRow.id
                )
            ).scalars().all()
            entries = [_to_entry(row) for row in rows]
            for row in rows:
                s.delete(row)
            s.flush()
        return entries

    def has_pending_for(
        self, entity_type: EntityType, client_id: str, session: Session | None = None
    ) -> bool:
        """Whether any entry of the entity is still queued, whatever its status."""
        with self._database.scope(session) as s:
            return s.execute(self._entity_query(entity_type, client_id).limit(1)).first() is not None

    def counts(self) -> dict[ChangeStatus, int]:
        with self._database.transaction() as s:
            rows = s.execute(
                select(OutboxRow.status, func.count()).group_by(OutboxRow.status)
            ).all()
        counts = {status: 0 for status in (ChangeStatus.PENDING, ChangeStatus.IN_FLIGHT, ChangeStatus.FAILED)}
        for status, count in rows:
            counts[ChangeStatus(status)] = count
        return counts

    def list_entries(self, status: ChangeStatus | None = None) -> list[ChangeLogEntry]:
        with self._database.transaction() as s:
            query = select(OutboxRow)
            if status is not None:
                query = query.where(OutboxRow.status == status.value)
            rows = s.execute(query.order_by(OutboxRow.client_timestamp, OutboxRow.id)).scalars().all()
            return [_to_entry(row) for row in rows]

    def _is_ready(self, row: OutboxRow, now: datetime) -> bool:
        if row.status == ChangeStatus.PENDING.value:
            return True
        if row.status == ChangeStatus.FAILED.value:
            return row.next_attempt_at is not None and as_utc(row.next_attempt_at) <= now
        return False

    def _next_timestamp(self, session: Session) -> datetime:
        now = self._clock()
        meta = session.get(SyncMetaRow, LAST_TIMESTAMP_KEY)
        if meta is not None and meta.value:
            last = as_utc(datetime.fromisoformat(meta.value))
            if last > now:
                now = last
        if meta is None:
            meta = SyncMetaRow(key=LAST_TIMESTAMP_KEY)
            session.add(meta)
        meta.value = now.isoformat()
        meta.updated_at = self._clock()
        return now

    @staticmethod
    def _entity_query(entity_type: EntityType, client_id: str):
        return select(OutboxRow).where(
            OutboxRow.entity_type == entity_type.value,
            OutboxRow.client_id == client_id,
        )

    @staticmethod
    def _reset_status(session: Session, ids: list[int] | None, status: ChangeStatus) -> int:
        query = select(OutboxRow).where(OutboxRow.status == status.value)
        if ids is not None:
            if not ids:
                return 0
            query = query.where(OutboxRow.id.in_(ids))
        rows = session.execute(query).scalars().all()
        for row in rows:
            row.status = ChangeStatus.PENDING.value
        session.flush()
        return len(rows)
