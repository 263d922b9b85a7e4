"""Synchronization coordinator for a device's push/pull cycle."""

import time
from datetime import datetime
from typing import Any, Callable

import structlog

from fieldsync.client.conflict_inbox import ConflictInbox, is_own_write_echo
from fieldsync.client.entity_store import LocalEntity, LocalEntityStore
from fieldsync.client.outbox import Outbox, create_idempotency_key
from fieldsync.client.transport import SyncTransport
from fieldsync.errors import TransportError
from fieldsync.models.config import ClientConfig
from fieldsync.models.entity import (
    ChangeLogEntry,
    ChangeStatus,
    ConflictRecord,
    EntityType,
    Operation,
    ResolutionStrategy,
    SyncableEntity,
)
from fieldsync.models.protocol import (
    Conflict,
    ErrorCode,
    Outcome,
    PullRequest,
    PushChange,
    PushRequest,
    PushResponse,
    Rejected,
)
from fieldsync.storage.database import Database
from fieldsync.storage.types import utc_now
from fieldsync.sync.cursor_tracker import CursorTracker
from fieldsync.sync.models import SyncReport, SyncStatus

log = structlog.stdlib.get_logger()


def _as_stored(entry: ChangeLogEntry, outcome: Outcome | None) -> ChangeLogEntry:
    """The entry with the payload the server reported after normalising it."""
    if isinstance(outcome, Conflict):
        return entry.model_copy(update={"payload": outcome.record.client_payload})
    return entry


class SyncCoordinator:
    """Orchestrates local mutations, pushes and pulls for one device."""

    def __init__(
        self,
        database: Database,
        transport: SyncTransport,
        config: ClientConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize sync coordinator.

        Args:
            database: Local replica database (ClientBase tables)
            transport: Channel to the sync server
            config: Client configuration (device id, batch sizes, backoff)
            clock: Time source
        """
        self._database = database
        self._transport = transport
        self._config = config or ClientConfig()
        self._clock = clock
        self.device_id = self._config.device_id

        self.store = LocalEntityStore(database, clock)
        self.outbox = Outbox(
            database,
            max_attempts=self._config.max_attempts,
            retry_base_delay=self._config.retry_base_delay_seconds,
            retry_max_delay=self._config.retry_max_delay_seconds,
            clock=clock,
        )
        self.inbox = ConflictInbox(database, self.store, self.outbox, clock)
        self._cursor_tracker = CursorTracker(database, clock)

        log.info("sync_coordinator_initialized", device_id=self.device_id)

    def record_mutation(
        self,
        entity_type: EntityType,
        operation: Operation,
        payload: dict[str, Any] | None = None,
        entity_id: int | None = None,
        client_id: str | None = None,
    ) -> LocalEntity:
        """
        Apply a local mutation and queue it for the server.

        Both writes share one local transaction, so a change is never visible
        locally without also being queued.

        Args:
            entity_type: Entity table
            operation: create, update or delete
            payload: Fields written by the mutation
            entity_id: Server id of the target (update/delete)
            client_id: Client id of the target (generated for create if None)

        Returns:
            The local entity after the mutation
        """
        payload = dict(payload or {})
        with self._database.transaction() as session:
            local = self.store.apply_local_mutation(
                entity_type, operation, payload, entity_id=entity_id, client_id=client_id, session=session
            )
            if operation is Operation.CREATE:
                base_version = None
                change_payload = local.payload
            else:
                base_version = local.version - 1
                change_payload = payload if operation is Operation.UPDATE else {}

            entry = self.outbox.enqueue(
                ChangeLogEntry(
                    entity_type=entity_type,
                    entity_id=local.server_id,
                    client_id=local.client_id,
                    operation=operation,
                    base_version=base_version,
                    payload=change_payload,
                ),
                session=session,
            )

        log.info(
            "local_mutation_recorded",
            entity_type=entity_type.value,
            client_id=local.client_id,
            operation=operation.value,
            version=local.version,
            entry_id=entry.id,
        )
        return local

    def sync_once(self) -> SyncReport:
        """
        Perform one synchronization run: push the outbox, then pull.

        This method:
        1. Returns entries stranded in flight by an interrupted run to pending
        2. Pushes outbox batches and applies each per-change outcome
        3. Pulls server changes page by page, storing the cursor after each page

        Returns:
            SyncReport with counts and errors of the run
        """
        start_time = self._clock()
        started = time.monotonic()
        report = SyncReport(device_id=self.device_id, start_time=start_time)
        log.info("sync_started", device_id=self.device_id)

        self.outbox.requeue_in_flight()
        self._push_outbox(report)
        self._pull_changes(report)

        report.end_time = self._clock()
        report.duration_seconds = time.monotonic() - started
        report.cursor = self._cursor_tracker.load_cursor()

        log.info(
            "sync_completed",
            device_id=self.device_id,
            changes_pushed=report.changes_pushed,
            conflicts=report.conflicts,
            changes_failed=report.changes_failed,
            entities_pulled=report.entities_pulled,
            duration_seconds=report.duration_seconds,
            errors=len(report.errors),
        )
        return report

    def status(self) -> SyncStatus:
        counts = self.outbox.counts()
        return SyncStatus(
            pending=counts[ChangeStatus.PENDING],
            in_flight=counts[ChangeStatus.IN_FLIGHT],
            failed=counts[ChangeStatus.FAILED],
            conflicts=self.inbox.count(),
            cursor=self._cursor_tracker.load_cursor(),
        )

    def conflicts(self) -> list[ConflictRecord]:
        return self.inbox.list()

    def resolve_conflict(self, record_id: int, strategy: ResolutionStrategy) -> ChangeLogEntry | None:
        return self.inbox.resolve(record_id, strategy)

    def retry_failed(self) -> int:
        return self.outbox.retry_failed()

    def _push_outbox(self, report: SyncReport) -> None:
        for _ in range(self._config.max_batches_per_sync):
            batch = self.outbox.dequeue_batch(self._config.push_batch_size)
            if not batch:
                return

            request = PushRequest(
                device_id=self.device_id,
                changes=[PushChange.from_entry(entry).model_dump(mode="json") for entry in batch],
            )
            try:
                response = self._transport.push(request)
            except TransportError as e:
                # outcome unknown: the identical entries are sent again later
                log.warning("push_failed", device_id=self.device_id, size=len(batch), error=str(e))
                for entry in batch:
                    self.outbox.mark_failed(entry, f"transport: {e}", retryable=True)
                report.changes_failed += len(batch)
                report.errors.append(f"Push failed: {e}")
                return

            self._apply_push_response(batch, response, report)

    def _apply_push_response(
        self, batch: list[ChangeLogEntry], response: PushResponse, report: SyncReport
    ) -> None:
        """Apply outcomes in batch order, matched to entries by change_id."""
        position = {str(entry.id): index for index, entry in enumerate(batch)}
        outcomes: dict[str, Outcome] = {}
        for result in response.results():
            if result.change_id in position and result.change_id not in outcomes:
                outcomes[result.change_id] = result.outcome
            else:
                log.warning("push_result_unmatched", change_id=result.change_id)

        done: set[int] = set()
        for index, entry in enumerate(batch):
            if entry.id in done:
                continue
            outcome = outcomes.get(str(entry.id))
            if outcome is None:
                log.warning("push_result_missing", entry_id=entry.id)
                self.outbox.release([entry])
                continue
            self._handle_outcome(entry, outcome, batch[index:], outcomes, done, report)
            done.add(entry.id)

    def _handle_outcome(
        self,
        entry: ChangeLogEntry,
        outcome: Outcome,
        remaining: list[ChangeLogEntry],
        outcomes: dict[str, Outcome],
        done: set[int],
        report: SyncReport,
    ) -> None:
        if isinstance(outcome, Conflict):
            self._handle_conflict(entry, outcome.record, remaining, outcomes, done, report)
        elif isinstance(outcome, Rejected):
            self._handle_rejection(entry, outcome, done, report)
        else:
            with self._database.transaction() as session:
                self.outbox.mark_synced(entry, session=session)
                self._adopt(outcome.entity, session)
            report.changes_pushed += 1

    def _handle_conflict(
        self,
        entry: ChangeLogEntry,
        record: ConflictRecord,
        remaining: list[ChangeLogEntry],
        outcomes: dict[str, Outcome],
        done: set[int],
        report: SyncReport,
    ) -> None:
        chain = [
            e
            for e in remaining
            if e.entity_type == entry.entity_type and e.client_id == entry.client_id and e.id not in done
        ]
        # compare what the server would have stored, not what was queued
        as_stored = [_as_stored(e, outcomes.get(str(e.id))) for e in chain]
        echoed = 0
        for length in range(len(chain), 0, -1):
            if is_own_write_echo(as_stored[:length], record):
                echoed = length
                break

        with self._database.transaction() as session:
            if echoed:
                for applied in chain[:echoed]:
                    self.outbox.mark_synced(applied, session=session)
                self.outbox.release(chain[echoed:], session=session)
                self._adopt(record.server_entity(), session)
                done.update(e.id for e in chain)
                report.changes_pushed += echoed
                log.info(
                    "own_write_echo_dropped",
                    entity_type=entry.entity_type.value,
                    client_id=entry.client_id,
                    entries=echoed,
                    server_version=record.server_version,
                )
                return

            taken = self.outbox.take_for_entity(entry.entity_type, entry.client_id, session=session)
            later = [e for e in taken if e.id != entry.id]
            self.inbox.add(record, later, session=session)
            self.store.upsert_from_server(record.server_entity(), session=session)
            done.update(e.id for e in taken)
        report.conflicts += 1

    def _handle_rejection(
        self, entry: ChangeLogEntry, outcome: Rejected, done: set[int], report: SyncReport
    ) -> None:
        error = outcome.error
        if error.code is ErrorCode.BLOCKED_BY_PRIOR_FAILURE:
            self.outbox.release([entry])
            return

        if error.code is ErrorCode.MISSING_TARGET:
            self._recreate(entry, done)
            return

        self.outbox.mark_failed(entry, f"{error.code.value}: {error.message}", retryable=error.retryable)
        report.changes_failed += 1
        report.errors.append(
            f"{entry.entity_type.value} {entry.client_id} {entry.operation.value}: {error.message}"
        )

    def _recreate(self, entry: ChangeLogEntry, done: set[int]) -> None:
        """Replace the entity's queued entries with a create of its local state."""
        with self._database.transaction() as session:
            if entry.operation is Operation.DELETE:
                self.outbox.mark_synced(entry, session=session)
                log.info(
                    "delete_of_unknown_entity_dropped",
                    entity_type=entry.entity_type.value,
                    client_id=entry.client_id,
                )
                return

            local = self.store.get_by_client_id(entry.entity_type, entry.client_id, session=session)
            taken = self.outbox.take_for_entity(entry.entity_type, entry.client_id, session=session)
            done.update(e.id for e in taken)
            if local is None or local.is_deleted:
                return

            detached = self.store.detach_from_server(entry.entity_type, entry.client_id, session=session)
            self.outbox.enqueue(
                ChangeLogEntry(
                    entity_type=entry.entity_type,
                    client_id=entry.client_id,
                    operation=Operation.CREATE,
                    payload=detached.payload,
                    idempotency_key=create_idempotency_key(entry.client_id),
                ),
                session=session,
            )
        log.info(
            "missing_entity_requeued_as_create",
            entity_type=entry.entity_type.value,
            client_id=entry.client_id,
            dropped_entries=len(taken),
        )

    def _adopt(self, entity: SyncableEntity, session) -> None:
        """Take the server's state unless more local changes are still queued."""
        if self.outbox.has_pending_for(entity.entity_type, entity.client_id, session=session):
            self.store.record_server_version(entity, session=session)
        else:
            self.store.upsert_from_server(entity, session=session)

    def _pull_changes(self, report: SyncReport) -> None:
        cursor = self._cursor_tracker.load_cursor()
        for _ in range(self._config.max_pull_pages):
            try:
                response = self._transport.pull(PullRequest(device_id=self.device_id, cursor=cursor))
            except TransportError as e:
                log.warning("pull_failed", device_id=self.device_id, error=str(e))
                report.errors.append(f"Pull failed: {e}")
                return

            with self._database.transaction() as session:
                for rows in response.entities.values():
                    for entity in rows:
                        self._adopt(entity, session)
            report.entities_pulled += response.total

            self._cursor_tracker.save_cursor(response.cursor)
            cursor = response.cursor
            if not response.has_more:
                return

        log.info("pull_page_limit_reached", device_id=self.device_id, pages=self._config.max_pull_pages)
