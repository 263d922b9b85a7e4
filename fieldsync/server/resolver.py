"""Conflict resolver: applies one client change against current server state."""

from datetime import datetime
from typing import Any, Callable

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from fieldsync.errors import PayloadValidationError
from fieldsync.models.entity import (
    ConflictReason,
    ConflictRecord,
    EntityType,
    Operation,
    ResolutionStrategy,
    SyncableEntity,
)
from fieldsync.models.protocol import (
    Conflict,
    Created,
    Deleted,
    ErrorCode,
    Outcome,
    PushChange,
    Updated,
    rejected,
)
from fieldsync.server.idempotency import Existing, IdempotencyGuard
from fieldsync.server.payloads import FieldWhitelistValidator, PayloadValidator, strip_managed_fields
from fieldsync.storage.database import Database
from fieldsync.storage.repository import EntityRepository, SqlAlchemyEntityRepository
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class ConflictResolver:
    """Decides whether a client change is applied, refused as a conflict, or rejected.

    Version equality is the only test for "no conflict"; timestamps never
    decide. Every call runs in its own short transaction touching one entity
    row, so a failure here never affects other changes of the same batch.
    The server always wins: a stale change is not applied, and the returned
    Conflict carries both the server state and the client's attempted write.
    """

    def __init__(
        self,
        database: Database,
        repository: EntityRepository | None = None,
        guard: IdempotencyGuard | None = None,
        validator: PayloadValidator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._database = database
        self._repository = repository or SqlAlchemyEntityRepository()
        self._guard = guard or IdempotencyGuard(self._repository, clock)
        self._validator = validator or FieldWhitelistValidator()
        self._clock = clock

    def apply(
        self,
        entity_type: EntityType,
        operation: Operation,
        entity_id: int | None = None,
        client_id: str | None = None,
        base_version: int | None = None,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        device_id: str | None = None,
    ) -> Outcome:
        """
        Apply one change and report what happened.

        Args:
            entity_type: Target table
            operation: create, update or delete
            entity_id: Server id of the target (update/delete)
            client_id: Client id of the target; used when the server id is unknown
            base_version: Version the client wrote against (update/delete)
            payload: Fields to write
            idempotency_key: Dedup key (create)
            device_id: Device that sent the change

        Returns:
            Created, Updated, Deleted, Conflict or Rejected
        """
        payload = payload if payload is not None else {}
        try:
            if operation is Operation.CREATE:
                if client_id is None or idempotency_key is None:
                    return rejected(
                        ErrorCode.INVALID_CHANGE, "create requires client_id and idempotency_key"
                    )
                return self._create(entity_type, client_id, payload, idempotency_key, device_id)

            if base_version is None:
                return rejected(ErrorCode.INVALID_CHANGE, f"{operation.value} requires base_version")
            return self._mutate(entity_type, operation, entity_id, client_id, base_version, payload, device_id)

        except PayloadValidationError as e:
            log.info("change_failed_validation", entity_type=entity_type.value, error=str(e))
            return rejected(ErrorCode.VALIDATION_FAILED, str(e), retryable=False)
        except SQLAlchemyError as e:
            return self._transient(entity_type, operation, e)
        except Exception:
            return self._internal(entity_type, operation)

    def apply_change(self, change: PushChange, device_id: str | None = None) -> Outcome:
        """Apply a validated wire change."""
        return self.apply(
            entity_type=change.entity_type,
            operation=change.operation,
            entity_id=change.entity_id,
            client_id=change.client_id,
            base_version=change.base_version,
            payload=change.payload,
            idempotency_key=change.idempotency_key,
            device_id=device_id,
        )

    def conflict_for(self, change: PushChange, reason: ConflictReason) -> Outcome:
        """Refuse a change without applying it, reporting current server state."""
        try:
            with self._database.transaction() as session:
                current = self._repository.resolve(
                    session, change.entity_type, change.entity_id, change.client_id
                )
            if current is None:
                return rejected(
                    ErrorCode.BLOCKED_BY_PRIOR_FAILURE,
                    "An earlier change to this entity in the batch did not apply",
                    retryable=True,
                )
            return Conflict(
                record=self._build_record(
                    current,
                    change.operation,
                    change.base_version,
                    self._as_stored(change.entity_type, change.operation, change.payload),
                    reason,
                )
            )
        except SQLAlchemyError as e:
            return self._transient(change.entity_type, change.operation, e)
        except Exception:
            return self._internal(change.entity_type, change.operation)

    def _as_stored(
        self, entity_type: EntityType, operation: Operation, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """The part of a client payload the server would keep if it applied it."""
        if operation is Operation.DELETE:
            return {}
        try:
            return self._validator.validate(entity_type, operation, payload)
        except PayloadValidationError:
            return strip_managed_fields(payload)

    def _transient(self, entity_type: EntityType, operation: Operation, error: SQLAlchemyError) -> Outcome:
        log.warning(
            "change_failed_transient",
            entity_type=entity_type.value,
            operation=operation.value,
            error=str(error),
        )
        return rejected(
            ErrorCode.TRANSIENT, f"Database error: {error.__class__.__name__}", retryable=True
        )

    def _internal(self, entity_type: EntityType, operation: Operation) -> Outcome:
        log.exception("change_crashed", entity_type=entity_type.value, operation=operation.value)
        return rejected(ErrorCode.INTERNAL, "Internal error while applying change", retryable=True)

    def _create(
        self,
        entity_type: EntityType,
        client_id: str,
        payload: dict[str, Any],
        idempotency_key: str,
        device_id: str | None,
    ) -> Outcome:
        clean = self._validator.validate(entity_type, Operation.CREATE, payload)

        for attempt in range(2):
            try:
                with self._database.transaction() as session:
                    check = self._guard.check_or_reserve(session, entity_type, idempotency_key, client_id)
                    if isinstance(check, Existing):
                        return Created(entity=check.entity, replayed=True)

                    entity = self._repository.insert(
                        session, entity_type, client_id, clean, self._clock(), device_id
                    )
                    self._guard.bind(session, check, entity.id)
            except IntegrityError:
                # a concurrent create with the same key or client_id committed first
                if attempt == 1:
                    raise
                log.info(
                    "create_raced_retrying",
                    entity_type=entity_type.value,
                    client_id=client_id,
                    idempotency_key=idempotency_key,
                )
                continue

            log.info(
                "entity_created",
                entity_type=entity_type.value,
                entity_id=entity.id,
                client_id=client_id,
                device_id=device_id,
            )
            return Created(entity=entity)

        raise AssertionError("unreachable")

    def _mutate(
        self,
        entity_type: EntityType,
        operation: Operation,
        entity_id: int | None,
        client_id: str | None,
        base_version: int,
        payload: dict[str, Any],
        device_id: str | None,
    ) -> Outcome:
        clean = (
            self._validator.validate(entity_type, operation, payload)
            if operation is Operation.UPDATE
            else {}
        )

        with self._database.transaction() as session:
            current = self._repository.resolve(session, entity_type, entity_id, client_id)
            if current is None:
                log.info(
                    "change_missing_target",
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    client_id=client_id,
                )
                return rejected(
                    ErrorCode.MISSING_TARGET,
                    "Entity not found on the server; resend the change as a create",
                    retryable=True,
                )

            if base_version != current.version:
                return self._conflict(current, operation, base_version, clean)

            # updated_at never moves backwards for a row, even if the clock does
            now = max(self._clock(), current.updated_at)
            if operation is Operation.UPDATE:
                new_payload = {**current.payload, **clean}
                deleted_at = None
            else:
                new_payload = current.payload
                deleted_at = current.deleted_at or now

            written = self._repository.compare_and_set(
                session,
                entity_type,
                current.id,
                expected_version=current.version,
                payload=new_payload,
                deleted_at=deleted_at,
                updated_at=now,
                device_id=device_id,
            )
            if written is None:
                latest = self._repository.get(session, entity_type, current.id) or current
                return self._conflict(latest, operation, base_version, clean)

        log.info(
            "entity_mutated",
            entity_type=entity_type.value,
            entity_id=written.id,
            operation=operation.value,
            version=written.version,
            device_id=device_id,
        )
        if operation is Operation.UPDATE:
            return Updated(entity=written)
        return Deleted(entity=written)

    def _conflict(
        self,
        current: SyncableEntity,
        operation: Operation,
        base_version: int | None,
        payload: dict[str, Any],
    ) -> Conflict:
        log.info(
            "change_conflicted",
            entity_type=current.entity_type.value,
            entity_id=current.id,
            operation=operation.value,
            base_version=base_version,
            server_version=current.version,
        )
        return Conflict(
            record=self._build_record(
                current, operation, base_version, payload, ConflictReason.VERSION_MISMATCH
            )
        )

    def _build_record(
        self,
        current: SyncableEntity,
        operation: Operation,
        base_version: int | None,
        payload: dict[str, Any],
        reason: ConflictReason,
    ) -> ConflictRecord:
        return ConflictRecord(
            entity_type=current.entity_type,
            entity_id=current.id,
            client_id=current.client_id,
            reason=reason,
            server_version=current.version,
            server_payload=current.payload,
            server_updated_at=current.updated_at,
            server_deleted_at=current.deleted_at,
            client_operation=operation,
            client_base_version=base_version,
            client_payload=payload,
            suggested_strategy=ResolutionStrategy.KEEP_SERVER,
            created_at=self._clock(),
        )
