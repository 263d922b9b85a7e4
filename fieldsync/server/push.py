"""Push endpoint logic: apply a batch of client changes independently."""

from typing import Any

import structlog
from pydantic import ValidationError

from fieldsync.errors import BatchTooLargeError
from fieldsync.models.config import SyncConfig
from fieldsync.models.entity import ConflictReason, EntityType, Operation
from fieldsync.models.protocol import (
    Conflict,
    ErrorCode,
    Outcome,
    PushChange,
    PushRequest,
    PushResponse,
    PushResult,
    Rejected,
    rejected,
)
from fieldsync.server.audit import SyncAuditLog
from fieldsync.server.devices import DeviceRegistry
from fieldsync.server.resolver import ConflictResolver

log = structlog.stdlib.get_logger()


def _describe(raw: Any) -> tuple[str | None, EntityType | None, Operation | None]:
    """Best-effort correlation fields of a change that failed validation."""
    if not isinstance(raw, dict):
        return None, None, None
    change_id = raw.get("change_id")
    try:
        entity_type = EntityType(raw.get("entity_type"))
    except ValueError:
        entity_type = None
    try:
        operation = Operation(raw.get("operation"))
    except ValueError:
        operation = None
    return (str(change_id) if change_id is not None else None), entity_type, operation


class PushService:
    """Applies every change of a push batch in order, each in its own transaction.

    One change's conflict or rejection never rolls back another. Within a
    batch, later changes to an entity whose earlier change did not apply are
    blocked, because their base versions were computed on top of the change
    the server refused.
    """

    def __init__(
        self,
        resolver: ConflictResolver,
        devices: DeviceRegistry,
        audit: SyncAuditLog,
        sync_config: SyncConfig | None = None,
    ):
        self._resolver = resolver
        self._devices = devices
        self._audit = audit
        self._config = sync_config or SyncConfig()

    def push(self, request: PushRequest) -> PushResponse:
        """
        Apply a batch of changes.

        Args:
            request: Device id plus raw changes in outbox order

        Returns:
            Outcomes bucketed into success, conflicts and errors

        Raises:
            BatchTooLargeError: If the batch exceeds max_push_batch_size
        """
        size = len(request.changes)
        if size > self._config.max_push_batch_size:
            log.warning(
                "push_batch_too_large",
                device_id=request.device_id,
                size=size,
                limit=self._config.max_push_batch_size,
            )
            raise BatchTooLargeError(size, self._config.max_push_batch_size)

        device_id = request.device_id
        self._devices.touch(device_id, pushed=True)
        log.info("push_started", device_id=device_id, changes=size)

        response = PushResponse()
        conflicted: set[tuple[EntityType, str]] = set()
        failed: set[tuple[EntityType, str]] = set()

        for raw in request.changes:
            try:
                change = PushChange.model_validate(raw)
            except ValidationError as e:
                change_id, entity_type, operation = _describe(raw)
                log.info("push_change_invalid", device_id=device_id, change_id=change_id)
                result = PushResult(
                    change_id=change_id,
                    entity_type=entity_type,
                    operation=operation,
                    outcome=rejected(ErrorCode.INVALID_CHANGE, _first_error(e)),
                )
                response.add(result)
                self._audit.record(device_id, result)
                continue

            outcome = self._apply(change, device_id, conflicted, failed)

            keys = change.entity_keys()
            if isinstance(outcome, Conflict):
                conflicted |= keys
                conflicted |= {
                    (change.entity_type, f"id:{outcome.record.entity_id}"),
                    (change.entity_type, f"cid:{outcome.record.client_id}"),
                }
            elif isinstance(outcome, Rejected):
                failed |= keys

            result = PushResult(
                change_id=change.change_id,
                entity_type=change.entity_type,
                operation=change.operation,
                outcome=outcome,
            )
            response.add(result)
            self._audit.record(device_id, result, client_id=change.client_id)

        log.info(
            "push_completed",
            device_id=device_id,
            success=len(response.success),
            conflicts=len(response.conflicts),
            errors=len(response.errors),
        )
        return response

    def _apply(
        self,
        change: PushChange,
        device_id: str,
        conflicted: set[tuple[EntityType, str]],
        failed: set[tuple[EntityType, str]],
    ) -> Outcome:
        keys = change.entity_keys()
        if keys & conflicted:
            return self._resolver.conflict_for(change, ConflictReason.PRECEDING_CHANGE_CONFLICTED)
        if keys & failed:
            return rejected(
                ErrorCode.BLOCKED_BY_PRIOR_FAILURE,
                "An earlier change to this entity in the batch did not apply",
                retryable=True,
            )
        return self._resolver.apply_change(change, device_id)


def _first_error(error: ValidationError) -> str:
    details = error.errors()
    if not details:
        return str(error)
    first = details[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message
