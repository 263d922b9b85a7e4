"""Wire models for the push/pull protocol and per-change outcomes."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import BaseModel, Field, model_validator

from fieldsync.models.entity import (
    ChangeLogEntry,
    ConflictRecord,
    EntityType,
    Operation,
    SyncableEntity,
)


class ErrorCode(str, Enum):
    """Reasons a change can be rejected without a conflict."""

    INVALID_CHANGE = "invalid_change"
    VALIDATION_FAILED = "validation_failed"
    MISSING_TARGET = "missing_target"
    BLOCKED_BY_PRIOR_FAILURE = "blocked_by_prior_failure"
    TRANSIENT = "transient"
    INTERNAL = "internal"


class SyncError(BaseModel):
    """Error attached to a rejected change."""

    code: ErrorCode
    message: str
    retryable: bool = False


class Created(BaseModel):
    kind: Literal["created"] = "created"
    entity: SyncableEntity
    replayed: bool = Field(default=False, description="True when an earlier create was returned")


class Updated(BaseModel):
    kind: Literal["updated"] = "updated"
    entity: SyncableEntity


class Deleted(BaseModel):
    kind: Literal["deleted"] = "deleted"
    entity: SyncableEntity


class Conflict(BaseModel):
    kind: Literal["conflict"] = "conflict"
    record: ConflictRecord


class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    error: SyncError


Outcome = Annotated[
    Union[Created, Updated, Deleted, Conflict, Rejected],
    Field(discriminator="kind"),
]

APPLIED_KINDS = frozenset({"created", "updated", "deleted"})


def rejected(code: ErrorCode, message: str, retryable: bool = False) -> Rejected:
    """Build a Rejected outcome."""
    return Rejected(error=SyncError(code=code, message=message, retryable=retryable))


class PushChange(BaseModel):
    """One change as sent by a device."""

    change_id: str | None = Field(default=None, description="Client correlation id")
    entity_type: EntityType
    operation: Operation
    entity_id: int | None = Field(default=None, ge=1)
    client_id: str | None = Field(default=None, min_length=1)
    base_version: int | None = Field(default=None, ge=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, min_length=1)
    client_timestamp: datetime | None = None

    @model_validator(mode="after")
    def check_target(self) -> "PushChange":
        """Validate the identifiers and version each operation needs."""
        if self.operation is Operation.CREATE:
            if self.client_id is None:
                raise ValueError("create requires client_id")
            if self.idempotency_key is None:
                raise ValueError("create requires idempotency_key")
        else:
            if self.entity_id is None and self.client_id is None:
                raise ValueError(f"{self.operation.value} requires entity_id or client_id")
            if self.base_version is None:
                raise ValueError(f"{self.operation.value} requires base_version")
        return self

    @classmethod
    def from_entry(cls, entry: ChangeLogEntry) -> "PushChange":
        """Build the wire form of an outbox entry."""
        return cls(
            change_id=str(entry.id) if entry.id is not None else None,
            entity_type=entry.entity_type,
            operation=entry.operation,
            entity_id=entry.entity_id,
            client_id=entry.client_id,
            base_version=entry.base_version,
            payload=entry.payload,
            idempotency_key=entry.idempotency_key,
            client_timestamp=entry.client_timestamp,
        )

    def entity_keys(self) -> set[tuple[EntityType, str]]:
        """Keys identifying the target entity within a batch."""
        keys: set[tuple[EntityType, str]] = set()
        if self.client_id is not None:
            keys.add((self.entity_type, f"cid:{self.client_id}"))
        if self.entity_id is not None:
            keys.add((self.entity_type, f"id:{self.entity_id}"))
        return keys


class PushRequest(BaseModel):
    """Batch of changes from one device.

    Changes are kept as raw objects so that one malformed change is rejected on
    its own instead of failing the whole request.
    """

    device_id: str = Field(default=..., min_length=1, max_length=255)
    changes: list[Any] = Field(default_factory=list)


class PushResult(BaseModel):
    """Outcome of one change, echoed with its correlation id."""

    change_id: str | None = None
    entity_type: EntityType | None = None
    operation: Operation | None = None
    outcome: Outcome


class PushResponse(BaseModel):
    """Per-change outcomes grouped into buckets."""

    success: list[PushResult] = Field(default_factory=list)
    conflicts: list[PushResult] = Field(default_factory=list)
    errors: list[PushResult] = Field(default_factory=list)

    def add(self, result: PushResult) -> None:
        """File a result in the bucket matching its outcome."""
        if result.outcome.kind in APPLIED_KINDS:
            self.success.append(result)
        elif result.outcome.kind == "conflict":
            self.conflicts.append(result)
        else:
            self.errors.append(result)

    def results(self) -> Iterator[PushResult]:
        yield from self.success
        yield from self.conflicts
        yield from self.errors

    @property
    def all_succeeded(self) -> bool:
        return not self.conflicts and not self.errors


class PullRequest(BaseModel):
    """Request for server changes after a cursor."""

    device_id: str = Field(default=..., min_length=1, max_length=255)
    cursor: str | None = Field(default=None, description="Opaque cursor or ISO-8601 timestamp")
    entity_types: list[EntityType] | None = Field(default=None, description="Restrict to these types")
    limit: int | None = Field(default=None, ge=1, description="Rows per entity type")


class PullResponse(BaseModel):
    """Changed rows per entity type plus the cursor to persist."""

    entities: dict[EntityType, list[SyncableEntity]] = Field(default_factory=dict)
    cursor: str
    has_more: bool = False
    server_time: datetime

    @property
    def total(self) -> int:
        return sum(len(rows) for rows in self.entities.values())


class DeviceRecord(BaseModel):
    """Server-side registry entry for a device."""

    device_id: str
    first_seen_at: datetime
    last_seen_at: datetime
    last_push_at: datetime | None = None
    last_pull_at: datetime | None = None
    last_cursor: str | None = None


class SyncStatusResponse(BaseModel):
    """What the server holds that a device has not pulled yet."""

    device: DeviceRecord | None = None
    pending_changes: dict[EntityType, int] = Field(default_factory=dict)
