"""Pydantic models for syncable entities, outbox entries and conflicts."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class EntityType(str, Enum):
    """Entity tables that take part in synchronization."""

    SUPPLIER = "suppliers"
    PRODUCT = "products"
    RATE = "rates"
    COLLECTION = "collections"
    PAYMENT = "payments"


class Operation(str, Enum):
    """Mutation kinds a device can record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeStatus(str, Enum):
    """Lifecycle of an outbox entry."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICTED = "conflicted"


class ResolutionStrategy(str, Enum):
    """Choices offered to the user for an unresolved conflict."""

    KEEP_SERVER = "keep_server"
    RETRY_CLIENT_WINS = "retry_client_wins"


class ConflictReason(str, Enum):
    """Why the server refused to apply a change."""

    VERSION_MISMATCH = "version_mismatch"
    PRECEDING_CHANGE_CONFLICTED = "preceding_change_conflicted"


class SyncableEntity(BaseModel):
    """Server-authoritative state of one replicated row."""

    entity_type: EntityType = Field(default=..., description="Table the row belongs to")
    id: int = Field(default=..., ge=1, description="Server-assigned identifier")
    client_id: str = Field(default=..., min_length=1, description="Client-generated identifier")
    version: int = Field(default=..., ge=1, description="Optimistic concurrency token")
    payload: dict[str, Any] = Field(default_factory=dict, description="Entity-specific fields")
    created_at: datetime | None = Field(default=None, description="Creation timestamp")
    updated_at: datetime = Field(default=..., description="Timestamp of the last accepted mutation")
    deleted_at: datetime | None = Field(default=None, description="Soft-delete tombstone")

    @property
    def is_deleted(self) -> bool:
        """Check if the row carries a tombstone."""
        return self.deleted_at is not None

    model_config = {
        "json_schema_extra": {
            "example": {
                "entity_type": "suppliers",
                "id": 1,
                "client_id": "5b0f6c1e9a2d4f0c8e3b7a6d5c4b3a29",
                "version": 2,
                "payload": {"name": "Green Valley Estate", "phone": "+94 77 123 4567"},
                "created_at": "2024-03-01T06:12:00Z",
                "updated_at": "2024-03-02T09:40:11Z",
                "deleted_at": None,
            }
        }
    }


class ChangeLogEntry(BaseModel):
    """A locally-originated mutation waiting in the device outbox."""

    id: int | None = Field(default=None, description="Local outbox identifier")
    entity_type: EntityType = Field(default=..., description="Table the change targets")
    entity_id: int | None = Field(default=None, description="Server id, once known")
    client_id: str = Field(default=..., min_length=1, description="Client-generated identifier")
    operation: Operation = Field(default=..., description="Kind of mutation")
    base_version: int | None = Field(
        default=None, ge=1, description="Version the change was made against (None for create)"
    )
    payload: dict[str, Any] = Field(default_factory=dict, description="Fields written by the change")
    idempotency_key: str | None = Field(default=None, description="Dedup key for create")
    client_timestamp: datetime | None = Field(default=None, description="Local enqueue time")
    status: ChangeStatus = Field(default=ChangeStatus.PENDING, description="Outbox status")
    attempts: int = Field(default=0, ge=0, description="Failed delivery attempts")
    last_error: str | None = Field(default=None, description="Most recent failure message")

    @model_validator(mode="after")
    def check_operation_fields(self) -> "ChangeLogEntry":
        """Validate that create and update/delete carry the fields they need."""
        if self.operation is Operation.CREATE:
            if self.base_version is not None:
                raise ValueError("create entries must not carry a base_version")
        elif self.base_version is None:
            raise ValueError(f"{self.operation.value} entries require a base_version")
        return self


class ConflictRecord(BaseModel):
    """A change the server refused, with both sides of the disagreement."""

    id: int | None = Field(default=None, description="Local inbox identifier")
    entity_type: EntityType = Field(default=..., description="Table of the conflicting row")
    entity_id: int = Field(default=..., ge=1, description="Server id of the row")
    client_id: str = Field(default=..., min_length=1, description="Client-generated identifier")
    reason: ConflictReason = Field(default=ConflictReason.VERSION_MISMATCH)
    server_version: int = Field(default=..., ge=1, description="Current server version")
    server_payload: dict[str, Any] = Field(default_factory=dict, description="Current server fields")
    server_updated_at: datetime = Field(default=..., description="Server updated_at")
    server_deleted_at: datetime | None = Field(default=None, description="Server tombstone")
    client_operation: Operation = Field(default=..., description="Operation the client attempted")
    client_base_version: int | None = Field(default=None, description="Version the client wrote against")
    client_payload: dict[str, Any] = Field(default_factory=dict, description="Fields the client tried to write")
    suggested_strategy: ResolutionStrategy = Field(default=ResolutionStrategy.KEEP_SERVER)
    created_at: datetime | None = Field(default=None, description="When the conflict was recorded")

    def server_entity(self) -> SyncableEntity:
        """Rebuild the server's view of the row."""
        return SyncableEntity(
            entity_type=self.entity_type,
            id=self.entity_id,
            client_id=self.client_id,
            version=self.server_version,
            payload=self.server_payload,
            updated_at=self.server_updated_at,
            deleted_at=self.server_deleted_at,
        )
