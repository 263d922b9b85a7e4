"""Data models for the fieldsync system."""

from fieldsync.models.config import (
    AppConfig,
    ClientConfig,
    DatabaseConfig,
    LoggingConfig,
    ServerConfig,
    SyncConfig,
)
from fieldsync.models.entity import (
    ChangeLogEntry,
    ChangeStatus,
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
    PullRequest,
    PullResponse,
    PushChange,
    PushRequest,
    PushResponse,
    PushResult,
    Rejected,
    SyncError,
    Updated,
)

__all__ = [
    "AppConfig",
    "ClientConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "ServerConfig",
    "SyncConfig",
    "ChangeLogEntry",
    "ChangeStatus",
    "ConflictReason",
    "ConflictRecord",
    "EntityType",
    "Operation",
    "ResolutionStrategy",
    "SyncableEntity",
    "Conflict",
    "Created",
    "Deleted",
    "ErrorCode",
    "Outcome",
    "PullRequest",
    "PullResponse",
    "PushChange",
    "PushRequest",
    "PushResponse",
    "PushResult",
    "Rejected",
    "SyncError",
    "Updated",
]
