"""Data models for device synchronization runs."""

from datetime import datetime

from pydantic import BaseModel, Field


class SyncReport(BaseModel):
    """Report of one sync run of a device."""

    device_id: str = Field(..., description="Device that ran the sync")
    changes_pushed: int = Field(default=0, ge=0, description="Outbox entries the server applied")
    conflicts: int = Field(default=0, ge=0, description="Entries moved to the conflict inbox")
    changes_failed: int = Field(default=0, ge=0, description="Entries marked failed")
    entities_pulled: int = Field(default=0, ge=0, description="Rows received from pulls")
    cursor: str | None = Field(default=None, description="Pull cursor after the run")
    duration_seconds: float = Field(default=0.0, ge=0.0, description="Sync duration in seconds")
    start_time: datetime = Field(..., description="Sync start timestamp")
    end_time: datetime | None = Field(default=None, description="Sync end timestamp")
    errors: list[str] = Field(
        default_factory=list, description="List of errors encountered during sync"
    )

    @property
    def total_changes(self) -> int:
        """Get total number of changes exchanged with the server."""
        return self.changes_pushed + self.entities_pulled

    @property
    def success(self) -> bool:
        """Check if sync completed without errors."""
        return len(self.errors) == 0


class SyncStatus(BaseModel):
    """User-visible counters of a device."""

    pending: int = Field(default=0, ge=0, description="Entries waiting to be pushed")
    in_flight: int = Field(default=0, ge=0, description="Entries sent without a known outcome")
    failed: int = Field(default=0, ge=0, description="Entries waiting for a retry")
    conflicts: int = Field(default=0, ge=0, description="Open records in the conflict inbox")
    cursor: str | None = Field(default=None, description="Stored pull cursor")

    @property
    def has_unsynced_changes(self) -> bool:
        return bool(self.pending or self.in_flight or self.failed)
