"""Synchronization module for device push/pull runs."""

from fieldsync.sync.cursor_tracker import CursorTracker
from fieldsync.sync.models import SyncReport, SyncStatus
from fieldsync.sync.sync_coordinator import SyncCoordinator

__all__ = [
    "CursorTracker",
    "SyncCoordinator",
    "SyncReport",
    "SyncStatus",
]
