"""Cursor tracking for maintaining pull state on a device."""

from datetime import datetime
from typing import Callable

import structlog

from fieldsync.storage.client_tables import SyncMetaRow
from fieldsync.storage.database import Database
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class CursorTracker:
    """Persists the pull cursor in the device's sync_meta table."""

    CURSOR_KEY: str = "pull_cursor"

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        """
        Initialize cursor tracker.

        Args:
            database: Local replica database
            clock: Time source for the updated_at column
        """
        self._database = database
        self._clock = clock

    def load_cursor(self) -> str | None:
        """
        Load the last persisted pull cursor.

        Returns:
            Cursor, or None if the device never completed a pull
        """
        with self._database.transaction() as session:
            row = session.get(SyncMetaRow, self.CURSOR_KEY)
            return row.value if row is not None else None

    def save_cursor(self, cursor: str) -> None:
        """
        Persist a pull cursor.

        Called after every applied pull page, so an interrupted run resumes
        from the last page it fully stored.

        Args:
            cursor: Cursor returned by the server
        """
        with self._database.transaction() as session:
            row = session.get(SyncMetaRow, self.CURSOR_KEY)
            if row is None:
                row = SyncMetaRow(key=self.CURSOR_KEY)
                session.add(row)
            row.value = cursor
            row.updated_at = self._clock()
        log.debug("pull_cursor_saved")

    def reset(self) -> None:
        """Forget the cursor so the next pull starts from the beginning."""
        with self._database.transaction() as session:
            row = session.get(SyncMetaRow, self.CURSOR_KEY)
            if row is not None:
                session.delete(row)
        log.info("pull_cursor_reset")
