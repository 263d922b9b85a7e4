"""Registry of devices that talk to the sync server."""

from datetime import datetime
from typing import Callable

import structlog

from fieldsync.models.protocol import DeviceRecord
from fieldsync.storage.database import Database
from fieldsync.storage.tables import DeviceRow
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


def _to_record(row: DeviceRow) -> DeviceRecord:
    return DeviceRecord(
        device_id=row.device_id,
        first_seen_at=row.first_seen_at,
        last_seen_at=row.last_seen_at,
        last_push_at=row.last_push_at,
        last_pull_at=row.last_pull_at,
        last_cursor=row.last_cursor,
    )


class DeviceRegistry:
    """Tracks when each device was last seen and where its pull cursor stands."""

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self._database = database
        self._clock = clock

    def touch(
        self,
        device_id: str,
        pushed: bool = False,
        pulled: bool = False,
        cursor: str | None = None,
    ) -> DeviceRecord:
        """
        Register a device contact, creating the device on first sight.

        Args:
            device_id: Device identifier
            pushed: The contact was a push
            pulled: The contact was a pull
            cursor: Cursor handed to the device by a pull

        Returns:
            The updated registry record
        """
        now = self._clock()
        with self._database.transaction() as session:
            row = session.get(DeviceRow, device_id)
            if row is None:
                row = DeviceRow(device_id=device_id, first_seen_at=now, last_seen_at=now)
                session.add(row)
                log.info("device_registered", device_id=device_id)
            row.last_seen_at = now
            if pushed:
                row.last_push_at = now
            if pulled:
                row.last_pull_at = now
                if cursor is not None:
                    row.last_cursor = cursor
            session.flush()
            return _to_record(row)

    def get(self, device_id: str) -> DeviceRecord | None:
        with self._database.transaction() as session:
            row = session.get(DeviceRow, device_id)
            return _to_record(row) if row is not None else None
