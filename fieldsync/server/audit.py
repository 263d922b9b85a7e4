"""Per-change audit trail of pushes."""

from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from fieldsync.models.protocol import Conflict, PushResult, Rejected
from fieldsync.storage.database import Database
from fieldsync.storage.tables import SyncLogRow
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class SyncAuditLog:
    """Writes one sync_log row per pushed change.

    Rows are written in their own transaction after the change has been
    decided. Losing an audit row is logged; it never changes an outcome.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] = utc_now):
        self._database = database
        self._clock = clock

    def record(
        self, device_id: str, result: PushResult, client_id: str | None = None
    ) -> None:
        outcome = result.outcome
        row = SyncLogRow(
            device_id=device_id,
            change_id=result.change_id,
            entity_type=result.entity_type.value if result.entity_type else None,
            operation=result.operation.value if result.operation else None,
            client_id=client_id,
            outcome=outcome.kind,
            created_at=self._clock(),
        )
        if isinstance(outcome, Rejected):
            row.error_code = outcome.error.code.value
        elif isinstance(outcome, Conflict):
            row.entity_id = outcome.record.entity_id
            row.client_id = outcome.record.client_id
            row.version = outcome.record.server_version
        else:
            row.entity_id = outcome.entity.id
            row.client_id = outcome.entity.client_id
            row.version = outcome.entity.version

        try:
            with self._database.transaction() as session:
                session.add(row)
        except SQLAlchemyError as e:
            log.error(
                "sync_log_write_failed",
                device_id=device_id,
                change_id=result.change_id,
                outcome=outcome.kind,
                error=str(e),
            )
