"""Pull endpoint logic and the opaque change-feed cursor."""

import base64
import binascii
import json
from datetime import datetime, timedelta
from typing import Callable

import structlog
from pydantic import BaseModel, Field, ValidationError

from fieldsync.errors import InvalidCursorError
from fieldsync.models.config import SyncConfig
from fieldsync.models.entity import EntityType
from fieldsync.models.protocol import PullRequest, PullResponse, SyncStatusResponse
from fieldsync.server.devices import DeviceRegistry
from fieldsync.storage.database import Database
from fieldsync.storage.repository import EntityRepository, KeysetPosition
from fieldsync.storage.types import as_utc, utc_now

log = structlog.stdlib.get_logger()


class CursorPosition(BaseModel):
    """Keyset position of the last row delivered for one entity type."""

    updated_at: datetime
    id: int | None = Field(default=None, description="None means strictly after updated_at")

    def keyset(self) -> KeysetPosition:
        return (as_utc(self.updated_at), self.id)


class PullCursor(BaseModel):
    """Per-type positions in the server change feed.

    Encoded as URL-safe base64 JSON. A bare ISO-8601 timestamp is accepted as
    well and applies to every entity type.
    """

    positions: dict[EntityType, CursorPosition] = Field(default_factory=dict)

    def encode(self) -> str:
        raw = self.model_dump_json().encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, token: str | None) -> "PullCursor":
        """
        Parse a cursor sent by a client.

        Args:
            token: Opaque cursor, ISO-8601 timestamp, or None for a full pull

        Returns:
            Parsed cursor

        Raises:
            InvalidCursorError: If the token is neither form
        """
        if token is None or not token.strip():
            return cls()
        token = token.strip()

        try:
            padded = token + "=" * (-len(token) % 4)
            data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
            if isinstance(data, dict):
                return cls.model_validate(data)
        except (binascii.Error, UnicodeError, ValueError, ValidationError):
            pass

        try:
            instant = datetime.fromisoformat(token.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidCursorError(f"Unrecognized pull cursor: {token[:64]!r}") from None

        instant = as_utc(instant)
        return cls(positions={t: CursorPosition(updated_at=instant) for t in EntityType})

    def position(self, entity_type: EntityType) -> KeysetPosition | None:
        current = self.positions.get(entity_type)
        return current.keyset() if current is not None else None

    def advanced(self, entity_type: EntityType, updated_at: datetime, entity_id: int) -> "PullCursor":
        """Copy of this cursor with one type moved forward."""
        positions = dict(self.positions)
        positions[entity_type] = CursorPosition(updated_at=updated_at, id=entity_id)
        return PullCursor(positions=positions)


class PullService:
    """Serves incremental pulls; tombstones are delivered like any other row.

    Pulls are read-only apart from the device registry, so repeating a pull
    with the same cursor returns the same rows (plus anything newer).
    """

    def __init__(
        self,
        database: Database,
        repository: EntityRepository,
        devices: DeviceRegistry,
        sync_config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._database = database
        self._repository = repository
        self._devices = devices
        self._config = sync_config or SyncConfig()
        self._clock = clock

    def pull(self, request: PullRequest) -> PullResponse:
        cursor = PullCursor.decode(request.cursor)
        limit = min(request.limit or self._config.pull_page_size, self._config.pull_page_size)
        entity_types = request.entity_types or list(EntityType)

        server_time = self._clock()
        # updated_at is stamped before commit; a row newer than this may still
        # have an uncommitted neighbour with an earlier stamp
        settle = self._config.pull_settle_seconds
        until = server_time - timedelta(seconds=settle) if settle else None
        entities = {}
        has_more = False
        with self._database.transaction() as session:
            for entity_type in entity_types:
                rows = self._repository.changed_since(
                    session, entity_type, cursor.position(entity_type), limit + 1, until=until
                )
                if len(rows) > limit:
                    has_more = True
                    rows = rows[:limit]
                if rows:
                    last = rows[-1]
                    cursor = cursor.advanced(entity_type, last.updated_at, last.id)
                entities[entity_type] = rows

        token = cursor.encode()
        self._devices.touch(request.device_id, pulled=True, cursor=token)

        response = PullResponse(
            entities=entities, cursor=token, has_more=has_more, server_time=server_time
        )
        log.info(
            "pull_completed",
            device_id=request.device_id,
            rows=response.total,
            has_more=has_more,
            entity_types=[t.value for t in entity_types],
        )
        return response

    def status(self, device_id: str) -> SyncStatusResponse:
        """Count rows changed since the device's last pull cursor."""
        device = self._devices.get(device_id)
        try:
            cursor = PullCursor.decode(device.last_cursor if device else None)
        except InvalidCursorError:
            log.warning("stored_cursor_unreadable", device_id=device_id)
            cursor = PullCursor()

        with self._database.transaction() as session:
            pending = {
                entity_type: self._repository.count_changed_since(
                    session, entity_type, cursor.position(entity_type)
                )
                for entity_type in EntityType
            }
        return SyncStatusResponse(device=device, pending_changes=pending)
