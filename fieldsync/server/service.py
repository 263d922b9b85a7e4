"""Sync server facade wiring the resolver, push, pull and device registry."""

from datetime import datetime
from typing import Callable

import structlog

from fieldsync.models.config import SyncConfig
from fieldsync.models.protocol import (
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    SyncStatusResponse,
)
from fieldsync.server.audit import SyncAuditLog
from fieldsync.server.devices import DeviceRegistry
from fieldsync.server.idempotency import IdempotencyGuard
from fieldsync.server.payloads import PayloadValidator
from fieldsync.server.pull import PullService
from fieldsync.server.push import PushService
from fieldsync.server.resolver import ConflictResolver
from fieldsync.storage.database import Database
from fieldsync.storage.repository import EntityRepository, SqlAlchemyEntityRepository
from fieldsync.storage.types import utc_now

log = structlog.stdlib.get_logger()


class SyncServer:
    """Server side of the sync protocol for one database.

    Holds no per-request state; concurrent requests coordinate only through
    the version column of the entity rows.
    """

    def __init__(
        self,
        database: Database,
        config: SyncConfig | None = None,
        repository: EntityRepository | None = None,
        validator: PayloadValidator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.database = database
        self.config = config or SyncConfig()
        repository = repository or SqlAlchemyEntityRepository()

        self.devices = DeviceRegistry(database, clock)
        self.resolver = ConflictResolver(
            database,
            repository=repository,
            guard=IdempotencyGuard(repository, clock),
            validator=validator,
            clock=clock,
        )
        self._push = PushService(
            self.resolver, self.devices, SyncAuditLog(database, clock), self.config
        )
        self._pull = PullService(database, repository, self.devices, self.config, clock)

        log.info(
            "sync_server_initialized",
            max_push_batch_size=self.config.max_push_batch_size,
            pull_page_size=self.config.pull_page_size,
        )

    def push(self, request: PushRequest) -> PushResponse:
        return self._push.push(request)

    def pull(self, request: PullRequest) -> PullResponse:
        return self._pull.pull(request)

    def status(self, device_id: str) -> SyncStatusResponse:
        return self._pull.status(device_id)
