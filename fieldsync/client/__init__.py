"""Device side: local replica, outbox, conflict inbox and transports."""

from fieldsync.client.conflict_inbox import ConflictInbox, is_own_write_echo
from fieldsync.client.entity_store import LocalEntity, LocalEntityStore
from fieldsync.client.outbox import Outbox, create_idempotency_key
from fieldsync.client.transport import HttpSyncTransport, InProcessTransport, SyncTransport

__all__ = [
    "ConflictInbox",
    "HttpSyncTransport",
    "InProcessTransport",
    "LocalEntity",
    "LocalEntityStore",
    "Outbox",
    "SyncTransport",
    "create_idempotency_key",
    "is_own_write_echo",
]
