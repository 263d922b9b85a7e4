"""Authoritative sync server: conflict resolution, push, pull and HTTP API."""

from fieldsync.server.idempotency import Existing, IdempotencyGuard, Reserved
from fieldsync.server.payloads import FieldWhitelistValidator, PayloadValidator
from fieldsync.server.pull import PullCursor
from fieldsync.server.resolver import ConflictResolver
from fieldsync.server.service import SyncServer

__all__ = [
    "ConflictResolver",
    "Existing",
    "FieldWhitelistValidator",
    "IdempotencyGuard",
    "PayloadValidator",
    "PullCursor",
    "Reserved",
    "SyncServer",
]
