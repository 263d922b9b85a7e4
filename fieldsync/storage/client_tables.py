"""SQLAlchemy tables of a device's local replica."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fieldsync.storage.types import UTCDateTime


class ClientBase(DeclarativeBase):
    pass


class LocalEntityRow(ClientBase):
    """Local copy of an entity, including changes the server has not seen."""

    __tablename__ = "local_entities"
    __table_args__ = (
        UniqueConstraint("entity_type", "server_id", name="uq_local_entities_type_server_id"),
    )

    local_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    server_id: Mapped[int | None] = mapped_column(Integer)
    # speculative: bumped on every local mutation
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # last version confirmed by the server
    server_version: Mapped[int | None] = mapped_column(Integer)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    dirty: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class OutboxRow(ClientBase):
    __tablename__ = "outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    base_version: Mapped[int | None] = mapped_column(Integer)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String(255))
    client_timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    # None on a failed entry means it waits for retry_failed()
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)


class ConflictRow(ClientBase):
    __tablename__ = "conflicts"
    __table_args__ = (
        UniqueConstraint("entity_type", "client_id", name="uq_conflicts_type_client_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    server_version: Mapped[int] = mapped_column(Integer, nullable=False)
    server_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    server_updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    server_deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    client_operation: Mapped[str] = mapped_column(String(16), nullable=False)
    client_base_version: Mapped[int | None] = mapped_column(Integer)
    client_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    suggested_strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class SyncMetaRow(ClientBase):
    """Key/value state of the sync client, such as the pull cursor."""

    __tablename__ = "sync_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
