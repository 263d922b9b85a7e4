"""SQLAlchemy tables of the authoritative server store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fieldsync.models.entity import EntityType
from fieldsync.storage.types import UTCDateTime


class ServerBase(DeclarativeBase):
    pass


class SyncableMixin:
    """Columns shared by every replicated entity table."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_device_id: Mapped[str | None] = mapped_column(String(255))


class SupplierRow(SyncableMixin, ServerBase):
    __tablename__ = "suppliers"


class ProductRow(SyncableMixin, ServerBase):
    __tablename__ = "products"


class RateRow(SyncableMixin, ServerBase):
    __tablename__ = "rates"


class CollectionRow(SyncableMixin, ServerBase):
    __tablename__ = "collections"


class PaymentRow(SyncableMixin, ServerBase):
    __tablename__ = "payments"


ENTITY_TABLES: dict[EntityType, type[SyncableMixin]] = {
    EntityType.SUPPLIER: SupplierRow,
    EntityType.PRODUCT: ProductRow,
    EntityType.RATE: RateRow,
    EntityType.COLLECTION: CollectionRow,
    EntityType.PAYMENT: PaymentRow,
}


class IdempotencyKeyRow(ServerBase):
    """A create that has been applied (or is being applied) under a client key."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (UniqueConstraint("entity_type", "key", name="uq_idempotency_keys_type_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class DeviceRow(ServerBase):
    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_push_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_pull_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    last_cursor: Mapped[str | None] = mapped_column(Text)


class SyncLogRow(ServerBase):
    """One row per change received in a push, whatever its outcome."""

    __tablename__ = "sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(
        String(255), ForeignKey("devices.device_id"), nullable=False, index=True
    )
    change_id: Mapped[str | None] = mapped_column(String(64))
    entity_type: Mapped[str | None] = mapped_column(String(32))
    entity_id: Mapped[int | None] = mapped_column(Integer)
    client_id: Mapped[str | None] = mapped_column(String(64))
    operation: Mapped[str | None] = mapped_column(String(16))
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(32))
    version: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
