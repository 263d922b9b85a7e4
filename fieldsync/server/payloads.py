"""Payload normalization applied before a client write reaches the store."""

from typing import Any, Mapping, Protocol

import structlog

from fieldsync.errors import PayloadValidationError
from fieldsync.models.entity import EntityType, Operation

log = structlog.stdlib.get_logger()

# Columns owned by the sync engine; clients may not write them through the payload.
MANAGED_FIELDS = frozenset({"id", "client_id", "version", "created_at", "updated_at", "deleted_at"})

ENTITY_FIELDS: dict[EntityType, frozenset[str]] = {
    EntityType.SUPPLIER: frozenset({"name", "phone", "address", "external_code", "is_active"}),
    EntityType.PRODUCT: frozenset({"name", "unit_type", "is_active"}),
    EntityType.RATE: frozenset(
        {"product_id", "supplier_id", "rate_per_unit", "effective_from", "effective_to"}
    ),
    EntityType.COLLECTION: frozenset(
        {"supplier_id", "product_id", "quantity", "unit", "collected_at", "rate_id", "notes"}
    ),
    EntityType.PAYMENT: frozenset(
        {"supplier_id", "type", "amount", "paid_at", "reference", "notes"}
    ),
}


class PayloadValidator(Protocol):
    """Entity-specific validation hook.

    Implementations return the payload to store, or raise
    PayloadValidationError to reject the change.
    """

    def validate(
        self, entity_type: EntityType, operation: Operation, payload: Any
    ) -> dict[str, Any]: ...


def strip_managed_fields(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Drop keys the sync engine owns."""
    return {key: value for key, value in payload.items() if key not in MANAGED_FIELDS}


class FieldWhitelistValidator:
    """Keep only the known fields of each entity type."""

    def __init__(self, fields: Mapping[EntityType, frozenset[str]] | None = None):
        self._fields = dict(fields or ENTITY_FIELDS)

    def validate(
        self, entity_type: EntityType, operation: Operation, payload: Any
    ) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise PayloadValidationError(
                f"{entity_type.value} payload must be an object, got {type(payload).__name__}"
            )

        cleaned = strip_managed_fields(payload)
        allowed = self._fields.get(entity_type)
        if allowed is None:
            return cleaned

        dropped = sorted(set(cleaned) - allowed)
        if dropped:
            log.debug(
                "payload_fields_dropped",
                entity_type=entity_type.value,
                operation=operation.value,
                fields=dropped,
            )
        return {key: value for key, value in cleaned.items() if key in allowed}
