"""Exception types shared by the server and client sync components."""


class FieldSyncError(Exception):
    """Base class for all fieldsync errors."""

    pass


class BatchTooLargeError(FieldSyncError):
    """Raised when a push batch exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Push batch of {size} changes exceeds the limit of {limit}")


class InvalidCursorError(FieldSyncError):
    """Raised when a pull cursor cannot be decoded."""

    pass


class PayloadValidationError(FieldSyncError):
    """Raised when an entity payload fails entity-specific validation."""

    pass


class TransportError(FieldSyncError):
    """Raised when a push or pull request could not be completed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class LocalEntityNotFoundError(FieldSyncError):
    """Raised when a local mutation references an entity the device does not hold."""

    pass


class LocalEntityExistsError(FieldSyncError):
    """Raised when a local create reuses a client_id."""

    pass


class UnknownConflictError(FieldSyncError):
    """Raised when resolving a conflict record that is not in the inbox."""

    pass
