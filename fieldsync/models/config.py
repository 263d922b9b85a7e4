"""Configuration models for the fieldsync server and device clients."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """Configuration for the authoritative server store."""

    url: str = Field(
        default="sqlite:///./fieldsync.db", description="SQLAlchemy database URL"
    )
    echo: bool = Field(default=False, description="Log every SQL statement")


class SyncConfig(BaseModel):
    """Server-side limits for the push and pull protocol."""

    max_push_batch_size: int = Field(
        default=100, ge=1, le=1000, description="Maximum number of changes per push request"
    )
    pull_page_size: int = Field(
        default=500, ge=1, le=5000, description="Maximum rows per entity type per pull"
    )
    pull_settle_seconds: float = Field(
        default=0.0,
        ge=0.0,
        le=3600.0,
        description=(
            "Rows stamped less than this long ago are held back from pulls. SQLite serialises "
            "writers, so 0 is safe there; with concurrent writers set it above the longest "
            "write transaction so a late commit is never behind a cursor."
        ),
    )


class ServerConfig(BaseModel):
    """Configuration for the HTTP server."""

    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=8000, ge=1, le=65535, description="Port to bind")
    api_token: str | None = Field(
        default=None, description="Bearer token required on sync endpoints. None disables the check."
    )


class ClientConfig(BaseModel):
    """Configuration for a device running the sync client."""

    server_url: str = Field(default="http://127.0.0.1:8000", description="Sync server base URL")
    device_id: str = Field(default="device-local", min_length=1, description="Stable device identifier")
    local_database_url: str = Field(
        default="sqlite:///./fieldsync-device.db", description="SQLAlchemy URL of the local replica"
    )
    api_token: str | None = Field(default=None, description="Bearer token sent to the server")
    request_timeout_seconds: float = Field(
        default=30.0, gt=0.0, le=600.0, description="HTTP request timeout"
    )
    transport_retries: int = Field(
        default=3, ge=0, le=10, description="Retries for connection errors and timeouts"
    )
    push_batch_size: int = Field(
        default=100, ge=1, le=1000, description="Outbox entries sent per push request"
    )
    max_attempts: int = Field(
        default=8, ge=1, le=100, description="Attempts before a failed entry needs manual retry"
    )
    retry_base_delay_seconds: float = Field(
        default=2.0, ge=0.0, description="Initial backoff for failed outbox entries"
    )
    retry_max_delay_seconds: float = Field(
        default=900.0, ge=0.0, description="Backoff ceiling for failed outbox entries"
    )
    max_batches_per_sync: int = Field(
        default=20, ge=1, le=1000, description="Push batches sent by one sync run"
    )
    max_pull_pages: int = Field(
        default=50, ge=1, le=10000, description="Pull pages fetched by one sync run"
    )


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    json_logs: bool = Field(
        default=True,
        description="If True, output JSON logs. If False, use console format.",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional path to log file. If None, logs only to stdout.",
    )


class AppConfig(BaseSettings):
    """Main application configuration.

    This class uses pydantic-settings to load configuration from environment
    variables with the FIELDSYNC_ prefix, e.g. ``FIELDSYNC_DATABASE__URL``.
    """

    model_config = SettingsConfigDict(
        env_prefix="FIELDSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
