"""FastAPI application exposing the push, pull and status endpoints."""

import secrets

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from fieldsync import __version__
from fieldsync.errors import BatchTooLargeError, InvalidCursorError
from fieldsync.models.config import AppConfig
from fieldsync.models.protocol import (
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    SyncStatusResponse,
)
from fieldsync.server.service import SyncServer
from fieldsync.storage.database import Database
from fieldsync.storage.tables import ServerBase

log = structlog.stdlib.get_logger()


def create_app(
    config: AppConfig | None = None,
    database: Database | None = None,
    server: SyncServer | None = None,
) -> FastAPI:
    """
    Build the sync API.

    Args:
        config: Application configuration (defaults from the environment)
        database: Server store; created from config.database and migrated if None
        server: Prebuilt SyncServer; built on top of ``database`` if None

    Returns:
        Configured FastAPI application
    """
    config = config or AppConfig()
    if server is None:
        if database is None:
            database = Database(config.database.url, ServerBase.metadata, echo=config.database.echo)
            database.create_all()
        server = SyncServer(database, config.sync)

    app = FastAPI(title="fieldsync", version=__version__)
    app.state.sync_server = server
    app.state.api_token = config.server.api_token

    @app.exception_handler(BatchTooLargeError)
    async def batch_too_large(request: Request, exc: BatchTooLargeError) -> JSONResponse:
        return JSONResponse(
            status_code=413,
            content={"detail": str(exc), "size": exc.size, "limit": exc.limit},
        )

    @app.exception_handler(InvalidCursorError)
    async def invalid_cursor(request: Request, exc: InvalidCursorError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    _register_routes(app)
    return app


def get_sync_server(request: Request) -> SyncServer:
    return request.app.state.sync_server


def require_token(request: Request, authorization: str | None = Header(default=None)) -> None:
    """Check the bearer token when the server is configured with one."""
    expected = request.app.state.api_token
    if expected is None:
        return
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
        log.warning("request_unauthorized", path=request.url.path)
        raise HTTPException(status_code=401, detail="Invalid or missing API token")


def _register_routes(app: FastAPI) -> None:
    @app.post(
        "/sync/push",
        response_model=PushResponse,
        tags=["Sync"],
        dependencies=[Depends(require_token)],
    )
    def push(
        payload: PushRequest,
        response: Response,
        server: SyncServer = Depends(get_sync_server),
    ) -> PushResponse:
        result = server.push(payload)
        response.status_code = 200 if result.all_succeeded else 207
        return result

    @app.post(
        "/sync/pull",
        response_model=PullResponse,
        tags=["Sync"],
        dependencies=[Depends(require_token)],
    )
    def pull(payload: PullRequest, server: SyncServer = Depends(get_sync_server)) -> PullResponse:
        return server.pull(payload)

    @app.get(
        "/sync/status",
        response_model=SyncStatusResponse,
        tags=["Sync"],
        dependencies=[Depends(require_token)],
    )
    def status(
        device_id: str = Query(..., min_length=1, max_length=255),
        server: SyncServer = Depends(get_sync_server),
    ) -> SyncStatusResponse:
        return server.status(device_id)

    @app.get("/health", tags=["Health"])
    def health(server: SyncServer = Depends(get_sync_server)) -> dict:
        try:
            server.database.ping()
        except SQLAlchemyError as e:
            log.error("health_check_failed", error=str(e))
            raise HTTPException(status_code=503, detail="database unavailable") from e
        return {"status": "ok", "version": __version__}
