"""Transports carrying push and pull requests from a device to the server."""

import json
from abc import ABC, abstractmethod
from typing import Any

import requests
import structlog
from pydantic import ValidationError
from requests.exceptions import ConnectionError, RequestException, Timeout

from fieldsync.errors import BatchTooLargeError, InvalidCursorError, TransportError
from fieldsync.models.protocol import PullRequest, PullResponse, PushRequest, PushResponse
from fieldsync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()


class SyncTransport(ABC):
    """Abstract interface for reaching the sync server.

    Implementations raise TransportError when a request could not be
    completed. The caller then treats the batch as having an unknown outcome.
    """

    @abstractmethod
    def push(self, request: PushRequest) -> PushResponse:
        pass

    @abstractmethod
    def pull(self, request: PullRequest) -> PullResponse:
        pass


class HttpSyncTransport(SyncTransport):
    """Talks to the FastAPI server over HTTP using requests."""

    def __init__(
        self,
        base_url: str,
        api_token: str | None = None,
        timeout: float = 30.0,
        retries: int = 3,
        session: requests.Session | None = None,
    ):
        """
        Initialize the transport.

        Args:
            base_url: Server root URL, e.g. http://sync.example.org
            api_token: Optional bearer token
            timeout: Per-request timeout in seconds
            retries: Retries for connection errors and timeouts
            session: Optional requests session (a new one is created if None)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if api_token:
            self._session.headers.update({"Authorization": f"Bearer {api_token}"})

        # re-sending is safe: creates are keyed and updates/deletes are version-checked
        self._post = exponential_backoff_retry(
            max_retries=retries,
            base_delay=1.0,
            max_delay=30.0,
            exceptions=(ConnectionError, Timeout),
        )(self._post_once)

        log.info("http_transport_initialized", base_url=self._base_url)

    def push(self, request: PushRequest) -> PushResponse:
        data = self._request("/sync/push", request.model_dump(mode="json"), ok=(200, 207))
        return self._parse(PushResponse, data)

    def pull(self, request: PullRequest) -> PullResponse:
        data = self._request("/sync/pull", request.model_dump(mode="json", exclude_none=True), ok=(200,))
        return self._parse(PullResponse, data)

    def _request(self, path: str, body: dict[str, Any], ok: tuple[int, ...]) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = self._post(url, body)
        except RequestException as e:
            log.error("sync_request_failed", url=url, error=str(e))
            raise TransportError(f"Request to {url} failed: {e}") from e

        if response.status_code not in ok:
            log.error(
                "sync_request_rejected",
                url=url,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise TransportError(
                f"{url} returned HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{url} returned invalid JSON", status_code=response.status_code) from e

    def _post_once(self, url: str, body: dict[str, Any]) -> requests.Response:
        return self._session.post(url, json=body, timeout=self._timeout)

    @staticmethod
    def _parse(model, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TransportError(f"Unexpected {model.__name__} from server: {e}") from e


class InProcessTransport(SyncTransport):
    """Calls a SyncServer in the same process.

    Requests and responses go through a JSON round trip so that the client
    sees exactly what it would see over HTTP.
    """

    def __init__(self, server):
        self._server = server

    def push(self, request: PushRequest) -> PushResponse:
        wire = PushRequest.model_validate(json.loads(request.model_dump_json()))
        try:
            response = self._server.push(wire)
        except BatchTooLargeError as e:
            raise TransportError(str(e), status_code=413) from e
        return PushResponse.model_validate_json(response.model_dump_json())

    def pull(self, request: PullRequest) -> PullResponse:
        wire = PullRequest.model_validate(json.loads(request.model_dump_json()))
        try:
            response = self._server.pull(wire)
        except InvalidCursorError as e:
            raise TransportError(str(e), status_code=400) from e
        return PullResponse.model_validate_json(response.model_dump_json())
