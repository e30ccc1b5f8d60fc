from logging import Logger
from typing import Any, Awaitable, Callable, Mapping, TypeVar
import asyncio

import aiohttp
import orjson

from . import Mixin
from .config import EngineConfig
from .discovery import DiscoveryKind, DiscoveryResponse, Failed, Pending, Ready
from .logger import default_logger
from .utils import format_error_message

T = TypeVar("T")


class HTTPError(RuntimeError):
    """
    HTTPError is an custom error class that provides the HTTP status code
    as a distinct attribute.
    """

    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code
        self.message = message


def classify_response(
    status: int, body: bytes, require_status: bool = False
) -> DiscoveryResponse:
    """
    Classifies the body of a discovery endpoint response.

    A 5xx status is treated as pending, since the backend may still be
    starting the connector. A body carrying a `message`, or a `status` of
    "error", is a terminal failure. A `status` of "pending" means the
    discovery hasn't completed. Anything else is ready, and the whole body
    is its payload, unless `require_status` is set: then a body without a
    `status` is also pending.
    """

    if 500 <= status < 600:
        return Pending()
    if 400 <= status < 500:
        raise HTTPError(
            f"Encountered HTTP error status {status} which cannot be retried.\nResponse:\n{body.decode('utf-8', 'replace')}",
            status,
        )

    doc: Any = orjson.loads(body) if body.strip() else None

    if isinstance(doc, dict):
        if doc.get("status") == "error" or "message" in doc:
            return Failed(message=str(doc.get("message") or "discovery failed"))
        if doc.get("status") == "pending":
            return Pending()

    if require_status and not (isinstance(doc, dict) and doc.get("status")):
        return Pending()

    return Ready(payload=doc)


# HTTPMixin manages an aiohttp session which is opened and closed alongside
# its owner, and retries requests which fail to connect.
class HTTPMixin(Mixin):
    inner: aiohttp.ClientSession | None = None

    async def _mixin_enter(self, _: Logger):
        self.inner = aiohttp.ClientSession()
        return self

    async def _mixin_exit(self, _: Logger):
        if self.inner is not None:
            await self.inner.close()
            self.inner = None
        return self

    async def _retry_on_connection_error(
        self,
        log: Logger,
        url: str,
        method: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        max_attempts = 3
        attempt = 1

        while True:
            try:
                return await operation()
            except (
                asyncio.TimeoutError,                # Connection timeouts
                aiohttp.ClientConnectorError,        # DNS, SSL handshake, connection refused errors
                aiohttp.ConnectionTimeoutError,      # aiohttp connection timeouts (sock_connect, connect)
                ConnectionResetError,                # TCP connection reset
                aiohttp.ClientOSError,               # OS errors (like BrokenPipeError) during request sending
            ) as e:
                if attempt <= max_attempts:
                    log.warning(
                        "Connection error occurred while establishing connection (will retry)",
                        {"url": url, "method": method, "attempt": attempt, "error": format_error_message(e)}
                    )
                    attempt += 1
                else:
                    raise

    async def request(
        self,
        log: Logger,
        url: str,
        method: str = "GET",
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[int, bytes]:
        """Requests a url and returns its status and body."""

        if self.inner is None:
            raise RuntimeError("HTTP session is not open")
        inner = self.inner

        async def send() -> tuple[int, bytes]:
            async with inner.request(
                method, url, params=params, json=json, headers=dict(headers or {})
            ) as resp:
                return resp.status, await resp.read()

        return await self._retry_on_connection_error(log, url, method, send)


class HTTPDiscoveryTransport(HTTPMixin):
    """
    HTTPDiscoveryTransport performs discoveries against an HTTP backend,
    with one endpoint per DiscoveryKind. It must be entered before use:

        async with HTTPDiscoveryTransport(config) as transport:
            session = EditorSession(connector_id, schema, transport, config)
    """

    def __init__(self, config: EngineConfig, log: Logger | None = None):
        if not config.backendUrl:
            raise ValueError("HTTP discovery requires a configured backendUrl")

        self.config = config
        self.log = log or default_logger()

    async def __aenter__(self) -> "HTTPDiscoveryTransport":
        await self._mixin_enter(self.log)
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self._mixin_exit(self.log)

    def url(self, connector_id: str, kind: DiscoveryKind) -> str:
        assert self.config.backendUrl is not None
        path = self.config.endpoint(kind).path.format(connector_id=connector_id)
        return f"{self.config.backendUrl.rstrip('/')}/{path.lstrip('/')}"

    async def __call__(
        self, connector_id: str, kind: DiscoveryKind, payload: dict[str, Any]
    ) -> DiscoveryResponse:
        endpoint = self.config.endpoint(kind)
        url = self.url(connector_id, kind)

        if endpoint.method == "GET":
            status, body = await self.request(
                self.log,
                url,
                "GET",
                params=_query_params(payload) or None,
                headers=self.config.headers,
            )
        else:
            status, body = await self.request(
                self.log,
                url,
                "POST",
                json={"connectorId": connector_id, **payload},
                headers=self.config.headers,
            )

        # Spec endpoints answer with a `status` once the connector has started.
        response = classify_response(
            status, body, require_status=kind == DiscoveryKind.SPEC
        )
        if status >= 500:
            log_body = body.decode("utf-8", "replace")
            self.log.warning(
                "server internal error (will retry)",
                {"url": url, "status": status, "body": log_body},
            )
        return response


def _query_params(payload: Mapping[str, Any]) -> dict[str, str]:
    return {
        key: value if isinstance(value, str) else orjson.dumps(value).decode()
        for key, value in payload.items()
    }
