from dataclasses import dataclass
from logging import Logger
from typing import Any, BinaryIO, Mapping, Sequence
import asyncio
import sys

import orjson

from . import request, response, Request, Response
from ._emit import emit_bytes
from .. import BaseServer
from ..assembler import PathError
from ..config import EngineConfig
from ..discovery import DiscoveryError, DiscoveryKind, DiscoveryTransport, Mapper
from ..schema import DuplicateParameterError, ParameterSpec
from ..session import EditorSession


@dataclass
class UnknownSessionError(Exception):
    session: str

    def __str__(self) -> str:
        return f"no editor session '{self.session}' is open"


class EditorServer(BaseServer[Request]):
    """
    EditorServer serves configuration editor sessions over newline-delimited
    JSON. Each session edits the configuration of one connector, whose static
    schema is looked up in `schemas`. Connectors without a static schema
    start from an empty one, and are typically extended by a `spec` discovery.
    """

    output: BinaryIO = sys.stdout.buffer

    def __init__(
        self,
        schemas: Mapping[str, Sequence[ParameterSpec | Mapping[str, Any]]],
        transport: DiscoveryTransport | None = None,
        config: EngineConfig | None = None,
        mappers: Mapping[DiscoveryKind, Mapper] | None = None,
    ):
        self.schemas = schemas
        self.transport = transport
        self.config = config or EngineConfig()
        self.mappers = mappers
        self.sessions: dict[str, EditorSession] = {}
        self._emit_lock = asyncio.Lock()

    @classmethod
    def request_class(cls) -> type[Request]:
        return Request

    def session(self, id: str) -> EditorSession:
        try:
            return self.sessions[id]
        except KeyError:
            raise UnknownSessionError(id) from None

    async def open(self, log: Logger, open: request.Open) -> response.Opened:
        if (previous := self.sessions.pop(open.session, None)) is not None:
            log.info("replacing open editor session", {"session": open.session})
            previous.close()

        session = EditorSession(
            open.connectorId,
            self.schemas.get(open.connectorId, []),
            transport=self.transport,
            config=self.config,
            mappers=self.mappers,
            log=log.getChild(open.session),
            values=open.values,
        )
        self.sessions[open.session] = session

        return response.Opened(
            session=open.session,
            parameters=session.schema,
            resolution=response.Resolution.of(session.resolve()),
        )

    async def update(self, log: Logger, update: request.Update) -> response.Resolved:
        resolution = self.session(update.session).update(update.values)
        return response.Resolved(
            session=update.session, resolution=response.Resolution.of(resolution)
        )

    async def discover(
        self, log: Logger, discover: request.Discover
    ) -> response.Discovered | response.Failed:
        session = self.session(discover.session)

        try:
            resolution = await session.discover(discover.kind, discover.payload)
        except DiscoveryError as exc:
            return response.Failed(
                session=discover.session,
                kind=discover.kind,
                error=str(exc),
                retryable=exc.retryable,
            )
        except (DuplicateParameterError, PathError) as exc:
            return response.Failed(
                session=discover.session,
                kind=discover.kind,
                error=str(exc),
                retryable=False,
            )

        return response.Discovered(
            session=discover.session,
            kind=discover.kind,
            parameters=session.fragments.get(discover.kind, []),
            resolution=response.Resolution.of(resolution),
        )

    async def handle(self, log: Logger, request: Request) -> None:

        if open := request.open:
            await self._emit(Response(opened=await self.open(log, open)))

        elif update := request.update:
            await self._emit(Response(resolved=await self.update(log, update)))

        elif discover := request.discover:
            match await self.discover(log, discover):
                case response.Failed() as failed:
                    log.warning(
                        "discovery failed",
                        {"session": discover.session, "kind": discover.kind, "error": failed.error},
                    )
                    await self._emit(Response(failed=failed))
                case response.Discovered() as discovered:
                    await self._emit(Response(discovered=discovered))

        elif cancel := request.cancel:
            self.session(cancel.session).cancel(cancel.kind, cancel.payload)

        elif close := request.close:
            self.session(close.session).close()
            del self.sessions[close.session]
            await self._emit(Response(closed=response.Closed(session=close.session)))

        else:
            raise RuntimeError("malformed request", request)

    async def _emit(self, response: Response):
        # Only the member which is set is written, while unset fields of
        # nested records are kept.
        doc = {
            key: value
            for key, value in response.model_dump(mode="json", by_alias=True).items()
            if value is not None
        }
        await emit_bytes(orjson.dumps(doc) + b"\n", self.output, self._emit_lock)
