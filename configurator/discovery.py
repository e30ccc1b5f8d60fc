from dataclasses import dataclass
from enum import StrEnum
from logging import Logger
from typing import Annotated, Any, Awaitable, Callable, Literal, Protocol

from pydantic import BaseModel, Field, TypeAdapter

from .logger import default_logger
from .poll import End, Poll, PollCancelled, PollTimeout
from .schema import ParameterSpec
from .utils import format_error_message


class DiscoveryKind(StrEnum):
    SPEC = "spec"
    """Fetch the connector's configuration parameters."""
    STREAMS = "streams"
    """Enumerate the data streams available with a configuration."""
    CHECK = "check"
    """Test a connection using a configuration."""


class Pending(BaseModel):
    status: Literal["pending"] = "pending"


class Ready(BaseModel):
    status: Literal["ready"] = "ready"
    payload: Any = None


class Failed(BaseModel):
    status: Literal["error"] = "error"
    message: str


DiscoveryResponse = Annotated[Pending | Ready | Failed, Field(discriminator="status")]

discovery_response = TypeAdapter(DiscoveryResponse)


class DiscoveryTransport(Protocol):
    """Performs one discovery request against the external process."""

    def __call__(
        self, connector_id: str, kind: DiscoveryKind, payload: dict[str, Any]
    ) -> Awaitable[DiscoveryResponse]: ...


# Maps a ready discovery payload into a schema fragment.
Mapper = Callable[[Any], list[ParameterSpec]]


class DiscoveryError(Exception):
    """Base class of all terminal discovery outcomes other than success."""

    retryable: bool = False


@dataclass
class DiscoveryTransportError(DiscoveryError):
    """The transport failed, or the external process reported a terminal error."""

    connector_id: str
    kind: DiscoveryKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind} discovery of '{self.connector_id}' failed: {self.message}"


@dataclass
class DiscoveryMappingError(DiscoveryError):
    """A ready discovery payload could not be mapped into parameters."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class DiscoveryTimeout(DiscoveryError):
    connector_id: str
    kind: DiscoveryKind
    timeout_ms: int

    retryable = True

    def __str__(self) -> str:
        return f"{self.kind} discovery of '{self.connector_id}' did not complete within {self.timeout_ms}ms"


@dataclass
class DiscoveryCancelled(DiscoveryError):
    connector_id: str
    kind: DiscoveryKind

    retryable = True

    def __str__(self) -> str:
        return f"{self.kind} discovery of '{self.connector_id}' was cancelled"


def make_probe(
    log: Logger,
    transport: DiscoveryTransport,
    mapper: Mapper,
    connector_id: str,
    kind: DiscoveryKind,
    payload: dict[str, Any],
) -> Callable[[End[list[ParameterSpec]]], Awaitable[None]]:
    """
    Builds a probe which performs one discovery request per invocation.
    A pending response leaves the poll running, a ready response is mapped
    and ends the poll with the resulting fragment, and an error fails it.
    """

    async def probe(end: End[list[ParameterSpec]]) -> None:
        try:
            response = await transport(connector_id, kind, payload)
        except DiscoveryError:
            raise
        except Exception as exc:
            raise DiscoveryTransportError(
                connector_id, kind, format_error_message(exc)
            ) from exc

        match response:
            case Pending():
                log.debug(
                    "discovery is pending",
                    {"connector": connector_id, "kind": kind},
                )
            case Failed(message=message):
                raise DiscoveryTransportError(connector_id, kind, message)
            case Ready(payload=raw):
                try:
                    fragment = mapper(raw)
                except DiscoveryError:
                    raise
                except Exception as exc:
                    raise DiscoveryMappingError(
                        f"failed to map {kind} discovery of '{connector_id}': {format_error_message(exc)}"
                    ) from exc
                end(fragment)

    return probe


class Discovery:
    """
    Discovery is a single in-flight discovery, driven by a Poll.
    Its outcome is available to any number of concurrent waiters.
    """

    def __init__(
        self,
        log: Logger | None,
        key: str,
        connector_id: str,
        kind: DiscoveryKind,
        payload: dict[str, Any],
    ):
        self.log = log or default_logger()
        self.key = key
        self.connector_id = connector_id
        self.kind = kind
        self.payload = payload
        self.poll: Poll[list[ParameterSpec]] = Poll(
            self.log, name=f"{connector_id}.{kind}"
        )

    def start(
        self,
        transport: DiscoveryTransport,
        mapper: Mapper,
        interval_ms: int,
        timeout_ms: int,
    ) -> "Discovery":
        probe = make_probe(
            self.log, transport, mapper, self.connector_id, self.kind, self.payload
        )
        self.poll.start(probe, interval_ms, timeout_ms)
        return self

    @property
    def done(self) -> bool:
        return self.poll.state.phase.terminal

    async def wait(self) -> list[ParameterSpec]:
        """
        Returns the discovered fragment, or raises a DiscoveryError
        describing why discovery did not succeed.
        """

        try:
            return await self.poll.wait()
        except PollTimeout as exc:
            raise DiscoveryTimeout(self.connector_id, self.kind, exc.timeout_ms) from exc
        except PollCancelled as exc:
            raise DiscoveryCancelled(self.connector_id, self.kind) from exc

    def add_done_callback(self, fn: Callable[["Discovery"], None]) -> None:
        self.poll.add_done_callback(lambda _: fn(self))

    def cancel(self) -> None:
        self.poll.cancel()
