from logging import Logger
from typing import Any, Mapping, Sequence

from .assembler import ConfigurationBuilder
from .config import EngineConfig
from .discovery import Discovery, DiscoveryKind, DiscoveryTransport, Mapper
from .logger import default_logger
from .mappers import DEFAULT_MAPPERS
from .resolver import Resolution, resolve
from .schema import ParameterSpec, validate_schema
from .utils import stable_digest


class EditorSession:
    """
    EditorSession is the state of one connector configuration editor: its
    static schema, the fragments merged into it by discoveries, the current
    flat field values, and the discoveries which are in flight.

    Discoveries are keyed on (connector, kind, payload). Starting a discovery
    whose key is already in flight joins the existing one, and a discovery
    leaves the registry once it's terminal. A successful discovery replaces
    any earlier fragment of the same kind, and a failed or cancelled one, or
    one whose fragment cannot be merged, leaves the working schema as it was.
    """

    def __init__(
        self,
        connector_id: str,
        schema: Sequence[ParameterSpec | Mapping[str, Any]],
        transport: DiscoveryTransport | None = None,
        config: EngineConfig | None = None,
        mappers: Mapping[DiscoveryKind, Mapper] | None = None,
        log: Logger | None = None,
        values: Mapping[str, Any] | None = None,
        discoveries: dict[str, Discovery] | None = None,
    ):
        self.connector_id = connector_id
        self.static_schema = validate_schema(schema)
        _check_paths(self.static_schema)
        self.transport = transport
        self.config = config or EngineConfig()
        self.mappers: dict[DiscoveryKind, Mapper] = {**DEFAULT_MAPPERS, **(mappers or {})}
        self.log = log or default_logger()
        self.values: dict[str, Any] = dict(values or {})

        self.fragments: dict[DiscoveryKind, list[ParameterSpec]] = {}
        # In-flight discoveries, keyed on `discovery_key()`.
        self.discoveries: dict[str, Discovery] = discoveries if discoveries is not None else {}
        # Key of the most recently started discovery of each kind.
        self._latest: dict[DiscoveryKind, str] = {}

    @property
    def schema(self) -> list[ParameterSpec]:
        """The working schema: the static schema, followed by merged fragments."""

        return self._working_schema(self.fragments)

    def resolve(self, values: Mapping[str, Any] | None = None) -> Resolution:
        if values is not None:
            self.values = dict(values)
        return resolve(self.schema, self.values, self.log)

    def update(self, changes: Mapping[str, Any]) -> Resolution:
        self.values.update(changes)
        return self.resolve()

    def discovery_key(self, kind: DiscoveryKind, payload: Mapping[str, Any]) -> str:
        return stable_digest(self.connector_id, str(kind), payload)

    def start_discovery(
        self, kind: DiscoveryKind | str, payload: Mapping[str, Any] | None = None
    ) -> Discovery:
        """
        Starts a discovery, or returns the in-flight discovery having the
        same key. Must be called from within a running event loop.
        """

        kind = DiscoveryKind(kind)
        payload = dict(payload or {})
        key = self.discovery_key(kind, payload)

        existing = self.discoveries.get(key)
        if existing is not None and not existing.done:
            self.log.debug(
                "joining in-flight discovery",
                {"connector": self.connector_id, "kind": kind, "key": key},
            )
            self._latest[kind] = key
            return existing

        if self.transport is None:
            raise RuntimeError(
                f"cannot start {kind} discovery of '{self.connector_id}': session has no transport"
            )

        timing = self.config.timing(kind)
        discovery = Discovery(self.log, key, self.connector_id, kind, payload).start(
            self.transport, self.mappers[kind], timing.intervalMs, timing.timeoutMs
        )
        self.discoveries[key] = discovery
        self._latest[kind] = key
        discovery.add_done_callback(self._forget)

        self.log.info(
            "started discovery",
            {
                "connector": self.connector_id,
                "kind": kind,
                "key": key,
                "interval_ms": timing.intervalMs,
                "timeout_ms": timing.timeoutMs,
            },
        )
        return discovery

    async def discover(
        self, kind: DiscoveryKind | str, payload: Mapping[str, Any] | None = None
    ) -> Resolution:
        """
        Runs a discovery to completion, merges its fragment into the working
        schema and returns the re-resolved fields. Raises the DiscoveryError
        of a discovery which didn't succeed, or the error of a fragment which
        cannot be merged (see `merge`).
        """

        discovery = self.start_discovery(kind, payload)
        fragment = await discovery.wait()

        if self._latest.get(discovery.kind) != discovery.key:
            self.log.info(
                "discarding fragment of superseded discovery",
                {"connector": self.connector_id, "kind": discovery.kind, "key": discovery.key},
            )
            return self.resolve()

        return self.merge(discovery.kind, fragment)

    def merge(self, kind: DiscoveryKind, fragment: Sequence[ParameterSpec]) -> Resolution:
        """
        Replaces the fragment of `kind` in the working schema, and re-resolves.

        Raises DuplicateParameterError if a fragment id repeats another id of
        the working schema, or PathCollisionError if a fragment field would
        nest within another field or contain one. Either way, the working
        schema is left as it was.
        """

        fragments = {**self.fragments, kind: validate_schema(fragment)}
        working = validate_schema(self._working_schema(fragments))
        _check_paths(working)

        resolution = resolve(working, self.values, self.log)
        self.fragments = fragments

        self.log.info(
            "merged discovered parameters",
            {"connector": self.connector_id, "kind": kind, "count": len(fragment)},
        )
        return resolution

    def cancel(
        self, kind: DiscoveryKind | str, payload: Mapping[str, Any] | None = None
    ) -> None:
        key = self.discovery_key(DiscoveryKind(kind), dict(payload or {}))
        if (discovery := self.discoveries.pop(key, None)) is not None:
            discovery.cancel()

    def close(self) -> None:
        """Cancels every in-flight discovery."""

        discoveries = list(self.discoveries.values())
        self.discoveries.clear()

        for discovery in discoveries:
            discovery.cancel()

        if discoveries:
            self.log.debug(
                "cancelled in-flight discoveries",
                {"connector": self.connector_id, "count": len(discoveries)},
            )

    def _working_schema(
        self, fragments: Mapping[DiscoveryKind, Sequence[ParameterSpec]]
    ) -> list[ParameterSpec]:
        working = list(self.static_schema)
        for fragment in fragments.values():
            working.extend(fragment)
        return working

    def _forget(self, discovery: Discovery) -> None:
        if self.discoveries.get(discovery.key) is discovery:
            del self.discoveries[discovery.key]


def _check_paths(schema: Sequence[ParameterSpec]) -> None:
    # Every field is assembled into the same configuration, so no field path
    # may be a prefix of another.
    builder = ConfigurationBuilder()
    for spec in schema:
        builder.set(spec.id, None)
