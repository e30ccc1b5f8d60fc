import asyncio
from typing import Any

import pytest

from configurator.assembler import PathCollisionError
from configurator.config import EngineConfig, PollTiming
from configurator.discovery import (
    DiscoveryCancelled,
    DiscoveryKind,
    DiscoveryMappingError,
    DiscoveryTimeout,
    DiscoveryTransportError,
    Failed,
    Pending,
    Ready,
)
from configurator.schema import DuplicateParameterError, ParameterSpec
from configurator.session import EditorSession


FAST = EngineConfig(
    polling=PollTiming(intervalMs=10, timeoutMs=500),
    pollingOverrides={},
)


class ScriptedTransport:
    """Replies to each discovery request with the next scripted response."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[tuple[str, DiscoveryKind, dict[str, Any]]] = []

    async def __call__(self, connector_id, kind, payload):
        self.calls.append((connector_id, kind, payload))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def static_schema() -> list[ParameterSpec]:
    return [
        ParameterSpec(id="name", required=True),
        ParameterSpec(id="config.host", defaultValue="localhost"),
    ]


def fragment(*ids: str) -> list[ParameterSpec]:
    return [ParameterSpec(id=id) for id in ids]


def mappers(fragments: dict[str, list[ParameterSpec]]):
    return {
        DiscoveryKind.SPEC: lambda raw: fragments[raw["version"]],
        DiscoveryKind.STREAMS: lambda raw: fragments[raw["version"]],
    }


@pytest.mark.asyncio
async def test_discovery_merges_fragment():
    transport = ScriptedTransport(Pending(), Ready(payload={"version": "v1"}))
    session = EditorSession(
        "source-postgres",
        static_schema(),
        transport,
        FAST,
        mappers({"v1": fragment("config.port", "config.user")}),
    )

    resolution = await session.discover(DiscoveryKind.SPEC, {"image": "postgres:v1"})

    assert [p.id for p in session.schema] == [
        "name",
        "config.host",
        "config.port",
        "config.user",
    ]
    assert resolution.configuration == {
        "name": "",
        "config": {"host": "localhost", "port": "", "user": ""},
    }
    assert len(transport.calls) == 2
    assert transport.calls[0] == (
        "source-postgres",
        DiscoveryKind.SPEC,
        {"image": "postgres:v1"},
    )
    assert session.discoveries == {}


@pytest.mark.asyncio
async def test_rediscovery_replaces_fragment_of_same_kind():
    transport = ScriptedTransport(Ready(payload={"version": "v1"}))
    fragments = {"v1": fragment("config.port"), "v2": fragment("config.port", "config.ssl")}
    session = EditorSession("source-postgres", static_schema(), transport, FAST, mappers(fragments))

    await session.discover("spec", {"image": "postgres:v1"})

    transport.responses = [Ready(payload={"version": "v2"})]
    await session.discover("spec", {"image": "postgres:v2"})

    assert [p.id for p in session.schema] == ["name", "config.host", "config.port", "config.ssl"]


@pytest.mark.asyncio
async def test_concurrent_discoveries_of_one_key_are_deduplicated():
    transport = ScriptedTransport(Pending(), Pending(), Ready(payload={"version": "v1"}))
    session = EditorSession(
        "source-postgres", static_schema(), transport, FAST, mappers({"v1": fragment("config.port")})
    )

    first = session.start_discovery(DiscoveryKind.SPEC, {"a": 1, "b": 2})
    # Payload property order doesn't affect the key.
    second = session.start_discovery(DiscoveryKind.SPEC, {"b": 2, "a": 1})
    other = session.start_discovery(DiscoveryKind.STREAMS, {"a": 1, "b": 2})

    assert first is second
    assert other is not first
    assert len(session.discoveries) == 2

    results = await asyncio.gather(
        session.discover(DiscoveryKind.SPEC, {"a": 1, "b": 2}),
        session.discover(DiscoveryKind.SPEC, {"b": 2, "a": 1}),
    )
    assert results[0].configuration == results[1].configuration
    assert [p.id for p in session.schema] == ["name", "config.host", "config.port"]

    other.cancel()
    assert session.discoveries == {}


@pytest.mark.asyncio
async def test_failed_discovery_leaves_schema_unchanged():
    transport = ScriptedTransport(Pending(), Failed(message="image not found"))
    session = EditorSession("source-postgres", static_schema(), transport, FAST)

    with pytest.raises(DiscoveryTransportError) as exc_info:
        await session.discover(DiscoveryKind.SPEC, {"image": "missing"})

    assert "image not found" in str(exc_info.value)
    assert not exc_info.value.retryable
    assert [p.id for p in session.schema] == ["name", "config.host"]
    assert session.discoveries == {}


@pytest.mark.asyncio
async def test_transport_exceptions_are_wrapped():
    transport = ScriptedTransport(ConnectionError("refused"))
    session = EditorSession("source-postgres", static_schema(), transport, FAST)

    with pytest.raises(DiscoveryTransportError, match="refused"):
        await session.discover(DiscoveryKind.CHECK, {})


@pytest.mark.asyncio
async def test_mapping_failures_are_wrapped():
    transport = ScriptedTransport(Ready(payload={"version": "unknown"}))
    session = EditorSession("source-postgres", static_schema(), transport, FAST, mappers({}))

    with pytest.raises(DiscoveryMappingError):
        await session.discover(DiscoveryKind.SPEC, {})

    assert [p.id for p in session.schema] == ["name", "config.host"]


@pytest.mark.asyncio
async def test_duplicate_ids_are_not_merged():
    transport = ScriptedTransport(Ready(payload={"version": "v1"}))
    session = EditorSession(
        "source-postgres", static_schema(), transport, FAST, mappers({"v1": fragment("config.host")})
    )

    with pytest.raises(DuplicateParameterError) as exc_info:
        await session.discover(DiscoveryKind.SPEC, {})

    assert exc_info.value.ids == ["config.host"]
    assert [p.id for p in session.schema] == ["name", "config.host"]


@pytest.mark.asyncio
async def test_discovery_timeout():
    transport = ScriptedTransport(Pending())
    config = EngineConfig(
        polling=PollTiming(intervalMs=10, timeoutMs=50), pollingOverrides={}
    )
    session = EditorSession("source-postgres", static_schema(), transport, config)

    with pytest.raises(DiscoveryTimeout) as exc_info:
        await session.discover(DiscoveryKind.STREAMS, {})

    assert exc_info.value.retryable
    assert exc_info.value.timeout_ms == 50
    assert session.discoveries == {}


@pytest.mark.asyncio
async def test_cancel_and_close():
    transport = ScriptedTransport(Pending())
    session = EditorSession("source-postgres", static_schema(), transport, FAST)

    spec = asyncio.create_task(session.discover(DiscoveryKind.SPEC, {"image": "a"}))
    streams = asyncio.create_task(session.discover(DiscoveryKind.STREAMS, {"image": "a"}))
    await asyncio.sleep(0.03)

    session.cancel(DiscoveryKind.SPEC, {"image": "a"})
    with pytest.raises(DiscoveryCancelled):
        await spec

    session.close()
    with pytest.raises(DiscoveryCancelled):
        await streams

    assert session.discoveries == {}
    # Cancelling again, or something which isn't in flight, is a no-op.
    session.cancel(DiscoveryKind.SPEC, {"image": "a"})
    session.close()


@pytest.mark.asyncio
async def test_superseded_discovery_is_discarded():
    class SlowTransport:
        async def __call__(self, connector_id, kind, payload):
            await asyncio.sleep(payload["delay"])
            return Ready(payload={"version": payload["version"]})

    fragments = {"old": fragment("config.old"), "new": fragment("config.new")}
    session = EditorSession(
        "source-postgres", static_schema(), SlowTransport(), FAST, mappers(fragments)
    )

    old = asyncio.create_task(session.discover("spec", {"version": "old", "delay": 0.1}))
    await asyncio.sleep(0.02)
    await session.discover("spec", {"version": "new", "delay": 0.0})
    await old

    assert [p.id for p in session.schema] == ["name", "config.host", "config.new"]


@pytest.mark.asyncio
async def test_terminal_discoveries_leave_the_registry():
    transport = ScriptedTransport(Pending(), Ready(payload={"version": "v1"}))
    session = EditorSession(
        "source-postgres", static_schema(), transport, FAST, mappers({"v1": fragment("config.port")})
    )

    discovery = session.start_discovery(DiscoveryKind.SPEC, {})
    assert list(session.discoveries.values()) == [discovery]

    # Waiting on the discovery directly doesn't merge it, but it's forgotten.
    assert [p.id for p in await discovery.wait()] == ["config.port"]
    assert session.discoveries == {}
    assert [p.id for p in session.schema] == ["name", "config.host"]

    # A later request of the same key starts anew.
    assert session.start_discovery(DiscoveryKind.SPEC, {}) is not discovery
    session.close()
    assert session.discoveries == {}


@pytest.mark.asyncio
async def test_colliding_fragment_is_not_merged():
    transport = ScriptedTransport(Ready(payload={"version": "v1"}))
    fragments = {"v1": fragment("config.host"), "v2": fragment("config.port")}
    session = EditorSession(
        "source-postgres",
        [ParameterSpec(id="config", type="json")],
        transport,
        FAST,
        mappers(fragments),
    )

    with pytest.raises(PathCollisionError) as exc_info:
        await session.discover(DiscoveryKind.SPEC, {})

    assert exc_info.value.path == "config.host"
    assert [p.id for p in session.schema] == ["config"]
    assert session.fragments == {}

    # The session remains usable.
    resolution = session.update({"config": {"host": "db"}})
    assert resolution.configuration == {"config": {"host": "db"}}

    with pytest.raises(PathCollisionError):
        session.merge(DiscoveryKind.STREAMS, fragment("streams.a", "config.host.name"))
    assert [p.id for p in session.schema] == ["config"]


@pytest.mark.asyncio
async def test_rejoined_discovery_supersedes_later_ones():
    class SlowTransport:
        async def __call__(self, connector_id, kind, payload):
            await asyncio.sleep(payload["delay"])
            return Ready(payload={"version": payload["version"]})

    fragments = {"v1": fragment("config.v1"), "v2": fragment("config.v2")}
    session = EditorSession(
        "source-postgres", static_schema(), SlowTransport(), FAST, mappers(fragments)
    )
    v1 = {"version": "v1", "delay": 0.05}
    v2 = {"version": "v2", "delay": 0.15}

    first = asyncio.create_task(session.discover("spec", v1))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(session.discover("spec", v2))
    await asyncio.sleep(0.01)
    # The user switches back to v1 while both are in flight.
    third = asyncio.create_task(session.discover("spec", v1))

    await asyncio.gather(first, second, third)

    assert [p.id for p in session.schema] == ["name", "config.host", "config.v1"]
    assert session.discoveries == {}


def test_update_and_resolve():
    session = EditorSession("source-postgres", static_schema(), values={"name": "pg"})

    resolution = session.update({"config.host": "db.internal"})
    assert resolution.configuration == {"name": "pg", "config": {"host": "db.internal"}}

    resolution = session.resolve({})
    assert resolution.configuration == {"name": "", "config": {"host": "localhost"}}
    assert resolution.get("name").isRequired


@pytest.mark.asyncio
async def test_discovery_requires_transport():
    session = EditorSession("source-postgres", static_schema())

    with pytest.raises(RuntimeError):
        session.start_discovery(DiscoveryKind.SPEC, {})
