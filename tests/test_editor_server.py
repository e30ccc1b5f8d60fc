import asyncio
import io
import logging

import orjson
import pytest

from configurator.config import EngineConfig, PollTiming
from configurator.discovery import DiscoveryKind, Failed, Pending, Ready
from configurator.editor import EditorServer, Request
from configurator.schema import ParameterSpec


CONFIG = EngineConfig(
    polling=PollTiming(intervalMs=10, timeoutMs=60), pollingOverrides={}
)

SCHEMAS = {
    "source-hello": [
        {"id": "config.greeting", "defaultValue": "hello"},
        {
            "id": "config.name",
            "required": True,
            "omit": lambda config: config["config"]["greeting"] == "silence",
        },
        {"id": "config.region", "constant": "us-east-1"},
    ],
    "source-tunnel": [{"id": "config.port.number", "type": "int"}],
}


def spec_mapper(raw):
    return [ParameterSpec(id="config.port", type="int", defaultValue=raw["port"])]


class FakeBackend:
    async def __call__(self, connector_id, kind, payload):
        match payload.get("outcome"):
            case "fail":
                return Failed(message="connector image not found")
            case "hang":
                return Pending()
        return Ready(payload={"port": 8080})


def scripted(*steps):
    async def requests(cls: type[Request]):
        for step in steps:
            if isinstance(step, float):
                await asyncio.sleep(step)
            else:
                yield cls.model_validate(step)

    return requests


async def serve(*steps) -> list[dict]:
    server = EditorServer(
        SCHEMAS, FakeBackend(), CONFIG, mappers={DiscoveryKind.SPEC: spec_mapper}
    )
    server.output = io.BytesIO()

    await server.serve(logging.getLogger("test"), scripted(*steps))

    return [orjson.loads(line) for line in server.output.getvalue().splitlines()]


@pytest.mark.asyncio
async def test_editing_session():
    responses = await serve(
        {"open": {"session": "s1", "connectorId": "source-hello", "values": {"config.name": "ada"}}},
        0.01,
        {"update": {"session": "s1", "values": {"config.greeting": "silence"}}},
        0.01,
        {"discover": {"session": "s1", "kind": "spec", "payload": {"image": "hello:v1"}}},
        0.2,
        {"close": {"session": "s1"}},
    )

    opened, resolved, discovered, closed = responses

    opened = opened["opened"]
    assert opened["session"] == "s1"
    assert [p["id"] for p in opened["parameters"]] == [
        "config.greeting",
        "config.name",
        "config.region",
    ]
    # Computed attributes are never serialized.
    assert "omit" not in opened["parameters"][1]
    assert opened["resolution"]["configuration"] == {
        "config": {"greeting": "hello", "name": "ada", "region": "us-east-1"}
    }
    region = opened["resolution"]["fields"][2]
    assert region == {
        "id": "config.region",
        "effectiveValue": "us-east-1",
        "isHidden": True,
        "isRequired": False,
        "isOmitted": False,
    }

    resolution = resolved["resolved"]["resolution"]
    assert resolution["configuration"] == {
        "config": {"greeting": "silence", "region": "us-east-1"}
    }
    assert resolution["fields"][1]["isOmitted"]
    assert resolution["fields"][1]["effectiveValue"] is None

    discovered = discovered["discovered"]
    assert discovered["kind"] == "spec"
    assert [p["id"] for p in discovered["parameters"]] == ["config.port"]
    assert discovered["parameters"][0]["type"]["typeName"] == "int"
    assert discovered["resolution"]["configuration"]["config"]["port"] == 8080

    assert closed == {"closed": {"session": "s1"}}


@pytest.mark.asyncio
async def test_failed_discoveries():
    responses = await serve(
        {"open": {"session": "s1", "connectorId": "source-hello"}},
        0.01,
        {"discover": {"session": "s1", "kind": "spec", "payload": {"outcome": "fail"}}},
        {"discover": {"session": "s1", "kind": "streams", "payload": {"outcome": "hang"}}},
        0.2,
        {"close": {"session": "s1"}},
    )

    failures = {r["failed"]["kind"]: r["failed"] for r in responses if "failed" in r}

    assert "connector image not found" in failures["spec"]["error"]
    assert not failures["spec"]["retryable"]
    assert "did not complete within 60ms" in failures["streams"]["error"]
    assert failures["streams"]["retryable"]

    assert responses[-1] == {"closed": {"session": "s1"}}


@pytest.mark.asyncio
async def test_unmergeable_discovery_fails():
    responses = await serve(
        {"open": {"session": "s1", "connectorId": "source-tunnel"}},
        0.01,
        # The discovered `config.port` would contain `config.port.number`.
        {"discover": {"session": "s1", "kind": "spec", "payload": {}}},
        0.2,
        {"update": {"session": "s1", "values": {"config.port.number": 22}}},
        0.01,
        {"close": {"session": "s1"}},
    )

    _, failed, resolved, closed = responses

    assert failed["failed"]["kind"] == "spec"
    assert "collides" in failed["failed"]["error"]
    assert not failed["failed"]["retryable"]
    assert resolved["resolved"]["resolution"]["configuration"] == {
        "config": {"port": {"number": 22}}
    }
    assert closed == {"closed": {"session": "s1"}}


@pytest.mark.asyncio
async def test_closing_cancels_pending_discoveries():
    responses = await serve(
        {"open": {"session": "s1", "connectorId": "source-unknown"}},
        0.01,
        {"discover": {"session": "s1", "kind": "spec", "payload": {"outcome": "hang"}}},
        0.02,
        {"close": {"session": "s1"}},
    )

    kinds = [next(iter(r)) for r in responses]
    assert kinds == ["opened", "closed", "failed"]
    assert responses[0]["opened"]["parameters"] == []
    assert "was cancelled" in responses[2]["failed"]["error"]
    assert responses[2]["failed"]["retryable"]


@pytest.mark.asyncio
async def test_unknown_session_exits():
    with pytest.raises(SystemExit) as exc_info:
        await serve({"update": {"session": "nope", "values": {}}})

    assert exc_info.value.code == 1
