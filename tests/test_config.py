import logging

import orjson

from configurator.config import DEFAULT_ENDPOINTS, EngineConfig, Endpoint
from configurator.discovery import DiscoveryKind
from configurator.logger import LogFormatter
from configurator.utils import stable_digest, title_case


def test_engine_config_defaults():
    config = EngineConfig()

    assert config.timing(DiscoveryKind.SPEC).intervalMs == 2000
    assert config.timing(DiscoveryKind.SPEC).timeoutMs == 60_000
    assert config.timing(DiscoveryKind.STREAMS).timeoutMs == 300_000
    assert config.endpoint(DiscoveryKind.CHECK) == Endpoint(method="POST", path="/sources/test")


def test_engine_config_load(tmp_path):
    path = tmp_path / "engine.json"
    path.write_bytes(
        orjson.dumps(
            {
                "backendUrl": "https://api.example.com",
                "polling": {"intervalMs": 500},
                "endpoints": {"check": {"method": "POST", "path": "/check/{connector_id}"}},
            }
        )
    )

    config = EngineConfig.load(path)

    assert config.backendUrl == "https://api.example.com"
    assert config.timing(DiscoveryKind.CHECK).intervalMs == 500
    assert config.timing(DiscoveryKind.CHECK).timeoutMs == 60_000
    assert config.endpoint(DiscoveryKind.CHECK).path == "/check/{connector_id}"
    # Kinds which aren't configured keep their defaults.
    assert config.endpoint(DiscoveryKind.SPEC) == DEFAULT_ENDPOINTS[DiscoveryKind.SPEC]


def test_stable_digest():
    assert stable_digest("a", {"x": 1, "y": [1, {"b": 2, "a": 1}]}) == stable_digest(
        "a", {"y": [1, {"a": 1, "b": 2}], "x": 1}
    )
    assert stable_digest("a", {"x": 1}) != stable_digest("b", {"x": 1})
    assert stable_digest("a", "b") != stable_digest("ab")


def test_title_case():
    assert title_case("jdbc_url_params") == "Jdbc Url Params"
    assert title_case("Start Date") == "Start Date"
    assert title_case("host") == "Host"


def test_log_formatter():
    record = logging.LogRecord(
        "configurator", logging.INFO, "session.py", 10, "merged discovered parameters", None, None
    )
    record.args = {"kind": DiscoveryKind.SPEC, "count": 2}
    # As passed through `extra=`.
    record.session = "s1"

    doc = orjson.loads(LogFormatter().format(record))

    assert doc["level"] == "INFO"
    assert doc["msg"] == "merged discovered parameters"
    assert doc["fields"]["args"] == {"kind": "spec", "count": 2}
    assert doc["fields"]["session"] == "s1"
    assert doc["fields"]["source"] == "configurator"
