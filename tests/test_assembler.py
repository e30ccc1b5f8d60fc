import pytest

from configurator.assembler import (
    ConfigurationBuilder,
    InvalidPathError,
    PathCollisionError,
    assemble,
    flatten,
    get_path,
)


def test_assemble_redis_config():
    flat = {
        "config.host": "localhost",
        "config.port": 6379,
        "config.tls.enabled": True,
        "config.tls.certificates": ["a.pem", "b.pem"],
        "name": "redis",
    }

    assert assemble(flat) == {
        "config": {
            "host": "localhost",
            "port": 6379,
            "tls": {"enabled": True, "certificates": ["a.pem", "b.pem"]},
        },
        "name": "redis",
    }


def test_assemble_is_sparse():
    assert assemble({}) == {}
    assert assemble({"a.b.c": None}) == {"a": {"b": {"c": None}}}


def test_round_trip():
    nested = {
        "config": {
            "config": {
                "host": "db.example.com",
                "replication_method": {"method": "CDC", "plugin": "pgoutput"},
                "schemas": ["public"],
                "ssl": False,
            }
        },
        "streams": {"users": {"selected": True, "sync_mode": "full_refresh"}},
    }

    assert assemble(flatten(nested)) == nested

    flat = flatten(nested)
    assert flatten(assemble(flat)) == flat
    assert flat["config.config.replication_method.method"] == "CDC"


def test_flatten_keeps_empty_objects_and_lists_as_leaves():
    assert flatten({"a": {}, "b": [], "c": {"d": {}}}) == {"a": {}, "b": [], "c.d": {}}


@pytest.mark.parametrize(
    "flat",
    [
        {"a": 1, "a.b": 2},
        {"a.b": 2, "a": 1},
        {"a.b.c": 1, "a.b": 2},
    ],
)
def test_path_collisions(flat):
    with pytest.raises(PathCollisionError) as exc_info:
        assemble(flat)

    paths = list(flat.keys())
    message = str(exc_info.value)
    assert paths[1] in message


@pytest.mark.parametrize("path", ["", "a..b", ".a", "a."])
def test_invalid_paths(path):
    with pytest.raises(InvalidPathError):
        assemble({path: 1})

    with pytest.raises(ValueError):
        ConfigurationBuilder().set(path, 1)


def test_get_path():
    config = {"a": {"b": {"c": 1}, "d": [1, 2]}}

    assert get_path(config, "a.b.c") == 1
    assert get_path(config, "a.d") == [1, 2]
    assert get_path(config, "a.b") == {"c": 1}
    assert get_path(config, "a.x.c") is None
    assert get_path(config, "a.d.c", "missing") == "missing"


def test_builder_returns_copies():
    builder = ConfigurationBuilder()
    builder.set("a.b", 1)

    snapshot = builder.build()
    builder.set("a.c", 2)

    assert snapshot == {"a": {"b": 1}}
    assert builder.build() == {"a": {"b": 1, "c": 2}}
