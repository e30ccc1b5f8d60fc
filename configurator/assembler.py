"""
Conversion between flat mappings of dotted-path field ids and the nested
configuration objects they address.

    assemble({"config.host": "example.com", "config.port": 6379})
    == {"config": {"host": "example.com", "port": 6379}}

Lists, scalars and empty objects are leaves. A leaf and a nested object may
never share a path prefix: both `"a"` and `"a.b"` being set is a collision.
"""

from dataclasses import dataclass
from typing import Any, Mapping

PATH_SEPARATOR = "."

_MISSING = object()


class PathError(ValueError):
    pass


@dataclass
class InvalidPathError(PathError):
    path: str

    def __str__(self) -> str:
        return f"invalid field path '{self.path}': paths must be non-empty with no empty segments"


@dataclass
class PathCollisionError(PathError):
    """
    PathCollisionError is raised when a leaf value and a nested object would
    occupy the same location of an assembled configuration.
    """

    path: str
    conflicting_path: str

    def __str__(self) -> str:
        return f"field path '{self.path}' collides with '{self.conflicting_path}'"


def split_path(path: str) -> list[str]:
    segments = path.split(PATH_SEPARATOR)
    if not path or any(segment == "" for segment in segments):
        raise InvalidPathError(path)
    return segments


class ConfigurationBuilder:
    """
    ConfigurationBuilder incrementally assembles a nested configuration,
    one dotted-path value at a time.
    """

    def __init__(self):
        self._tree = _Branch()

    def set(self, path: str, value: Any) -> None:
        segments = split_path(path)
        node = self._tree

        for depth, segment in enumerate(segments[:-1]):
            child = node.get(segment, _MISSING)
            if child is _MISSING:
                child = node[segment] = _Branch()
            elif not isinstance(child, _Branch):
                raise PathCollisionError(
                    path, PATH_SEPARATOR.join(segments[: depth + 1])
                )
            node = child

        leaf = segments[-1]
        existing = node.get(leaf, _MISSING)
        if isinstance(existing, _Branch):
            raise PathCollisionError(path, _first_leaf_path(path, existing))

        node[leaf] = value

    def build(self) -> dict[str, Any]:
        """Returns a copy of the configuration assembled so far."""
        return _unbranch(self._tree)


def get_path(config: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """
    Returns the value at `path` of a nested configuration, or `default` if
    any part of the path is missing.
    """

    node: Any = config
    for segment in split_path(path):
        if not isinstance(node, Mapping) or segment not in node:
            return default
        node = node[segment]
    return node


def assemble(flat: Mapping[str, Any]) -> dict[str, Any]:
    """
    Builds a nested configuration from a flat mapping of dotted-path ids.
    Missing ids are simply absent from the result; nothing is defaulted here.
    """

    builder = ConfigurationBuilder()
    for path, value in flat.items():
        builder.set(path, value)
    return builder.build()


def flatten(nested: Mapping[str, Any]) -> dict[str, Any]:
    """Inverse of `assemble`."""

    flat: dict[str, Any] = {}

    def walk(prefix: str, node: Mapping[str, Any]):
        for key, value in node.items():
            path = f"{prefix}{PATH_SEPARATOR}{key}" if prefix else key
            if isinstance(value, Mapping) and value:
                walk(path, value)
            else:
                flat[path] = value

    walk("", nested)
    return flat


class _Branch(dict):
    """
    An intermediate object created while assembling. Distinguished from a
    dict-valued leaf (such as a `json` field's `{}`) so that a later, deeper
    path never merges into a leaf.
    """


def _unbranch(node: Any) -> Any:
    if isinstance(node, _Branch):
        return {k: _unbranch(v) for k, v in node.items()}
    return node


def _first_leaf_path(prefix: str, branch: _Branch) -> str:
    for key, value in branch.items():
        path = f"{prefix}{PATH_SEPARATOR}{key}"
        if isinstance(value, _Branch):
            return _first_leaf_path(path, value)
        return path
    return prefix
