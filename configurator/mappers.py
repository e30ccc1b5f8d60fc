"""
Mappers from raw discovery payloads to schema fragments.

`map_airbyte_spec` maps a JSON-schema `connectionSpecification` to
parameters rooted at `config.config`. Alternatives of a `oneOf` object
become a selection parameter, plus the parameters of every alternative,
each of which is omitted unless its alternative is selected.

`map_airbyte_catalog` maps a stream catalog to per-stream selection
parameters. `map_connection_check` maps a successful connection test,
which contributes no parameters.
"""

from datetime import datetime, timedelta, UTC
from typing import Any, Callable, Iterable, Mapping, Sequence

from pydantic import BaseModel

from .assembler import get_path
from .discovery import DiscoveryKind, DiscoveryMappingError, Mapper
from .schema import (
    Computed,
    ParameterSpec,
    ParameterType,
    array_of,
    boolean_type,
    evaluate,
    json_type,
    make_int_type,
    make_string_type,
    oauth_secret_type,
    password_type,
    single_selection_type,
    validate_schema,
)
from .utils import title_case

SPEC_ROOT_ID = "config.config"
IMAGE_VERSION_ID = "config.image_version"
STREAMS_ROOT_ID = "streams"

DATETIME_PATTERN = "^[0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}Z$"
DATETIME_MS_PATTERN = "^[0-9]{4}-[0-9]{2}-[0-9]{2}T[0-9]{2}:[0-9]{2}:[0-9]{2}.[0-9]{3}Z$"
DATE_PATTERN = "^[0-9]{4}-[0-9]{2}-[0-9]{2}$"

Config = dict[str, Any]
Omit = Callable[[Config], bool] | None


def map_airbyte_spec(raw: Any, image_versions: Sequence[str] = ()) -> list[ParameterSpec]:
    """
    Maps an Airbyte connector specification to parameters. `raw` is either
    the `connectionSpecification` itself, or a spec response which contains
    it at `spec.spec.connectionSpecification`.

    If `image_versions` are given, newest first, the parameters begin with a
    required selection of the connector image version.
    """

    spec = raw
    if isinstance(raw, Mapping) and "spec" in raw:
        spec = get_path(raw, "spec.spec.connectionSpecification")
    if not isinstance(spec, Mapping):
        raise DiscoveryMappingError(
            "Airbyte spec response has no connectionSpecification object"
        )

    mapper = _SpecMapper(spec, datetime.now(tz=UTC))
    parent, name = SPEC_ROOT_ID.rsplit(".", 1)
    parameters = mapper.map_node(spec, name, parent)

    if image_versions:
        parameters.insert(
            0,
            ParameterSpec(
                id=IMAGE_VERSION_ID,
                type=single_selection_type(image_versions),
                defaultValue=image_versions[0],
                required=True,
                displayName="Airbyte Image Version",
            ),
        )

    return validate_schema(
        p.model_copy(
            update={"displayName": title_case(p.displayName or p.id.split(".")[-1])}
        )
        for p in parameters
    )


class _SpecMapper:
    def __init__(self, root: Mapping[str, Any], now: datetime):
        self.root = root
        self.now = now

    def map_node(
        self,
        node: Mapping[str, Any],
        name: str,
        parent_id: str,
        required_fields: Iterable[str] = (),
        omit: Omit = None,
        inherited: Mapping[str, Any] | None = None,
    ) -> list[ParameterSpec]:
        id = f"{parent_id}.{name}"
        common: dict[str, Any] = {
            "id": id,
            "displayName": node.get("title", name),
            "required": name in required_fields,
            "documentation": node.get("description"),
            "omit": omit,
        }
        if inherited:
            common.update({k: v for k, v in inherited.items() if v is not None})

        match _node_type(node):
            case "array":
                items = node.get("items")
                item_type = items.get("type") if isinstance(items, Mapping) else None
                return [
                    ParameterSpec(
                        type=array_of(ParameterType(typeName=_first_type(item_type) or "string")),
                        defaultValue=node.get("default"),
                        **common,
                    )
                ]

            case "string":
                return [
                    ParameterSpec(
                        type=self._string_type(node),
                        defaultValue=self._string_default(node),
                        **common,
                    )
                ]

            case "integer" | "number":
                return [
                    ParameterSpec(
                        type=make_int_type(
                            minimum=node.get("minimum"), maximum=node.get("maximum")
                        ),
                        defaultValue=node.get("default"),
                        **common,
                    )
                ]

            case "boolean":
                return [
                    ParameterSpec(
                        type=boolean_type, defaultValue=node.get("default"), **common
                    )
                ]

            case "object":
                if "properties" in node:
                    return self._map_properties(node, id, omit)
                elif "oneOf" in node:
                    return self._map_one_of(node, name, id, common, omit)
                else:
                    # A free-form object is edited as JSON.
                    return [
                        ParameterSpec(
                            type=json_type, defaultValue=node.get("default"), **common
                        )
                    ]

            case None if "allOf" in node:
                parameters: list[ParameterSpec] = []
                for sub_node in node["allOf"]:
                    parameters.extend(
                        self.map_node(
                            sub_node,
                            name,
                            parent_id,
                            required_fields,
                            omit,
                            {
                                "documentation": common["documentation"],
                                "required": common["required"],
                            },
                        )
                    )
                return parameters

            case None if "$ref" in node:
                return self.map_node(
                    self._deref(node["$ref"]),
                    name,
                    parent_id,
                    required_fields,
                    omit,
                    inherited,
                )

            case None if "properties" in node:
                return self._map_properties(node, id, omit)

            case None:
                return []

            case other:
                raise DiscoveryMappingError(
                    f"unsupported type '{other}' of Airbyte spec node '{id}'"
                )

    def _map_properties(
        self, node: Mapping[str, Any], id: str, omit: Omit
    ) -> list[ParameterSpec]:
        required_fields = node.get("required") or []
        parameters: list[ParameterSpec] = []

        for child_name, child in _ordered_properties(node):
            parameters.extend(self.map_node(child, child_name, id, required_fields, omit))

        return parameters

    def _map_one_of(
        self,
        node: Mapping[str, Any],
        name: str,
        id: str,
        common: dict[str, Any],
        omit: Omit,
    ) -> list[ParameterSpec]:
        alternatives = [
            self._deref(a["$ref"]) if "$ref" in a else a for a in node["oneOf"]
        ]
        if not alternatives:
            raise DiscoveryMappingError(f"Airbyte spec node '{id}' has an empty oneOf")

        discriminator = _discriminator(alternatives[0])
        if discriminator is None:
            raise DiscoveryMappingError(
                f"cannot find the discriminating property of oneOf node '{id}'"
            )

        options = [_discriminator_value(a, discriminator) for a in alternatives]
        if any(option is None for option in options):
            raise DiscoveryMappingError(
                f"every alternative of oneOf node '{id}' must set '{discriminator}'"
            )

        selection_id = f"{id}.{discriminator}"
        parameters = [
            ParameterSpec(
                **{
                    **common,
                    "id": selection_id,
                    "displayName": node.get("title", name),
                    "type": single_selection_type(options),
                    "defaultValue": node.get("default") or options[0],
                }
            )
        ]

        alternative_parameters: list[ParameterSpec] = []
        for alternative, option in zip(alternatives, options):
            unselected = _unless_selected(selection_id, option, omit)
            required_fields = alternative.get("required") or []

            for child_name, child in _ordered_properties(alternative):
                if child_name == discriminator:
                    continue
                alternative_parameters.extend(
                    self.map_node(child, child_name, id, required_fields, unselected)
                )

        parameters.extend(_merge_alternatives(alternative_parameters))
        return parameters

    def _string_type(self, node: Mapping[str, Any]) -> ParameterType:
        if "env_name" in node:
            return oauth_secret_type
        elif node.get("multiline"):
            return make_string_type(multiline=True)
        elif node.get("airbyte_secret"):
            return password_type
        elif node.get("enum"):
            return single_selection_type(node["enum"])
        return make_string_type(pattern=node.get("pattern"))

    def _string_default(self, node: Mapping[str, Any]) -> Any:
        if "default" in node:
            return node["default"]

        pattern = node.get("pattern")
        description = node.get("description") or ""
        start = _start_of_previous_month(self.now)

        if pattern == DATETIME_PATTERN or "YYYY-MM-DDT00:00:00Z" in description:
            return start.strftime("%Y-%m-%dT%H:%M:%SZ")
        elif pattern == DATETIME_MS_PATTERN or "YYYY-MM-DDT00:00:00.000Z" in description:
            return start.strftime("%Y-%m-%dT%H:%M:%S.000Z")
        elif pattern == DATE_PATTERN or _mentions_plain_date(description):
            return start.strftime("%Y-%m-%d")
        return None

    def _deref(self, ref: str) -> Mapping[str, Any]:
        node: Any = self.root
        for segment in ref.removeprefix("#/").split("/"):
            if not isinstance(node, Mapping) or segment not in node:
                raise DiscoveryMappingError(f"cannot resolve Airbyte spec reference '{ref}'")
            node = node[segment]
        if not isinstance(node, Mapping):
            raise DiscoveryMappingError(f"Airbyte spec reference '{ref}' is not an object")
        return node


def _node_type(node: Mapping[str, Any]) -> str | None:
    return _first_type(node.get("type"))


def _first_type(type: Any) -> str | None:
    # JSON schema permits a list of types, such as ["null", "string"].
    if isinstance(type, list):
        return next((t for t in type if t != "null"), None)
    return type


def _ordered_properties(node: Mapping[str, Any]) -> list[tuple[str, Mapping[str, Any]]]:
    entries = list((node.get("properties") or {}).items())
    if entries and isinstance(entries[0][1], Mapping) and "order" in entries[0][1]:
        entries.sort(key=lambda entry: entry[1].get("order", 0))
    return entries


def _discriminator(alternative: Mapping[str, Any]) -> str | None:
    for name, prop in _ordered_properties(alternative):
        if "const" in prop or len(prop.get("enum") or []) == 1:
            return name
    return None


def _discriminator_value(alternative: Mapping[str, Any], discriminator: str) -> Any:
    prop = (alternative.get("properties") or {}).get(discriminator) or {}
    if "const" in prop:
        return prop["const"]
    if len(prop.get("enum") or []) == 1:
        return prop["enum"][0]
    return None


def _unless_selected(selection_id: str, option: Any, outer: Omit) -> Omit:
    def omit(config: Config) -> bool:
        if outer is not None and outer(config):
            return True
        return get_path(config, selection_id) != option

    return omit


def _merge_alternatives(parameters: list[ParameterSpec]) -> list[ParameterSpec]:
    """
    Alternatives of one oneOf node commonly share properties (for example,
    two authentication methods which both take an `api_key`). Each shared
    id becomes a single parameter which is omitted only when every
    alternative declaring it is, and required when any selected one requires it.
    """

    groups: dict[str, list[ParameterSpec]] = {}
    for p in parameters:
        groups.setdefault(p.id, []).append(p)

    merged: list[ParameterSpec] = []
    for id, group in groups.items():
        if len(group) == 1:
            merged.append(group[0])
            continue

        omits = [p.omit for p in group]
        alternatives = [(p.required, p.omit) for p in group]

        merged.append(
            group[0].model_copy(
                update={
                    "omit": Computed(
                        lambda config, omits=omits: all(
                            evaluate(o, config) for o in omits
                        )
                    ),
                    "required": Computed(
                        lambda config, alternatives=alternatives: any(
                            evaluate(r, config) and not evaluate(o, config)
                            for r, o in alternatives
                        )
                    ),
                }
            )
        )

    return merged


def _start_of_previous_month(now: datetime) -> datetime:
    first_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return (first_of_month - timedelta(days=1)).replace(day=1)


def _mentions_plain_date(description: str) -> bool:
    # "YYYY-MM-DD" which isn't the prefix of a date-time format.
    idx = description.find("YYYY-MM-DD")
    while idx != -1:
        following = description[idx + len("YYYY-MM-DD") : idx + len("YYYY-MM-DD") + 1]
        if following and following != "T":
            return True
        idx = description.find("YYYY-MM-DD", idx + 1)
    return False


class AirbyteStream(BaseModel, extra="allow"):
    name: str
    namespace: str | None = None
    json_schema: dict[str, Any]
    supported_sync_modes: list[str] = ["full_refresh"]
    source_defined_cursor: bool = False
    default_cursor_field: list[str] = []


class AirbyteCatalog(BaseModel, extra="allow"):
    streams: list[AirbyteStream]


def map_airbyte_catalog(raw: Any) -> list[ParameterSpec]:
    """
    Maps an Airbyte catalog, or a response which contains it at `catalog`,
    to parameters which select each stream and its sync mode.
    """

    if isinstance(raw, Mapping) and "catalog" in raw:
        raw = raw["catalog"]
    catalog = AirbyteCatalog.model_validate(raw)

    parameters: list[ParameterSpec] = []
    for stream in catalog.streams:
        if not stream.supported_sync_modes:
            raise DiscoveryMappingError(
                f"stream '{stream.name}' has no supported sync modes"
            )

        prefix = f"{STREAMS_ROOT_ID}.{stream_key(stream)}"
        selected_id = f"{prefix}.selected"
        sync_mode_id = f"{prefix}.sync_mode"

        parameters.append(
            ParameterSpec(
                id=selected_id,
                type=boolean_type,
                defaultValue=True,
                displayName=stream.name,
                documentation=stream.namespace,
            )
        )
        parameters.append(
            ParameterSpec(
                id=sync_mode_id,
                type=single_selection_type(stream.supported_sync_modes),
                defaultValue=stream.supported_sync_modes[0],
                required=True,
                omit=_unless_truthy(selected_id),
                displayName="Sync Mode",
            )
        )

        if "incremental" in stream.supported_sync_modes and not stream.source_defined_cursor:
            parameters.append(
                ParameterSpec(
                    id=f"{prefix}.cursor_field",
                    type=array_of(make_string_type()),
                    defaultValue=stream.default_cursor_field or None,
                    required=True,
                    omit=_unless_incremental(selected_id, sync_mode_id),
                    displayName="Cursor Field",
                )
            )

    return validate_schema(parameters)


def stream_key(stream: AirbyteStream) -> str:
    """
    The single path segment which addresses a stream's parameters: its name,
    prefixed by `<namespace>/` if it has one. Dots within either are replaced.
    """

    name = stream.name.replace(".", "_")
    if stream.namespace:
        return f"{stream.namespace.replace('.', '_')}/{name}"
    return name


def _unless_truthy(id: str) -> Callable[[Config], bool]:
    return lambda config: not get_path(config, id)


def _unless_incremental(selected_id: str, sync_mode_id: str) -> Callable[[Config], bool]:
    return lambda config: not get_path(config, selected_id) or (
        get_path(config, sync_mode_id) != "incremental"
    )


def map_connection_check(raw: Any) -> list[ParameterSpec]:
    return []


DEFAULT_MAPPERS: dict[DiscoveryKind, Mapper] = {
    DiscoveryKind.SPEC: map_airbyte_spec,
    DiscoveryKind.STREAMS: map_airbyte_catalog,
    DiscoveryKind.CHECK: map_connection_check,
}
