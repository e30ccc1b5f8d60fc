from collections import Counter
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Iterable, Mapping

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    InstanceOf,
    TypeAdapter,
    field_validator,
)

from .assembler import split_path

ARRAY_TYPE_PREFIX = "array/"

# Type tags understood by the resolver's fallback table and the spec mappers.
# The set is open: any other tag is carried through untouched.
PRIMITIVE_TYPE_NAMES = (
    "string",
    "description",
    "int",
    "json",
    "javascript",
    "html",
    "yaml",
    "password",
    "boolean",
    "dashDate",
    "isoUtcDate",
    "selection",
    "file",
    "oauthSecret",
)


class SelectOption(BaseModel):
    id: str
    displayName: str


class SelectOptionCollection(BaseModel):
    options: list[SelectOption]
    # Maximum number of options which may be selected. None means there's no limit.
    maxOptions: int | None = None


class ParameterType(BaseModel):
    """
    Type of a parameter. `typeName` is an open enumeration; the remaining
    fields are hints which only apply to some type names.
    """

    model_config = ConfigDict(frozen=True)

    typeName: str
    # Additional type data (for selections, the list of options).
    data: SelectOptionCollection | Any = None
    # Regular expression which string values must match.
    pattern: str | None = None
    # Whether a string should be edited as multi-line text.
    multiline: bool | None = None
    minimum: float | None = None
    maximum: float | None = None

    @property
    def is_array(self) -> bool:
        return self.typeName.startswith(ARRAY_TYPE_PREFIX)


string_type = ParameterType(typeName="string")
description_type = ParameterType(typeName="description")
int_type = ParameterType(typeName="int")
json_type = ParameterType(typeName="json")
js_type = ParameterType(typeName="javascript")
html_type = ParameterType(typeName="html")
yaml_type = ParameterType(typeName="yaml")
password_type = ParameterType(typeName="password")
boolean_type = ParameterType(typeName="boolean")
file_type = ParameterType(typeName="file")
oauth_secret_type = ParameterType(typeName="oauthSecret")
# YYYY-MM-DD
dash_date_type = ParameterType(typeName="dashDate")
# ISO 8601 UTC timestamp.
iso_utc_date_type = ParameterType(typeName="isoUtcDate")


def make_string_type(
    pattern: str | None = None, multiline: bool | None = None
) -> ParameterType:
    return ParameterType(typeName="string", pattern=pattern, multiline=multiline)


def make_int_type(
    minimum: float | None = None, maximum: float | None = None
) -> ParameterType:
    return ParameterType(typeName="int", minimum=minimum, maximum=maximum)


def selection_type_with_options(
    options: Iterable[SelectOption], max_options: int | None = None
) -> ParameterType:
    return ParameterType(
        typeName="selection",
        data=SelectOptionCollection(options=list(options), maxOptions=max_options),
    )


def selection_type(
    options: Iterable[str], max_options: int | None = None
) -> ParameterType:
    return selection_type_with_options(
        [SelectOption(id=option, displayName=option) for option in options],
        max_options,
    )


def single_selection_type(options: Iterable[str]) -> ParameterType:
    return selection_type(options, 1)


def array_of(item: ParameterType) -> ParameterType:
    """Derives an array type from a primitive type. Arrays of arrays are not supported."""

    if item.is_array:
        raise ValueError(
            f"cannot derive an array type from array type '{item.typeName}'"
        )
    return ParameterType(typeName=f"{ARRAY_TYPE_PREFIX}{item.typeName}")


@dataclass(frozen=True)
class Constant:
    """A literal parameter attribute."""

    value: Any


@dataclass(frozen=True)
class Computed:
    """A parameter attribute computed from the current assembled configuration."""

    fn: Callable[[dict[str, Any]], Any]


ConstantOrFunction = Constant | Computed


def as_constant_or_function(value: Any) -> ConstantOrFunction | None:
    if value is None or isinstance(value, (Constant, Computed)):
        return value
    if callable(value):
        return Computed(value)
    return Constant(value)


def evaluate(value: ConstantOrFunction | None, config: dict[str, Any]) -> Any:
    """
    Resolves a literal-or-computed parameter attribute against `config`.
    An absent attribute resolves to None.
    """

    match value:
        case None:
            return None
        case Constant(value=literal):
            return literal
        case Computed(fn=fn):
            return fn(config)
        case _:
            raise TypeError(f"cannot evaluate {type(value).__name__}")


def _as_parameter_type(value: Any) -> Any:
    if isinstance(value, str):
        return ParameterType(typeName=value)
    return value


Evaluable = Annotated[
    InstanceOf[Constant] | InstanceOf[Computed] | None,
    BeforeValidator(as_constant_or_function),
]


class ParameterSpec(BaseModel):
    """
    ParameterSpec declares a single configuration field.

    `constant`, `required` and `omit` may each be given as a literal or as a
    function of the current assembled configuration. Those attributes are
    never serialized.
    """

    # Dotted path of the field within the assembled configuration.
    id: str
    type: Annotated[ParameterType, BeforeValidator(_as_parameter_type)] = string_type
    defaultValue: Any = None

    # When this resolves to a value other than None, the field is hidden
    # and forced to that value.
    constant: Evaluable = Field(default=None, exclude=True)
    required: Evaluable = Field(default=None, exclude=True)
    # When this resolves truthy, the field and its value are left out entirely.
    omit: Evaluable = Field(default=None, exclude=True)

    displayName: str | None = None
    documentation: str | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, id: str) -> str:
        split_path(id)
        return id

    @property
    def typeName(self) -> str:
        return self.type.typeName


@dataclass
class DuplicateParameterError(Exception):
    """DuplicateParameterError is raised when two ParameterSpecs of one schema share an `id`."""

    ids: list[str]

    def __str__(self) -> str:
        return f"duplicate parameter ids: {', '.join(self.ids)}"


_parameter_list = TypeAdapter(list[ParameterSpec])


def validate_schema(
    parameters: Iterable[ParameterSpec | Mapping[str, Any]],
) -> list[ParameterSpec]:
    """
    Validates a parameter schema, accepting either ParameterSpec instances or
    ParameterSpec-shaped mappings, and enforces that `id`s are unique.
    """

    schema = _parameter_list.validate_python(list(parameters))

    counts = Counter(p.id for p in schema)
    if duplicates := [id for id, count in counts.items() if count > 1]:
        raise DuplicateParameterError(duplicates)

    return schema


class ResolvedField(BaseModel):
    """The resolved state of a single ParameterSpec. Always derived, never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str
    effectiveValue: Any = None
    isHidden: bool = False
    isRequired: bool = False
    isOmitted: bool = False
