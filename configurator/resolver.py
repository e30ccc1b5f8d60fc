"""
The field resolver computes the ResolvedField set of a parameter schema
against a snapshot of flat field values.

Resolution is a single linear pass in declaration order. Each parameter's
`omit` and `constant` attributes observe only the configuration assembled
from parameters declared before it, and its effective value is inserted
before the next parameter is visited. `required` is evaluated afterwards,
against the final configuration.

Schemas whose attributes depend on parameters declared *later* therefore
resolve as a function of declaration order, rather than as a fixed point.
This ordering is part of the contract and must be preserved.
"""

import copy
from dataclasses import dataclass, field
from logging import Logger
from typing import Any, Literal, Mapping, Sequence

from .assembler import ConfigurationBuilder
from .logger import default_logger
from .schema import ARRAY_TYPE_PREFIX, ParameterSpec, ResolvedField, evaluate
from .utils import format_error_message

Attribute = Literal["omit", "constant", "required"]

# Values of parameters which have neither a current value, a constant, nor a default.
FALLBACK_VALUES: dict[str, Any] = {
    "boolean": False,
    "json": {},
    "javascript": "return {}",
    "html": "<script>\n</script>",
}


def fallback_value(type_name: str) -> Any:
    if type_name.startswith(ARRAY_TYPE_PREFIX):
        return []
    return copy.deepcopy(FALLBACK_VALUES.get(type_name, ""))


@dataclass
class SchemaEvaluationError(Exception):
    """
    SchemaEvaluationError records that a parameter's `omit`, `constant` or
    `required` function raised. It's reported as a diagnostic of the
    Resolution and is never raised by `resolve`.
    """

    field_id: str
    attribute: Attribute
    cause: Exception

    def __str__(self) -> str:
        return f"evaluating '{self.attribute}' of field '{self.field_id}': {format_error_message(self.cause)}"


@dataclass
class Resolution:
    fields: list[ResolvedField]
    """One ResolvedField for every parameter, in declaration order."""

    configuration: dict[str, Any]
    """Configuration assembled from the effective values of all non-omitted fields."""

    diagnostics: dict[str, SchemaEvaluationError] = field(default_factory=dict)
    """Evaluation failures, keyed by field id."""

    def get(self, id: str) -> ResolvedField:
        for resolved in self.fields:
            if resolved.id == id:
                return resolved
        raise KeyError(id)

    @property
    def visible(self) -> list[ResolvedField]:
        return [f for f in self.fields if not f.isOmitted and not f.isHidden]


@dataclass
class _Pending:
    spec: ParameterSpec
    value: Any
    omitted: bool
    hidden: bool
    failed: bool


def resolve(
    schema: Sequence[ParameterSpec],
    values: Mapping[str, Any],
    log: Logger | None = None,
) -> Resolution:
    """
    Resolves every parameter of `schema` against the flat field `values`.

    Resolution is pure and deterministic: identical inputs yield identical
    results. A PathCollisionError raised while assembling propagates.
    """

    log = log or default_logger()
    builder = ConfigurationBuilder()
    diagnostics: dict[str, SchemaEvaluationError] = {}
    pending: list[_Pending] = []

    def record(spec: ParameterSpec, attribute: Attribute, exc: Exception):
        err = SchemaEvaluationError(spec.id, attribute, exc)
        diagnostics.setdefault(spec.id, err)
        log.warning(
            "parameter evaluation failed",
            {"field": spec.id, "attribute": attribute, "error": format_error_message(exc)},
        )

    for spec in schema:
        config = builder.build()
        attribute: Attribute = "omit"

        try:
            if evaluate(spec.omit, config):
                pending.append(_Pending(spec, None, True, False, False))
                continue

            attribute = "constant"
            constant = evaluate(spec.constant, config)
        except Exception as exc:
            record(spec, attribute, exc)
            value = _current_value(spec, values)
            pending.append(_Pending(spec, value, False, False, True))
            builder.set(spec.id, value)
            continue

        if constant is not None:
            value, hidden = constant, True
        else:
            value, hidden = _current_value(spec, values), False

        pending.append(_Pending(spec, value, False, hidden, False))
        builder.set(spec.id, value)

    config = builder.build()
    fields: list[ResolvedField] = []

    for p in pending:
        required = False

        if not (p.omitted or p.hidden or p.failed):
            try:
                required = bool(evaluate(p.spec.required, config))
            except Exception as exc:
                record(p.spec, "required", exc)

        fields.append(
            ResolvedField(
                id=p.spec.id,
                effectiveValue=p.value,
                isHidden=p.hidden,
                isRequired=required,
                isOmitted=p.omitted,
            )
        )

    return Resolution(fields=fields, configuration=config, diagnostics=diagnostics)


def _current_value(spec: ParameterSpec, values: Mapping[str, Any]) -> Any:
    if (value := values.get(spec.id)) is not None:
        return value
    if spec.defaultValue is not None:
        return copy.deepcopy(spec.defaultValue)
    return fallback_value(spec.typeName)
