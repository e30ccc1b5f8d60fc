from pydantic import BaseModel
from typing import Any

from ..discovery import DiscoveryKind
from ..resolver import Resolution as ResolverResolution
from ..schema import ParameterSpec, ResolvedField


class Resolution(BaseModel):
    fields: list[ResolvedField]
    configuration: dict[str, Any]
    # Evaluation failures, as messages keyed by field id.
    diagnostics: dict[str, str] = {}

    @classmethod
    def of(cls, resolution: ResolverResolution) -> "Resolution":
        return cls(
            fields=resolution.fields,
            configuration=resolution.configuration,
            diagnostics={id: str(err) for id, err in resolution.diagnostics.items()},
        )


class Opened(BaseModel):
    session: str
    parameters: list[ParameterSpec]
    resolution: Resolution


class Resolved(BaseModel):
    session: str
    resolution: Resolution


class Discovered(BaseModel):
    session: str
    kind: DiscoveryKind
    # Parameters merged into the working schema by this discovery.
    parameters: list[ParameterSpec]
    resolution: Resolution


class Failed(BaseModel):
    session: str
    kind: DiscoveryKind
    error: str
    # Whether the same discovery may succeed if it's requested again.
    retryable: bool


class Closed(BaseModel):
    session: str
