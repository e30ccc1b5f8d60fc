from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, Field, NonNegativeInt, PositiveInt, field_validator

from .discovery import DiscoveryKind


class PollTiming(BaseModel):
    intervalMs: PositiveInt = Field(
        default=2000,
        title="Polling Interval",
        description="Milliseconds between checks of whether a discovery has completed.",
    )
    timeoutMs: NonNegativeInt = Field(
        default=60_000,
        title="Polling Timeout",
        description="Milliseconds after which an incomplete discovery is abandoned.",
    )


class Endpoint(BaseModel):
    method: Literal["GET", "POST"] = "GET"
    path: str = Field(
        description="Path of the endpoint relative to the backend URL. '{connector_id}' is replaced with the connector identifier.",
    )


DEFAULT_ENDPOINTS: dict[DiscoveryKind, Endpoint] = {
    DiscoveryKind.SPEC: Endpoint(method="GET", path="/airbyte/{connector_id}/spec"),
    DiscoveryKind.STREAMS: Endpoint(method="POST", path="/airbyte/{connector_id}/catalog"),
    DiscoveryKind.CHECK: Endpoint(method="POST", path="/sources/test"),
}


class EngineConfig(BaseModel):
    backendUrl: str | None = Field(
        default=None,
        title="Backend URL",
        description="Base URL of the backend which performs discoveries. Required by the HTTP discovery transport.",
    )
    headers: dict[str, str] = Field(
        default={},
        description="Additional headers sent with every discovery request.",
        json_schema_extra={"secret": True},
    )
    polling: PollTiming = PollTiming()
    pollingOverrides: dict[DiscoveryKind, PollTiming] = Field(
        default={
            # Enumerating streams may pull and start a connector image for the first time.
            DiscoveryKind.STREAMS: PollTiming(timeoutMs=300_000),
        },
        description="Per-kind polling timing, used in place of `polling`.",
    )
    endpoints: dict[DiscoveryKind, Endpoint] = Field(
        default=DEFAULT_ENDPOINTS,
        description="Per-kind discovery endpoints. Kinds which aren't listed keep their default endpoint.",
    )

    @field_validator("endpoints")
    @classmethod
    def _with_default_endpoints(
        cls, endpoints: dict[DiscoveryKind, Endpoint]
    ) -> dict[DiscoveryKind, Endpoint]:
        return {**DEFAULT_ENDPOINTS, **endpoints}

    def timing(self, kind: DiscoveryKind) -> PollTiming:
        return self.pollingOverrides.get(kind, self.polling)

    def endpoint(self, kind: DiscoveryKind) -> Endpoint:
        try:
            return self.endpoints[kind]
        except KeyError:
            raise ValueError(f"no endpoint is configured for {kind} discovery") from None

    @classmethod
    def load(cls, path: str | Path) -> Self:
        return cls.model_validate_json(Path(path).read_bytes())
