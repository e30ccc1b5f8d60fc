from pydantic import BaseModel
from typing import Any

from ..discovery import DiscoveryKind


class Open(BaseModel):
    session: str
    connectorId: str
    values: dict[str, Any] = {}


class Update(BaseModel):
    session: str
    values: dict[str, Any]


class Discover(BaseModel):
    session: str
    kind: DiscoveryKind
    payload: dict[str, Any] = {}


class Cancel(BaseModel):
    session: str
    kind: DiscoveryKind
    payload: dict[str, Any] = {}


class Close(BaseModel):
    session: str
