from pydantic import BaseModel

from . import request, response


class Request(BaseModel):
    open: request.Open | None = None
    update: request.Update | None = None
    discover: request.Discover | None = None
    cancel: request.Cancel | None = None
    close: request.Close | None = None


class Response(BaseModel):
    opened: response.Opened | None = None
    resolved: response.Resolved | None = None
    discovered: response.Discovered | None = None
    failed: response.Failed | None = None
    closed: response.Closed | None = None


from .base_editor_server import EditorServer, UnknownSessionError

__all__ = [
    "Request",
    "Response",
    "EditorServer",
    "UnknownSessionError",
]
