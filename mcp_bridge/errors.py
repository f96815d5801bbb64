"""Errors raised by the stdio bridge."""

from __future__ import annotations

from typing import Any, Dict

# JSON-RPC codes used by the HTTP front door
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
UNAUTHORIZED = -32001


class BridgeError(Exception):
    """Base class for every failure the bridge reports to a caller."""

    code: int = INTERNAL_ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": str(self) or "Internal error"}


class ChildNotRunningError(BridgeError):
    """No live child process exists at send time."""


class ChildExitedError(BridgeError):
    """The child process died while the request was in flight."""


class BridgeStoppedError(ChildNotRunningError):
    """The restart budget is exhausted; the bridge will not spawn again."""


class ChildWriteError(BridgeError):
    """Writing the request to the child's stdin failed."""


class RequestTimeoutError(BridgeError):
    """No response arrived within the request window."""


class HandshakeError(BridgeError):
    """The initialize exchange failed; a later call may retry it."""


class DuplicateRequestIdError(BridgeError):
    """An id was registered while a request with the same id is pending."""
