"""Error taxonomy for the inspector bridge.

Transport-level failures (HandshakeError, ConnectionClosed, FrameError) are
fatal for the connection. CommandTimeout, ScriptError, RemoteError and
NotFound are per-call and the caller may retry or decide.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class BridgeError(Exception):
    pass


class HandshakeError(BridgeError):
    """The peer rejected or garbled the WebSocket upgrade."""


class NotHandshaked(BridgeError):
    """A frame was sent or read before the upgrade completed."""


class ConnectionClosed(BridgeError):
    """The peer closed the socket, or the socket failed."""


class FrameError(BridgeError):
    """The peer sent bytes that do not form a valid frame."""


class CommandTimeout(BridgeError, TimeoutError):
    def __init__(self, method: str, msg_id: int, timeout: float) -> None:
        super().__init__(f"no reply to {method} (id={msg_id}) within {timeout:.1f}s")
        self.method = method
        self.msg_id = msg_id
        self.timeout = timeout


@dataclass
class RemoteError(BridgeError):
    """The peer answered a command with an error object."""

    method: str
    code: int | None
    message: str
    data: Any = None

    def __str__(self) -> str:
        return f"{self.method} failed: {self.message} (code={self.code})"

    def to_dict(self) -> dict[str, Any]:
        return {"error": True, "method": self.method, "code": self.code, "message": self.message, "data": self.data}


@dataclass
class ScriptError(BridgeError):
    """An evaluated expression threw inside the remote runtime."""

    value: Any
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"script threw: {self.value}"

    def to_dict(self) -> dict[str, Any]:
        return {"error": True, "thrown": self.value, "details": self.details}


class NotFound(BridgeError):
    """A selector matched nothing or an element handle is stale/out of range."""


__all__ = [
    "BridgeError",
    "CommandTimeout",
    "ConnectionClosed",
    "FrameError",
    "HandshakeError",
    "NotFound",
    "NotHandshaked",
    "RemoteError",
    "ScriptError",
]
