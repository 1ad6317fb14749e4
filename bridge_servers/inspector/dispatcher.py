from __future__ import annotations

import itertools
import json
import logging
import threading
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Protocol

from .demux import ConnectionState
from .errors import CommandTimeout, ConnectionClosed, RemoteError

logger = logging.getLogger("inspector.dispatcher")


class FrameSender(Protocol):
    def send_text(self, text: str) -> None: ...


@dataclass(frozen=True)
class CommandEnvelope:
    id: int
    method: str
    params: dict[str, Any] | None = None

    def to_json(self) -> str:
        msg: dict[str, Any] = {"id": self.id, "method": self.method}
        if self.params:
            msg["params"] = self.params
        return json.dumps(msg, ensure_ascii=False, separators=(",", ":"))


def unwrap_reply(method: str, reply: dict[str, Any]) -> dict[str, Any]:
    """Return the ``result`` object of a reply, raising RemoteError for error replies."""
    error = reply.get("error")
    if error is not None:
        if isinstance(error, dict):
            code = error.get("code") if isinstance(error.get("code"), int) else None
            raise RemoteError(method, code, str(error.get("message") or error), error.get("data"))
        raise RemoteError(method, None, str(error))
    result = reply.get("result")
    return result if isinstance(result, dict) else {}


class CommandDispatcher:
    """Numbers commands, sends them and blocks until the matching reply arrives."""

    def __init__(self, sender: FrameSender, state: ConnectionState, *, timeout: float = 10.0) -> None:
        self._sender = sender
        self._state = state
        self.timeout = float(timeout)
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def next_envelope(self, method: str, params: dict[str, Any] | None = None) -> CommandEnvelope:
        with self._id_lock:
            msg_id = next(self._ids)
        return CommandEnvelope(msg_id, method, params)

    def call(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method is required")
        envelope = self.next_envelope(method, params)
        wait = self.timeout if timeout is None else float(timeout)

        # Register before sending so a fast reply can never race past its slot.
        fut = self._state.register(envelope.id)
        try:
            self._sender.send_text(envelope.to_json())
        except ConnectionClosed:
            self._state.discard(envelope.id)
            raise
        logger.debug("sent %s id=%d", method, envelope.id)

        try:
            reply = fut.result(timeout=max(0.0, wait))
        except FuturesTimeoutError:
            self._state.discard(envelope.id)
            raise CommandTimeout(method, envelope.id, wait) from None
        return unwrap_reply(method, reply)


__all__ = ["CommandDispatcher", "CommandEnvelope", "unwrap_reply"]
