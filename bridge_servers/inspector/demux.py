"""Single-reader demultiplexer for the remote-debugging message stream.

One daemon thread per connection drains ``TransportConnection.next_frame``
and routes every decoded message: ``Network.*`` notifications into the
network log, ``Page.*`` notifications into the page log, and everything
carrying an ``id`` to the pending reply slot for that id.

All shared state lives in ``ConnectionState`` behind one condition variable,
so log mutation and reply resolution never interleave.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

from .errors import ConnectionClosed

logger = logging.getLogger("inspector.demux")


class ConnectionState:
    """Notification logs plus the pending-reply table for one connection."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: dict[int, Future] = {}
        self._network: dict[str, list[dict[str, Any]]] = {}
        self._network_events = 0
        self._page: list[dict[str, Any]] = []
        self._closed: ConnectionClosed | None = None

    # ─────────────────────────────────────────────────────────────────────────
    # Pending reply slots
    # ─────────────────────────────────────────────────────────────────────────

    def register(self, msg_id: int) -> Future:
        fut: Future = Future()
        with self._cond:
            if self._closed is not None:
                raise ConnectionClosed(str(self._closed))
            if msg_id in self._pending:
                raise ValueError(f"id {msg_id} already has a pending reply slot")
            self._pending[msg_id] = fut
        return fut

    def discard(self, msg_id: int) -> None:
        with self._cond:
            self._pending.pop(msg_id, None)

    def pending_ids(self) -> list[int]:
        with self._cond:
            return sorted(self._pending)

    def resolve(self, message: dict[str, Any]) -> bool:
        """Hand a reply to the caller waiting on its id.

        Returns False when nobody is waiting (unknown id, or the caller
        already timed out); such replies are dropped.
        """
        msg_id = message.get("id")
        with self._cond:
            fut = self._pending.pop(msg_id, None) if isinstance(msg_id, int) else None
        if fut is None:
            logger.warning("discarding reply with no waiting caller (id=%r)", msg_id)
            return False
        # A concurrent timeout may have cancelled the future already.
        if fut.set_running_or_notify_cancel():
            fut.set_result(message)
            return True
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # Notification logs
    # ─────────────────────────────────────────────────────────────────────────

    def record_network(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        params = message.get("params")
        if not isinstance(params, dict):
            params = {}
        request_id = params.get("requestId")

        with self._cond:
            self._network_events += 1
            if method == "Network.requestWillBeSent":
                request = params.get("request") if isinstance(params.get("request"), dict) else {}
                if not isinstance(request_id, str):
                    logger.warning("requestWillBeSent without requestId")
                    return
                self._network.setdefault(request_id, []).append(
                    {
                        "url": request.get("url"),
                        "method": request.get("method"),
                        "headers": request.get("headers") or {},
                        "post_data": str(request.get("postData") or ""),
                        "type": params.get("type"),
                        "document_url": params.get("documentURL"),
                        "response": {},
                    }
                )
            elif method == "Network.responseReceived":
                records = self._network.get(request_id) if isinstance(request_id, str) else None
                if not records:
                    logger.warning("responseReceived for unknown request id %r", request_id)
                    return
                # Redirects reuse the request id; the newest record owns the response.
                records[-1]["response"] = params

    def record_page(self, message: dict[str, Any]) -> None:
        with self._cond:
            self._page.append(message)
            self._cond.notify_all()

    def network_snapshot(self) -> dict[str, list[dict[str, Any]]]:
        with self._cond:
            return copy.deepcopy(self._network)

    def network_event_count(self) -> int:
        with self._cond:
            return self._network_events

    def page_snapshot(self) -> list[dict[str, Any]]:
        with self._cond:
            return copy.deepcopy(self._page)

    def clear_network(self) -> None:
        with self._cond:
            self._network.clear()
            self._network_events = 0

    def clear_page(self) -> None:
        with self._cond:
            self._page.clear()

    def wait_for_page_event(self, method: str, timeout: float, *, start: int = 0) -> dict[str, Any] | None:
        """Wait until a ``Page.*`` notification named ``method`` is logged.

        Only entries at position ``start`` or later are considered.
        """
        deadline = time.monotonic() + max(0.0, float(timeout))
        with self._cond:
            while True:
                for entry in self._page[start:]:
                    if entry.get("method") == method:
                        return copy.deepcopy(entry)
                start = max(start, len(self._page))
                remaining = deadline - time.monotonic()
                if remaining <= 0 or self._closed is not None:
                    return None
                self._cond.wait(timeout=remaining)

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def closed(self) -> ConnectionClosed | None:
        with self._cond:
            return self._closed

    def fail_all(self, exc: ConnectionClosed) -> None:
        with self._cond:
            if self._closed is None:
                self._closed = exc
            pending = list(self._pending.values())
            self._pending.clear()
            self._cond.notify_all()
        for fut in pending:
            if fut.set_running_or_notify_cancel():
                fut.set_exception(exc)


def classify(message: dict[str, Any]) -> str:
    """Return ``network``, ``page``, ``reply`` or ``other`` for one message."""
    method = message.get("method")
    if isinstance(method, str) and method.startswith("Network."):
        return "network"
    if isinstance(method, str) and method.startswith("Page."):
        return "page"
    if "id" in message:
        return "reply"
    return "other"


def decode_message(payload: bytes) -> dict[str, Any] | None:
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


class EventDemultiplexer:
    """The long-lived reader task for one connection."""

    def __init__(
        self,
        next_frame: Callable[[], Any],
        state: ConnectionState,
        *,
        name: str = "inspector-demux",
    ) -> None:
        self._next_frame = next_frame
        self.state = state
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()

    def dispatch(self, message: dict[str, Any]) -> str:
        kind = classify(message)
        logger.debug("%s message (method=%s id=%s)", kind, message.get("method"), message.get("id"))
        if kind == "network":
            self.state.record_network(message)
        elif kind == "page":
            self.state.record_page(message)
        elif kind == "reply":
            self.state.resolve(message)
        return kind

    def _run(self) -> None:
        while True:
            try:
                frame = self._next_frame()
            except ConnectionClosed as exc:
                logger.info("reader stopping: %s", exc)
                self.state.fail_all(exc)
                return
            except Exception as exc:  # noqa: BLE001
                logger.exception("reader crashed")
                self.state.fail_all(ConnectionClosed(f"reader crashed: {exc}"))
                return

            message = decode_message(frame.payload)
            if message is None:
                logger.warning("skipping non-JSON %s frame (%d bytes)", frame.type, len(frame.payload))
                continue
            self.dispatch(message)


__all__ = ["ConnectionState", "EventDemultiplexer", "classify", "decode_message"]
