"""CdpConnection: one remote-debugging connection with its reader thread.

Wires the transport, the demultiplexer and the dispatcher together and is the
object the session bridge talks to.
"""

from __future__ import annotations

import logging
from typing import Any

from .demux import ConnectionState, EventDemultiplexer
from .dispatcher import CommandDispatcher
from .transport import TransportConnection, connect

logger = logging.getLogger("inspector.session")


class CdpConnection:
    """Remote-debugging connection over a single upgraded socket."""

    def __init__(self, transport: TransportConnection, *, timeout: float = 10.0) -> None:
        self.transport = transport
        self.state = ConnectionState()
        self.dispatcher = CommandDispatcher(transport, self.state, timeout=timeout)
        self._demux = EventDemultiplexer(transport.next_frame, self.state)
        self._demux.start()

    @classmethod
    def open(
        cls,
        ws_url: str,
        *,
        connect_timeout: float = 5.0,
        timeout: float = 10.0,
        recv_size: int = 4096,
    ) -> CdpConnection:
        transport = connect(ws_url, timeout=connect_timeout, recv_size=recv_size)
        logger.info("connected to %s", ws_url)
        return cls(transport, timeout=timeout)

    @property
    def ws_url(self) -> str:
        return self.transport.endpoint

    @property
    def timeout(self) -> float:
        return self.dispatcher.timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self.dispatcher.timeout = float(value)

    def __enter__(self) -> CdpConnection:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send a command and wait for its correlated reply."""
        return self.dispatcher.call(method, params, timeout=timeout)

    def network_traffic(self) -> dict[str, list[dict[str, Any]]]:
        return self.state.network_snapshot()

    def page_notifications(self) -> list[dict[str, Any]]:
        return self.state.page_snapshot()

    def clear_notifications(self) -> None:
        self.state.clear_network()
        self.state.clear_page()

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Wait for a ``Page.*`` notification logged since the last clear."""
        return self.state.wait_for_page_event(event_name, timeout)

    def close(self) -> None:
        self.transport.close()
        self._demux.join(timeout=2.0)


__all__ = ["CdpConnection"]
