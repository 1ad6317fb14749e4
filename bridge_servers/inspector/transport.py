"""Socket ownership, WebSocket upgrade handshake and frame I/O."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import socket
import threading
from collections import deque
from contextlib import suppress
from urllib.parse import urlsplit

from .errors import ConnectionClosed, FrameError, HandshakeError, NotHandshaked
from .frame_codec import CLOSE_NORMAL, Frame, FrameDecoder, encode_close, encode_frame

logger = logging.getLogger("inspector.transport")

WS_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"
_MAX_HANDSHAKE_BYTES = 64 * 1024

STATE_PENDING = "pending"
STATE_ESTABLISHED = "established"
STATE_CLOSED = "closed"


def expected_accept(key: str) -> str:
    digest = hashlib.sha1((key + WS_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


class ClientHandshake:
    """Client side of the HTTP/1.1 upgrade.

    ``feed`` accumulates response bytes until the header block is complete;
    anything after the blank line already belongs to the frame stream and is
    kept in ``leftover``.
    """

    def __init__(self, endpoint: str, key: str | None = None) -> None:
        parts = urlsplit(endpoint)
        if parts.scheme not in ("ws", "wss"):
            raise HandshakeError(f"unsupported endpoint scheme: {parts.scheme or '(none)'}")
        if parts.scheme == "wss":
            raise HandshakeError("wss:// endpoints are not supported")
        if not parts.hostname:
            raise HandshakeError(f"endpoint has no host: {endpoint}")
        self.endpoint = endpoint
        self.host = parts.hostname
        self.port = parts.port or 80
        self.resource = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        self.key = key or base64.b64encode(os.urandom(16)).decode("ascii")
        self.version = 13
        self.status: int | None = None
        self.headers: dict[str, str] = {}
        self.leftover = b""
        self._buf = bytearray()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def request_bytes(self) -> bytes:
        host = self.host if self.port == 80 else f"{self.host}:{self.port}"
        lines = [
            f"GET {self.resource} HTTP/1.1",
            f"Host: {host}",
            "Upgrade: websocket",
            "Connection: Upgrade",
            f"Sec-WebSocket-Key: {self.key}",
            f"Sec-WebSocket-Version: {self.version}",
            "",
            "",
        ]
        return "\r\n".join(lines).encode("ascii")

    def feed(self, data: bytes) -> bool:
        """Accumulate response bytes; return True once the response is complete and valid."""
        if self._finished:
            self.leftover += data
            return True
        self._buf.extend(data)
        end = self._buf.find(b"\r\n\r\n")
        if end < 0:
            if len(self._buf) > _MAX_HANDSHAKE_BYTES:
                raise HandshakeError("upgrade response headers too large")
            return False
        head = bytes(self._buf[:end]).decode("latin-1")
        self.leftover = bytes(self._buf[end + 4 :])
        self._buf.clear()
        self._parse(head)
        self._finished = True
        return True

    def _parse(self, head: str) -> None:
        status_line, _, rest = head.partition("\r\n")
        parts = status_line.split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            raise HandshakeError(f"malformed status line: {status_line!r}")
        try:
            self.status = int(parts[1])
        except ValueError as exc:
            raise HandshakeError(f"malformed status line: {status_line!r}") from exc
        for line in rest.split("\r\n"):
            name, sep, value = line.partition(":")
            if sep:
                self.headers[name.strip().lower()] = value.strip()

        if self.status != 101:
            raise HandshakeError(f"upgrade rejected with status {self.status}")
        if self.headers.get("upgrade", "").lower() != "websocket":
            raise HandshakeError("missing 'Upgrade: websocket' header")
        connection = [t.strip().lower() for t in self.headers.get("connection", "").split(",")]
        if "upgrade" not in connection:
            raise HandshakeError("missing 'Connection: Upgrade' header")
        if self.headers.get("sec-websocket-accept") != expected_accept(self.key):
            raise HandshakeError("Sec-WebSocket-Accept does not match the request key")


class TransportConnection:
    """One upgraded socket.

    Reads happen on a single thread (the demultiplexer). Writes may come from
    any thread and are serialised by ``_send_lock``.
    """

    def __init__(self, sock: socket.socket, handshake: ClientHandshake, *, recv_size: int = 4096) -> None:
        self.sock = sock
        self.handshake = handshake
        self.recv_size = max(1, int(recv_size))
        self.state = STATE_PENDING
        self._decoder = FrameDecoder()
        self._ready: deque[Frame] = deque()
        self._send_lock = threading.Lock()
        self._close_reason: str | None = None

    @property
    def endpoint(self) -> str:
        return self.handshake.endpoint

    @property
    def version(self) -> int:
        return self.handshake.version

    def perform_handshake(self) -> None:
        if self.state != STATE_PENDING:
            raise HandshakeError(f"handshake already attempted (state={self.state})")
        try:
            self.sock.sendall(self.handshake.request_bytes())
            while not self.handshake.finished:
                data = self.sock.recv(self.recv_size)
                if not data:
                    raise HandshakeError("peer closed the socket during the upgrade")
                self.handshake.feed(data)
        except HandshakeError:
            self._mark_closed("handshake failed")
            raise
        except OSError as exc:
            self._mark_closed("handshake failed")
            raise HandshakeError(f"socket error during upgrade: {exc}") from exc

        self.state = STATE_ESTABLISHED
        if self.handshake.leftover:
            self._buffer(self.handshake.leftover)
        logger.debug("upgrade complete for %s (version %d)", self.endpoint, self.version)

    def send_frame(self, payload: bytes | str, frame_type: str = "text") -> None:
        if self.state == STATE_PENDING:
            raise NotHandshaked("cannot send before the upgrade handshake completes")
        if self.state == STATE_CLOSED:
            raise ConnectionClosed(self._close_reason or "connection closed")
        data = encode_frame(payload, frame_type)
        try:
            with self._send_lock:
                self.sock.sendall(data)
        except OSError as exc:
            self._mark_closed(f"send failed: {exc}")
            raise ConnectionClosed(str(exc)) from exc

    def send_text(self, text: str) -> None:
        self.send_frame(text, "text")

    def next_frame(self) -> Frame:
        """Block until one data frame is available.

        Pings are answered and pongs swallowed here; a close frame ends the
        connection and raises ConnectionClosed, as does every later call.
        """
        if self.state == STATE_PENDING:
            raise NotHandshaked("cannot read before the upgrade handshake completes")
        while True:
            while self._ready:
                frame = self._ready.popleft()
                if frame.type == "ping":
                    logger.debug("ping (%d bytes), answering", len(frame.payload))
                    with suppress(ConnectionClosed):
                        self.send_frame(frame.payload, "pong")
                    continue
                if frame.type == "pong":
                    continue
                if frame.type == "close":
                    self._on_close_frame(frame)
                    raise ConnectionClosed(self._close_reason or "peer closed")
                return frame

            if self.state == STATE_CLOSED:
                raise ConnectionClosed(self._close_reason or "connection closed")
            try:
                data = self.sock.recv(self.recv_size)
            except OSError as exc:
                self._mark_closed(f"recv failed: {exc}")
                raise ConnectionClosed(str(exc)) from exc
            if not data:
                self._mark_closed("peer closed the socket")
                raise ConnectionClosed("peer closed the socket")
            self._buffer(data)

    def _buffer(self, data: bytes) -> None:
        try:
            self._ready.extend(self._decoder.feed(data))
        except FrameError as exc:
            logger.warning("protocol violation from %s: %s", self.endpoint, exc)
            self._mark_closed(f"protocol violation: {exc}")
            raise ConnectionClosed(str(exc)) from exc

    def _on_close_frame(self, frame: Frame) -> None:
        code = frame.close_code()
        logger.info("peer sent close (code=%s)", code)
        if self.state == STATE_ESTABLISHED:
            with suppress(OSError), self._send_lock:
                self.sock.sendall(encode_close(code or CLOSE_NORMAL))
        self._mark_closed(f"peer closed (code={code})")

    def _mark_closed(self, reason: str) -> None:
        if self.state == STATE_CLOSED:
            return
        self.state = STATE_CLOSED
        self._close_reason = reason
        with suppress(OSError):
            self.sock.shutdown(socket.SHUT_RDWR)
        with suppress(OSError):
            self.sock.close()

    def close(self) -> None:
        """Send a best-effort close frame, then break the socket.

        Shutting the socket down unblocks a reader parked in ``recv``.
        """
        if self.state == STATE_ESTABLISHED:
            with suppress(OSError), self._send_lock:
                self.sock.sendall(encode_close())
        self._mark_closed("closed locally")


def connect(endpoint: str, *, timeout: float = 5.0, recv_size: int = 4096) -> TransportConnection:
    """Open a TCP connection to ``endpoint`` and complete the upgrade."""
    handshake = ClientHandshake(endpoint)
    try:
        sock = socket.create_connection((handshake.host, handshake.port), timeout=timeout)
    except OSError as exc:
        raise HandshakeError(f"cannot reach {handshake.host}:{handshake.port}: {exc}") from exc
    conn = TransportConnection(sock, handshake, recv_size=recv_size)
    conn.perform_handshake()
    # The demultiplexer blocks in recv indefinitely; deadlines live in the dispatcher.
    sock.settimeout(None)
    return conn


__all__ = [
    "STATE_CLOSED",
    "STATE_ESTABLISHED",
    "STATE_PENDING",
    "ClientHandshake",
    "TransportConnection",
    "connect",
    "expected_accept",
]
