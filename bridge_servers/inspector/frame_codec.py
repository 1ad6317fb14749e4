"""WebSocket frame codec.

Decoding is incremental: the transport feeds whatever a socket read returned
and gets back zero or more complete logical frames. Fragmented messages are
re-assembled here so callers only ever see whole text/binary messages.
Encoding delegates to websocket-client's ``ABNF`` so outgoing client frames
are masked exactly as RFC 6455 requires.
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass

from websocket import ABNF

from .errors import FrameError

CLOSE_NORMAL = 1000

FRAME_TYPES: dict[int, str] = {
    ABNF.OPCODE_TEXT: "text",
    ABNF.OPCODE_BINARY: "binary",
    ABNF.OPCODE_CLOSE: "close",
    ABNF.OPCODE_PING: "ping",
    ABNF.OPCODE_PONG: "pong",
}
OPCODES: dict[str, int] = {name: opcode for opcode, name in FRAME_TYPES.items()}
_CONTROL_OPCODES = {ABNF.OPCODE_CLOSE, ABNF.OPCODE_PING, ABNF.OPCODE_PONG}
_MAX_CONTROL_PAYLOAD = 125


@dataclass(frozen=True)
class Frame:
    type: str
    payload: bytes = b""

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def close_code(self) -> int | None:
        if self.type != "close" or len(self.payload) < 2:
            return None
        return struct.unpack("!H", self.payload[:2])[0]


class FrameDecoder:
    """Turns a byte stream into frames, tolerating arbitrary read boundaries."""

    def __init__(self) -> None:
        self._buf = bytearray()
        self._fragment_opcode: int | None = None
        self._fragments: list[bytes] = []

    @property
    def buffered(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes) -> list[Frame]:
        if data:
            self._buf.extend(data)
        frames: list[Frame] = []
        while True:
            parsed = self._parse_one()
            if parsed is None:
                return frames
            fin, opcode, payload = parsed
            frame = self._assemble(fin, opcode, payload)
            if frame is not None:
                frames.append(frame)

    def _parse_one(self) -> tuple[bool, int, bytes] | None:
        buf = self._buf
        if len(buf) < 2:
            return None
        b0, b1 = buf[0], buf[1]
        fin = bool(b0 & 0x80)
        if b0 & 0x70:
            raise FrameError("reserved bits set without a negotiated extension")
        opcode = b0 & 0x0F
        masked = bool(b1 & 0x80)
        length = b1 & 0x7F
        offset = 2
        if length == 126:
            if len(buf) < offset + 2:
                return None
            (length,) = struct.unpack_from("!H", buf, offset)
            offset += 2
        elif length == 127:
            if len(buf) < offset + 8:
                return None
            (length,) = struct.unpack_from("!Q", buf, offset)
            offset += 8
        mask_key = b""
        if masked:
            if len(buf) < offset + 4:
                return None
            mask_key = bytes(buf[offset : offset + 4])
            offset += 4
        if len(buf) < offset + length:
            return None

        payload = bytes(buf[offset : offset + length])
        del buf[: offset + length]
        if masked:
            payload = ABNF.mask(mask_key, payload)
        return fin, opcode, payload

    def _assemble(self, fin: bool, opcode: int, payload: bytes) -> Frame | None:
        if opcode in _CONTROL_OPCODES:
            if not fin or len(payload) > _MAX_CONTROL_PAYLOAD:
                raise FrameError(f"invalid {FRAME_TYPES[opcode]} control frame")
            # Control frames may arrive between fragments of a data message.
            return Frame(FRAME_TYPES[opcode], payload)

        if opcode == ABNF.OPCODE_CONT:
            if self._fragment_opcode is None:
                raise FrameError("continuation frame without a message in progress")
            self._fragments.append(payload)
            if not fin:
                return None
            frame = Frame(FRAME_TYPES[self._fragment_opcode], b"".join(self._fragments))
            self._fragment_opcode = None
            self._fragments = []
            return frame

        if opcode not in (ABNF.OPCODE_TEXT, ABNF.OPCODE_BINARY):
            raise FrameError(f"unknown opcode 0x{opcode:x}")
        if self._fragment_opcode is not None:
            raise FrameError("new data frame while a fragmented message is in progress")
        if fin:
            return Frame(FRAME_TYPES[opcode], payload)
        self._fragment_opcode = opcode
        self._fragments = [payload]
        return None


def encode_frame(
    payload: bytes | str,
    frame_type: str = "text",
    *,
    mask_key: bytes | None = None,
) -> bytes:
    """Serialise one masked client frame.

    ``mask_key`` pins the 4-byte masking key; by default a random key is used.
    """
    opcode = OPCODES.get(frame_type)
    if opcode is None:
        raise ValueError(f"unknown frame type: {frame_type!r}")
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    frame = ABNF.create_frame(payload, opcode)
    if mask_key is not None:
        if len(mask_key) != 4:
            raise ValueError("mask_key must be 4 bytes")
        key = bytes(mask_key)
        get_key: Callable[[int], bytes] = lambda _n: key  # noqa: E731
        frame.get_mask_key = get_key
    return frame.format()


def encode_close(code: int = CLOSE_NORMAL, reason: str = "") -> bytes:
    return encode_frame(struct.pack("!H", code) + reason.encode("utf-8"), "close")


__all__ = ["CLOSE_NORMAL", "FRAME_TYPES", "Frame", "FrameDecoder", "encode_close", "encode_frame"]
