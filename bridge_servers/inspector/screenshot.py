"""Screenshot payload normalisation.

WebDriver clients expect base64 PNG. WebKit's ``Page.snapshotRect`` answers
with a data URL whose image type is up to the peer, so anything that is not
already PNG is re-encoded with Pillow.
"""

from __future__ import annotations

import base64
import binascii
import logging
from io import BytesIO

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("inspector.screenshot")

_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


def split_data_url(data_url: str) -> tuple[str, bytes] | None:
    """Return (mime type, raw bytes) for a base64 data URL, or None."""
    if not isinstance(data_url, str) or not data_url.startswith("data:"):
        return None
    header, sep, body = data_url.partition(",")
    if not sep or ";base64" not in header:
        return None
    mime = header[len("data:") :].split(";", 1)[0] or "application/octet-stream"
    try:
        return mime, base64.b64decode(body, validate=False)
    except (binascii.Error, ValueError):
        return None


def to_png_base64(raw: bytes) -> str | None:
    if raw.startswith(_PNG_MAGIC):
        return base64.b64encode(raw).decode("ascii")
    try:
        with Image.open(BytesIO(raw)) as img:
            out = BytesIO()
            img.save(out, format="PNG")
    except (UnidentifiedImageError, OSError) as exc:
        logger.warning("screenshot payload is not a decodable image: %s", exc)
        return None
    return base64.b64encode(out.getvalue()).decode("ascii")


def png_from_data_url(data_url: str) -> str | None:
    parts = split_data_url(data_url)
    if parts is None:
        return None
    _mime, raw = parts
    return to_png_base64(raw)


__all__ = ["png_from_data_url", "split_data_url", "to_png_base64"]
