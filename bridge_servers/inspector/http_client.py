"""Remote-debugging target discovery over the peer's plain HTTP endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

from .config import BridgeConfig
from .errors import BridgeError

logger = logging.getLogger("inspector.http_client")


class HttpClientError(BridgeError):
    pass


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    req = Request(url, headers={"User-Agent": "inspector-bridge/0.1"})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc
    except json.JSONDecodeError as exc:
        raise HttpClientError(f"target list at {url} is not JSON") from exc


def list_targets(config: BridgeConfig) -> list[dict[str, Any]]:
    """Return the debuggable targets the peer advertises at ``/json``."""
    data = _http_get_json(config.targets_url, timeout=config.connect_timeout)
    if not isinstance(data, list):
        raise HttpClientError(f"unexpected target list shape from {config.targets_url}")
    return [t for t in data if isinstance(t, dict)]


def discover_ws_url(config: BridgeConfig) -> str:
    """Pick the WebSocket URL to attach to.

    An explicit ``config.ws_url`` wins. Otherwise the first target exposing a
    ``webSocketDebuggerUrl`` is used, preferring ones typed ``page``.
    """
    if config.ws_url:
        return config.ws_url
    targets = [t for t in list_targets(config) if isinstance(t.get("webSocketDebuggerUrl"), str)]
    if not targets:
        raise HttpClientError(f"no attachable target at {config.targets_url}")
    pages = [t for t in targets if t.get("type") in (None, "page")]
    chosen = (pages or targets)[0]
    logger.info("attaching to target %s (%s)", chosen.get("id"), chosen.get("url"))
    return str(chosen["webSocketDebuggerUrl"])


__all__ = ["HttpClientError", "discover_ws_url", "list_targets"]
