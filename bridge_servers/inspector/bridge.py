"""
Session bridge: WebDriver-style operations on top of a remote-debugging connection.

Each operation becomes one or more commands on the connection, usually a
``Runtime.evaluate`` of text built from the capability library helpers.
Element handles are indexes into a table that lives in the remote page; see
``registry.py`` for how staleness is tracked.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from .capability import (
    CAPABILITY_SCRIPT_SOURCE,
    LOCATOR_STRATEGIES,
    execute_expression,
    find_expression,
    find_from_expression,
    invoke_expression,
    probe_expression,
)
from .config import BridgeConfig
from .errors import NotFound, RemoteError, ScriptError
from .http_client import discover_ws_url
from .registry import ElementHandle, ElementRef, ElementRegistry
from .screenshot import png_from_data_url
from .session_cdp import CdpConnection

logger = logging.getLogger("inspector.bridge")


class Connection(Protocol):
    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]: ...

    def network_traffic(self) -> dict[str, list[dict[str, Any]]]: ...

    def page_notifications(self) -> list[dict[str, Any]]: ...

    def clear_notifications(self) -> None: ...

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None: ...

    def close(self) -> None: ...


def _thrown_value(result: dict[str, Any]) -> Any:
    details = result.get("exceptionDetails")
    if isinstance(details, dict):
        exc = details.get("exception")
        if isinstance(exc, dict):
            if "value" in exc:
                return exc["value"]
            if exc.get("description"):
                return exc["description"]
        return details.get("text")
    remote = result.get("result")
    if isinstance(remote, dict):
        if "value" in remote:
            return remote["value"]
        return remote.get("description")
    return None


def unwrap_evaluation(result: dict[str, Any]) -> Any:
    """Turn a ``Runtime.evaluate`` reply into a Python value.

    A thrown expression raises ScriptError. A missing result, ``undefined``
    and ``null`` all map to None, so an absent value never looks like False.
    """
    if result.get("wasThrown") or "exceptionDetails" in result:
        details = result.get("exceptionDetails")
        raise ScriptError(_thrown_value(result), details=details if isinstance(details, dict) else {})
    remote = result.get("result")
    if not isinstance(remote, dict):
        return None
    if remote.get("type") == "undefined" or remote.get("subtype") == "null":
        return None
    if "value" in remote:
        return remote["value"]
    # Not serialisable by value (returnByValue=false): hand back the description.
    return remote.get("description")


def _element_index_arg(arg: Any) -> ElementRef:
    if isinstance(arg, dict) and "ELEMENT" in arg:
        return str(arg["ELEMENT"])
    return arg


class SessionBridge:
    """WebDriver-ish operations for one automation session."""

    def __init__(self, connection: Connection, *, key_delay_ms: int = 100) -> None:
        self.conn = connection
        self.registry = ElementRegistry()
        self.key_delay_ms = max(0, int(key_delay_ms))

    @classmethod
    def open(cls, config: BridgeConfig | None = None) -> SessionBridge:
        """Attach to the peer described by ``config`` (env defaults when omitted)."""
        config = config or BridgeConfig.from_env()
        ws_url = discover_ws_url(config)
        conn = CdpConnection.open(
            ws_url,
            connect_timeout=config.connect_timeout,
            timeout=config.command_timeout,
            recv_size=config.recv_size,
        )
        return cls(conn, key_delay_ms=config.key_delay_ms)

    def __enter__(self) -> SessionBridge:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def capabilities() -> dict[str, Any]:
        return {
            "browserName": "MobileSafari",
            "javascriptEnabled": True,
            "takesScreenshot": True,
            "handlesAlerts": False,
            "databaseEnabled": False,
            "locationContextEnabled": False,
            "applicationCacheEnabled": False,
            "browserConnectionEnabled": False,
            "cssSelectorsEnabled": True,
            "webStorageEnabled": False,
            "rotatable": False,
            "acceptSslCerts": True,
            "nativeEvents": False,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────────────

    def evaluate(self, expression: str, *, return_by_value: bool = True) -> Any:
        result = self.conn.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": bool(return_by_value)},
        )
        return unwrap_evaluation(result)

    def ensure_capability(self) -> bool:
        """Inject the capability library unless the current document has it.

        Returns True when an injection happened.
        """
        if self.evaluate(probe_expression()) is False:
            return False
        self.evaluate(CAPABILITY_SCRIPT_SOURCE)
        logger.debug("capability library injected")
        return True

    def _invoke(self, ref: ElementRef, action: str, *args: Any) -> Any:
        index = self.registry.resolve(ref)
        reply = self.evaluate(invoke_expression(self.registry.epoch, index, action, list(args)))
        if not isinstance(reply, dict) or reply.get("stale"):
            self.registry.invalidate()
            raise NotFound(f"element {index} is no longer attached to the page")
        return reply.get("value")

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    def navigate(self, url: str, *, wait_load: bool = False, timeout: float = 10.0) -> bool:
        """Navigate the page; returns False only when ``wait_load`` saw no load event."""
        self.conn.send("Page.enable")
        self.conn.send("Network.disable")
        self.conn.send("Network.enable")
        self.conn.clear_notifications()
        self.registry.invalidate()

        result = self.conn.send("Page.navigate", {"url": url})
        error_text = result.get("errorText")
        if isinstance(error_text, str) and error_text:
            raise RemoteError("Page.navigate", None, error_text)
        if not wait_load:
            return True
        if self.conn.wait_for_event("Page.loadEventFired", timeout) is None:
            logger.warning("no Page.loadEventFired within %.1fs after navigating to %s", timeout, url)
            return False
        return True

    def reload(self) -> bool:
        result = self.conn.send("Page.reload", {"ignoreCache": True})
        self.registry.invalidate()
        return result == {}

    def title(self) -> str | None:
        return self.evaluate("document.title")

    def current_url(self) -> str | None:
        return self.evaluate("window.location.href")

    # ─────────────────────────────────────────────────────────────────────────
    # Elements
    # ─────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _check_strategy(strategy: str) -> None:
        if strategy not in LOCATOR_STRATEGIES:
            raise ValueError(f"unsupported locator strategy: {strategy!r}")

    def find_elements(self, strategy: str, value: str) -> list[ElementHandle]:
        """Locate elements in the document, replacing the element table."""
        self._check_strategy(strategy)
        self.ensure_capability()
        epoch = self.registry.begin_reset()
        count = self.evaluate(find_expression(strategy, value, epoch))
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            logger.warning("locate returned %r for %s=%r; treating as no match", count, strategy, value)
            count = 0
        return self.registry.complete_reset(int(count))

    def find_element(self, strategy: str, value: str) -> ElementHandle:
        handles = self.find_elements(strategy, value)
        if not handles:
            raise NotFound(f"no element matches {strategy}={value!r}")
        return handles[0]

    def find_child_elements(self, parent: ElementRef, strategy: str, value: str) -> list[ElementHandle]:
        """Locate elements under ``parent``, appending to the element table.

        Handles returned earlier stay valid; new ones continue the numbering.
        """
        self._check_strategy(strategy)
        index = self.registry.resolve(parent)
        reply = self.evaluate(find_from_expression(index, strategy, value, self.registry.epoch))
        if not isinstance(reply, dict) or reply.get("stale"):
            self.registry.invalidate()
            raise NotFound(f"parent element {index} is no longer attached to the page")
        return self.registry.extend(int(reply.get("start") or 0), int(reply.get("count") or 0))

    def is_enabled(self, ref: ElementRef) -> bool | None:
        return self._invoke(ref, "enabled")

    def is_displayed(self, ref: ElementRef) -> bool | None:
        return self._invoke(ref, "displayed")

    def text(self, ref: ElementRef) -> str | None:
        return self._invoke(ref, "text")

    def tag_name(self, ref: ElementRef) -> str | None:
        return self._invoke(ref, "tagName")

    def attribute(self, ref: ElementRef, name: str) -> Any:
        return self._invoke(ref, "attribute", str(name).strip())

    def click(self, ref: ElementRef) -> None:
        self._invoke(ref, "click")

    def set_value(self, ref: ElementRef, value: str | list[str]) -> None:
        """Type ``value`` into the element one key event per character.

        The page schedules the key events; this call waits until they have
        all had time to fire.
        """
        text = "".join(value) if isinstance(value, list) else str(value)
        self._invoke(ref, "type", text, self.key_delay_ms)
        if text and self.key_delay_ms:
            time.sleep(len(text) * self.key_delay_ms / 1000.0)

    def execute_script(self, script: str, args: list[Any] | None = None) -> Any:
        """Run ``script`` once per element argument, or once with none.

        Element arguments may be handles, bare indexes or ``{"ELEMENT": id}``
        objects. The value of the last invocation is returned.
        """
        indexes = [self.registry.resolve(_element_index_arg(a)) for a in (args or [])]
        reply = self.evaluate(execute_expression(script, self.registry.epoch, indexes))
        if isinstance(reply, dict) and reply.get("stale"):
            self.registry.invalidate()
            raise NotFound(f"elements {indexes} are no longer attached to the page")
        # An undefined result drops the key when returned by value.
        return reply.get("value") if isinstance(reply, dict) else None

    # ─────────────────────────────────────────────────────────────────────────
    # Page state
    # ─────────────────────────────────────────────────────────────────────────

    def cookies(self) -> list[dict[str, Any]]:
        result = self.conn.send("Page.getCookies")
        cookies = result.get("cookies")
        return list(cookies) if isinstance(cookies, list) else []

    def delete_cookie(self, name: str, url: str | None = None) -> bool:
        if url is None:
            url = self.current_url()
        result = self.conn.send("Page.deleteCookie", {"cookieName": name, "url": url})
        return result == {}

    def set_headers(self, headers: dict[str, Any]) -> bool:
        normalized = {str(k): str(v) for k, v in (headers or {}).items()}
        result = self.conn.send("Network.setExtraHTTPHeaders", {"headers": normalized})
        return result == {}

    def network_traffic(self) -> dict[str, list[dict[str, Any]]]:
        return self.conn.network_traffic()

    def page_notifications(self) -> list[dict[str, Any]]:
        return self.conn.page_notifications()

    def screenshot(self) -> str | None:
        """Capture the viewport as base64 PNG, or None when the peer returned nothing."""
        size = self.evaluate("[window.innerWidth, window.innerHeight]")
        width, height = (size if isinstance(size, list) and len(size) == 2 else (0, 0))
        try:
            result = self.conn.send(
                "Page.snapshotRect",
                {"x": 0, "y": 0, "width": int(width or 0), "height": int(height or 0), "coordinateSystem": "Viewport"},
            )
        except RemoteError as exc:
            # Chromium peers have no snapshotRect.
            logger.info("Page.snapshotRect unavailable (%s); using Page.captureScreenshot", exc.message)
            result = self.conn.send("Page.captureScreenshot", {"format": "png"})
            data = result.get("data")
            return data if isinstance(data, str) and data else None
        data_url = result.get("dataURL")
        return png_from_data_url(data_url) if isinstance(data_url, str) else None


__all__ = ["Connection", "SessionBridge", "unwrap_evaluation"]
