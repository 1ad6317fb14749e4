from __future__ import annotations

import base64
import json
import re
from io import BytesIO
from typing import Any

import pytest
from PIL import Image

from bridge_servers.inspector import bridge as bridge_mod
from bridge_servers.inspector.bridge import SessionBridge, unwrap_evaluation
from bridge_servers.inspector.capability import CAPABILITY_SCRIPT_SOURCE
from bridge_servers.inspector.errors import NotFound, RemoteError, ScriptError

_FIND_RE = re.compile(r"\.find\((.*)\)$")
_FIND_FROM_RE = re.compile(r"\.findFrom\((.*)\) : \{stale: true\}\)$")
_INVOKE_RE = re.compile(r"\.invoke\((.*)\) : \{stale: true\}\)$")
_EXECUTE_RE = re.compile(r"__bridge\.element\((\d+), (\d+)\)")
_HAS_RE = re.compile(r"__bridge\.has\((\d+), (\[[^\]]*\])\)")


def _args(raw: str) -> list[Any]:
    return json.loads("[" + raw + "]")


def _value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"result": {"type": "undefined"}}
    kind = "object" if isinstance(value, (dict, list)) else type(value).__name__
    return {"result": {"type": kind, "value": value}}


def _png(size: tuple[int, int] = (4, 3), fmt: str = "PNG") -> bytes:
    out = BytesIO()
    Image.new("RGB", size, (200, 10, 10)).save(out, format=fmt)
    return out.getvalue()


class FakeRemote:
    """Stands in for CdpConnection: a page with an element table and the capability library."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.injected = False
        self.epoch: int | None = None
        self.table: list[dict[str, Any]] = []
        self.matches: dict[tuple[str, str], list[dict[str, Any]]] = {}
        self.children: dict[tuple[str, str, str], list[dict[str, Any]]] = {}
        self.values: dict[str, Any] = {}
        self.replies: dict[str, Any] = {}
        self.clicked: list[str] = []
        self.typed: list[tuple[str, str, int]] = []
        self.executed: list[str] = []
        self.page: list[dict[str, Any]] = []
        self.load_fires = True
        self.closed = False

    # Connection protocol

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        reply = self.replies.get(method)
        if isinstance(reply, Exception):
            raise reply
        if method == "Runtime.evaluate":
            return self._evaluate(params["expression"])
        if method == "Page.navigate":
            self.injected = False
            self.epoch = None
            self.table = []
            if self.load_fires:
                self.page.append({"method": "Page.loadEventFired", "params": {}})
        return {} if reply is None else reply

    def network_traffic(self) -> dict[str, list[dict[str, Any]]]:
        return {}

    def page_notifications(self) -> list[dict[str, Any]]:
        return list(self.page)

    def clear_notifications(self) -> None:
        self.page.clear()

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        for entry in self.page:
            if entry["method"] == event_name:
                return entry
        return None

    def close(self) -> None:
        self.closed = True

    # Page model

    def evaluations(self) -> list[str]:
        return [p["expression"] for m, p in self.calls if m == "Runtime.evaluate"]

    def _evaluate(self, expr: str) -> dict[str, Any]:
        if expr.startswith('typeof window.__inspectorBridge === "undefined"'):
            return _value(not self.injected)
        if expr == CAPABILITY_SCRIPT_SOURCE:
            self.injected = True
            return _value(True)
        if m := _FIND_FROM_RE.search(expr):
            parent, strategy, value, epoch = _args(m.group(1))
            if epoch != self.epoch:
                return _value({"stale": True})
            found = self.children.get((self.table[parent]["id"], strategy, value), [])
            start = len(self.table)
            self.table.extend(found)
            return _value({"start": start, "count": len(found)})
        if m := _INVOKE_RE.search(expr):
            epoch, index, action, args = _args(m.group(1))
            if epoch != self.epoch or index >= len(self.table):
                return _value({"stale": True})
            return _value({"value": self._act(self.table[index], action, args)})
        if m := _FIND_RE.search(expr):
            strategy, value, epoch = _args(m.group(1))
            self.epoch = epoch
            self.table = list(self.matches.get((strategy, value), []))
            return _value(len(self.table))
        if "__fn" in expr:
            self.executed.append(expr)
            if m := _HAS_RE.search(expr):
                epoch, wanted = int(m.group(1)), json.loads(m.group(2))
                if epoch != self.epoch or any(i >= len(self.table) for i in wanted):
                    return _value({"stale": True})
            return _value({"value": self.values.get("__execute__")})
        return self.values.get(expr, _value(None))

    def _act(self, el: dict[str, Any], action: str, args: list[Any]) -> Any:
        if action == "text":
            return el.get("text", "")
        if action == "tagName":
            return el.get("tag", "div")
        if action == "attribute":
            return el.get("attrs", {}).get(args[0])
        if action == "enabled":
            return not el.get("disabled", False)
        if action == "displayed":
            return el.get("displayed", True)
        if action == "click":
            self.clicked.append(el["id"])
            return None
        if action == "type":
            self.typed.append((el["id"], args[0], args[1]))
            return None
        raise AssertionError(f"unexpected action {action}")


def _links() -> list[dict[str, Any]]:
    return [
        {"id": "home", "tag": "a", "text": "Home", "attrs": {"href": "/"}},
        {"id": "docs", "tag": "a", "text": "Docs", "attrs": {"href": "/docs"}},
        {"id": "blog", "tag": "a", "text": "Blog", "attrs": {"href": "/blog"}, "displayed": False},
    ]


@pytest.fixture()
def remote() -> FakeRemote:
    fake = FakeRemote()
    fake.matches[("tag name", "a")] = _links()
    fake.matches[("css selector", "a")] = _links()
    return fake


@pytest.fixture()
def session(remote: FakeRemote) -> SessionBridge:
    return SessionBridge(remote, key_delay_ms=100)


# ─────────────────────────────────────────────────────────────────────────────
# Evaluation results
# ─────────────────────────────────────────────────────────────────────────────


def test_unwrap_evaluation_values() -> None:
    assert unwrap_evaluation({"result": {"type": "number", "value": 3}}) == 3
    assert unwrap_evaluation({"result": {"type": "boolean", "value": False}}) is False
    assert unwrap_evaluation({"result": {"type": "undefined"}}) is None
    assert unwrap_evaluation({"result": {"type": "object", "subtype": "null", "value": None}}) is None
    assert unwrap_evaluation({}) is None
    assert unwrap_evaluation({"result": {"type": "object", "description": "HTMLDivElement"}}) == "HTMLDivElement"


def test_unwrap_evaluation_thrown() -> None:
    with pytest.raises(ScriptError) as info:
        unwrap_evaluation({"wasThrown": True, "result": {"type": "object", "description": "ReferenceError: x"}})
    assert info.value.value == "ReferenceError: x"

    with pytest.raises(ScriptError) as info:
        unwrap_evaluation(
            {
                "result": {"type": "object"},
                "exceptionDetails": {"text": "Uncaught", "exception": {"description": "TypeError: y"}},
            }
        )
    assert info.value.value == "TypeError: y"
    assert info.value.details["text"] == "Uncaught"


def test_evaluate_sends_return_by_value(session: SessionBridge, remote: FakeRemote) -> None:
    remote.values["1 + 1"] = _value(2)
    assert session.evaluate("1 + 1") == 2
    assert remote.calls[-1] == ("Runtime.evaluate", {"expression": "1 + 1", "returnByValue": True})


# ─────────────────────────────────────────────────────────────────────────────
# Navigation
# ─────────────────────────────────────────────────────────────────────────────


def test_navigate_enables_domains_then_navigates(session: SessionBridge, remote: FakeRemote) -> None:
    assert session.navigate("http://example.test/", wait_load=True, timeout=1.0) is True
    assert [m for m, _ in remote.calls] == ["Page.enable", "Network.disable", "Network.enable", "Page.navigate"]
    assert remote.calls[-1][1] == {"url": "http://example.test/"}


def test_navigate_without_load_event(session: SessionBridge, remote: FakeRemote) -> None:
    remote.load_fires = False
    assert session.navigate("http://example.test/", wait_load=True, timeout=0.01) is False
    assert session.navigate("http://example.test/") is True


def test_navigate_error_text_raises(session: SessionBridge, remote: FakeRemote) -> None:
    remote.replies["Page.navigate"] = {"frameId": "1", "errorText": "net::ERR_NAME_NOT_RESOLVED"}
    with pytest.raises(RemoteError):
        session.navigate("http://nowhere.invalid/")


def test_reload_reports_empty_result(session: SessionBridge, remote: FakeRemote) -> None:
    assert session.reload() is True
    assert remote.calls[-1] == ("Page.reload", {"ignoreCache": True})
    remote.replies["Page.reload"] = {"unexpected": 1}
    assert session.reload() is False


def test_title_and_url(session: SessionBridge, remote: FakeRemote) -> None:
    remote.values["document.title"] = _value("Example")
    remote.values["window.location.href"] = _value("http://example.test/")
    assert session.title() == "Example"
    assert session.current_url() == "http://example.test/"


# ─────────────────────────────────────────────────────────────────────────────
# Elements
# ─────────────────────────────────────────────────────────────────────────────


def test_find_then_read_and_click(session: SessionBridge, remote: FakeRemote) -> None:
    session.navigate("http://example.test/")
    handles = session.find_elements("css selector", "a")
    assert [h.index for h in handles] == [0, 1, 2]
    assert remote.injected

    assert session.text(handles[1]) == "Docs"
    assert session.tag_name(handles[1]) == "a"
    assert session.attribute(handles[1], " href ") == "/docs"
    assert session.is_displayed(handles[2]) is False
    assert session.is_enabled(handles[0]) is True

    before = len(remote.evaluations())
    session.click(handles[1])
    assert len(remote.evaluations()) == before + 1
    assert remote.clicked == ["docs"]


def test_capability_injected_once_per_document(session: SessionBridge, remote: FakeRemote) -> None:
    session.find_elements("tag name", "a")
    session.find_elements("tag name", "a")
    assert remote.evaluations().count(CAPABILITY_SCRIPT_SOURCE) == 1

    session.navigate("http://example.test/other")
    session.find_elements("tag name", "a")
    assert remote.evaluations().count(CAPABILITY_SCRIPT_SOURCE) == 2


def test_bare_and_wire_refs_resolve(session: SessionBridge, remote: FakeRemote) -> None:
    session.find_elements("tag name", "a")
    assert session.text(0) == "Home"
    assert session.text("2") == "Blog"


def test_find_element_no_match(session: SessionBridge) -> None:
    assert session.find_elements("css selector", ".missing") == []
    with pytest.raises(NotFound):
        session.find_element("css selector", ".missing")


def test_unknown_strategy_rejected(session: SessionBridge, remote: FakeRemote) -> None:
    with pytest.raises(ValueError):
        session.find_elements("accessibility id", "x")
    assert remote.calls == []


def test_locator_value_is_quoted(session: SessionBridge, remote: FakeRemote) -> None:
    hostile = 'a[title="x\'); alert(1); //"]'
    remote.matches[("css selector", hostile)] = [{"id": "odd"}]
    handles = session.find_elements("css selector", hostile)
    assert len(handles) == 1


def test_child_find_appends_to_table(session: SessionBridge, remote: FakeRemote) -> None:
    remote.matches[("tag name", "ul")] = [{"id": "list"}]
    remote.children[("list", "tag name", "li")] = [{"id": "li-1", "text": "one"}, {"id": "li-2", "text": "two"}]

    parents = session.find_elements("tag name", "ul")
    session.find_elements("tag name", "a")
    # The find above replaced the table, so the earlier parent is gone.
    with pytest.raises(NotFound):
        session.find_child_elements(parents[0], "tag name", "li")

    links = session.find_elements("tag name", "a")
    remote.children[("docs", "tag name", "li")] = [{"id": "li-1", "text": "one"}, {"id": "li-2", "text": "two"}]
    children = session.find_child_elements(links[1], "tag name", "li")
    assert [h.index for h in children] == [3, 4]
    assert session.text(children[1]) == "two"
    assert session.text(links[0]) == "Home"


def test_handles_stale_after_navigation(session: SessionBridge, remote: FakeRemote) -> None:
    handles = session.find_elements("tag name", "a")
    session.navigate("http://example.test/next")
    with pytest.raises(NotFound):
        session.text(handles[0])
    with pytest.raises(NotFound):
        session.text(0)


def test_remote_table_loss_is_detected(session: SessionBridge, remote: FakeRemote) -> None:
    handles = session.find_elements("tag name", "a")
    # Page replaced its document without us navigating.
    remote.epoch = None
    with pytest.raises(NotFound):
        session.click(handles[0])
    assert remote.clicked == []
    assert session.registry.count == 0


def test_set_value_waits_for_key_events(
    session: SessionBridge, remote: FakeRemote, monkeypatch: pytest.MonkeyPatch
) -> None:
    slept: list[float] = []
    monkeypatch.setattr(bridge_mod.time, "sleep", slept.append)
    handles = session.find_elements("tag name", "a")

    session.set_value(handles[0], ["ab", "c"])
    assert remote.typed == [("home", "abc", 100)]
    assert slept == [pytest.approx(0.3)]


def test_execute_script_runs_per_element(session: SessionBridge, remote: FakeRemote) -> None:
    handles = session.find_elements("tag name", "a")
    remote.values["__execute__"] = "blog"

    out = session.execute_script("return arguments[0].id;", [handles[0], {"ELEMENT": "2"}])
    assert out == "blog"
    expr = remote.executed[-1]
    epoch = session.registry.epoch
    assert [tuple(map(int, m)) for m in _EXECUTE_RE.findall(expr)] == [(epoch, 0), (epoch, 2)]

    session.execute_script("return 1;")
    assert "__result = __fn();" in remote.executed[-1]


def test_execute_script_rejects_unknown_element(session: SessionBridge) -> None:
    with pytest.raises(NotFound):
        session.execute_script("return 1;", [{"ELEMENT": "9"}])


def test_execute_script_on_lost_table_is_not_found(session: SessionBridge, remote: FakeRemote) -> None:
    handles = session.find_elements("tag name", "a")
    # Page replaced its document without us navigating.
    remote.epoch = None
    remote.values["__execute__"] = "should not run"

    with pytest.raises(NotFound):
        session.execute_script("return arguments[0].id;", [handles[0]])
    assert session.registry.count == 0
    with pytest.raises(NotFound):
        session.execute_script("return 1;", [handles[0]])


def test_execute_script_undefined_result(session: SessionBridge, remote: FakeRemote) -> None:
    handles = session.find_elements("tag name", "a")
    assert session.execute_script("arguments[0].focus();", [handles[1]]) is None
    assert "if (!__bridge || !__bridge.has(" in remote.executed[-1]


def test_execute_script_error(session: SessionBridge, remote: FakeRemote) -> None:
    remote.values["boom"] = {"result": {"type": "object"}, "exceptionDetails": {"text": "Error: boom"}}
    with pytest.raises(ScriptError):
        session.evaluate("boom")


# ─────────────────────────────────────────────────────────────────────────────
# Page state
# ─────────────────────────────────────────────────────────────────────────────


def test_cookies(session: SessionBridge, remote: FakeRemote) -> None:
    remote.replies["Page.getCookies"] = {"cookies": [{"name": "sid", "value": "1"}]}
    assert session.cookies() == [{"name": "sid", "value": "1"}]


def test_delete_cookie_defaults_to_current_url(session: SessionBridge, remote: FakeRemote) -> None:
    remote.values["window.location.href"] = _value("http://example.test/a")
    assert session.delete_cookie("sid") is True
    assert remote.calls[-1] == ("Page.deleteCookie", {"cookieName": "sid", "url": "http://example.test/a"})

    remote.replies["Page.deleteCookie"] = {"partial": True}
    assert session.delete_cookie("sid", url="http://other.test/") is False


def test_set_headers(session: SessionBridge, remote: FakeRemote) -> None:
    assert session.set_headers({"X-Trace": 7}) is True
    assert remote.calls[-1] == ("Network.setExtraHTTPHeaders", {"headers": {"X-Trace": "7"}})


def test_screenshot_passes_png_through(session: SessionBridge, remote: FakeRemote) -> None:
    png = _png()
    remote.values["[window.innerWidth, window.innerHeight]"] = _value([320, 480])
    remote.replies["Page.snapshotRect"] = {"dataURL": "data:image/png;base64," + base64.b64encode(png).decode()}

    assert base64.b64decode(session.screenshot()) == png
    assert remote.calls[-1][1] == {"x": 0, "y": 0, "width": 320, "height": 480, "coordinateSystem": "Viewport"}


def test_screenshot_reencodes_jpeg(session: SessionBridge, remote: FakeRemote) -> None:
    jpeg = _png(fmt="JPEG")
    remote.values["[window.innerWidth, window.innerHeight]"] = _value([4, 3])
    remote.replies["Page.snapshotRect"] = {"dataURL": "data:image/jpeg;base64," + base64.b64encode(jpeg).decode()}

    out = base64.b64decode(session.screenshot())
    assert out.startswith(b"\x89PNG\r\n\x1a\n")
    with Image.open(BytesIO(out)) as img:
        assert img.size == (4, 3)


def test_screenshot_falls_back_to_capture(session: SessionBridge, remote: FakeRemote) -> None:
    remote.replies["Page.snapshotRect"] = RemoteError("Page.snapshotRect", -32601, "method not found")
    remote.replies["Page.captureScreenshot"] = {"data": "iVBORw0KGgo="}
    assert session.screenshot() == "iVBORw0KGgo="
    assert remote.calls[-1] == ("Page.captureScreenshot", {"format": "png"})


def test_capabilities_and_close(session: SessionBridge, remote: FakeRemote) -> None:
    caps = SessionBridge.capabilities()
    assert caps["javascriptEnabled"] is True
    assert caps["takesScreenshot"] is True
    with session:
        pass
    assert remote.closed
