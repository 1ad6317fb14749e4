from __future__ import annotations

import json
from typing import Any

CAPABILITY_VERSION = "2"
CAPABILITY_GLOBAL = "__inspectorBridge"

LOCATOR_STRATEGIES = frozenset(
    {
        "css selector",
        "xpath",
        "id",
        "name",
        "class name",
        "tag name",
        "link text",
        "partial link text",
    }
)


# NOTE: Written in ES5 so it also runs on older mobile WebKit builds.
# It installs `window.__inspectorBridge` holding the element table and:
# - find(strategy, value, epoch): replace the table, return the match count
# - findFrom(parent, strategy, value, epoch): append matches under a parent
# - invoke(epoch, index, action, args): run a read/action primitive
# - has(epoch, indexes): whether every index is live in this epoch
# - element(epoch, index): raw node lookup for user scripts
# A table stamped with another epoch answers {stale: true}.
CAPABILITY_SCRIPT_SOURCE = r"""
(function () {
  var VERSION = "2";
  var g = window;
  if (g.__inspectorBridge && g.__inspectorBridge.version === VERSION) {
    return true;
  }

  function toArray(list) {
    var out = [];
    for (var i = 0; i < list.length; i++) out.push(list[i]);
    return out;
  }

  function visibleText(el) {
    var t = el.innerText;
    if (typeof t !== "string") t = el.textContent || "";
    return t;
  }

  function filterAll(root, pred) {
    return toArray(root.getElementsByTagName("*")).filter(pred);
  }

  function xpath(expr, root) {
    var found = document.evaluate(expr, root, null, XPathResult.ORDERED_NODE_SNAPSHOT_TYPE, null);
    var out = [];
    for (var i = 0; i < found.snapshotLength; i++) out.push(found.snapshotItem(i));
    return out;
  }

  function locate(strategy, value, root) {
    switch (strategy) {
      case "css selector": return toArray(root.querySelectorAll(value));
      case "xpath": return xpath(value, root);
      case "id": return filterAll(root, function (el) { return el.id === value; });
      case "name": return filterAll(root, function (el) { return el.getAttribute("name") === value; });
      case "class name":
        return filterAll(root, function (el) { return !!el.classList && el.classList.contains(value); });
      case "tag name": return toArray(root.getElementsByTagName(value));
      case "link text":
        return toArray(root.getElementsByTagName("a")).filter(function (a) {
          return visibleText(a).replace(/^\s+|\s+$/g, "") === value;
        });
      case "partial link text":
        return toArray(root.getElementsByTagName("a")).filter(function (a) {
          return visibleText(a).indexOf(value) !== -1;
        });
    }
    throw new Error("unsupported locator strategy: " + strategy);
  }

  var actions = {
    enabled: function (el) { return !el.disabled; },
    displayed: function (el) {
      var style = window.getComputedStyle(el, null);
      return style.getPropertyValue("display") !== "none" && style.getPropertyValue("visibility") !== "hidden";
    },
    text: function (el) { return visibleText(el); },
    tagName: function (el) { return String(el.tagName).toLowerCase(); },
    attribute: function (el, name) {
      var value = el.getAttribute(name);
      if (value === null && name in el) {
        value = el[name];
      }
      if (value === null || value === undefined) return null;
      return typeof value === "boolean" ? value : String(value);
    },
    click: function (el) {
      var evt = document.createEvent("MouseEvents");
      evt.initMouseEvent("click", true, true, window, 0, 0, 0, 0, 0, false, false, false, false, 0, null);
      el.dispatchEvent(evt);
      return null;
    },
    type: function (el, text, delayMs) {
      var letters = String(text).split("");
      letters.forEach(function (letter, i) {
        setTimeout(function () {
          el.dispatchEvent(new KeyboardEvent("keydown", { key: letter, bubbles: true }));
          el.value += letter;
          el.dispatchEvent(new KeyboardEvent("keyup", { key: letter, bubbles: true }));
          el.dispatchEvent(new Event("input", { bubbles: true }));
        }, delayMs * i);
      });
      return letters.length;
    }
  };

  var bridge = {
    version: VERSION,
    epoch: -1,
    elements: [],
    find: function (strategy, value, epoch) {
      this.elements = locate(strategy, value, document);
      this.epoch = epoch;
      return this.elements.length;
    },
    findFrom: function (parent, strategy, value, epoch) {
      if (epoch !== this.epoch || !this.elements[parent]) return { stale: true };
      var found = locate(strategy, value, this.elements[parent]);
      var start = this.elements.length;
      for (var i = 0; i < found.length; i++) this.elements.push(found[i]);
      return { start: start, count: found.length };
    },
    has: function (epoch, indexes) {
      if (epoch !== this.epoch) return false;
      for (var i = 0; i < indexes.length; i++) {
        if (!this.elements[indexes[i]]) return false;
      }
      return true;
    },
    element: function (epoch, index) {
      if (epoch !== this.epoch || !this.elements[index]) {
        throw new Error("stale element reference: " + index);
      }
      return this.elements[index];
    },
    invoke: function (epoch, index, action, args) {
      if (epoch !== this.epoch || !this.elements[index]) return { stale: true };
      return { value: actions[action].apply(null, [this.elements[index]].concat(args || [])) };
    }
  };

  g.__inspectorBridge = bridge;
  return true;
})()
"""


def js_literal(value: Any) -> str:
    """Encode a Python value as a JavaScript literal safe to splice into script text.

    JSON is a subset of JS expression syntax; U+2028/U+2029 are escaped because
    older engines treat them as line terminators inside string literals.
    """
    return (
        json.dumps(value, ensure_ascii=False)
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
        .replace("</", "<\\/")
    )


def probe_expression() -> str:
    return (
        f'typeof window.{CAPABILITY_GLOBAL} === "undefined" '
        f"|| window.{CAPABILITY_GLOBAL}.version !== {js_literal(CAPABILITY_VERSION)}"
    )


def find_expression(strategy: str, value: str, epoch: int) -> str:
    return f"window.{CAPABILITY_GLOBAL}.find({js_literal(strategy)}, {js_literal(value)}, {int(epoch)})"


def find_from_expression(parent: int, strategy: str, value: str, epoch: int) -> str:
    return (
        f"(window.{CAPABILITY_GLOBAL} ? window.{CAPABILITY_GLOBAL}.findFrom("
        f"{int(parent)}, {js_literal(strategy)}, {js_literal(value)}, {int(epoch)}) : {{stale: true}})"
    )


def invoke_expression(epoch: int, index: int, action: str, args: list[Any] | None = None) -> str:
    return (
        f"(window.{CAPABILITY_GLOBAL} ? window.{CAPABILITY_GLOBAL}.invoke("
        f"{int(epoch)}, {int(index)}, {js_literal(action)}, {js_literal(list(args or []))}) : {{stale: true}})"
    )


def execute_expression(script: str, epoch: int, indexes: list[int]) -> str:
    """Wrap user script text in a function called once per element (or once bare).

    ``script`` is caller-authored code and is embedded verbatim; only the
    element indexes are generated here. The expression evaluates to
    ``{value: <last result>}``, or ``{stale: true}`` without running the
    script when any element is gone from the page's table.
    """
    lines = ["(function () {"]
    if indexes:
        wanted = js_literal([int(i) for i in indexes])
        lines.append(f"  var __bridge = window.{CAPABILITY_GLOBAL};")
        lines.append(f"  if (!__bridge || !__bridge.has({int(epoch)}, {wanted})) return {{stale: true}};")
    lines.append(f"  var __fn = function () {{\n{script}\n  }};")
    lines.append("  var __result;")
    if indexes:
        for index in indexes:
            lines.append(f"  __result = __fn(__bridge.element({int(epoch)}, {int(index)}));")
    else:
        lines.append("  __result = __fn();")
    lines.append("  return {value: __result};")
    lines.append("})()")
    return "\n".join(lines)


__all__ = [
    "CAPABILITY_GLOBAL",
    "CAPABILITY_SCRIPT_SOURCE",
    "CAPABILITY_VERSION",
    "LOCATOR_STRATEGIES",
    "execute_expression",
    "find_expression",
    "find_from_expression",
    "invoke_expression",
    "js_literal",
    "probe_expression",
]
