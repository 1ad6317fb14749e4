"""
Developer probe for a remote-debugging endpoint.

Lists targets, or attaches to one and runs a single bridge operation. The
WebDriver HTTP surface is served elsewhere; this entry point exists to check a
device/simulator endpoint by hand.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from .bridge import SessionBridge
from .config import BridgeConfig
from .errors import BridgeError
from .http_client import list_targets

logger = logging.getLogger("inspector")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="inspector-bridge", description=__doc__.strip().splitlines()[0])
    parser.add_argument("--ws-url", help="attach to this WebSocket URL instead of discovering one")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("targets", help="list debuggable targets")

    p_eval = sub.add_parser("eval", help="evaluate an expression in the page")
    p_eval.add_argument("expression")

    p_nav = sub.add_parser("navigate", help="navigate and report title plus network traffic")
    p_nav.add_argument("url")
    p_nav.add_argument("--timeout", type=float, default=10.0)

    p_find = sub.add_parser("find", help="count elements matching a locator")
    p_find.add_argument("strategy")
    p_find.add_argument("value")
    return parser


def _run(args: argparse.Namespace, config: BridgeConfig) -> Any:
    if args.command == "targets":
        return list_targets(config)

    with SessionBridge.open(config) as bridge:
        if args.command == "eval":
            return bridge.evaluate(args.expression)
        if args.command == "navigate":
            loaded = bridge.navigate(args.url, wait_load=True, timeout=args.timeout)
            return {
                "loaded": loaded,
                "title": bridge.title(),
                "url": bridge.current_url(),
                "network": bridge.network_traffic(),
            }
        if args.command == "find":
            handles = bridge.find_elements(args.strategy, args.value)
            return [h.to_json() for h in handles]
    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = BridgeConfig.from_env()
    if args.ws_url:
        config.ws_url = args.ws_url

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        out = _run(args, config)
    except BridgeError as exc:
        logger.error("%s", exc)
        return 1
    sys.stdout.write(json.dumps(out, ensure_ascii=False, indent=2) + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
