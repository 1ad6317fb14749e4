from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name) or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except ValueError:
        return default


@dataclass
class BridgeConfig:
    host: str = "localhost"
    port: int = 9222
    ws_url: str | None = None
    connect_timeout: float = 5.0
    command_timeout: float = 10.0
    recv_size: int = 4096
    key_delay_ms: int = 100
    log_level: str = "INFO"

    @property
    def targets_url(self) -> str:
        return f"http://{self.host}:{self.port}/json"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        ws_url = (os.environ.get("INSPECTOR_WS_URL") or "").strip() or None
        return cls(
            host=(os.environ.get("INSPECTOR_HOST") or "localhost").strip(),
            port=_env_int("INSPECTOR_PORT", 9222),
            ws_url=ws_url,
            connect_timeout=max(0.1, _env_float("INSPECTOR_CONNECT_TIMEOUT", 5.0)),
            command_timeout=max(0.1, _env_float("INSPECTOR_COMMAND_TIMEOUT", 10.0)),
            # Frames are reassembled across reads, so any positive size is valid.
            recv_size=max(1, _env_int("INSPECTOR_RECV_SIZE", 4096)),
            key_delay_ms=max(0, _env_int("INSPECTOR_KEY_DELAY_MS", 100)),
            log_level=(os.environ.get("INSPECTOR_LOG_LEVEL") or "INFO").strip().upper(),
        )
