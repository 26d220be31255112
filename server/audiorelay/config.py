from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping
from urllib.parse import urlparse, urlunparse

DEFAULT_UPSTREAM_PORT = 8765
DEFAULT_RELAY_PORT = 8766


def ensure_ws_port(url: str, default_port: int) -> str:
    """Fill in default_port when url names none; a bare host gets the ws scheme."""
    u = (url or "").strip()
    if u and "://" not in u:
        u = f"ws://{u}"
    parsed = urlparse(u)
    host = parsed.hostname
    if not host or parsed.port is not None:
        return u
    if ":" in host:
        host = f"[{host}]"
    userinfo, at, _ = parsed.netloc.rpartition("@")
    return urlunparse(parsed._replace(netloc=f"{userinfo}{at}{host}:{int(default_port)}"))


@dataclass(frozen=True, slots=True)
class RelayConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_RELAY_PORT
    upstream_url: str = f"ws://localhost:{DEFAULT_UPSTREAM_PORT}"
    # Fixed delay between upstream attempts; intentionally not exponential.
    reconnect_delay_s: float = 3.0
    # None waits on a connect attempt forever.
    open_timeout_s: float | None = 10.0
    max_message_bytes: int = 64 * 1024
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        env = os.environ if environ is None else environ

        def get(name: str, default: str) -> str:
            return (env.get(name) or default).strip()

        open_timeout_s = float(get("UPSTREAM_OPEN_TIMEOUT_S", "10.0"))
        cfg = cls(
            host=get("RELAY_HOST", "0.0.0.0"),
            port=int(get("RELAY_PORT", str(DEFAULT_RELAY_PORT))),
            upstream_url=ensure_ws_port(get("UPSTREAM_URL", f"ws://localhost:{DEFAULT_UPSTREAM_PORT}"), DEFAULT_UPSTREAM_PORT),
            reconnect_delay_s=float(get("UPSTREAM_RECONNECT_DELAY_S", "3.0")),
            open_timeout_s=open_timeout_s if open_timeout_s > 0 else None,
            max_message_bytes=int(get("RELAY_MAX_MESSAGE_BYTES", str(64 * 1024))),
            log_level=get("LOG_LEVEL", "INFO"),
        )
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.reconnect_delay_s < 0:
            raise ValueError(f"reconnect delay must be >= 0 (got {self.reconnect_delay_s})")
        if self.max_message_bytes <= 0:
            raise ValueError(f"max message size must be > 0 (got {self.max_message_bytes})")
        scheme = urlparse(self.upstream_url).scheme
        if scheme not in ("ws", "wss"):
            raise ValueError(f"upstream URL must be ws:// or wss:// (got {self.upstream_url!r})")
