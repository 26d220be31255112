from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from audiorelay.config import DEFAULT_UPSTREAM_PORT, RelayConfig, ensure_ws_port
from audiorelay.server import RelayServer


def build_parser(defaults: RelayConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay audio-analysis samples from the producer to dashboard clients")
    parser.add_argument("--host", default=defaults.host, help="Interface for subscribers (default: all)")
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--upstream", default=defaults.upstream_url, help="Producer URL like ws://localhost:8765")
    parser.add_argument("--reconnect-delay-s", type=float, default=defaults.reconnect_delay_s)
    parser.add_argument(
        "--open-timeout-s",
        type=float,
        default=defaults.open_timeout_s or 0.0,
        help="Upstream connect timeout (0 waits forever)",
    )
    parser.add_argument("--log-level", default=defaults.log_level)
    return parser


async def _amain() -> int:
    try:
        defaults = RelayConfig.from_env()
    except ValueError as e:
        raise SystemExit(f"Invalid relay environment: {e}")
    args = build_parser(defaults).parse_args()
    cfg = RelayConfig(
        host=args.host,
        port=args.port,
        upstream_url=ensure_ws_port(args.upstream, DEFAULT_UPSTREAM_PORT),
        reconnect_delay_s=args.reconnect_delay_s,
        open_timeout_s=args.open_timeout_s if args.open_timeout_s > 0 else None,
        max_message_bytes=defaults.max_message_bytes,
        log_level=args.log_level,
    )
    try:
        cfg.validate()
    except ValueError as e:
        raise SystemExit(f"Invalid relay configuration: {e}")

    server = RelayServer(cfg)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.stop)
        except NotImplementedError:
            pass

    try:
        await server.run()
    except OSError as e:
        logging.getLogger("audiorelay").error("Cannot listen on %s:%s: %s", cfg.host, cfg.port, e)
        return 1
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
