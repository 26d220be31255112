from __future__ import annotations

import asyncio
import logging

import websockets

from audiorelay.config import RelayConfig
from audiorelay.hub import SubscriberBroadcastHub
from audiorelay.logging_utils import setup_logging
from audiorelay.upstream import UpstreamFeedConnection


class RelayServer:
    def __init__(self, cfg: RelayConfig) -> None:
        setup_logging(cfg.log_level)
        self._logger = logging.getLogger("audiorelay")
        self._cfg = cfg

        self._hub = SubscriberBroadcastHub()
        self._upstream = UpstreamFeedConnection(
            url=cfg.upstream_url,
            on_sample=self._hub.publish,
            reconnect_delay_s=cfg.reconnect_delay_s,
            open_timeout_s=cfg.open_timeout_s,
            max_size=cfg.max_message_bytes,
        )

        self._stop = asyncio.Event()
        self._started = asyncio.Event()
        self._bound_port: int | None = None

    @property
    def hub(self) -> SubscriberBroadcastHub:
        return self._hub

    @property
    def upstream(self) -> UpstreamFeedConnection:
        return self._upstream

    @property
    def port(self) -> int | None:
        """Port actually bound (differs from the configured one when that was 0)."""
        return self._bound_port

    async def wait_started(self) -> None:
        await self._started.wait()

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        """Serve subscribers until stop(); a listener bind failure propagates."""
        self._logger.info("Starting relay on %s:%s", self._cfg.host, self._cfg.port)
        server = await websockets.serve(
            self._hub.handle,
            self._cfg.host,
            self._cfg.port,
            max_size=self._cfg.max_message_bytes,
        )
        upstream_task: asyncio.Task[None] | None = None
        try:
            sockets = list(server.sockets)
            self._bound_port = sockets[0].getsockname()[1] if sockets else self._cfg.port
            self._logger.info(
                "Relay listening on ws://%s:%s, upstream %s",
                self._cfg.host,
                self._bound_port,
                self._cfg.upstream_url,
            )
            upstream_task = asyncio.create_task(self._upstream.run(self._stop), name="upstream_feed")
            self._started.set()
            await self._stop.wait()
            self._logger.info("Shutting down relay (subscribers=%d)", len(self._hub))
        finally:
            # Subscribers are dropped without a close handshake.
            server.close(close_connections=False)
            for conn in list(server.connections):
                conn.transport.abort()
            await server.wait_closed()
            if upstream_task is not None:
                upstream_task.cancel()
                await asyncio.gather(upstream_task, return_exceptions=True)
