from __future__ import annotations

import asyncio
import logging
import os
import ssl
import time
from typing import Any, Awaitable, Callable

import certifi
import websockets

from audiorelay.protocol import AudioSample, SampleDecodeError, decode_sample

SampleCallback = Callable[[AudioSample], Any]


def ssl_context_for(url: str, logger: logging.Logger) -> ssl.SSLContext | None:
    if not url.lower().startswith("wss://"):
        return None
    cafile = (os.environ.get("SSL_CERT_FILE") or "").strip()
    if cafile:
        logger.info("Using TLS CA bundle from env: %s", cafile)
        return ssl.create_default_context(cafile=cafile)
    return ssl.create_default_context(cafile=certifi.where())


class UpstreamFeedConnection:
    """Keep one WS connection to the audio-analysis producer and decode its frames.

    Each decoded sample is handed to ``on_sample`` synchronously, before the next
    frame is read, so samples reach subscribers in arrival order. When the link
    drops (or never comes up) one new attempt is made after a fixed delay,
    forever.
    """

    def __init__(
        self,
        *,
        url: str,
        on_sample: SampleCallback,
        reconnect_delay_s: float = 3.0,
        open_timeout_s: float | None = 10.0,
        max_size: int = 64 * 1024,
        logger: logging.Logger | None = None,
        connect: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._on_sample = on_sample
        self._reconnect_delay_s = float(max(0.0, reconnect_delay_s))
        self._open_timeout_s = open_timeout_s
        self._max_size = int(max_size)
        self._logger = logger or logging.getLogger("audiorelay.upstream")
        self._connect = connect
        self._sleep = sleep
        self._ssl = ssl_context_for(url, self._logger)

        self.connected: bool = False
        self.attempts: int = 0
        self.samples_decoded: int = 0
        self.decode_failures: int = 0
        self._suppressed_failures: int = 0
        self._last_failure_log_s: float | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def reconnect_delay_s(self) -> float:
        return self._reconnect_delay_s

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self.attempts += 1
            try:
                await self.connect()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(
                    "Upstream %s unavailable (%s: %s); retrying in %.1fs",
                    self._url,
                    type(e).__name__,
                    e,
                    self._reconnect_delay_s,
                )
            else:
                if not stop.is_set():
                    self._logger.info("Upstream %s closed; reconnecting in %.1fs", self._url, self._reconnect_delay_s)
            if stop.is_set():
                break
            await self._sleep(self._reconnect_delay_s)

    async def connect(self) -> None:
        """One connection attempt; returns when the link closes cleanly, raises otherwise."""
        kwargs: dict[str, Any] = {"open_timeout": self._open_timeout_s, "max_size": self._max_size}
        if self._ssl is not None:
            kwargs["ssl"] = self._ssl
        async with self._connect(self._url, **kwargs) as ws:
            self.connected = True
            self._logger.info("Connected to upstream %s (attempt %d)", self._url, self.attempts)
            try:
                async for msg in ws:
                    self.handle_message(msg)
            finally:
                self.connected = False

    def handle_message(self, msg: str | bytes) -> AudioSample | None:
        try:
            sample = decode_sample(msg)
        except SampleDecodeError as e:
            self.decode_failures += 1
            self._log_decode_failure(e)
            return None
        self.samples_decoded += 1
        self._on_sample(sample)
        return sample

    def _log_decode_failure(self, err: SampleDecodeError) -> None:
        self._logger.debug("Dropped upstream frame: %s", err)
        now_s = time.monotonic()
        if self._last_failure_log_s is not None and (now_s - self._last_failure_log_s) < 5.0:
            self._suppressed_failures += 1
            return
        self._last_failure_log_s = now_s
        if self._suppressed_failures:
            self._logger.warning("Dropped upstream frame: %s (+%d more since last report)", err, self._suppressed_failures)
        else:
            self._logger.warning("Dropped upstream frame: %s", err)
        self._suppressed_failures = 0
