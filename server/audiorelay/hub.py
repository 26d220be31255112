from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import websockets

from audiorelay.protocol import AudioSample, encode_sample


class Subscriber(Protocol):
    remote_address: Any


FrameWriter = Callable[[Any, str], None]


def write_frame(conn: Any, payload: str) -> None:
    """Queue one text frame on conn without waiting for the socket to drain.

    Closing connections are skipped; write errors surface as an ExceptionGroup.
    """
    websockets.broadcast([conn], payload, raise_exceptions=True)


@dataclass(frozen=True, slots=True)
class SendResult:
    conn: Subscriber
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SubscriberBroadcastHub:
    """Fan the latest AudioSample out to every connected subscriber.

    Owns the last known sample and the subscriber set. Everything runs on one
    event loop and no method here awaits a subscriber, so a client that stops
    reading never holds up the feed or the other clients.
    """

    def __init__(self, logger: logging.Logger | None = None, write: FrameWriter = write_frame) -> None:
        self._logger = logger or logging.getLogger("audiorelay.hub")
        self._write = write
        self._subscribers: set[Subscriber] = set()
        self._latest: AudioSample | None = None
        self._latest_at: float | None = None

    @property
    def latest(self) -> AudioSample | None:
        return self._latest

    @property
    def subscribers(self) -> frozenset[Subscriber]:
        return frozenset(self._subscribers)

    def __len__(self) -> int:
        return len(self._subscribers)

    async def handle(self, conn: Subscriber) -> None:
        """websockets connection handler for downstream clients."""
        self.accept(conn)
        try:
            # Subscribers have nothing to say; drain so pings and close frames get processed.
            async for _ in conn:  # type: ignore[attr-defined]
                pass
        except websockets.ConnectionClosed as e:
            self.on_subscriber_error(conn, e)
        finally:
            self.on_subscriber_closed(conn)

    def accept(self, conn: Subscriber) -> None:
        self._subscribers.add(conn)
        self._logger.info("Subscriber connected from %s (subscribers=%d)", conn.remote_address, len(self._subscribers))
        sample = self._latest
        if sample is None:
            return
        if self._latest_at is not None:
            age_s = asyncio.get_running_loop().time() - self._latest_at
            self._logger.debug("Catch-up push to %s (sample age %.1fs)", conn.remote_address, age_s)
        result = self._write_one(conn, encode_sample(sample))
        if not result.ok:
            self.on_subscriber_error(conn, result.error)

    def on_subscriber_closed(self, conn: Subscriber) -> None:
        if conn in self._subscribers:
            self._subscribers.discard(conn)
            self._logger.info("Subscriber disconnected from %s (subscribers=%d)", conn.remote_address, len(self._subscribers))

    def on_subscriber_error(self, conn: Subscriber, error: BaseException | None) -> None:
        self._logger.debug("Subscriber %s failed: %r", conn.remote_address, error)
        self.on_subscriber_closed(conn)

    def publish(self, sample: AudioSample) -> int:
        """Replace the last known sample and broadcast it."""
        self._latest = sample
        self._latest_at = asyncio.get_running_loop().time()
        return self.broadcast(sample)

    def broadcast(self, sample: AudioSample) -> int:
        """Write one sample to the subscribers present now; return how many took it."""
        if not self._subscribers:
            return 0
        payload = encode_sample(sample)
        results = [self._write_one(c, payload) for c in list(self._subscribers)]
        delivered = 0
        for r in results:
            if r.ok:
                delivered += 1
            else:
                self.on_subscriber_error(r.conn, r.error)
        return delivered

    def _write_one(self, conn: Subscriber, payload: str) -> SendResult:
        try:
            self._write(conn, payload)
        except Exception as e:
            return SendResult(conn, e)
        return SendResult(conn)
