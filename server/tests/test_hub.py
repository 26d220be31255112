import asyncio

import pytest
import websockets

from audiorelay.hub import SubscriberBroadcastHub, write_frame
from audiorelay.protocol import AudioSample, encode_sample


def make_sample(seq: int, *, beat: bool = False) -> AudioSample:
    return AudioSample(bass=seq % 256, mids=10, treble=20, beat=beat, total_energy=seq * 1.5, timestamp=1_700_000_000_000 + seq)


class FakeSubscriber:
    def __init__(self, name: str, *, fail: bool = False) -> None:
        self.remote_address = (name, 50000)
        self.sent: list[str] = []
        self.fail = fail
        self.on_take = None
        self._closed = asyncio.Event()
        self._close_error: BaseException | None = None

    def take(self, payload: str) -> None:
        if self.fail:
            raise ConnectionResetError("socket already closing")
        self.sent.append(payload)
        if self.on_take is not None:
            self.on_take()

    async def send(self, message: str) -> None:
        # A client that stopped reading: an awaited send never returns.
        await asyncio.Event().wait()

    def close(self, error: BaseException | None = None) -> None:
        self._close_error = error
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._closed.wait()
        if self._close_error is not None:
            raise self._close_error
        raise StopAsyncIteration


def fake_write(conn: FakeSubscriber, payload: str) -> None:
    conn.take(payload)


def make_hub() -> SubscriberBroadcastHub:
    return SubscriberBroadcastHub(write=fake_write)


# ---------------------------------------------------------------------
# Catch-up push
# ---------------------------------------------------------------------

def test_no_catch_up_before_first_sample():
    async def scenario():
        hub = make_hub()
        sub = FakeSubscriber("a")
        hub.accept(sub)
        assert sub.sent == []
        assert sub in hub.subscribers

    asyncio.run(scenario())


def test_catch_up_is_most_recent_sample():
    async def scenario():
        hub = make_hub()
        hub.publish(make_sample(1))
        hub.publish(make_sample(2))

        late = FakeSubscriber("late")
        hub.accept(late)
        assert late.sent == [encode_sample(make_sample(2))]

        hub.publish(make_sample(3))
        assert late.sent == [encode_sample(make_sample(2)), encode_sample(make_sample(3))]

    asyncio.run(scenario())


def test_failed_catch_up_removes_subscriber():
    async def scenario():
        hub = make_hub()
        hub.publish(make_sample(1))
        broken = FakeSubscriber("broken", fail=True)
        hub.accept(broken)
        assert len(hub) == 0

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------

def test_fan_out_sends_identical_payload_once_to_each():
    async def scenario():
        hub = make_hub()
        subs = [FakeSubscriber(f"s{i}") for i in range(5)]
        for s in subs:
            hub.accept(s)

        delivered = hub.publish(make_sample(7, beat=True))

        assert delivered == 5
        expected = encode_sample(make_sample(7, beat=True))
        for s in subs:
            assert s.sent == [expected]

    asyncio.run(scenario())


def test_broadcast_without_subscribers_still_updates_latest():
    async def scenario():
        hub = make_hub()
        assert hub.publish(make_sample(1)) == 0
        assert hub.latest == make_sample(1)

    asyncio.run(scenario())


def test_broken_subscriber_does_not_block_others():
    async def scenario():
        hub = make_hub()
        good_a = FakeSubscriber("a")
        broken = FakeSubscriber("broken")
        good_b = FakeSubscriber("b")
        for s in (good_a, broken, good_b):
            hub.accept(s)
        broken.fail = True

        delivered = hub.publish(make_sample(4))

        assert delivered == 2
        assert good_a.sent == [encode_sample(make_sample(4))]
        assert good_b.sent == [encode_sample(make_sample(4))]
        assert broken not in hub.subscribers
        assert len(hub) == 2

    asyncio.run(scenario())


def test_subscriber_joining_mid_broadcast_gets_exactly_one_copy():
    async def scenario():
        hub = make_hub()
        first = FakeSubscriber("first")
        newcomer = FakeSubscriber("newcomer")
        hub.accept(first)

        def join() -> None:
            first.on_take = None
            hub.accept(newcomer)

        first.on_take = join
        hub.publish(make_sample(9))

        assert first.sent == [encode_sample(make_sample(9))]
        assert newcomer.sent == [encode_sample(make_sample(9))]

        hub.publish(make_sample(10))
        assert newcomer.sent[-1] == encode_sample(make_sample(10))
        assert len(newcomer.sent) == 2

    asyncio.run(scenario())


def test_samples_arrive_in_publish_order():
    async def scenario():
        hub = make_hub()
        sub = FakeSubscriber("a")
        hub.accept(sub)
        for seq in range(1, 6):
            hub.publish(make_sample(seq))
        assert sub.sent == [encode_sample(make_sample(seq)) for seq in range(1, 6)]

    asyncio.run(scenario())


# ---------------------------------------------------------------------
# Frame writer
# ---------------------------------------------------------------------

def test_write_frame_queues_without_awaiting_send(monkeypatch):
    calls = []

    def fake_broadcast(connections, message, raise_exceptions=False):
        calls.append((list(connections), message, raise_exceptions))

    monkeypatch.setattr(websockets, "broadcast", fake_broadcast)

    async def scenario():
        hub = SubscriberBroadcastHub()
        stalled = FakeSubscriber("stalled")
        hub.accept(stalled)
        # FakeSubscriber.send never returns; publish is synchronous and finishes anyway.
        assert hub.publish(make_sample(1)) == 1

        assert calls == [([stalled], encode_sample(make_sample(1)), True)]

    asyncio.run(asyncio.wait_for(scenario(), timeout=1.0))


def test_write_frame_failure_removes_subscriber(monkeypatch):
    def failing_broadcast(connections, message, raise_exceptions=False):
        raise ExceptionGroup("skipped broadcast", [ConnectionResetError("peer gone")])

    monkeypatch.setattr(websockets, "broadcast", failing_broadcast)

    async def scenario():
        hub = SubscriberBroadcastHub()
        sub = FakeSubscriber("gone")
        hub.accept(sub)
        assert hub.publish(make_sample(1)) == 0
        assert len(hub) == 0

    asyncio.run(scenario())


def test_write_frame_propagates_write_errors(monkeypatch):
    def failing_broadcast(connections, message, raise_exceptions=False):
        assert raise_exceptions
        raise ExceptionGroup("skipped broadcast", [ConnectionResetError("peer gone")])

    monkeypatch.setattr(websockets, "broadcast", failing_broadcast)
    with pytest.raises(ExceptionGroup):
        write_frame(FakeSubscriber("gone"), "{}")


# ---------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------

def test_handle_registers_until_close():
    async def scenario():
        hub = make_hub()
        sub = FakeSubscriber("a")
        task = asyncio.create_task(hub.handle(sub))
        await asyncio.sleep(0)
        assert sub in hub.subscribers

        sub.close()
        await task
        assert sub not in hub.subscribers

        hub.publish(make_sample(1))
        assert sub.sent == []

    asyncio.run(scenario())


def test_handle_removes_subscriber_on_connection_error():
    async def scenario():
        hub = make_hub()
        sub = FakeSubscriber("a")
        task = asyncio.create_task(hub.handle(sub))
        await asyncio.sleep(0)

        sub.close(websockets.ConnectionClosedError(None, None))
        await task
        assert len(hub) == 0

    asyncio.run(scenario())
