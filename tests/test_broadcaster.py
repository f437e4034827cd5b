"""
Tests for live update fan-out.

Tests cover:
- Delivery to every subscriber
- Failed and stalled subscribers dropped without affecting the rest
- Subscribe/unsubscribe bookkeeping
"""

import asyncio

import pytest

from conftest import FakeSubscriber
from message_proxy.broadcaster import CLOSE_CODE_DELIVERY_FAILED, LiveUpdateBroadcaster


class StalledSubscriber:
    """Never finishes a send."""

    def __init__(self):
        self.close_code = None

    async def send_text(self, data: str) -> None:
        await asyncio.sleep(3600)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code


class UnclosableSubscriber(FakeSubscriber):
    """Fails to send and fails again on close."""

    async def close(self, code: int = 1000) -> None:
        raise RuntimeError("already closed")


class TestBroadcast:
    """Test payload delivery."""

    @pytest.mark.asyncio
    async def test_delivers_to_all(self):
        broadcaster = LiveUpdateBroadcaster()
        subscribers = [broadcaster.subscribe(FakeSubscriber()) for _ in range(3)]

        delivered = await broadcaster.broadcast("payload")

        assert delivered == 3
        assert all(s.payloads == ["payload"] for s in subscribers)

    @pytest.mark.asyncio
    async def test_no_subscribers(self):
        assert await LiveUpdateBroadcaster().broadcast("payload") == 0

    @pytest.mark.asyncio
    async def test_failed_subscriber_dropped_others_served(self):
        broadcaster = LiveUpdateBroadcaster()
        healthy = broadcaster.subscribe(FakeSubscriber())
        broken = broadcaster.subscribe(FakeSubscriber(fail=True))
        other = broadcaster.subscribe(FakeSubscriber())

        delivered = await broadcaster.broadcast("first")

        assert delivered == 2
        assert broadcaster.subscriber_count == 2
        assert healthy.payloads == ["first"]
        assert other.payloads == ["first"]

        await broadcaster.broadcast("second")
        assert healthy.payloads == ["first", "second"]
        assert broken.payloads == []

    @pytest.mark.asyncio
    async def test_stalled_subscriber_times_out(self):
        broadcaster = LiveUpdateBroadcaster(send_timeout=0.05)
        broadcaster.subscribe(StalledSubscriber())
        healthy = broadcaster.subscribe(FakeSubscriber())

        delivered = await asyncio.wait_for(broadcaster.broadcast("payload"), timeout=2)

        assert delivered == 1
        assert broadcaster.subscriber_count == 1
        assert healthy.payloads == ["payload"]


class TestDroppedSubscribers:
    """Dropped subscribers are closed so their clients reconnect."""

    @pytest.mark.asyncio
    async def test_failed_subscriber_closed(self):
        broadcaster = LiveUpdateBroadcaster()
        healthy = broadcaster.subscribe(FakeSubscriber())
        broken = broadcaster.subscribe(FakeSubscriber(fail=True))

        await broadcaster.broadcast("payload")

        assert broken.close_code == CLOSE_CODE_DELIVERY_FAILED
        assert healthy.close_code is None

    @pytest.mark.asyncio
    async def test_stalled_subscriber_closed(self):
        broadcaster = LiveUpdateBroadcaster(send_timeout=0.05)
        stalled = broadcaster.subscribe(StalledSubscriber())

        await asyncio.wait_for(broadcaster.broadcast("payload"), timeout=2)

        assert stalled.close_code == CLOSE_CODE_DELIVERY_FAILED

    @pytest.mark.asyncio
    async def test_close_error_ignored(self):
        broadcaster = LiveUpdateBroadcaster()
        broadcaster.subscribe(UnclosableSubscriber(fail=True))
        healthy = broadcaster.subscribe(FakeSubscriber())

        assert await broadcaster.broadcast("payload") == 1
        assert broadcaster.subscriber_count == 1
        assert healthy.payloads == ["payload"]


class TestSubscriptions:
    """Test subscriber bookkeeping."""

    def test_subscribe_and_unsubscribe(self):
        broadcaster = LiveUpdateBroadcaster()
        subscriber = broadcaster.subscribe(FakeSubscriber())
        assert broadcaster.subscriber_count == 1

        broadcaster.unsubscribe(subscriber)
        assert broadcaster.subscriber_count == 0

    def test_unsubscribe_unknown_is_noop(self):
        broadcaster = LiveUpdateBroadcaster()
        broadcaster.unsubscribe(FakeSubscriber())
        assert broadcaster.subscriber_count == 0
