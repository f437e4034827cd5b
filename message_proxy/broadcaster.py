"""
Live update fan-out.

Subscribers are anything with an async ``send_text(str)`` and ``close(code)``;
in production these are accepted WebSocket connections. Delivery is sequential
per subscriber and bounded by a timeout. A subscriber that fails or stalls is
dropped and closed, so its client sees the disconnect and can reconnect.
"""

import asyncio
import contextlib
import logging
from typing import Any, Protocol, Set

from message_proxy.metrics import record_broadcast_drop

logger = logging.getLogger(__name__)

# WebSocket "internal error" close code
CLOSE_CODE_DELIVERY_FAILED = 1011


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None:
        ...

    async def close(self, code: int = 1000) -> None:
        ...


class LiveUpdateBroadcaster:
    """Keeps the set of connected subscribers and pushes payloads to all of them."""

    def __init__(self, send_timeout: float = 2.0):
        self.send_timeout = send_timeout
        self._subscribers: Set[Any] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers.add(subscriber)
        logger.info(f"Subscriber added ({len(self._subscribers)} connected)")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.discard(subscriber)
            logger.info(f"Subscriber removed ({len(self._subscribers)} connected)")

    async def broadcast(self, payload: str) -> int:
        """
        Deliver a payload to every subscriber.

        A subscriber whose delivery fails or times out is treated as
        disconnected and removed; the others still receive the payload.

        Returns:
            Number of subscribers the payload was delivered to
        """
        delivered = 0
        # Copy: subscribers may be removed while we iterate
        for subscriber in list(self._subscribers):
            try:
                await asyncio.wait_for(subscriber.send_text(payload), timeout=self.send_timeout)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber after failed delivery: {e!r}")
                self._subscribers.discard(subscriber)
                record_broadcast_drop()
                await self._close(subscriber)
        logger.debug(f"Broadcast delivered to {delivered} subscribers")
        return delivered

    async def _close(self, subscriber: Subscriber) -> None:
        """End a dropped subscriber so its client sees the disconnect."""
        with contextlib.suppress(Exception):
            await asyncio.wait_for(
                subscriber.close(code=CLOSE_CODE_DELIVERY_FAILED), timeout=self.send_timeout
            )
