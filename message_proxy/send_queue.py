"""
Outbound send queue.

Sends go through an external sender that reports nothing back, so each send
is confirmed by re-reading the chat store for a matching self-authored row.
Items are drained strictly FIFO by a single worker task, which keeps at most
one send in flight.

Per item: QUEUED -> IN_FLIGHT -> VERIFIED | RETRYING | FAILED. A RETRYING
item goes back to the tail of the queue carrying its failure count.

Matching is on exact text, so two identical bodies sent close together can
confirm each other, and a body the client rewrites (a URL split into its own
message, say) is never confirmed and gets resent.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from message_proxy.assembler import render_event
from message_proxy.broadcaster import LiveUpdateBroadcaster
from message_proxy.metrics import record_send_outcome
from message_proxy.storage import StoreReader

logger = logging.getLogger(__name__)

FAILURE_TITLE = "Failed to send message"


class SendState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    VERIFIED = "verified"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass
class PendingSend:
    """
    An outbound message waiting to be dispatched and confirmed.

    `body` is the trimmed text that is sent and matched against the store;
    `raw_text` is what the client asked to send.
    """
    body: str
    recipients: str
    raw_text: str
    attempts: int = 0
    state: SendState = SendState.QUEUED
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class SendQueue:
    """FIFO of PendingSend items with verification-by-polling and bounded retry."""

    def __init__(
        self,
        reader: StoreReader,
        sender,
        notifier,
        broadcaster: LiveUpdateBroadcaster,
        verify_attempts: int = 13,
        verify_interval: float = 1.0,
        max_failures: int = 3,
        verify_window: int = 15,
    ):
        self.reader = reader
        self.sender = sender
        self.notifier = notifier
        self.broadcaster = broadcaster
        self.verify_attempts = verify_attempts
        self.verify_interval = verify_interval
        self.max_failures = max_failures
        self.verify_window = verify_window
        self._queue: "asyncio.Queue[PendingSend]" = asyncio.Queue()
        self.in_flight: Optional[PendingSend] = None

    @property
    def depth(self) -> int:
        """Items waiting plus the one in flight, if any."""
        return self._queue.qsize() + (1 if self.in_flight is not None else 0)

    def enqueue(self, recipients: str, text: str) -> PendingSend:
        """
        Queue a message and return immediately.

        The body is trimmed here: the messaging client strips surrounding
        whitespace when it sends, and an untrimmed body would never match
        its stored row.
        """
        pending = PendingSend(body=text.strip(), recipients=recipients, raw_text=text)
        self._queue.put_nowait(pending)
        logger.info(f"Queued message {pending.id} for {recipients} ({self._queue.qsize()} waiting)")
        return pending

    async def run(self) -> None:
        """Drain the queue forever, one item at a time."""
        logger.info("Send queue worker started")
        while True:
            try:
                await self.process_next()
            except Exception:
                logger.exception("Send queue worker error")

    async def process_next(self) -> PendingSend:
        """Wait for the head of the queue and take it through one send cycle."""
        pending = await self._queue.get()
        try:
            await self._dispatch(pending)
        finally:
            self._queue.task_done()
        return pending

    async def join(self) -> None:
        """Wait until every queued item, retries included, has settled."""
        await self._queue.join()

    async def _dispatch(self, pending: PendingSend) -> None:
        pending.state = SendState.IN_FLIGHT
        self.in_flight = pending
        logger.info(
            f"Message {pending.id} reached the front of the queue "
            f"(attempt {pending.attempts + 1}/{self.max_failures})"
        )
        try:
            try:
                await self.sender.send(pending.body, pending.recipients)
            except Exception:
                # Counts as an unconfirmed attempt
                logger.exception(f"Dispatch of message {pending.id} raised")
                confirmed = None
            else:
                confirmed = await self._verify(pending)
        finally:
            self.in_flight = None

        if confirmed is not None:
            pending.state = SendState.VERIFIED
            record_send_outcome("verified")
            logger.info(f"Message {pending.id} confirmed as row {confirmed.get('message_id')}, dequeued")
            await self.broadcaster.broadcast(render_event(
                "message.sent", dict(confirmed, recipients=pending.recipients)
            ))
            return

        pending.attempts += 1
        if pending.attempts >= self.max_failures:
            pending.state = SendState.FAILED
            record_send_outcome("failed")
            logger.error(
                f"Message {pending.id} permanently failed after {pending.attempts} attempts, dequeued"
            )
            self.notifier.notify(FAILURE_TITLE, pending.raw_text, pending.recipients)
            await self.broadcaster.broadcast(render_event(
                "message.failed", {"text": pending.raw_text, "recipients": pending.recipients}
            ))
            return

        pending.state = SendState.RETRYING
        record_send_outcome("retrying")
        logger.warning(
            f"Message {pending.id} not confirmed, retrying ({pending.attempts}/{self.max_failures})"
        )
        # Same object goes back so the failure count survives the retry
        self._queue.put_nowait(pending)

    async def _verify(self, pending: PendingSend) -> Optional[Dict[str, Any]]:
        """Poll recent sent rows for one whose text equals the body."""
        for attempt in range(self.verify_attempts):
            rows = await asyncio.to_thread(self.reader.fetch_recent_sent, self.verify_window)
            for row in rows:
                if row.get("text") == pending.body:
                    logger.debug(f"Message {pending.id} found on check {attempt + 1}")
                    return row
            if attempt < self.verify_attempts - 1:
                await asyncio.sleep(self.verify_interval)
        return None
