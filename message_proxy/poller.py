"""
Poll loop for newly arrived messages.

The chat store offers no change feed, so new rows are found by polling for
anything dated after a watermark. The watermark lives only on the PollLoop
instance and is only touched by its own task.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from message_proxy.assembler import Assembler, render_event
from message_proxy.broadcaster import LiveUpdateBroadcaster
from message_proxy.metrics import record_poll_tick
from message_proxy.storage import StoreReader
from message_proxy.utils import notification_context

logger = logging.getLogger(__name__)

UNSUPPORTED_CONTENT = "Unsupported message content"


class WatermarkInitError(RuntimeError):
    """The store's newest message date could not be read; polling cannot start."""


class PollLoop:
    """
    Detects new messages since the watermark, notifies, and broadcasts.

    Each tick reads at most `batch_size` rows dated after the watermark,
    oldest first. The watermark moves to a row's date before that row is
    processed, so a failure while notifying never causes the row to be
    replayed but can lose its notification.
    """

    def __init__(
        self,
        reader: StoreReader,
        assembler: Assembler,
        broadcaster: LiveUpdateBroadcaster,
        notifier,
        interval: float = 2.0,
        batch_size: int = 25,
    ):
        self.reader = reader
        self.assembler = assembler
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.interval = interval
        self.batch_size = batch_size
        self.watermark: Optional[int] = None
        self.running = False

    def initialize(self) -> int:
        """
        Seed the watermark from the newest message in the store.

        Raises:
            WatermarkInitError: unless exactly one row comes back
        """
        rows = self.reader.fetch_latest_dates()
        if len(rows) != 1:
            raise WatermarkInitError(
                f"Expected exactly one row for the latest message date, got {len(rows)}"
            )
        self.watermark = rows[0]["date"]
        logger.info(f"Poll watermark initialized at {self.watermark}")
        return self.watermark

    async def tick(self) -> int:
        """
        Run one poll round.

        Returns:
            Number of new rows processed
        """
        if self.watermark is None:
            raise WatermarkInitError("Poll loop used before initialize()")

        rows = await asyncio.to_thread(
            self.reader.fetch_messages_since, self.watermark, self.batch_size
        )
        if rows is None:
            logger.warning(f"Store read failed, watermark stays at {self.watermark}")
            record_poll_tick("error")
            return 0
        if not rows:
            record_poll_tick("idle")
            return 0

        logger.info(f"Got {len(rows)} new messages since {self.watermark}")
        handles = await asyncio.to_thread(self.reader.fetch_handles)

        for row in rows:
            self.watermark = row["date"]
            try:
                self._process(row, handles)
            except Exception:
                logger.exception(f"Failed to process message {row.get('message_id')}")

        record_poll_tick("batch", new_messages=len(rows))
        # Once per batch, not per row
        await self.publish_conversations()
        return len(rows)

    def _process(self, row: Dict[str, Any], handles: Dict[int, str]) -> None:
        if row.get("is_from_me"):
            return

        handle_id = row.get("handle_id")
        title = self.assembler.human_name(handle_id, handles)
        body = row.get("text") or UNSUPPORTED_CONTENT
        context = notification_context(handles.get(handle_id))
        logger.debug(f"Notifying about message {row.get('message_id')} from {title}")
        self.notifier.notify(title, body, context)

    async def publish_conversations(self) -> None:
        conversations = await asyncio.to_thread(self.assembler.list_conversations)
        await self.broadcaster.broadcast(render_event("conversations.updated", conversations))

    async def run(self) -> None:
        """Tick forever at a fixed interval. initialize() must have succeeded."""
        self.running = True
        logger.info(f"Polling for new messages every {self.interval}s")
        try:
            while True:
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Poll tick failed")
                    record_poll_tick("error")
                await asyncio.sleep(self.interval)
        finally:
            self.running = False
