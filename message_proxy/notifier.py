"""IFTTT Maker webhook notifier.

Push notifications are fire-and-forget: ``notify`` schedules delivery in the
background and returns immediately. Delivery errors are logged and never
reach the caller.
"""

import asyncio
import logging
from typing import Optional, Set

import httpx

from message_proxy.metrics import record_notification

logger = logging.getLogger(__name__)

USER_AGENT = "MessageProxy/1.0"


class IftttNotifier:
    """Sends notifications through an IFTTT Maker webhook event.

    The event receives the title, body and callback context as value1,
    value2 and value3.

    Example:
        notifier = IftttNotifier(key="abc123", event="imessageReceived")
        notifier.notify("Jane Doe", "See you soon", "jane%40example.com")
    """

    def __init__(
        self,
        key: Optional[str],
        event: str = "imessageReceived",
        base_url: str = "https://maker.ifttt.com",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._key = key
        self._event = event
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._key)

    def _get_url(self) -> str:
        return f"{self._base_url}/trigger/{self._event}/with/key/{self._key}"

    def notify(self, title: str, body: str, context: str) -> None:
        """Schedule a notification on the running event loop and return."""
        if not self.enabled:
            logger.debug(f"Notifier disabled, dropping notification: {title}")
            record_notification("disabled")
            return
        task = asyncio.get_running_loop().create_task(self.deliver(title, body, context))
        # Keep a reference until done so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def deliver(self, title: str, body: str, context: str) -> bool:
        """POST the notification.

        Returns:
            True if IFTTT accepted it, False on any HTTP or transport error
        """
        payload = {"value1": title, "value2": body, "value3": context}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._get_url(),
                    json=payload,
                    headers={"User-Agent": USER_AGENT},
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Notification '{title}' failed: {e}")
            record_notification("error")
            return False

        logger.info(f"Notification sent: {title}")
        record_notification("sent")
        return True

    async def drain(self) -> None:
        """Wait for notifications still in flight."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
