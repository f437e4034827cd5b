"""Outbound sender.

Hands a message to the Messages app through osascript. The script gives no
useful success signal, so the send queue confirms delivery by re-reading the
chat store; here we only launch the process and log how it exited.
"""

import asyncio
import logging
from typing import Set

logger = logging.getLogger(__name__)

# argv: body, then the recipient string exactly as typed into a new message
SEND_SCRIPT = """
on run argv
    set messageBody to item 1 of argv
    set recipientList to item 2 of argv
    tell application "Messages"
        set targetService to 1st service whose service type = iMessage
        set AppleScript's text item delimiters to ","
        set recipientNames to text items of recipientList
        set AppleScript's text item delimiters to ""
        if (count of recipientNames) is 1 then
            try
                send messageBody to chat (item 1 of recipientNames)
                return
            end try
            send messageBody to buddy (item 1 of recipientNames) of targetService
        else
            set targetBuddies to {}
            repeat with recipientName in recipientNames
                set end of targetBuddies to buddy (contents of recipientName) of targetService
            end repeat
            set groupChat to make new text chat with properties {participants:targetBuddies}
            send messageBody to groupChat
        end if
    end tell
end run
"""


class OsascriptSender:
    """Launches the send script and returns without waiting for it."""

    def __init__(self, osascript_path: str = "/usr/bin/osascript"):
        self.osascript_path = osascript_path
        self._reapers: Set[asyncio.Task] = set()

    async def send(self, body: str, recipients: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.osascript_path, "-e", SEND_SCRIPT, body, recipients,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            # ValueError: arguments with embedded NUL bytes
            logger.error(f"Unable to launch {self.osascript_path}: {e}")
            return

        logger.debug(f"Send script launched (pid {process.pid}) for {recipients}")
        task = asyncio.get_running_loop().create_task(self._reap(process))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, process: asyncio.subprocess.Process) -> None:
        _, stderr = await process.communicate()
        if process.returncode != 0:
            logger.warning(
                f"Send script exited with {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )
