"""
Typing Indicator - Recurring "typing..." Chat Action

The indicator is a background task bound to an async context: it starts
when the context is entered and is cancelled when the context exits, on
success, early return or exception alike.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger(__name__)

DEFAULT_TYPING_INTERVAL = 5.0


class TypingIndicator:
    """
    Sends a chat action immediately and then every `interval` seconds.

    Example:
        async with TypingIndicator(lambda: api.send_chat_action(chat_id)):
            response = await backend.chat(...)
    """

    def __init__(
        self,
        send_action: Callable[[], Awaitable[object]],
        interval: float = DEFAULT_TYPING_INTERVAL
    ):
        self._send_action = send_action
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.sent = 0

    async def _send(self) -> None:
        try:
            await self._send_action()
            self.sent += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("Typing indicator failed: %s", e)

    async def _loop(self) -> None:
        while True:
            await self._send()
            await asyncio.sleep(self.interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def __aenter__(self) -> 'TypingIndicator':
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
