# fieldops/transport/telegram_polling.py
"""
Telegram Bot API long-polling handler.

Alternative to webhook mode. Calls getUpdates in a loop with long-polling.
Simpler ops (no public URL or SSL required).

Usage:
    poller = TelegramPoller(token, processor,
                            on_connected=bot.on_gateway_connected,
                            on_disconnected=bot.on_gateway_disconnected)
    await poller.start()
    # ... on shutdown:
    await poller.stop()
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from fieldops.infra.logging_config import get_logger
from fieldops.transport.telegram_sender import (
    TelegramSendError,
    delete_webhook,
    get_updates,
)
from fieldops.transport.telegram_updates import TelegramUpdateProcessor

logger = get_logger(__name__)

ERROR_BACKOFF_MAX = 30
CONFLICT_BACKOFF_START = 5

ConnectedCallback = Callable[[], Awaitable[None]]
DisconnectedCallback = Callable[[str], Awaitable[None]]


class TelegramPoller:
    """
    Long-polling loop for receiving Telegram updates.

    Error handling:
    - On API errors: exponential backoff (1s → 2s → 4s → ... → 30s max)
    - On 409 Conflict (another consumer holds the bot): exponential backoff
      starting at 5s, capped at ``conflict_backoff_max``
    - On processing errors: handled per update by the processor
    - On cancellation: graceful shutdown

    Connection state changes are reported through ``on_connected`` and
    ``on_disconnected``: connected after the first successful getUpdates,
    disconnected on the first failure after that.
    """

    def __init__(
        self,
        token: str,
        processor: TelegramUpdateProcessor,
        *,
        poll_timeout: int = 30,
        conflict_backoff_max: int = 300,
        on_connected: Optional[ConnectedCallback] = None,
        on_disconnected: Optional[DisconnectedCallback] = None,
    ):
        self._token = token
        self.processor = processor
        self.poll_timeout = poll_timeout
        self.conflict_backoff_max = max(conflict_backoff_max, CONFLICT_BACKOFF_START)
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._task: asyncio.Task | None = None
        self._offset: int | None = None
        self._running = False
        self._connected = False
        self._backoff = 1  # seconds, doubles on error, max 30
        self._conflict_backoff = CONFLICT_BACKOFF_START

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self._running:
            logger.warning("Telegram poller already running")
            return

        # Remove any existing webhook so polling can work
        try:
            await delete_webhook(self._token)
            logger.info("Telegram webhook removed (switching to polling mode)")
        except TelegramSendError as e:
            logger.warning(f"Could not delete Telegram webhook: {e}")

        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="tg_poller")
        logger.info(f"Telegram poller started (timeout={self.poll_timeout}s)")

    async def stop(self) -> None:
        """Stop the polling loop gracefully."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self.processor.drain()
        await self._mark_disconnected("poller stopped")
        logger.info("Telegram poller stopped")

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while self._running:
            try:
                updates = await get_updates(self._token, offset=self._offset, timeout=self.poll_timeout)

                # Reset backoff on successful poll
                self._backoff = 1
                self._conflict_backoff = CONFLICT_BACKOFF_START
                await self._mark_connected()

                for update in updates:
                    # Advance offset to acknowledge this update
                    self._offset = update.get("update_id", 0) + 1
                    self.processor.submit(update)

            except asyncio.CancelledError:
                break

            except TelegramSendError as e:
                if not self._running:
                    break
                await self._mark_disconnected(e.description)
                if e.is_conflict:
                    delay = self._conflict_backoff
                    logger.warning(
                        f"Telegram polling conflict (another consumer is active), backing off {delay}s"
                    )
                    self._conflict_backoff = min(self._conflict_backoff * 2, self.conflict_backoff_max)
                else:
                    delay = e.retry_after or self._backoff
                    logger.error(f"Telegram polling error: {e}, backing off {delay}s")
                    self._backoff = min(self._backoff * 2, ERROR_BACKOFF_MAX)
                await asyncio.sleep(delay)

            except Exception as e:
                if not self._running:
                    break
                logger.error(f"Telegram polling unexpected error: {e}", exc_info=True)
                await self._mark_disconnected(str(e))
                await asyncio.sleep(self._backoff)
                self._backoff = min(self._backoff * 2, ERROR_BACKOFF_MAX)

    async def _mark_connected(self) -> None:
        if self._connected:
            return
        self._connected = True
        logger.info("Telegram gateway connected")
        if self._on_connected:
            await self._on_connected()

    async def _mark_disconnected(self, reason: str) -> None:
        if not self._connected:
            return
        self._connected = False
        logger.warning(f"Telegram gateway disconnected: {reason}")
        if self._on_disconnected:
            await self._on_disconnected(reason)
