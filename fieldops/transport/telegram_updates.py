# fieldops/transport/telegram_updates.py
"""
Telegram update processing shared by the poller and the webhook.

Updates of different chats run concurrently; updates of the same chat are
handled one at a time and in arrival order, so a multi-step session sees
its input in sequence.
"""
from __future__ import annotations

import asyncio
import weakref
from typing import Optional

from fieldops.core import texts
from fieldops.core.bot import DispatchBot
from fieldops.core.domain import BotReply, ChatEvent, EventKind
from fieldops.core.errors import MessagingDeliveryError
from fieldops.infra.logging_config import LogContext, get_logger
from fieldops.infra.metrics import Timer, inc_counter
from fieldops.infra.rate_limiter import InMemoryRateLimiter
from fieldops.transport.adapters import TelegramAdapter
from fieldops.transport.telegram_gateway import LogOnlyGateway, TelegramGateway

logger = get_logger(__name__)


def _safe_create_task(coro, *, name: str | None = None) -> asyncio.Task:
    """Create a background task with exception logging to avoid 'Task exception was never retrieved'."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


class TelegramUpdateProcessor:
    def __init__(
        self,
        bot: DispatchBot,
        gateway: TelegramGateway | LogOnlyGateway,
        *,
        chat_rate_limit_per_minute: int = 20,
        rate_limiter: Optional[InMemoryRateLimiter] = None,
    ):
        self._bot = bot
        self._gateway = gateway
        self._adapter = TelegramAdapter()
        self._rate_limiter = rate_limiter or InMemoryRateLimiter(
            max_requests=chat_rate_limit_per_minute,
            window_seconds=60,
            scope="chat",
        )
        self._chat_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._pending: set[asyncio.Task] = set()

    def submit(self, update: dict) -> Optional[asyncio.Task]:
        """Schedule ``update`` in the background (poller path)."""
        event = self._adapter.adapt_update(update)
        if event is None:
            return None
        task = _safe_create_task(self._handle_in_order(event), name=f"tg_update_{update.get('update_id')}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def process(self, update: dict) -> Optional[BotReply]:
        """Handle ``update`` and wait for the reply to be sent (webhook path)."""
        event = self._adapter.adapt_update(update)
        if event is None:
            return None
        return await self._handle_in_order(event)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight updates on shutdown."""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} unfinished update tasks on shutdown")

    async def _handle_in_order(self, event: ChatEvent) -> Optional[BotReply]:
        lock = self._chat_locks.get(event.chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._chat_locks[event.chat_id] = lock
        async with lock:
            return await self._handle(event)

    async def _handle(self, event: ChatEvent) -> Optional[BotReply]:
        log_ctx = LogContext(logger, chat_id=event.chat_id)

        allowed, retry_after = self._rate_limiter.is_allowed(event.chat_id)
        if not allowed:
            log_ctx.warning(f"Rate limit exceeded for chat, retry_after={retry_after}s")
            return None

        if event.kind == EventKind.CALLBACK and event.callback_id:
            await self._gateway.answer_callback(event.callback_id)

        try:
            with Timer("chat_event_duration_seconds", kind=event.kind.value):
                reply = await self._bot.handle_event(event)
        except Exception as exc:
            log_ctx.error(f"Chat event processing failed: {exc.__class__.__name__}: {exc}", exc_info=True)
            inc_counter("chat_event_errors_total", kind=event.kind.value)
            reply = BotReply(texts.INTERNAL_ERROR)

        if reply is None:
            return None
        try:
            await self._gateway.send(event.chat_id, reply.text, reply.actions or None)
            inc_counter("outbound_messages_total", status="sent")
        except MessagingDeliveryError as exc:
            log_ctx.error(f"Reply delivery failed: {exc.detail}")
            inc_counter("outbound_messages_total", status="failed")
        return reply
