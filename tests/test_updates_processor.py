# tests/test_updates_processor.py
"""Tests for fieldops/transport/telegram_updates.py: shared update handling."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from fieldops.core import texts
from fieldops.core.domain import BotReply
from fieldops.transport.telegram_updates import TelegramUpdateProcessor


def _text_update(update_id: int, chat_id: int, body: str) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": chat_id, "first_name": "Budi"},
            "chat": {"id": chat_id},
            "text": body,
        },
    }


class TestProcess:
    """Webhook path: handle and reply inline."""

    @pytest.mark.asyncio
    async def test_reply_is_sent(self, service, gateway):
        reply = await service.processor.process(_text_update(1, 555, "/start"))

        assert reply is not None
        assert gateway.texts_for("555") == [reply.text]

    @pytest.mark.asyncio
    async def test_ignored_update(self, service, gateway):
        assert await service.processor.process({"update_id": 1, "poll": {}}) is None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_callback_is_answered(self, service, gateway):
        update = {
            "update_id": 2,
            "callback_query": {
                "id": "cbq-9",
                "from": {"id": 555},
                "message": {"message_id": 1, "chat": {"id": 555}},
                "data": "back_to_main",
            },
        }

        await service.processor.process(update)

        assert gateway.answered == ["cbq-9"]

    @pytest.mark.asyncio
    async def test_bot_crash_becomes_generic_reply(self, service, gateway):
        bot = AsyncMock()
        bot.handle_event.side_effect = RuntimeError("boom")
        processor = TelegramUpdateProcessor(bot, gateway)

        reply = await processor.process(_text_update(3, 555, "hi"))

        assert reply.text == texts.INTERNAL_ERROR
        assert gateway.texts_for("555") == [texts.INTERNAL_ERROR]

    @pytest.mark.asyncio
    async def test_delivery_failure_is_logged_not_raised(self, service, gateway):
        gateway.failing.add("555")

        reply = await service.processor.process(_text_update(4, 555, "/start"))

        assert reply is not None
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_rate_limited_chat_gets_no_reply(self, service, gateway):
        processor = TelegramUpdateProcessor(service.bot, gateway, chat_rate_limit_per_minute=2)

        for i in range(3):
            await processor.process(_text_update(10 + i, 555, "/help"))

        assert len(gateway.texts_for("555")) == 2


class TestSubmit:
    """Poller path: background tasks, in order per chat."""

    @pytest.mark.asyncio
    async def test_same_chat_handled_in_order(self, gateway):
        seen: list[str] = []

        async def handle_event(event):
            # first message is slow; a later one must still wait for it
            if event.text == "one":
                await asyncio.sleep(0.05)
            seen.append(event.text)
            return BotReply(event.text)

        bot = AsyncMock()
        bot.handle_event.side_effect = handle_event
        processor = TelegramUpdateProcessor(bot, gateway)

        for i, body in enumerate(["one", "two", "three"]):
            processor.submit(_text_update(i, 555, body))
        await processor.drain()

        assert seen == ["one", "two", "three"]
        assert gateway.texts_for("555") == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_other_chats_not_blocked(self, gateway):
        release = asyncio.Event()
        seen: list[str] = []

        async def handle_event(event):
            if event.chat_id == "1":
                await release.wait()
            seen.append(event.chat_id)
            return None

        bot = AsyncMock()
        bot.handle_event.side_effect = handle_event
        processor = TelegramUpdateProcessor(bot, gateway)

        processor.submit(_text_update(1, 1, "slow"))
        fast = processor.submit(_text_update(2, 2, "fast"))
        await asyncio.wait_for(fast, timeout=1)
        assert seen == ["2"]

        release.set()
        await processor.drain()
        assert seen == ["2", "1"]

    @pytest.mark.asyncio
    async def test_ignored_update_returns_none(self, service):
        assert service.processor.submit({"update_id": 5}) is None

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self, gateway):
        async def handle_event(event):
            await asyncio.sleep(10)

        bot = AsyncMock()
        bot.handle_event.side_effect = handle_event
        processor = TelegramUpdateProcessor(bot, gateway)
        task = processor.submit(_text_update(1, 555, "hang"))

        await processor.drain(timeout=0.05)

        with pytest.raises(asyncio.CancelledError):
            await task
        assert gateway.sent == []
