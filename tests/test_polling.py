# tests/test_polling.py
"""Tests for fieldops/transport/telegram_polling.py: long-poll loop and backoff."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fieldops.transport.telegram_polling import TelegramPoller
from fieldops.transport.telegram_sender import TelegramSendError


def _conflict() -> TelegramSendError:
    return TelegramSendError(409, 409, "Conflict: terminated by other getUpdates request")


def _server_error() -> TelegramSendError:
    return TelegramSendError(502, None, "Bad Gateway", retryable=True)


def _scripted_get_updates(outcomes: list, offsets: list):
    """getUpdates double: plays ``outcomes`` in order, then stops the loop."""
    remaining = iter(outcomes)

    async def fake_get_updates(token, offset=None, timeout=30):
        offsets.append(offset)
        try:
            outcome = next(remaining)
        except StopIteration:
            raise asyncio.CancelledError()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    return fake_get_updates


def _poller(**kwargs) -> tuple[TelegramPoller, MagicMock]:
    processor = MagicMock()
    processor.drain = AsyncMock()
    poller = TelegramPoller("123:abc", processor, **kwargs)
    poller._running = True
    return poller, processor


async def _run(poller: TelegramPoller, outcomes: list) -> tuple[list, list]:
    sleeps: list[float] = []
    offsets: list = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    with patch(
        "fieldops.transport.telegram_polling.get_updates",
        new=_scripted_get_updates(outcomes, offsets),
    ), patch("fieldops.transport.telegram_polling.asyncio.sleep", new=fake_sleep):
        await poller._poll_loop()
    return sleeps, offsets


# ============================================================================
# Backoff
# ============================================================================

class TestConflictBackoff:
    """409 Conflict: exponential backoff from 5s, capped."""

    @pytest.mark.asyncio
    async def test_doubles_up_to_cap(self):
        poller, _ = _poller(conflict_backoff_max=30)

        sleeps, _ = await _run(poller, [_conflict()] * 5)

        assert sleeps == [5, 10, 20, 30, 30]

    @pytest.mark.asyncio
    async def test_success_resets_backoff(self):
        poller, _ = _poller()

        sleeps, _ = await _run(poller, [_conflict(), _conflict(), [], _conflict()])

        assert sleeps == [5, 10, 5]

    @pytest.mark.asyncio
    async def test_cap_never_below_start(self):
        poller, _ = _poller(conflict_backoff_max=1)

        sleeps, _ = await _run(poller, [_conflict()] * 2)

        assert sleeps == [5, 5]


class TestErrorBackoff:

    @pytest.mark.asyncio
    async def test_api_errors_back_off_to_30s(self):
        poller, _ = _poller()

        sleeps, _ = await _run(poller, [_server_error()] * 7)

        assert sleeps == [1, 2, 4, 8, 16, 30, 30]

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self):
        poller, _ = _poller()
        throttled = TelegramSendError(429, 429, "Too Many Requests", retryable=True, retry_after=7)

        sleeps, _ = await _run(poller, [throttled])

        assert sleeps == [7]

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_polling(self):
        poller, _ = _poller()

        sleeps, offsets = await _run(poller, [RuntimeError("decode failure"), []])

        assert sleeps == [1]
        assert len(offsets) == 3


# ============================================================================
# Offsets / dispatch
# ============================================================================

class TestUpdates:

    @pytest.mark.asyncio
    async def test_updates_submitted_and_acknowledged(self):
        poller, processor = _poller()
        batch = [{"update_id": 10}, {"update_id": 11}]

        _, offsets = await _run(poller, [batch, []])

        assert processor.submit.call_count == 2
        processor.submit.assert_any_call({"update_id": 11})
        assert offsets == [None, 12, 12]


# ============================================================================
# Connection events
# ============================================================================

class TestConnectionEvents:
    """on_connected / on_disconnected fire on state changes only."""

    @pytest.mark.asyncio
    async def test_connect_then_conflict(self):
        on_connected = AsyncMock()
        on_disconnected = AsyncMock()
        poller, _ = _poller(on_connected=on_connected, on_disconnected=on_disconnected)

        await _run(poller, [[], [], _conflict(), _conflict(), []])

        assert on_connected.await_count == 2
        on_disconnected.assert_awaited_once()
        reason = on_disconnected.await_args.args[0]
        assert "Conflict" in reason
        assert poller.connected

    @pytest.mark.asyncio
    async def test_never_connected_never_disconnects(self):
        on_disconnected = AsyncMock()
        poller, _ = _poller(on_disconnected=on_disconnected)

        await _run(poller, [_conflict(), _server_error()])

        on_disconnected.assert_not_awaited()
        assert not poller.connected


class TestStartStop:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        processor = MagicMock()
        processor.drain = AsyncMock()
        on_disconnected = AsyncMock()
        poller = TelegramPoller("123:abc", processor, on_disconnected=on_disconnected)

        async def hang(token, offset=None, timeout=30):
            await asyncio.Event().wait()

        with patch(
            "fieldops.transport.telegram_polling.delete_webhook",
            new=AsyncMock(side_effect=TelegramSendError(401, 401, "Unauthorized")),
        ), patch("fieldops.transport.telegram_polling.get_updates", new=hang):
            await poller.start()
            assert poller.running
            await asyncio.sleep(0)
            await poller.stop()

        assert not poller.running
        processor.drain.assert_awaited_once()
        on_disconnected.assert_not_awaited()
