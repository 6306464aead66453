# tests/test_webhooks.py
"""Tests for the Telegram webhook handler: secret token, payload handling, setWebhook registration."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from fieldops.infra.metrics import get_metrics_collector
from fieldops.transport.telegram_sender import TelegramSendError
from fieldops.transport.telegram_webhook import (
    _verify_secret_token,
    register_telegram_webhook,
    telegram_webhook_handler,
)


def _make_request(secret_header: str | None = None, body=None) -> MagicMock:
    request = MagicMock()
    request.headers = {}
    if secret_header is not None:
        request.headers["X-Telegram-Bot-Api-Secret-Token"] = secret_header
    if isinstance(body, Exception):
        request.json = AsyncMock(side_effect=body)
    else:
        request.json = AsyncMock(return_value=body)
    request.state.request_id = "req-1"
    return request


# ============================================================================
# Secret token verification
# ============================================================================

class TestSecretTokenVerification:
    """Tests for _verify_secret_token()."""

    def test_valid_token(self):
        assert _verify_secret_token(_make_request("s3cret"), "s3cret") is True

    def test_wrong_token(self):
        assert _verify_secret_token(_make_request("guess"), "s3cret") is False

    def test_missing_header(self):
        assert _verify_secret_token(_make_request(None), "s3cret") is False

    def test_no_secret_configured_skips(self):
        assert _verify_secret_token(_make_request(None), None) is True
        assert _verify_secret_token(_make_request(None), "") is True


# ============================================================================
# Handler
# ============================================================================

class TestTelegramWebhookHandler:

    @pytest.mark.asyncio
    async def test_bad_secret_rejected(self):
        processor = MagicMock()
        processor.process = AsyncMock()

        with pytest.raises(HTTPException) as exc_info:
            await telegram_webhook_handler(_make_request("guess", {}), processor, secret="s3cret")

        assert exc_info.value.status_code == 403
        processor.process.assert_not_awaited()
        assert get_metrics_collector().get_counter(
            "webhook_validation_failed_total", provider="telegram"
        ) == 1

    @pytest.mark.asyncio
    async def test_update_processed(self):
        processor = MagicMock()
        processor.process = AsyncMock(return_value=None)
        update = {"update_id": 7, "message": {"text": "hi"}}

        response = await telegram_webhook_handler(
            _make_request("s3cret", update), processor, secret="s3cret"
        )

        assert response.status_code == 200
        assert json.loads(response.body) == {"ok": True}
        processor.process.assert_awaited_once_with(update)
        assert get_metrics_collector().get_counter("webhooks_received_total", provider="telegram") == 1

    @pytest.mark.asyncio
    async def test_invalid_json_still_200(self):
        processor = MagicMock()
        processor.process = AsyncMock()

        response = await telegram_webhook_handler(
            _make_request(body=ValueError("bad json")), processor
        )

        assert response.status_code == 200
        processor.process.assert_not_awaited()
        assert get_metrics_collector().get_counter("telegram_webhook_malformed_payload") == 1

    @pytest.mark.asyncio
    async def test_non_object_payload_ignored(self):
        processor = MagicMock()
        processor.process = AsyncMock()

        response = await telegram_webhook_handler(_make_request(body=[1, 2, 3]), processor)

        assert response.status_code == 200
        processor.process.assert_not_awaited()


# ============================================================================
# setWebhook registration
# ============================================================================

class TestRegisterTelegramWebhook:

    @pytest.mark.asyncio
    async def test_registers_url_and_secret(self):
        with patch("fieldops.transport.telegram_webhook.set_webhook", new=AsyncMock(return_value=True)) as call:
            ok = await register_telegram_webhook("bot-token", "https://ops.example.com/webhooks/telegram", "s3cret")

        assert ok is True
        call.assert_awaited_once_with(
            "bot-token", "https://ops.example.com/webhooks/telegram", secret_token="s3cret",
        )

    @pytest.mark.asyncio
    async def test_api_failure_logged_not_raised(self):
        error = TelegramSendError(401, 401, "Unauthorized")
        with patch("fieldops.transport.telegram_webhook.set_webhook", new=AsyncMock(side_effect=error)):
            ok = await register_telegram_webhook("bad-token", "https://ops.example.com/webhooks/telegram")

        assert ok is False
        assert get_metrics_collector().get_counter("telegram_webhook_register_failed") == 1
