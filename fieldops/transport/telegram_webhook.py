# fieldops/transport/telegram_webhook.py
"""
Telegram Bot API webhook handler.

Handles:
- POST /webhooks/telegram: inbound Updates from Telegram
- setWebhook registration on startup (webhook mode)

Security features:
- X-Telegram-Bot-Api-Secret-Token header validation (if configured)
- Per-chat rate limiting (in the update processor)
- Always 200 once authenticated, so Telegram does not retry
"""
from __future__ import annotations

import hmac
import time

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics, inc_counter
from fieldops.transport.telegram_sender import TelegramSendError, set_webhook
from fieldops.transport.telegram_updates import TelegramUpdateProcessor

logger = get_logger(__name__)


# -------------------------------------------------------------------------
# Secret Token Verification
# -------------------------------------------------------------------------

def _verify_secret_token(request: Request, secret: str | None) -> bool:
    """
    Verify X-Telegram-Bot-Api-Secret-Token header.
    Returns True if valid or if secret token verification is disabled.
    """
    if not secret:
        return True

    header_token = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    if not header_token:
        logger.warning("Telegram webhook: missing X-Telegram-Bot-Api-Secret-Token header")
        return False

    return hmac.compare_digest(header_token, secret)


# -------------------------------------------------------------------------
# POST: Inbound Updates
# -------------------------------------------------------------------------

async def telegram_webhook_handler(
    request: Request,
    processor: TelegramUpdateProcessor,
    *,
    secret: str | None = None,
) -> JSONResponse:
    """
    Handle Telegram Bot API webhook Updates (POST).

    The update is processed before responding; per-chat ordering is kept by
    the processor even when Telegram delivers concurrently.
    """
    start_time = time.time()

    if not _verify_secret_token(request, secret):
        logger.error("Telegram webhook: secret token verification failed")
        AppMetrics.webhook_validation_failed("telegram")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    # Parse JSON payload: always return 200 even on malformed input
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Telegram webhook: invalid JSON payload, returning 200 to suppress retries")
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    if not isinstance(payload, dict):
        inc_counter("telegram_webhook_malformed_payload")
        return JSONResponse({"ok": True}, status_code=200)

    AppMetrics.webhook_received("telegram")
    reply = await processor.process(payload)

    elapsed_ms = (time.time() - start_time) * 1000
    logger.info(
        f"Telegram webhook processed: update_id={payload.get('update_id')}, "
        f"replied={reply is not None}, elapsed={elapsed_ms:.0f}ms",
        extra={"request_id": getattr(request.state, "request_id", None)},
    )

    # Always return 200 to prevent Telegram retries
    return JSONResponse({"ok": True}, status_code=200)


# -------------------------------------------------------------------------
# Registration
# -------------------------------------------------------------------------

async def register_telegram_webhook(token: str, url: str, secret: str | None = None) -> bool:
    """
    Point the bot at ``url`` via setWebhook.

    A failure is logged and leaves the previous registration in place; the
    app keeps serving whatever Telegram already delivers.
    """
    try:
        await set_webhook(token, url, secret_token=secret)
    except TelegramSendError as e:
        logger.error(f"Telegram setWebhook failed: {e}")
        inc_counter("telegram_webhook_register_failed")
        return False
    logger.info(f"Telegram webhook registered: {url.split('?')[0]}")
    return True
