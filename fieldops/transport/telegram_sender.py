# fieldops/transport/telegram_sender.py
"""
Telegram Bot API client functions.

Every call takes the bot token explicitly; the gateway and the poller own
it.

Error classification (TelegramSendError.retryable):
- Token invalid / bot blocked  → NOT retryable (needs human intervention)
- Chat not found               → NOT retryable
- Duplicate consumer (409)     → NOT retryable here; the poller backs off
- Rate limiting (429)          → retryable
- Network / timeout            → retryable
- Unknown server error         → retryable
"""
from __future__ import annotations

import asyncio

import aiohttp

from fieldops.infra.http_client import get_poller_session, get_sender_session
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import inc_counter

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _bot_url(method: str, token: str) -> str:
    return f"{TELEGRAM_API_BASE}/bot{token}/{method}"


# ---------------------------------------------------------------------------
# Error type
# ---------------------------------------------------------------------------

class TelegramSendError(Exception):
    """Error calling the Telegram Bot API.

    Attributes:
        status:      HTTP status code (0 for connection-level errors).
        error_code:  Telegram-specific error code from the response body.
        retryable:   Whether a later attempt may succeed.
        retry_after: Seconds Telegram asked us to wait (429 only).
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
        retry_after: int | None = None,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        self.retry_after = retry_after
        self.description = message
        super().__init__(f"Telegram API error {status} (code={error_code}): {message}")

    @property
    def is_conflict(self) -> bool:
        """Another getUpdates consumer or an active webhook holds the bot."""
        return self.status == 409 or self.error_code == 409


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def send_message(
    token: str,
    chat_id: str,
    text: str,
    reply_markup: dict | None = None,
) -> dict:
    """
    Send an HTML-formatted text message.

    Raises:
        TelegramSendError: On API errors (check .retryable)
    """
    payload: dict = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }
    if reply_markup:
        payload["reply_markup"] = reply_markup
    return await _send_request(_bot_url("sendMessage", token), payload, chat_id)


async def answer_callback_query(token: str, callback_query_id: str, text: str | None = None) -> dict:
    """Stop the client-side spinner on an inline button."""
    payload: dict = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text[:200]
    return await _send_request(_bot_url("answerCallbackQuery", token), payload, "callback")


async def delete_webhook(token: str) -> dict:
    """Remove webhook so polling can work."""
    return await _send_request(_bot_url("deleteWebhook", token), {}, "system")


async def set_webhook(token: str, webhook_url: str, secret_token: str | None = None) -> dict:
    payload: dict = {"url": webhook_url}
    if secret_token:
        payload["secret_token"] = secret_token
    return await _send_request(_bot_url("setWebhook", token), payload, "system")


async def get_updates(
    token: str,
    offset: int | None = None,
    timeout: int = 30,
) -> list[dict]:
    """
    Long-poll for updates via getUpdates.

    Raises:
        TelegramSendError: ``is_conflict`` is set when another consumer is polling
    """
    payload: dict = {
        "timeout": timeout,
        "allowed_updates": ["message", "callback_query"],
    }
    if offset is not None:
        payload["offset"] = offset

    session = get_poller_session()
    try:
        async with session.post(
            _bot_url("getUpdates", token),
            json=payload,
            timeout=aiohttp.ClientTimeout(total=timeout + 10, connect=5),
        ) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                return body.get("result", [])

            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")
            raise TelegramSendError(
                resp.status, error_code, error_desc,
                retryable=resp.status == 429 or resp.status >= 500,
            )

    except TelegramSendError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error(f"Telegram getUpdates connection error: {exc!r}")
        raise TelegramSendError(0, None, str(exc), retryable=True)


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json()
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Telegram API returned non-JSON body: status={resp.status}")
        return None


async def _send_request(url: str, payload: dict, chat_id: str) -> dict:
    """Execute a Bot API request and classify failures."""
    try:
        session = get_sender_session()
        async with session.post(url, json=payload) as resp:
            body = await _safe_response_json(resp)

            if resp.status == 200 and body and body.get("ok"):
                result = body.get("result", {})
                msg_id = result.get("message_id", "n/a") if isinstance(result, dict) else "ok"
                logger.debug(f"Telegram request ok: to={mask_chat_id(chat_id)}, msg_id={msg_id}")
                inc_counter("telegram_outbound_sent")
                return body

            error_desc = (body or {}).get("description", "Unknown error")
            error_code = (body or {}).get("error_code")

            if resp.status == 401 or error_code == 401:
                logger.error(f"Telegram API auth error (token invalid): {error_desc}")
                inc_counter("telegram_outbound_auth_error")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            if resp.status == 403:
                logger.warning(f"Telegram API forbidden: {error_desc}")
                inc_counter("telegram_outbound_forbidden")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            if resp.status == 400:
                logger.warning(f"Telegram API bad request: {error_desc}")
                inc_counter("telegram_outbound_bad_request")
                raise TelegramSendError(resp.status, error_code, error_desc, retryable=False)

            if resp.status == 429:
                retry_after = (body or {}).get("parameters", {}).get("retry_after", 30)
                logger.warning(f"Telegram API rate limit, retry_after={retry_after}s")
                inc_counter("telegram_outbound_rate_limited")
                raise TelegramSendError(
                    resp.status, error_code, error_desc,
                    retryable=True, retry_after=retry_after,
                )

            logger.error(f"Telegram API error: status={resp.status}, code={error_code}, msg={error_desc}")
            inc_counter("telegram_outbound_error")
            raise TelegramSendError(resp.status, error_code, error_desc, retryable=True)

    except TelegramSendError:
        raise
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error(f"Telegram API connection error: {exc!r}")
        inc_counter("telegram_outbound_connection_error")
        raise TelegramSendError(0, None, str(exc), retryable=True)
