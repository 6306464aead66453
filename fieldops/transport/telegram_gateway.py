# fieldops/transport/telegram_gateway.py
"""
MessagingGateway implementations.

``TelegramGateway`` renders ``ChatAction`` rows as Telegram keyboards:
callback buttons become an inline keyboard; rows that contain a contact
request or a plain text button become a one-time reply keyboard.
"""
from __future__ import annotations

from typing import Optional

from fieldops.core.domain import ChatAction
from fieldops.core.errors import MessagingDeliveryError
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.transport import telegram_sender
from fieldops.transport.telegram_sender import TelegramSendError

logger = get_logger(__name__)


def build_reply_markup(actions: Optional[list[list[ChatAction]]]) -> Optional[dict]:
    if not actions:
        return None

    inline = all(action.data and not action.request_contact for row in actions for action in row)
    if inline:
        return {
            "inline_keyboard": [
                [{"text": action.label, "callback_data": action.data} for action in row]
                for row in actions
            ]
        }

    keyboard = []
    for row in actions:
        buttons = []
        for action in row:
            button: dict = {"text": action.label}
            if action.request_contact:
                button["request_contact"] = True
            buttons.append(button)
        keyboard.append(buttons)
    return {"keyboard": keyboard, "resize_keyboard": True, "one_time_keyboard": True}


class TelegramGateway:
    def __init__(self, token: str):
        self._token = token

    async def send(
        self,
        chat_id: str,
        text: str,
        actions: Optional[list[list[ChatAction]]] = None,
    ) -> None:
        try:
            await telegram_sender.send_message(
                self._token, chat_id, text, reply_markup=build_reply_markup(actions),
            )
        except TelegramSendError as exc:
            raise MessagingDeliveryError(chat_id, exc.description, retryable=exc.retryable) from exc

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        try:
            await telegram_sender.answer_callback_query(self._token, callback_id, text)
        except TelegramSendError as exc:
            # Expired callback ids are normal after a restart
            logger.debug(f"answerCallbackQuery failed: {exc}")


class LogOnlyGateway:
    """Gateway used when no bot token is configured: messages are only logged."""

    async def send(
        self,
        chat_id: str,
        text: str,
        actions: Optional[list[list[ChatAction]]] = None,
    ) -> None:
        logger.info(
            f"[log-only] message to {mask_chat_id(chat_id)}: {text[:80]!r}",
            extra={"chat_id": chat_id},
        )

    async def answer_callback(self, callback_id: str, text: Optional[str] = None) -> None:
        return None
