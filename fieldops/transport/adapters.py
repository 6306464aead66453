# fieldops/transport/adapters.py
"""
Adapters converting Telegram updates into ``ChatEvent``s.
These are pure converters - they don't contain domain logic.
"""
from __future__ import annotations

from typing import Optional

from fieldops.core.domain import ChatEvent, EventKind
from fieldops.infra.logging_config import get_logger, mask_chat_id

logger = get_logger(__name__)


class TelegramAdapter:
    """
    Adapter for Telegram Bot API updates.

    Handled update shapes:
    {
      "update_id": 123456,
      "message": {
        "message_id": 42,
        "from": {"id": 123, "first_name": "Budi", ...},
        "chat": {"id": 123, "type": "private"},
        "text": "/take JOB-20240131-3FA2C1",
        "contact": {"phone_number": "+628123456789", "user_id": 123},
        "photo": [{"file_id": "...", "file_size": ...}, ...],
        "location": {"latitude": -6.2, "longitude": 106.8}
      }
    }
    {
      "update_id": 123457,
      "callback_query": {
        "id": "4382bfdwdsb323b2d9",
        "from": {"id": 123, ...},
        "message": {"message_id": 43, "chat": {"id": 123}},
        "data": "take_job_<uuid>"
      }
    }
    """

    def adapt_update(self, update: dict) -> Optional[ChatEvent]:
        """Convert one Update dict. Returns None for updates the bot ignores."""
        if "callback_query" in update:
            return self._parse_callback(update["callback_query"])

        message = update.get("message")
        if not message:
            logger.debug(f"Telegram update: no 'message' field, ignoring (keys={list(update.keys())})")
            return None
        return self._parse_message(message)

    def _parse_callback(self, query: dict) -> Optional[ChatEvent]:
        message = query.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", "")) or str((query.get("from") or {}).get("id", ""))
        if not chat_id:
            logger.warning("Telegram callback: missing chat id, ignoring")
            return None

        sender = query.get("from") or {}
        logger.info(f"Telegram callback: from={mask_chat_id(chat_id)}, data={str(query.get('data'))[:40]}")
        return ChatEvent(
            kind=EventKind.CALLBACK,
            chat_id=chat_id,
            sender_id=str(sender["id"]) if "id" in sender else None,
            sender_name=self._extract_sender_name(sender),
            message_id=str(message.get("message_id", "")) or None,
            callback_data=query.get("data") or "",
            callback_id=query.get("id"),
        )

    def _parse_message(self, message: dict) -> Optional[ChatEvent]:
        chat_id = str((message.get("chat") or {}).get("id", ""))
        if not chat_id:
            logger.warning("Telegram message: missing chat.id, ignoring")
            return None

        sender = message.get("from") or {}
        base = {
            "chat_id": chat_id,
            "sender_id": str(sender["id"]) if "id" in sender else None,
            "sender_name": self._extract_sender_name(sender),
            "message_id": str(message.get("message_id", "")) or None,
        }

        if "contact" in message:
            contact = message["contact"]
            user_id = contact.get("user_id")
            return ChatEvent(
                kind=EventKind.CONTACT,
                contact_phone=contact.get("phone_number"),
                contact_user_id=str(user_id) if user_id is not None else None,
                **base,
            )

        if message.get("photo"):
            # Telegram sends multiple sizes; keep the largest (last)
            largest = message["photo"][-1]
            return ChatEvent(
                kind=EventKind.PHOTO,
                photo_ref=largest.get("file_id"),
                text=message.get("caption"),
                **base,
            )

        if "location" in message:
            loc = message["location"]
            lat, lon = loc.get("latitude"), loc.get("longitude")
            if lat is None or lon is None:
                return None
            return ChatEvent(kind=EventKind.LOCATION, latitude=float(lat), longitude=float(lon), **base)

        text = (message.get("text") or "").strip()
        if not text:
            logger.debug(f"Telegram message: no usable content, ignoring (keys={list(message.keys())})")
            return None

        if text.startswith("/"):
            parts = text.split()
            # "/start@BotName" -> "start"
            command = parts[0][1:].split("@")[0].lower()
            return ChatEvent(kind=EventKind.COMMAND, command=command, args=parts[1:], text=text, **base)

        return ChatEvent(kind=EventKind.TEXT, text=text, **base)

    @staticmethod
    def _extract_sender_name(sender: dict) -> Optional[str]:
        """Full name when Telegram has one, else @username."""
        if not sender:
            return None
        full_name = f"{sender.get('first_name', '')} {sender.get('last_name', '')}".strip()
        if full_name:
            return full_name
        username = sender.get("username")
        return f"@{username}" if username else None
