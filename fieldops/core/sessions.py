# fieldops/core/sessions.py
"""
Conversation Session Manager.

One session per chat, holding the step of a multi-step input flow
(registration by phone or contact, admin login, broadcast composition,
completion photo) and the fields collected so far.

Sessions are transient.  The default ``InMemorySessionStore`` loses them
on restart, which is an accepted trade-off: the user simply starts the
flow again.  ``AsyncPostgresSessionStore`` is a drop-in replacement when
restart survival is needed.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from fieldops.core.domain import ConversationSession, SessionStep, utcnow
from fieldops.core.ports import SessionStore
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)

# Free-text inputs that abandon any open flow
CANCEL_INPUTS = frozenset({"/cancel", "cancel", "batal", "🔙 back to menu"})


def is_cancel_input(text: str | None) -> bool:
    return bool(text) and text.strip().casefold() in CANCEL_INPUTS


class InMemorySessionStore:
    """Single-process session store. Nothing survives a restart."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._sessions: dict[str, ConversationSession] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, chat_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(chat_id)

    async def upsert(self, session: ConversationSession) -> None:
        async with self._lock:
            self._sessions[session.chat_id] = session

    async def delete(self, chat_id: str) -> None:
        async with self._lock:
            self._sessions.pop(chat_id, None)

    async def cleanup_expired(self, ttl_seconds: int) -> int:
        cutoff = self._clock() - timedelta(seconds=ttl_seconds)
        async with self._lock:
            expired = [cid for cid, s in self._sessions.items() if s.updated_at < cutoff]
            for chat_id in expired:
                del self._sessions[chat_id]
        if expired:
            logger.info(f"Cleaned up {len(expired)} stale sessions (ttl={ttl_seconds}s)")
        return len(expired)


class SessionManager:
    def __init__(self, store: SessionStore, clock: Callable[[], datetime] = utcnow):
        self._store = store
        self._clock = clock

    async def get(self, chat_id: str) -> Optional[ConversationSession]:
        return await self._store.get(chat_id)

    async def begin(self, chat_id: str, step: SessionStep, **data: Any) -> ConversationSession:
        """Start a flow, replacing whatever flow the chat had open."""
        now = self._clock()
        session = ConversationSession(
            chat_id=chat_id,
            step=step,
            data=dict(data),
            created_at=now,
            updated_at=now,
        )
        await self._store.upsert(session)
        AppMetrics.session_started(step.value)
        logger.debug(f"Session started: chat={mask_chat_id(chat_id)}, step={step.value}")
        return session

    async def advance(
        self,
        session: ConversationSession,
        step: SessionStep,
        **data: Any,
    ) -> ConversationSession:
        session.step = step
        session.data.update(data)
        session.updated_at = self._clock()
        await self._store.upsert(session)
        return session

    async def clear(self, chat_id: str) -> None:
        await self._store.delete(chat_id)

    async def cleanup_expired(self, ttl_seconds: int) -> int:
        if ttl_seconds <= 0:
            return 0
        return await self._store.cleanup_expired(ttl_seconds)
