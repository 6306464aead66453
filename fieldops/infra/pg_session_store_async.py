# fieldops/infra/pg_session_store_async.py
"""
Async PostgreSQL session store.

Drop-in replacement for ``InMemorySessionStore`` when conversation state
must survive a restart.
"""
from __future__ import annotations

import json
from typing import Optional

from fieldops.core.domain import ConversationSession, SessionStep
from fieldops.infra.db_async import safe_db_conn
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)


class AsyncPostgresSessionStore:
    async def get(self, chat_id: str) -> Optional[ConversationSession]:
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    "SELECT step, data::text AS data, created_at, updated_at FROM chat_sessions WHERE chat_id = $1",
                    chat_id,
                )
        except Exception:
            logger.error(f"Failed to get session: chat={mask_chat_id(chat_id)}", exc_info=True)
            AppMetrics.database_error("session_get")
            raise
        if not row:
            return None
        return ConversationSession(
            chat_id=chat_id,
            step=SessionStep(row["step"]),
            data=json.loads(row["data"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def upsert(self, session: ConversationSession) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    """
                    INSERT INTO chat_sessions (chat_id, step, data, created_at, updated_at)
                    VALUES ($1, $2, $3::jsonb, $4, $5)
                    ON CONFLICT (chat_id)
                    DO UPDATE SET
                      step = EXCLUDED.step,
                      data = EXCLUDED.data,
                      created_at = EXCLUDED.created_at,
                      updated_at = EXCLUDED.updated_at
                    """,
                    session.chat_id, session.step.value, json.dumps(session.data),
                    session.created_at, session.updated_at,
                )
        except Exception:
            logger.error(f"Failed to upsert session: chat={mask_chat_id(session.chat_id)}", exc_info=True)
            AppMetrics.database_error("session_upsert")
            raise

    async def delete(self, chat_id: str) -> None:
        try:
            async with safe_db_conn() as conn:
                await conn.execute("DELETE FROM chat_sessions WHERE chat_id = $1", chat_id)
        except Exception:
            logger.error(f"Failed to delete session: chat={mask_chat_id(chat_id)}", exc_info=True)
            AppMetrics.database_error("session_delete")
            raise

    async def cleanup_expired(self, ttl_seconds: int) -> int:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    "DELETE FROM chat_sessions WHERE updated_at < now() - make_interval(secs => $1)",
                    float(ttl_seconds),
                )
        except Exception:
            logger.error(f"Failed to cleanup expired sessions: ttl={ttl_seconds}", exc_info=True)
            AppMetrics.database_error("session_cleanup")
            raise
        # asyncpg execute returns "DELETE N"
        deleted = int(result.split()[-1]) if result else 0
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired sessions (ttl={ttl_seconds}s)")
        return deleted
