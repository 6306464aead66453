# fieldops/infra/db_async.py
"""
Async PostgreSQL access using asyncpg.

One connection pool per process, created in the app lifespan with
``init_pool`` and closed with ``close_pool``.  Repositories borrow
connections through ``safe_db_conn``, which retries transient failures
while acquiring the connection.  Statements that already ran are never
replayed.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from fieldops.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None

MAX_CONNECT_RETRIES = 3


async def init_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")
    _pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=min_size,
        max_size=max_size,
        command_timeout=60,
        server_settings={
            "application_name": "fieldops_dispatch",
        },
    )
    logger.info(f"Connection pool created: min={min_size}, max={max_size}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")
    return _pool


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get database connection from pool.

    Usage:
        async with db_conn(autocommit=False) as conn:
            row = await conn.fetchrow("SELECT ... FOR UPDATE", job_id)

    Args:
        autocommit: If False, the block runs in one transaction that is
                    committed on exit and rolled back on error.
    """
    pool = get_pool()
    conn = await pool.acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)


def is_transient_error(exc: BaseException) -> bool:
    """
    Connection-level failures worth retrying:
    connection errors, too many connections, deadlocks, network timeouts.
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    message = str(exc).lower()
    return any(pattern in message for pattern in (
        "connection reset",
        "server closed",
        "too many connections",
        "deadlock",
    ))


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    ``db_conn`` with retry on transient errors while acquiring.

    Usage:
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT * FROM jobs")
    """
    pool = get_pool()
    delay = 0.1
    conn: asyncpg.Connection | None = None

    for attempt in range(MAX_CONNECT_RETRIES + 1):
        try:
            conn = await pool.acquire()
            break
        except Exception as exc:
            if not is_transient_error(exc) or attempt >= MAX_CONNECT_RETRIES:
                logger.error(f"Could not acquire database connection: {exc}")
                raise
            logger.warning(
                f"Transient error getting connection (attempt {attempt + 1}/{MAX_CONNECT_RETRIES}): "
                f"{exc}. Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 5.0)

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
