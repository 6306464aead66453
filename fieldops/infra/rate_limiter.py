# fieldops/infra/rate_limiter.py
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock
from typing import Optional

from fastapi import HTTPException, Request, status

from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window rate limiter keyed by client IP or chat id.

    Per process: with N replicas the effective limit is N × max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, scope: str = "http"):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.scope = scope
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            self._requests[key] = [ts for ts in self._requests[key] if ts > cutoff]
            request_count = len(self._requests[key])

            if request_count >= self.max_requests:
                oldest = min(self._requests[key])
                retry_after = int(oldest + self.window_seconds - now) + 1

                # Keys can be chat ids; never log them in full
                masked = key[:4] + "***" if len(key) > 4 else "***"
                logger.warning(
                    "Rate limit exceeded for key=%s", masked,
                    extra={
                        "key_masked": masked,
                        "count": request_count,
                        "limit": self.max_requests,
                        "retry_after": retry_after,
                    },
                )
                AppMetrics.rate_limited(self.scope)
                return False, retry_after

            self._requests[key].append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Forget keys idle for ``max_age_seconds``. Returns number of keys removed."""
        cutoff = time.time() - max_age_seconds

        with self._lock:
            to_remove = [
                key for key, timestamps in self._requests.items()
                if not timestamps or max(timestamps) < cutoff
            ]
            for key in to_remove:
                del self._requests[key]

        if to_remove:
            logger.info(f"Rate limiter cleanup: removed {len(to_remove)} keys")
        return len(to_remove)


class RateLimitDependency:
    """FastAPI dependency for per-IP rate limiting of admin routes"""

    def __init__(self, limiter: InMemoryRateLimiter):
        self.limiter = limiter

    async def __call__(self, request: Request) -> None:
        client_ip = request.client.host if request.client else "unknown"
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        allowed, retry_after = self.limiter.is_allowed(client_ip)
        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded",
                headers={"Retry-After": str(retry_after)} if retry_after else None,
            )
