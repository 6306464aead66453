# fieldops/transport/middleware.py
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from fieldops.infra.logging_config import LogContext, get_logger
from fieldops.infra.metrics import observe_histogram

logger = get_logger(__name__)

# Paths whose requests are not logged per-call (health checks hit them constantly)
QUIET_PATHS = frozenset({"/health"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all incoming requests and responses"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in QUIET_PATHS:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()

        log_ctx = LogContext(logger, request_id=request_id)
        log_ctx.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "client_ip": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
            duration_ms = (time.time() - start_time) * 1000

            log_ctx.info(
                f"Request completed: {request.method} {request.url.path} "
                f"status={response.status_code} duration={duration_ms:.2f}ms",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": duration_ms,
                }
            )
            observe_histogram("http_request_duration_ms", duration_ms, method=request.method)

            return response

        except Exception as exc:
            duration_ms = (time.time() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {request.url.path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "error_type": exc.__class__.__name__,
                    "duration_ms": duration_ms,
                },
                exc_info=True
            )
            raise


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch and format unhandled exceptions"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True
            )

            # Telegram retries non-2xx deliveries; acknowledge instead
            if request.url.path == "/webhooks/telegram":
                return JSONResponse(content={"ok": False}, status_code=200)

            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "request_id": request_id,
                }
            )
