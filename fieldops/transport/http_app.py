# fieldops/transport/http_app.py
"""
HTTP application: Telegram webhook, health/metrics, and the admin API.

Security layers:
1. Public: /health and the Telegram webhook (secret-token validated)
2. Protected: /metrics and /admin/* (Bearer admin token)
3. No information leakage in production (sanitized errors, no docs)

The app is built by ``create_app``; the wired ``DispatchService`` lives on
``app.state.service`` and is created in the lifespan unless one is passed
in (tests do that).
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from fieldops.admin.models import (
    ApproveRegistrationRequest,
    BroadcastRequest,
    CreateAdminRequest,
    CreateJobRequest,
    ReasonRequest,
)
from fieldops.bootstrap import DispatchService, build_service
from fieldops.config import Settings, settings as default_settings, validate_or_warn
from fieldops.core.errors import DispatchError
from fieldops.infra.db_async import close_pool, init_pool
from fieldops.infra.http_client import close_all_sessions
from fieldops.infra.logging_config import get_logger, setup_logging
from fieldops.infra.metrics import get_metrics_collector
from fieldops.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from fieldops.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from fieldops.transport.security import (
    SecurityHeadersMiddleware,
    check_configured_tokens,
    require_admin_auth,
    sanitize_error_message,
)
from fieldops.transport.telegram_polling import TelegramPoller
from fieldops.transport.telegram_webhook import register_telegram_webhook, telegram_webhook_handler

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> DispatchService:
    """Get the wired service container from app state"""
    return request.app.state.service


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for protected endpoints"""
    limiter_dep = request.app.state.rate_limiter
    await limiter_dep(request)


def _parse(model, payload: dict):
    try:
        return model(**payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _http_error(exc: DispatchError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


def _uses_postgres(s: Settings) -> bool:
    return s.store_backend == "postgres" or s.session_backend == "postgres"


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""
    app_settings: Settings = fastapi_app.state.settings

    # STARTUP
    logger.info(f"Starting application: env={app_settings.app_env}, run_mode={app_settings.run_mode}")

    validate_or_warn(app_settings)
    check_configured_tokens(app_settings)

    pool_started = False
    if _uses_postgres(app_settings) and fastapi_app.state.service is None:
        await init_pool(
            app_settings.database_url,
            min_size=app_settings.pg_pool_min,
            max_size=app_settings.pg_pool_max,
        )
        pool_started = True
        logger.info("Database pool initialized")

    if fastapi_app.state.service is None:
        fastapi_app.state.service = build_service(app_settings)
    service: DispatchService = fastapi_app.state.service
    service.scheduler.track_rate_limiter(fastapi_app.state.rate_limiter.limiter)

    # Telegram poller: only in "all" or "poller" mode to prevent duplicate update consumption
    poller: Optional[TelegramPoller] = None
    if (
        app_settings.telegram_enabled
        and app_settings.telegram_mode == "polling"
        and app_settings.run_mode in ("all", "poller")
    ):
        poller = TelegramPoller(
            app_settings.telegram_bot_token,
            service.processor,
            poll_timeout=app_settings.telegram_poll_timeout,
            conflict_backoff_max=app_settings.telegram_conflict_backoff_max,
            on_connected=service.bot.on_gateway_connected,
            on_disconnected=service.bot.on_gateway_disconnected,
        )
        await poller.start()
    elif app_settings.telegram_enabled and app_settings.telegram_mode == "webhook":
        logger.info("Telegram webhook mode: updates arrive on /webhooks/telegram")
        if app_settings.telegram_webhook_url:
            await register_telegram_webhook(
                app_settings.telegram_bot_token,
                app_settings.telegram_webhook_url,
                app_settings.telegram_webhook_secret,
            )
        await service.bot.on_gateway_connected()
    else:
        logger.info(f"Telegram poller skipped (run_mode={app_settings.run_mode})")
    fastapi_app.state.telegram_poller = poller

    # Reminder scheduler: only in "all" or "worker" mode
    scheduler_started = False
    if app_settings.scheduler_enabled and app_settings.run_mode in ("all", "worker"):
        await service.scheduler.start()
        scheduler_started = True
    else:
        logger.info("Reminder scheduler skipped")

    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if scheduler_started:
        await service.scheduler.stop()

    if poller is not None:
        await poller.stop()
    else:
        await service.processor.drain()

    await close_all_sessions()

    if pool_started:
        await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(
    service: Optional[DispatchService] = None,
    *,
    app_settings: Optional[Settings] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    ``service`` is normally built in the lifespan from ``app_settings``;
    passing one skips that (and skips the database pool).
    """
    app_settings = app_settings or (service.settings if service else default_settings)

    if configure_logging:
        setup_logging(level=app_settings.log_level, use_json=app_settings.is_production)

    app = FastAPI(
        title="fieldops dispatch",
        description="Job dispatch and technician coordination over Telegram",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if app_settings.is_production else "/docs",
        redoc_url=None if app_settings.is_production else "/redoc",
        openapi_url=None if app_settings.is_production else "/openapi.json",
    )
    app.state.settings = app_settings
    app.state.service = service
    app.state.rate_limiter = RateLimitDependency(
        InMemoryRateLimiter(max_requests=app_settings.rate_limit_per_minute, window_seconds=60)
    )

    # CORS - Restrictive in production
    if app_settings.is_production or app_settings.is_staging:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.allowed_origins if app_settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST"],
            allow_headers=["Content-Type", "Authorization"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(SecurityHeadersMiddleware, hsts=app_settings.is_production or app_settings.is_staging)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=app_settings.enable_request_logging)
    app.add_middleware(RequestIDMiddleware)

    _register_exception_handlers(app, app_settings)
    _register_public_routes(app)
    _register_admin_routes(app)
    return app


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _register_exception_handlers(app: FastAPI, app_settings: Settings) -> None:

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with appropriate logging"""
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": sanitize_error_message(exc, app_settings.is_production)},
        )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

def _register_public_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health(request: Request):
        """
        Basic health check - PUBLIC endpoint.
        Returns minimal information.
        """
        service: Optional[DispatchService] = request.app.state.service
        return {
            "status": "healthy",
            "gateway_connected": bool(service and service.bot.gateway_connected),
        }

    @app.post("/webhooks/telegram")
    async def webhook_telegram(request: Request, service: DispatchService = Depends(get_service)):
        """Telegram Bot API webhook (secret-token validated)."""
        return await telegram_webhook_handler(
            request,
            service.processor,
            secret=request.app.state.settings.telegram_webhook_secret,
        )

    @app.get("/metrics", dependencies=[Depends(require_admin_auth)])
    def metrics():
        """Operational counters and histograms - ADMIN only."""
        return get_metrics_collector().get_metrics()


# ============================================================================
# ADMIN ENDPOINTS
#
# Thin transport layer: all orchestration lives in AdminApplicationService.
# Routes: parse request → call service → map DispatchError → return JSON.
# ============================================================================

def _register_admin_routes(app: FastAPI) -> None:
    admin_deps = [Depends(rate_limit_check), Depends(require_admin_auth)]

    # ---- Jobs ----

    @app.post("/admin/jobs", dependencies=admin_deps, status_code=201)
    async def admin_create_job(payload: dict, service: DispatchService = Depends(get_service)):
        """Create a job; it is dispatched immediately unless approval is required."""
        req = _parse(CreateJobRequest, payload)
        try:
            result = await service.admin.create_job(req)
        except DispatchError as exc:
            raise _http_error(exc)
        return {"job": result["job"].model_dump(mode="json"), "dispatch": result["dispatch"]}

    @app.get("/admin/jobs/{job_id}", dependencies=admin_deps)
    async def admin_get_job(job_id: str, service: DispatchService = Depends(get_service)):
        try:
            job = await service.admin.get_job(job_id)
        except DispatchError as exc:
            raise _http_error(exc)
        return job.model_dump(mode="json")

    @app.post("/admin/jobs/{job_id}/approve", dependencies=admin_deps)
    async def admin_approve_job(job_id: str, service: DispatchService = Depends(get_service)):
        try:
            result = await service.admin.approve_job(job_id)
        except DispatchError as exc:
            raise _http_error(exc)
        return {"job": result["job"].model_dump(mode="json"), "dispatch": result["dispatch"]}

    @app.post("/admin/jobs/{job_id}/reject", dependencies=admin_deps)
    async def admin_reject_job(job_id: str, payload: dict, service: DispatchService = Depends(get_service)):
        req = _parse(ReasonRequest, payload)
        try:
            job = await service.admin.reject_job(job_id, req.reason)
        except DispatchError as exc:
            raise _http_error(exc)
        return job.model_dump(mode="json")

    @app.post("/admin/jobs/{job_id}/cancel", dependencies=admin_deps)
    async def admin_cancel_job(job_id: str, payload: dict, service: DispatchService = Depends(get_service)):
        req = _parse(ReasonRequest, payload)
        try:
            result = await service.admin.cancel_job(job_id, req.reason)
        except DispatchError as exc:
            raise _http_error(exc)
        return {"job": result["job"].model_dump(mode="json"), "notified": result["notified"]}

    # ---- Registrations ----

    @app.get("/admin/registrations", dependencies=admin_deps)
    async def admin_list_registrations(service: DispatchService = Depends(get_service)):
        """Pending technician registrations, oldest first."""
        pending = await service.admin.list_pending_registrations()
        return {"registrations": [r.model_dump(mode="json") for r in pending]}

    @app.post("/admin/registrations/{registration_id}/approve", dependencies=admin_deps)
    async def admin_approve_registration(
        registration_id: str,
        payload: Optional[dict] = Body(default=None),
        service: DispatchService = Depends(get_service),
    ):
        """Approve with optional name/phone overrides; the body may be omitted."""
        req = _parse(ApproveRegistrationRequest, payload or {})
        try:
            result = await service.admin.approve_registration(registration_id, req)
        except DispatchError as exc:
            raise _http_error(exc)
        return {
            "registration": result["registration"].model_dump(mode="json"),
            "technician_id": result["technician_id"],
        }

    @app.post("/admin/registrations/{registration_id}/reject", dependencies=admin_deps)
    async def admin_reject_registration(
        registration_id: str,
        payload: dict,
        service: DispatchService = Depends(get_service),
    ):
        req = _parse(ReasonRequest, payload)
        try:
            registration = await service.admin.reject_registration(registration_id, req.reason)
        except DispatchError as exc:
            raise _http_error(exc)
        return registration.model_dump(mode="json")

    # ---- Technicians / admins ----

    @app.get("/admin/technicians/{technician_id}/stats", dependencies=admin_deps)
    async def admin_technician_stats(
        technician_id: str,
        days: int = 30,
        service: DispatchService = Depends(get_service),
    ):
        if days < 1 or days > 366:
            raise HTTPException(status_code=400, detail="days must be between 1 and 366")
        try:
            return await service.admin.technician_stats(technician_id, days)
        except DispatchError as exc:
            raise _http_error(exc)

    @app.post("/admin/admins", dependencies=admin_deps, status_code=201)
    async def admin_create_admin(payload: dict, service: DispatchService = Depends(get_service)):
        req = _parse(CreateAdminRequest, payload)
        try:
            admin = await service.admin.create_admin(req)
        except DispatchError as exc:
            raise _http_error(exc)
        return admin.model_dump(mode="json")

    # ---- Messaging / scheduler ----

    @app.post("/admin/broadcast", dependencies=admin_deps)
    async def admin_broadcast(payload: dict, service: DispatchService = Depends(get_service)):
        """Announcement to every active technician."""
        req = _parse(BroadcastRequest, payload)
        return await service.admin.broadcast(req)

    @app.post("/admin/scheduler/reminders", dependencies=admin_deps)
    async def admin_run_reminders(service: DispatchService = Depends(get_service)):
        """Run one reminder sweep now."""
        return await service.admin.run_reminders()

    @app.post("/admin/scheduler/summary", dependencies=admin_deps)
    async def admin_run_summary(service: DispatchService = Depends(get_service)):
        """Send the daily summary now."""
        return await service.admin.run_daily_summary()

    @app.post("/admin/metrics/reset", dependencies=admin_deps)
    def admin_reset_metrics():
        logger.warning("Metrics reset triggered")
        get_metrics_collector().reset()
        return {"ok": True, "message": "Metrics reset"}

    # ---- Catch-all ----

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
    async def catch_all(path: str):
        """Generic 404 without revealing information."""
        logger.warning(f"404 - Unknown route accessed: {path}")
        raise HTTPException(status_code=404, detail="Not found")


def app_factory() -> FastAPI:
    """uvicorn entry point: settings come from the environment."""
    return create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fieldops.transport.http_app:app_factory",
        factory=True,
        host="0.0.0.0",
        port=8099,
        log_level=default_settings.log_level.lower(),
        access_log=not default_settings.is_production,
        server_header=False,
        date_header=False,
    )
