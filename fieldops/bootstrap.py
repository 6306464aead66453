# fieldops/bootstrap.py
"""
Composition root.

``build_service`` wires stores, gateway and core services from a
``Settings`` instance and returns them in one ``DispatchService``.  The
HTTP app keeps the result on ``app.state.service``; tests build their own
with in-memory stores and a recording gateway.  Nothing here is a
module-level singleton.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fieldops.admin.service import AdminApplicationService
from fieldops.config import Settings
from fieldops.core.assignment import AssignmentEngine
from fieldops.core.bot import DispatchBot
from fieldops.core.domain import utcnow
from fieldops.core.lifecycle import JobLifecycleService
from fieldops.core.ports import (
    AdminRoster,
    JobStore,
    MessagingGateway,
    RegistrationRepository,
    SessionStore,
    TechnicianRegistry,
)
from fieldops.core.registration import RegistrationWorkflow
from fieldops.core.routing import DispatchController
from fieldops.core.scheduler import ReminderScheduler
from fieldops.core.sessions import InMemorySessionStore, SessionManager
from fieldops.infra.logging_config import get_logger
from fieldops.infra.memory_store import (
    InMemoryAdminRoster,
    InMemoryJobStore,
    InMemoryRegistrationRepository,
    InMemoryTechnicianRegistry,
)
from fieldops.infra.rate_limiter import InMemoryRateLimiter
from fieldops.transport.telegram_gateway import LogOnlyGateway, TelegramGateway
from fieldops.transport.telegram_updates import TelegramUpdateProcessor

logger = get_logger(__name__)


@dataclass
class DispatchService:
    settings: Settings
    jobs: JobStore
    technicians: TechnicianRegistry
    admins: AdminRoster
    registrations: RegistrationRepository
    session_store: SessionStore
    gateway: MessagingGateway
    engine: AssignmentEngine
    dispatcher: DispatchController
    sessions: SessionManager
    registration: RegistrationWorkflow
    lifecycle: JobLifecycleService
    bot: DispatchBot
    scheduler: ReminderScheduler
    processor: TelegramUpdateProcessor
    admin: AdminApplicationService


def build_stores(settings: Settings, clock: Callable[[], datetime] = utcnow):
    """Return (jobs, technicians, admins, registrations, session_store) for the configured backends."""
    if settings.store_backend == "postgres":
        from fieldops.infra.pg_job_store_async import AsyncPostgresJobStore
        from fieldops.infra.pg_people_async import (
            AsyncPostgresAdminRoster,
            AsyncPostgresRegistrationRepository,
            AsyncPostgresTechnicianRegistry,
        )
        jobs = AsyncPostgresJobStore()
        technicians = AsyncPostgresTechnicianRegistry()
        admins = AsyncPostgresAdminRoster()
        registrations = AsyncPostgresRegistrationRepository()
    else:
        jobs = InMemoryJobStore()
        technicians = InMemoryTechnicianRegistry()
        admins = InMemoryAdminRoster()
        registrations = InMemoryRegistrationRepository()

    if settings.session_backend == "postgres":
        from fieldops.infra.pg_session_store_async import AsyncPostgresSessionStore
        session_store = AsyncPostgresSessionStore()
    else:
        session_store = InMemorySessionStore(clock=clock)

    return jobs, technicians, admins, registrations, session_store


def build_gateway(settings: Settings):
    if settings.telegram_enabled:
        return TelegramGateway(settings.telegram_bot_token)
    logger.warning("No Telegram bot token configured: outbound messages are only logged")
    return LogOnlyGateway()


def build_service(
    settings: Settings,
    *,
    gateway: Optional[MessagingGateway] = None,
    jobs: Optional[JobStore] = None,
    technicians: Optional[TechnicianRegistry] = None,
    admins: Optional[AdminRoster] = None,
    registrations: Optional[RegistrationRepository] = None,
    session_store: Optional[SessionStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchService:
    """
    Wire every component.

    Any store or the gateway can be passed in explicitly; the rest comes
    from ``settings.store_backend`` / ``settings.session_backend``.
    """
    default_jobs, default_techs, default_admins, default_regs, default_sessions = build_stores(settings, clock)
    jobs = jobs or default_jobs
    technicians = technicians or default_techs
    admins = admins or default_admins
    registrations = registrations or default_regs
    session_store = session_store or default_sessions
    gateway = gateway or build_gateway(settings)

    engine = AssignmentEngine(jobs, lock_timeout=settings.job_lock_timeout_seconds, clock=clock)
    dispatcher = DispatchController(
        technicians,
        admins,
        jobs,
        gateway,
        fanout_limit=settings.dispatch_fanout_limit,
        settings_issue_category=settings.settings_issue_category,
    )
    sessions = SessionManager(session_store, clock=clock)
    registration = RegistrationWorkflow(registrations, technicians, admins, gateway, dispatcher, clock=clock)
    lifecycle = JobLifecycleService(
        jobs,
        engine,
        dispatcher,
        approval_required=settings.job_approval_required,
        clock=clock,
    )
    bot = DispatchBot(
        engine,
        registration,
        dispatcher,
        sessions,
        jobs,
        technicians,
        admins,
        tz=settings.timezone,
        clock=clock,
    )
    chat_limiter = InMemoryRateLimiter(
        max_requests=settings.chat_rate_limit_per_minute,
        window_seconds=60,
        scope="chat",
    )
    scheduler = ReminderScheduler(
        jobs,
        technicians,
        gateway,
        sessions,
        interval=settings.reminder_interval_seconds,
        threshold_hours=settings.reminder_threshold_hours,
        summary_hour=settings.daily_summary_hour,
        tz=settings.timezone,
        session_ttl=settings.session_ttl_seconds,
        rate_limiters=[chat_limiter],
        clock=clock,
    )
    processor = TelegramUpdateProcessor(bot, gateway, rate_limiter=chat_limiter)
    admin = AdminApplicationService(
        lifecycle,
        registration,
        dispatcher,
        scheduler,
        jobs,
        technicians,
        admins,
        tz=settings.timezone,
        clock=clock,
    )

    logger.info(
        f"Dispatch service built: store={settings.store_backend}, sessions={settings.session_backend}, "
        f"approval_required={settings.job_approval_required}"
    )
    return DispatchService(
        settings=settings,
        jobs=jobs,
        technicians=technicians,
        admins=admins,
        registrations=registrations,
        session_store=session_store,
        gateway=gateway,
        engine=engine,
        dispatcher=dispatcher,
        sessions=sessions,
        registration=registration,
        lifecycle=lifecycle,
        bot=bot,
        scheduler=scheduler,
        processor=processor,
        admin=admin,
    )
