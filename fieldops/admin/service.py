# fieldops/admin/service.py
"""
Admin Application Service: the single orchestration point for all
back-office operations exposed over HTTP.

Responsibilities:
    1. Accept validated requests (Pydantic models)
    2. Call the core services (lifecycle, registration, routing, scheduler)
    3. Emit audit events for actions the core does not already audit
    4. Return DTOs: never password hashes or customer phone numbers

The transport layer (http_app.py admin routes) is a thin adapter:
    parse request → call service → map DispatchError → return JSON.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from fieldops.admin.models import (
    AdminView,
    ApproveRegistrationRequest,
    BroadcastRequest,
    CreateAdminRequest,
    CreateJobRequest,
    JobView,
    RegistrationView,
)
from fieldops.core import reports, texts
from fieldops.core.domain import AdminUser, utcnow
from fieldops.core.errors import NotFoundError, StateConflictError
from fieldops.core.lifecycle import JobLifecycleService
from fieldops.core.phone import normalize_phone
from fieldops.core.ports import AdminRoster, JobStore, TechnicianRegistry
from fieldops.core.registration import RegistrationWorkflow
from fieldops.core.routing import DispatchController
from fieldops.core.scheduler import ReminderScheduler
from fieldops.infra.audit_log import audit_event
from fieldops.infra.logging_config import get_logger
from fieldops.infra.passwords import hash_password

logger = get_logger(__name__)

HTTP_ACTOR = "http-admin"


class AdminApplicationService:
    """
    Orchestrates all admin-facing operations.

    Thread-safety: stateless apart from its collaborators.
    """

    def __init__(
        self,
        lifecycle: JobLifecycleService,
        registration: RegistrationWorkflow,
        dispatcher: DispatchController,
        scheduler: ReminderScheduler,
        jobs: JobStore,
        technicians: TechnicianRegistry,
        admins: AdminRoster,
        *,
        tz: str = "Asia/Jakarta",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._lifecycle = lifecycle
        self._registration = registration
        self._dispatcher = dispatcher
        self._scheduler = scheduler
        self._jobs = jobs
        self._technicians = technicians
        self._admins = admins
        self._tz = ZoneInfo(tz)
        self._clock = clock

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, req: CreateJobRequest) -> dict[str, Any]:
        job, result = await self._lifecycle.create_job(
            req.kind,
            req.address,
            customer_name=req.customer_name,
            customer_phone=req.customer_phone,
            sub_category=req.sub_category,
            description=req.description,
            actor=HTTP_ACTOR,
        )
        return {"job": JobView.from_job(job), "dispatch": result.as_dict()}

    async def get_job(self, job_id: str) -> JobView:
        job = await self._lifecycle.get_job(job_id)
        return JobView.from_job(job, await self._jobs.list_assignments(job.id))

    async def approve_job(self, job_id: str) -> dict[str, Any]:
        job, result = await self._lifecycle.approve_job(job_id, actor=HTTP_ACTOR)
        return {"job": JobView.from_job(job), "dispatch": result.as_dict()}

    async def reject_job(self, job_id: str, reason: str) -> JobView:
        job = await self._lifecycle.reject_job(job_id, reason, actor=HTTP_ACTOR)
        return JobView.from_job(job)

    async def cancel_job(self, job_id: str, reason: str) -> dict[str, Any]:
        job, result = await self._lifecycle.cancel_job(job_id, reason, actor=HTTP_ACTOR)
        return {
            "job": JobView.from_job(job, await self._jobs.list_assignments(job.id)),
            "notified": result.as_dict(),
        }

    # ------------------------------------------------------------------
    # Registrations
    # ------------------------------------------------------------------

    async def list_pending_registrations(self) -> list[RegistrationView]:
        return [RegistrationView.from_registration(r) for r in await self._registration.list_pending()]

    async def approve_registration(
        self,
        registration_id: str,
        req: Optional[ApproveRegistrationRequest] = None,
    ) -> dict[str, Any]:
        req = req or ApproveRegistrationRequest()
        registration, technician = await self._registration.approve(
            registration_id, req.name, req.phone, actor=HTTP_ACTOR,
        )
        return {
            "registration": RegistrationView.from_registration(registration),
            "technician_id": technician.id,
        }

    async def reject_registration(self, registration_id: str, reason: str) -> RegistrationView:
        registration = await self._registration.reject(registration_id, reason, actor=HTTP_ACTOR)
        return RegistrationView.from_registration(registration)

    # ------------------------------------------------------------------
    # Technicians
    # ------------------------------------------------------------------

    async def technician_stats(self, technician_id: str, days: int = 30) -> dict[str, Any]:
        technician = await self._technicians.get(technician_id)
        if technician is None:
            raise NotFoundError(f"Technician {technician_id} not found.")
        status = await reports.technician_status(
            self._jobs, technician_id, tz=self._tz, clock=self._clock,
        )
        performance = await reports.technician_performance(
            self._jobs, technician_id, days, clock=self._clock,
        )
        return {
            "technician_id": technician.id,
            "name": technician.name,
            "is_active": technician.is_active,
            "status": status,
            "performance": performance,
        }

    # ------------------------------------------------------------------
    # Admin accounts
    # ------------------------------------------------------------------

    async def create_admin(self, req: CreateAdminRequest) -> AdminView:
        if await self._admins.find_by_username(req.username):
            raise StateConflictError(f"Admin '{req.username}' already exists.")

        admin = await self._admins.upsert(AdminUser(
            id=str(uuid.uuid4()),
            username=req.username,
            name=req.name.strip() or req.username,
            role=req.role,
            phone=normalize_phone(req.phone) if req.phone else None,
            password_hash=hash_password(req.password),
        ))
        audit_event("admin.create", actor=HTTP_ACTOR, detail=f"username={admin.username} role={admin.role.value}")
        logger.info(f"Admin account created: {admin.username}")
        return AdminView.from_admin(admin)

    # ------------------------------------------------------------------
    # Messaging / scheduler
    # ------------------------------------------------------------------

    async def broadcast(self, req: BroadcastRequest) -> dict[str, Any]:
        recipients = await self._dispatcher.technician_recipients()
        result = await self._dispatcher.broadcast(
            texts.broadcast_message(req.text, req.sender),
            [r.chat_id for r in recipients],
        )
        audit_event(
            "broadcast.send",
            actor=HTTP_ACTOR,
            detail=f"ok={result.succeeded} failed={result.failed}",
        )
        return result.as_dict()

    async def run_reminders(self) -> dict[str, int]:
        result = await self._scheduler.run_reminder_sweep()
        return {"candidates": result.candidates, "sent": result.sent, "failed": result.failed}

    async def run_daily_summary(self) -> dict[str, int]:
        result = await self._scheduler.run_daily_summary()
        return {"candidates": result.candidates, "sent": result.sent, "failed": result.failed}
