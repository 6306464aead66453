# fieldops/core/lifecycle.py
"""
Job lifecycle service: creation, approval gating, admin decisions.

Job creation and approval are never failed by messaging: the dispatch
outcome travels back as a ``DispatchResult`` and any fan-out fault is
logged and reported in it.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Optional

from fieldops.core import texts
from fieldops.core.assignment import AssignmentEngine
from fieldops.core.domain import ApprovalStatus, DispatchResult, Job, JobKind, utcnow
from fieldops.core.errors import ValidationError
from fieldops.core.phone import normalize_phone
from fieldops.core.ports import JobStore
from fieldops.core.routing import DispatchController
from fieldops.infra.audit_log import audit_event
from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)


def new_job_number(now: datetime) -> str:
    """JOB-20240131-3FA2C1"""
    return f"JOB-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class JobLifecycleService:
    def __init__(
        self,
        jobs: JobStore,
        engine: AssignmentEngine,
        dispatcher: DispatchController,
        *,
        approval_required: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._engine = engine
        self._dispatcher = dispatcher
        self._approval_required = approval_required
        self._clock = clock

    async def create_job(
        self,
        kind: JobKind,
        address: str,
        *,
        customer_name: str = "",
        customer_phone: Optional[str] = None,
        sub_category: Optional[str] = None,
        description: Optional[str] = None,
        actor: str = "system",
    ) -> tuple[Job, DispatchResult]:
        address = (address or "").strip()
        if not address:
            raise ValidationError("A job address is required.")
        if customer_phone:
            customer_phone = normalize_phone(customer_phone)

        now = self._clock()
        approval = ApprovalStatus.PENDING if self._approval_required else ApprovalStatus.APPROVED
        job = await self._jobs.save_job(Job(
            id=str(uuid.uuid4()),
            number=new_job_number(now),
            kind=kind,
            address=address,
            customer_name=(customer_name or "").strip(),
            customer_phone=customer_phone,
            sub_category=(sub_category or "").strip() or None,
            description=(description or "").strip() or None,
            approval_status=approval,
            created_at=now,
            approved_at=now if approval == ApprovalStatus.APPROVED else None,
        ))
        AppMetrics.job_transition("CREATED")
        audit_event("job.create", actor=actor, job_id=job.id, detail=f"{job.kind.value} {job.number}")
        logger.info(
            f"Job {job.number} created ({job.kind.value}, approval={job.approval_status.value})",
            extra={"job_id": job.id},
        )
        return job, await self.on_job_created(job)

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def on_job_created(self, job: Job) -> DispatchResult:
        if not job.is_approved:
            return DispatchResult(job_id=job.id, skipped_reason="awaiting approval")
        return await self._safe_dispatch(job)

    async def on_job_approved(self, job: Job) -> DispatchResult:
        return await self._safe_dispatch(job)

    async def _safe_dispatch(self, job: Job) -> DispatchResult:
        try:
            return await self._dispatcher.dispatch(job)
        except Exception as exc:
            # Recipient lookup or fan-out crashed; the job itself is stored
            logger.error(
                f"Dispatch of job {job.number} failed: {exc}",
                extra={"job_id": job.id},
                exc_info=True,
            )
            return DispatchResult(
                job_id=job.id,
                audience=self._dispatcher.audience_for(job),
                skipped_reason=f"dispatch error: {exc.__class__.__name__}",
            )

    # ------------------------------------------------------------------
    # Admin decisions
    # ------------------------------------------------------------------

    async def approve_job(self, job_id: str, *, actor: str = "system") -> tuple[Job, DispatchResult]:
        job = await self._engine.approve_job(job_id)
        audit_event("job.approve", actor=actor, job_id=job.id)
        return job, await self.on_job_approved(job)

    async def reject_job(self, job_id: str, reason: str, *, actor: str = "system") -> Job:
        job = await self._engine.reject_job(job_id, reason)
        audit_event("job.reject", actor=actor, job_id=job.id, detail=job.rejection_reason or "")
        return job

    async def cancel_job(self, job_id: str, reason: str, *, actor: str = "system") -> tuple[Job, DispatchResult]:
        job = await self._engine.cancel_job(job_id, reason)
        audit_event("job.cancel", actor=actor, job_id=job.id, detail=job.cancel_reason or "")
        result = await self._dispatcher.notify_assigned(job, texts.job_status_changed(job))
        AppMetrics.notification("job_cancelled", "sent" if not result.failed else "partial")
        return job, result

    async def get_job(self, job_id: str) -> Job:
        return await self._engine.get_job(job_id)
