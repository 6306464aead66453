# fieldops/core/assignment.py
"""
Assignment Engine: the only writer of job status.

Every state change of a job (claim, start, complete, approve, reject,
cancel) runs inside a per-job critical section:

- In-process: one ``asyncio.Lock`` per job id, acquired with a bounded
  wait.  A caller that cannot get the lock within ``lock_timeout``
  receives ``StateConflictError`` instead of queueing forever.
- In the store: ``create_assignment`` re-checks approval, status and
  capacity under the store's own lock and moves OPEN -> ASSIGNED in the
  same write; ``update_job_status`` is conditional.  A second process
  sharing the same database still cannot push a job past its capacity,
  claim a job it has just cancelled or skip a state.

Claim rules:
    1. job exists, is approved, status in {OPEN, ASSIGNED}
    2. fewer than MAX_TECHNICIANS_PER_JOB active assignments
    3. technician not already on the job
The first successful claim moves the job OPEN -> ASSIGNED.
"""
from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable

from fieldops.core.domain import (
    MAX_TECHNICIANS_PER_JOB,
    CLAIMABLE_STATUSES,
    WORKING_STATUSES,
    ApprovalStatus,
    Assignment,
    Job,
    JobStatus,
    utcnow,
)
from fieldops.core.errors import (
    CapacityExceededError,
    CompletionGateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from fieldops.core.ports import JobStore
from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)

MISSING_SECOND_TECHNICIAN = "second technician"
MISSING_EVIDENCE = "photo evidence"


class AssignmentEngine:
    def __init__(
        self,
        jobs: JobStore,
        *,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._lock_timeout = lock_timeout
        self._clock = clock
        # Entries disappear once no coroutine holds a reference to the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self._lock_timeout)
        except asyncio.TimeoutError:
            AppMetrics.lock_timeout()
            logger.warning(
                f"Job lock timeout after {self._lock_timeout}s",
                extra={"job_id": job_id},
            )
            raise StateConflictError("Job is busy, please try again in a moment.")

        try:
            yield
        finally:
            lock.release()

    async def _load(self, job_id: str) -> Job:
        job = await self._jobs.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found.")
        return job

    async def get_job(self, job_id: str) -> Job:
        return await self._load(job_id)

    async def _transition(self, job: Job, new_status: JobStatus, **fields) -> Job:
        ok = await self._jobs.update_job_status(job.id, job.status, new_status, **fields)
        if not ok:
            # Another process changed the row between our read and write
            raise StateConflictError(f"Job {job.number} changed concurrently, please retry.")
        AppMetrics.job_transition(new_status.value)
        logger.info(
            f"Job {job.number}: {job.status.value} -> {new_status.value}",
            extra={"job_id": job.id},
        )
        return await self._load(job.id)

    # ------------------------------------------------------------------
    # Technician operations
    # ------------------------------------------------------------------

    async def claim_job(self, job_id: str, technician_id: str) -> Assignment:
        """Take one of the two crew slots on a job."""
        async with self._job_lock(job_id):
            await self._refuse_claim(await self._load(job_id), technician_id)

            # The store re-checks status and capacity under its own lock and
            # moves OPEN -> ASSIGNED in the same write
            assignment = Assignment(
                job_id=job_id,
                technician_id=technician_id,
                accepted_at=self._clock(),
            )
            inserted = await self._jobs.create_assignment(
                assignment, max_active=MAX_TECHNICIANS_PER_JOB,
            )
            job = await self._load(job_id)
            if not inserted:
                # Another process got there first; report what it changed
                await self._refuse_claim(job, technician_id)
                AppMetrics.claim("capacity")
                raise CapacityExceededError(
                    f"Job {job.number} already has {MAX_TECHNICIANS_PER_JOB} technicians."
                )

            active = await self._jobs.count_active_assignments(job_id)
            if active == 1:
                AppMetrics.job_transition(JobStatus.ASSIGNED.value)
            AppMetrics.claim("won")
            logger.info(
                f"Job {job.number} claimed ({active}/{MAX_TECHNICIANS_PER_JOB})",
                extra={"job_id": job_id, "technician_id": technician_id},
            )
            return assignment

    async def start_job(self, job_id: str, technician_id: str) -> Job:
        """ASSIGNED -> IN_PROGRESS. Repeating it on an IN_PROGRESS job is a no-op."""
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            assignment = await self._own_assignment(job, technician_id)

            if job.status == JobStatus.IN_PROGRESS:
                if assignment.started_at is None:
                    await self._jobs.update_assignment(
                        job_id, technician_id, started_at=self._clock(),
                    )
                return job

            if job.status != JobStatus.ASSIGNED:
                raise StateConflictError(
                    f"Job {job.number} cannot be started (status {job.status.value})."
                )

            await self._jobs.update_assignment(job_id, technician_id, started_at=self._clock())
            return await self._transition(job, JobStatus.IN_PROGRESS)

    async def check_completion_ready(self, job_id: str, technician_id: str) -> Job:
        """Validate everything but the evidence, before asking the technician for a photo."""
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.status == JobStatus.COMPLETED:
                return job
            await self._own_assignment(job, technician_id)
            self._require_working(job)
            assignments = await self._jobs.list_assignments(job_id)
            if len(assignments) != MAX_TECHNICIANS_PER_JOB:
                raise CompletionGateError([MISSING_SECOND_TECHNICIAN])
            return job

    async def complete_job(self, job_id: str, technician_id: str, evidence_ref: str | None) -> Job:
        """
        Apply the completion gate and close the job.

        Already COMPLETED jobs are returned unchanged.
        """
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.status == JobStatus.COMPLETED:
                return job

            await self._own_assignment(job, technician_id)
            self._require_working(job)

            missing: list[str] = []
            assignments = await self._jobs.list_assignments(job_id)
            if len(assignments) != MAX_TECHNICIANS_PER_JOB:
                missing.append(MISSING_SECOND_TECHNICIAN)
            if not evidence_ref:
                missing.append(MISSING_EVIDENCE)
            if missing:
                raise CompletionGateError(missing)

            now = self._clock()
            completed = await self._transition(
                job,
                JobStatus.COMPLETED,
                completed_at=now,
                completion_evidence=evidence_ref,
            )
            await self._jobs.complete_assignments(job_id, now)
            return completed

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    async def approve_job(self, job_id: str) -> Job:
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.approval_status != ApprovalStatus.PENDING:
                raise StateConflictError(
                    f"Job {job.number} is not awaiting approval ({job.approval_status.value})."
                )
            if job.is_terminal:
                raise StateConflictError(f"Job {job.number} is already {job.status.value}.")
            return await self._transition(
                job,
                JobStatus.OPEN,
                approval_status=ApprovalStatus.APPROVED,
                approved_at=self._clock(),
            )

    async def reject_job(self, job_id: str, reason: str) -> Job:
        """PENDING -> REJECTED; the linked job is cancelled with the same reason."""
        reason = _require_reason(reason)
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.approval_status != ApprovalStatus.PENDING:
                raise StateConflictError(
                    f"Job {job.number} is not awaiting approval ({job.approval_status.value})."
                )
            now = self._clock()
            return await self._transition(
                job,
                JobStatus.CANCELLED,
                approval_status=ApprovalStatus.REJECTED,
                rejected_at=now,
                rejection_reason=reason,
                cancelled_at=now,
                cancel_reason=reason,
            )

    async def cancel_job(self, job_id: str, reason: str) -> Job:
        reason = _require_reason(reason)
        async with self._job_lock(job_id):
            job = await self._load(job_id)
            if job.is_terminal:
                raise StateConflictError(
                    f"Job {job.number} is already {job.status.value} and cannot be cancelled."
                )
            return await self._transition(
                job,
                JobStatus.CANCELLED,
                cancelled_at=self._clock(),
                cancel_reason=reason,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _refuse_claim(self, job: Job, technician_id: str) -> None:
        """Raise the reason ``technician_id`` cannot take ``job`` as it stands now."""
        if job.approval_status != ApprovalStatus.APPROVED:
            AppMetrics.claim("conflict")
            raise StateConflictError(f"Job {job.number} is not approved for dispatch.")
        if job.status not in CLAIMABLE_STATUSES:
            AppMetrics.claim("conflict")
            raise StateConflictError(
                f"Job {job.number} cannot be taken (status {job.status.value})."
            )

        assignments = await self._jobs.list_assignments(job.id)
        if any(a.technician_id == technician_id for a in assignments):
            AppMetrics.claim("duplicate")
            raise StateConflictError(f"You have already taken job {job.number}.")
        if sum(1 for a in assignments if a.is_active) >= MAX_TECHNICIANS_PER_JOB:
            AppMetrics.claim("capacity")
            raise CapacityExceededError(
                f"Job {job.number} already has {MAX_TECHNICIANS_PER_JOB} technicians."
            )

    async def _own_assignment(self, job: Job, technician_id: str) -> Assignment:
        for assignment in await self._jobs.list_assignments(job.id):
            if assignment.technician_id == technician_id:
                return assignment
        raise StateConflictError(f"You are not assigned to job {job.number}.")

    @staticmethod
    def _require_working(job: Job) -> None:
        if job.status not in WORKING_STATUSES:
            raise StateConflictError(
                f"Job {job.number} cannot be completed (status {job.status.value})."
            )


def _require_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required.")
    return reason
