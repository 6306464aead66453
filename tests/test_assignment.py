# tests/test_assignment.py
"""Tests for fieldops/core/assignment.py: claims, transitions and the completion gate."""
from __future__ import annotations

import asyncio

import pytest

from fieldops.core.assignment import MISSING_EVIDENCE, MISSING_SECOND_TECHNICIAN, AssignmentEngine
from fieldops.core.domain import ApprovalStatus, Job, JobKind, JobStatus
from fieldops.core.errors import (
    CapacityExceededError,
    CompletionGateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from fieldops.infra.memory_store import InMemoryJobStore
from fieldops.infra.metrics import get_metrics_collector


# ============================================================================
# Claims
# ============================================================================

class TestClaimJob:
    """claim_job() capacity and duplicate rules."""

    @pytest.mark.asyncio
    async def test_first_claim_moves_job_to_assigned(self, service, make_job):
        job = await make_job()
        assert job.status == JobStatus.OPEN

        await service.engine.claim_job(job.id, "t1")

        stored = await service.jobs.get_job(job.id)
        assert stored.status == JobStatus.ASSIGNED
        assert await service.jobs.count_active_assignments(job.id) == 1

    @pytest.mark.asyncio
    async def test_second_claim_keeps_assigned(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")

        stored = await service.jobs.get_job(job.id)
        assert stored.status == JobStatus.ASSIGNED
        assert await service.jobs.count_active_assignments(job.id) == 2

    @pytest.mark.asyncio
    async def test_third_claim_rejected(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")

        with pytest.raises(CapacityExceededError):
            await service.engine.claim_job(job.id, "t3")
        assert await service.jobs.count_active_assignments(job.id) == 2

    @pytest.mark.asyncio
    async def test_duplicate_claim_rejected(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")

        with pytest.raises(StateConflictError):
            await service.engine.claim_job(job.id, "t1")
        assert await service.jobs.count_active_assignments(job.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_exactly_two_winners(self, service, make_job):
        job = await make_job()

        results = await asyncio.gather(
            *(service.engine.claim_job(job.id, f"t{i}") for i in range(6)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 2
        assert len(losers) == 4
        assert all(isinstance(e, CapacityExceededError) for e in losers)
        assert await service.jobs.count_active_assignments(job.id) == 2

    @pytest.mark.asyncio
    async def test_unapproved_job_cannot_be_claimed(self, service, make_job):
        job = await make_job()
        await service.jobs.update_job_status(
            job.id, JobStatus.OPEN, JobStatus.OPEN, approval_status=ApprovalStatus.PENDING,
        )

        with pytest.raises(StateConflictError):
            await service.engine.claim_job(job.id, "t1")

    @pytest.mark.asyncio
    async def test_cancelled_job_cannot_be_claimed(self, service, make_job):
        job = await make_job()
        await service.engine.cancel_job(job.id, "customer moved")

        with pytest.raises(StateConflictError):
            await service.engine.claim_job(job.id, "t1")

    @pytest.mark.asyncio
    async def test_unknown_job(self, service):
        with pytest.raises(NotFoundError):
            await service.engine.claim_job("missing", "t1")

    @pytest.mark.asyncio
    async def test_claim_metrics(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        with pytest.raises(StateConflictError):
            await service.engine.claim_job(job.id, "t1")

        collector = get_metrics_collector()
        assert collector.get_counter("claims_total", result="won") == 1
        assert collector.get_counter("claims_total", result="duplicate") == 1


class RoundTripJobStore(InMemoryJobStore):
    """Yields on every job read, the way a database round trip does."""

    def __init__(self):
        super().__init__()
        self.before_insert = None

    async def get_job(self, job_id):
        await asyncio.sleep(0)
        return await super().get_job(job_id)

    async def create_assignment(self, assignment, *, max_active):
        if self.before_insert is not None:
            await self.before_insert()
        return await super().create_assignment(assignment, max_active=max_active)


class TestSharedStoreClaims:
    """Engines in separate processes share only the store, not their locks."""

    async def _open_job(self, store):
        return await store.save_job(Job(id="job-1", number="JOB-1", kind=JobKind.REPAIR, address="Jl. Dago 5"))

    @pytest.mark.asyncio
    async def test_simultaneous_first_claims_both_win(self):
        store = RoundTripJobStore()
        job = await self._open_job(store)
        first, second = AssignmentEngine(store), AssignmentEngine(store)

        results = await asyncio.gather(
            first.claim_job(job.id, "tA"),
            second.claim_job(job.id, "tB"),
            return_exceptions=True,
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert {a.technician_id for a in await store.list_assignments(job.id)} == {"tA", "tB"}
        assert (await store.get_job(job.id)).status == JobStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_reported_failure_never_leaves_a_slot_taken(self):
        store = RoundTripJobStore()
        job = await self._open_job(store)
        engines = [AssignmentEngine(store) for _ in range(3)]

        results = await asyncio.gather(
            *(engine.claim_job(job.id, f"t{i}") for i, engine in enumerate(engines)),
            return_exceptions=True,
        )

        winners = {r.technician_id for r in results if not isinstance(r, Exception)}
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 2
        assert len(losers) == 1
        assert isinstance(losers[0], CapacityExceededError)
        assert {a.technician_id for a in await store.list_assignments(job.id)} == winners

    @pytest.mark.asyncio
    async def test_cancel_between_read_and_insert(self):
        store = RoundTripJobStore()
        job = await self._open_job(store)
        other = AssignmentEngine(store)

        async def cancelled_elsewhere():
            store.before_insert = None
            await other.cancel_job(job.id, "customer moved")

        store.before_insert = cancelled_elsewhere

        with pytest.raises(StateConflictError, match="cannot be taken"):
            await AssignmentEngine(store).claim_job(job.id, "tA")

        assert await store.list_assignments(job.id) == []
        assert (await store.get_job(job.id)).status == JobStatus.CANCELLED


class TestJobLock:
    """Bounded wait on the per-job lock."""

    @pytest.mark.asyncio
    async def test_lock_timeout_raises_state_conflict(self):
        engine = AssignmentEngine(InMemoryJobStore(), lock_timeout=0.05)

        async with engine._job_lock("job-1"):
            with pytest.raises(StateConflictError):
                async with engine._job_lock("job-1"):
                    pass

        assert get_metrics_collector().get_counter("job_lock_timeouts_total") == 1

    @pytest.mark.asyncio
    async def test_other_jobs_not_blocked(self):
        engine = AssignmentEngine(InMemoryJobStore(), lock_timeout=0.05)

        async with engine._job_lock("job-1"):
            async with engine._job_lock("job-2"):
                pass


# ============================================================================
# Start / complete
# ============================================================================

class TestStartJob:

    @pytest.mark.asyncio
    async def test_assigned_to_in_progress(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")

        started = await service.engine.start_job(job.id, "t1")

        assert started.status == JobStatus.IN_PROGRESS
        assignments = await service.jobs.list_assignments(job.id)
        assert assignments[0].started_at is not None

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")
        await service.engine.start_job(job.id, "t1")

        again = await service.engine.start_job(job.id, "t2")

        assert again.status == JobStatus.IN_PROGRESS
        assignments = {a.technician_id: a for a in await service.jobs.list_assignments(job.id)}
        assert assignments["t2"].started_at is not None

    @pytest.mark.asyncio
    async def test_start_by_outsider_rejected(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")

        with pytest.raises(StateConflictError):
            await service.engine.start_job(job.id, "t9")

    @pytest.mark.asyncio
    async def test_start_open_job_rejected(self, service, make_job):
        job = await make_job()
        with pytest.raises(StateConflictError):
            await service.engine.start_job(job.id, "t1")


class TestCompletionGate:
    """complete_job() needs exactly two technicians and photo evidence."""

    @pytest.mark.asyncio
    async def test_single_technician_blocked(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")

        with pytest.raises(CompletionGateError) as exc_info:
            await service.engine.complete_job(job.id, "t1", "photo-1")

        assert exc_info.value.missing == [MISSING_SECOND_TECHNICIAN]
        stored = await service.jobs.get_job(job.id)
        assert stored.status == JobStatus.ASSIGNED

    @pytest.mark.asyncio
    async def test_missing_evidence_blocked(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")

        with pytest.raises(CompletionGateError) as exc_info:
            await service.engine.complete_job(job.id, "t1", None)

        assert exc_info.value.missing == [MISSING_EVIDENCE]

    @pytest.mark.asyncio
    async def test_both_missing_reported(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")

        with pytest.raises(CompletionGateError) as exc_info:
            await service.engine.complete_job(job.id, "t1", "")

        assert exc_info.value.missing == [MISSING_SECOND_TECHNICIAN, MISSING_EVIDENCE]

    @pytest.mark.asyncio
    async def test_complete_closes_job_and_assignments(self, service, make_job, clock):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")
        await service.engine.start_job(job.id, "t1")

        done = await service.engine.complete_job(job.id, "t2", "photo-1")

        assert done.status == JobStatus.COMPLETED
        assert done.completion_evidence == "photo-1"
        assert done.completed_at == clock.now
        assignments = await service.jobs.list_assignments(job.id)
        assert all(a.completed_at == clock.now for a in assignments)
        assert await service.jobs.count_active_assignments(job.id) == 0

    @pytest.mark.asyncio
    async def test_complete_from_assigned_allowed(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")

        done = await service.engine.complete_job(job.id, "t1", "photo-1")
        assert done.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_complete_twice_returns_job(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")
        await service.engine.complete_job(job.id, "t1", "photo-1")

        again = await service.engine.complete_job(job.id, "t2", "photo-2")

        assert again.status == JobStatus.COMPLETED
        assert again.completion_evidence == "photo-1"

    @pytest.mark.asyncio
    async def test_completed_job_cannot_be_claimed(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        await service.engine.claim_job(job.id, "t2")
        await service.engine.complete_job(job.id, "t1", "photo-1")

        with pytest.raises(StateConflictError):
            await service.engine.claim_job(job.id, "t3")

    @pytest.mark.asyncio
    async def test_check_completion_ready(self, service, make_job):
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        with pytest.raises(CompletionGateError):
            await service.engine.check_completion_ready(job.id, "t1")

        await service.engine.claim_job(job.id, "t2")
        ready = await service.engine.check_completion_ready(job.id, "t1")
        assert ready.id == job.id


# ============================================================================
# Admin transitions
# ============================================================================

class TestAdminTransitions:

    @pytest.mark.asyncio
    async def test_cancel_requires_reason(self, service, make_job):
        job = await make_job()
        with pytest.raises(ValidationError):
            await service.engine.cancel_job(job.id, "   ")

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, service, make_job):
        job = await make_job()
        await service.engine.cancel_job(job.id, "duplicate order")

        with pytest.raises(StateConflictError):
            await service.engine.cancel_job(job.id, "again")

    @pytest.mark.asyncio
    async def test_approve_requires_pending(self, service, make_job):
        job = await make_job(kind=JobKind.REPAIR)
        with pytest.raises(StateConflictError):
            await service.engine.approve_job(job.id)

    @pytest.mark.asyncio
    async def test_reject_cancels_with_reason(self, service, make_job):
        job = await make_job()
        await service.jobs.update_job_status(
            job.id, JobStatus.OPEN, JobStatus.OPEN, approval_status=ApprovalStatus.PENDING,
        )

        rejected = await service.engine.reject_job(job.id, "address outside coverage")

        assert rejected.approval_status == ApprovalStatus.REJECTED
        assert rejected.status == JobStatus.CANCELLED
        assert rejected.rejection_reason == "address outside coverage"
        assert rejected.cancel_reason == "address outside coverage"
