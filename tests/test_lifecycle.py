# tests/test_lifecycle.py
"""Tests for fieldops/core/lifecycle.py: creation, approval gating, admin decisions."""
from __future__ import annotations

import re
from unittest.mock import AsyncMock, patch

import pytest

from fieldops.bootstrap import build_service
from fieldops.core.domain import ApprovalStatus, Audience, JobKind, JobStatus
from fieldops.core.errors import StateConflictError, ValidationError
from fieldops.core.lifecycle import new_job_number


class TestJobNumber:
    def test_format(self, clock):
        number = new_job_number(clock())
        assert re.fullmatch(r"JOB-20240131-[0-9A-F]{6}", number)

    def test_unique(self, clock):
        assert len({new_job_number(clock()) for _ in range(50)}) == 50


class TestCreateJob:
    """create_job() stores the job and dispatches when approved."""

    @pytest.mark.asyncio
    async def test_created_and_dispatched(self, service, gateway, make_technician):
        await make_technician("t1", "chat-1")

        job, result = await service.lifecycle.create_job(
            JobKind.INSTALLATION,
            "  Jl. Braga 10  ",
            customer_name="Siti",
            customer_phone="+62 812-3456-7890",
        )

        assert job.address == "Jl. Braga 10"
        assert job.customer_phone == "081234567890"
        assert job.approval_status == ApprovalStatus.APPROVED
        assert job.status == JobStatus.OPEN
        assert result.succeeded == 1
        assert gateway.recipients() == {"chat-1"}

    @pytest.mark.asyncio
    async def test_blank_address_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.lifecycle.create_job(JobKind.REPAIR, "   ")

    @pytest.mark.asyncio
    async def test_bad_customer_phone_rejected(self, service):
        with pytest.raises(ValidationError):
            await service.lifecycle.create_job(JobKind.REPAIR, "Jl. Braga 10", customer_phone="12345")

    @pytest.mark.asyncio
    async def test_dispatch_crash_does_not_fail_creation(self, service):
        with patch.object(
            service.dispatcher, "dispatch", new_callable=AsyncMock, side_effect=RuntimeError("db down"),
        ):
            job, result = await service.lifecycle.create_job(JobKind.REPAIR, "Jl. Braga 10")

        assert await service.jobs.get_job(job.id) is not None
        assert result.skipped_reason == "dispatch error: RuntimeError"
        assert result.audience == Audience.TECHNICIANS


class TestApprovalGate:
    """With approval required, jobs wait for an admin before dispatch."""

    @pytest.fixture
    def gated(self, test_settings, gateway, clock):
        return build_service(
            test_settings.model_copy(update={"job_approval_required": True}),
            gateway=gateway,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_pending_job_not_dispatched(self, gated, gateway):
        from fieldops.core.domain import Technician
        await gated.technicians.upsert(Technician(id="t1", name="Budi", phone="081200000001", chat_id="chat-1"))

        job, result = await gated.lifecycle.create_job(JobKind.INSTALLATION, "Jl. Braga 10")

        assert job.approval_status == ApprovalStatus.PENDING
        assert job.approved_at is None
        assert result.skipped_reason == "awaiting approval"
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_approve_dispatches(self, gated, gateway, clock):
        from fieldops.core.domain import Technician
        await gated.technicians.upsert(Technician(id="t1", name="Budi", phone="081200000001", chat_id="chat-1"))
        job, _ = await gated.lifecycle.create_job(JobKind.INSTALLATION, "Jl. Braga 10")

        approved, result = await gated.lifecycle.approve_job(job.id)

        assert approved.approval_status == ApprovalStatus.APPROVED
        assert approved.approved_at == clock.now
        assert approved.status == JobStatus.OPEN
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_approve_twice_rejected(self, gated):
        job, _ = await gated.lifecycle.create_job(JobKind.INSTALLATION, "Jl. Braga 10")
        await gated.lifecycle.approve_job(job.id)

        with pytest.raises(StateConflictError):
            await gated.lifecycle.approve_job(job.id)

    @pytest.mark.asyncio
    async def test_reject_is_terminal(self, gated, gateway):
        job, _ = await gated.lifecycle.create_job(JobKind.INSTALLATION, "Jl. Braga 10")

        rejected = await gated.lifecycle.reject_job(job.id, "outside coverage")

        assert rejected.status == JobStatus.CANCELLED
        assert rejected.approval_status == ApprovalStatus.REJECTED
        with pytest.raises(StateConflictError):
            await gated.lifecycle.approve_job(job.id)
        assert gateway.sent == []


class TestCancelJob:

    @pytest.mark.asyncio
    async def test_cancel_notifies_assigned_only(self, service, gateway, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await make_technician("t2", "chat-2")
        await make_technician("t3", "chat-3")
        job = await make_job()
        await service.engine.claim_job(job.id, "t1")
        gateway.sent.clear()

        cancelled, result = await service.lifecycle.cancel_job(job.id, "customer cancelled")

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.cancel_reason == "customer cancelled"
        assert result.succeeded == 1
        assert gateway.recipients() == {"chat-1"}
        assert "customer cancelled" in gateway.texts_for("chat-1")[0]
