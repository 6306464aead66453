# tests/test_scheduler.py
"""Tests for fieldops/core/scheduler.py: reminders, daily summary, session cleanup."""
from __future__ import annotations

import asyncio
import time

import pytest

from fieldops.core.domain import SessionStep
from fieldops.core.scheduler import ReminderScheduler
from fieldops.infra.rate_limiter import InMemoryRateLimiter


async def _claimed_job(service, make_job, *technician_ids, address="Jl. Dago 5"):
    job = await make_job(address=address)
    for technician_id in technician_ids:
        await service.engine.claim_job(job.id, technician_id)
    return job


class TestReminderSweep:
    """Technicians with stale open jobs get one message per sweep."""

    @pytest.mark.asyncio
    async def test_fresh_jobs_not_reminded(self, service, gateway, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await _claimed_job(service, make_job, "t1")
        gateway.sent.clear()

        result = await service.scheduler.run_reminder_sweep()

        assert result.candidates == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_stale_jobs_grouped_per_technician(self, service, gateway, clock, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await make_technician("t2", "chat-2")
        first = await _claimed_job(service, make_job, "t1", "t2", address="Jl. Dago 5")
        second = await _claimed_job(service, make_job, "t1", address="Jl. Riau 9")
        gateway.sent.clear()
        clock.advance(hours=3)

        result = await service.scheduler.run_reminder_sweep()

        assert (result.candidates, result.sent, result.failed) == (2, 2, 0)
        t1_messages = gateway.texts_for("chat-1")
        assert len(t1_messages) == 1
        assert first.number in t1_messages[0]
        assert second.number in t1_messages[0]
        assert len(gateway.texts_for("chat-2")) == 1

    @pytest.mark.asyncio
    async def test_completed_and_cancelled_jobs_skipped(self, service, gateway, clock, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await make_technician("t2", "chat-2")
        done = await _claimed_job(service, make_job, "t1", "t2")
        await service.engine.complete_job(done.id, "t1", "photo-1")
        cancelled = await _claimed_job(service, make_job, "t1")
        await service.engine.cancel_job(cancelled.id, "duplicate")
        gateway.sent.clear()
        clock.advance(hours=3)

        result = await service.scheduler.run_reminder_sweep()

        assert result.candidates == 0
        assert gateway.sent == []

    @pytest.mark.asyncio
    async def test_inactive_technician_skipped(self, service, gateway, clock, make_technician, make_job):
        await make_technician("t1", "chat-1", is_active=False)
        await _claimed_job(service, make_job, "t1")
        clock.advance(hours=3)

        result = await service.scheduler.run_reminder_sweep()

        assert result.candidates == 0

    @pytest.mark.asyncio
    async def test_failed_send_counted_not_raised(self, service, gateway, clock, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await make_technician("t2", "chat-2")
        await _claimed_job(service, make_job, "t1", "t2")
        gateway.failing.add("chat-1")
        clock.advance(hours=3)

        result = await service.scheduler.run_reminder_sweep()

        assert (result.candidates, result.sent, result.failed) == (2, 1, 1)


class TestDailySummary:

    @pytest.mark.asyncio
    async def test_summary_counts(self, service, gateway, make_technician, make_job):
        await make_technician("t1", "chat-1")
        await make_technician("t2", "chat-2")
        done = await _claimed_job(service, make_job, "t1", "t2")
        await service.engine.complete_job(done.id, "t1", "photo-1")
        await _claimed_job(service, make_job, "t1")
        gateway.sent.clear()

        result = await service.scheduler.run_daily_summary()

        assert result.candidates == 2
        summary = gateway.texts_for("chat-1")[0]
        assert "Completed today: 1" in summary
        assert "Still active: 1" in summary

    @pytest.mark.asyncio
    async def test_summary_due_once_per_local_day(self, service, gateway, clock, make_technician):
        await make_technician("t1", "chat-1")
        # 10:00 Jakarta
        assert not service.scheduler.summary_due()

        clock.advance(hours=9)  # 19:00 Jakarta
        assert service.scheduler.summary_due()
        await service.scheduler.tick()
        assert any("Daily summary" in t for t in gateway.texts_for("chat-1"))

        assert not service.scheduler.summary_due()
        clock.advance(hours=16)  # 11:00 next day
        assert not service.scheduler.summary_due()
        clock.advance(hours=8)  # 19:00 next day
        assert service.scheduler.summary_due()

    @pytest.mark.asyncio
    async def test_negative_hour_disables_summary(self, service, gateway, clock):
        scheduler = ReminderScheduler(
            service.jobs, service.technicians, gateway, summary_hour=-1, clock=clock,
        )
        clock.advance(hours=12)
        assert not scheduler.summary_due()


class TestTick:

    @pytest.mark.asyncio
    async def test_tick_drops_expired_sessions(self, service, clock):
        await service.sessions.begin("chat-1", SessionStep.AWAITING_PHONE)
        clock.advance(seconds=service.settings.session_ttl_seconds + 60)

        await service.scheduler.tick()

        assert await service.sessions.get("chat-1") is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, service):
        scheduler = ReminderScheduler(
            service.jobs, service.technicians, service.gateway, interval=3600, summary_hour=-1,
        )

        await scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0)
        await scheduler.stop()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_tick_forgets_idle_rate_limit_keys(self, service):
        limiter = InMemoryRateLimiter(max_requests=5, window_seconds=60, scope="chat")
        limiter._requests["chat-idle"] = [time.time() - 7200]
        limiter.is_allowed("chat-busy")
        scheduler = ReminderScheduler(
            service.jobs, service.technicians, service.gateway,
            interval=3600, summary_hour=-1, rate_limiters=[limiter],
        )

        await scheduler.tick()

        assert "chat-idle" not in limiter._requests
        assert "chat-busy" in limiter._requests

    def test_chat_limiter_is_tracked(self, service):
        assert service.processor._rate_limiter in service.scheduler._rate_limiters
