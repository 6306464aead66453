# fieldops/core/scheduler.py
"""
Reminder / summary scheduler.

One asyncio task ticking every ``interval`` seconds:
- reminder sweep: technicians holding jobs that were created more than
  ``threshold_hours`` ago and are still ASSIGNED / IN_PROGRESS receive one
  message per sweep listing those jobs
- daily summary: once per local day, at ``summary_hour`` in ``tz``
- expired conversation sessions are dropped, and idle rate-limiter keys
  forgotten

Failed sends are logged and counted; they are not retried within a sweep.
"""
from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterable, Optional
from zoneinfo import ZoneInfo

from fieldops.core import texts
from fieldops.core.domain import Job, SweepResult, Technician, utcnow
from fieldops.core.errors import MessagingDeliveryError
from fieldops.core.ports import JobStore, MessagingGateway, TechnicianRegistry
from fieldops.core.reports import technician_status
from fieldops.core.sessions import SessionManager
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics, inc_counter

if TYPE_CHECKING:
    from fieldops.infra.rate_limiter import InMemoryRateLimiter

logger = get_logger(__name__)


class ReminderScheduler:
    """
    Usage:
        scheduler = ReminderScheduler(jobs, technicians, gateway, sessions)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        jobs: JobStore,
        technicians: TechnicianRegistry,
        gateway: MessagingGateway,
        sessions: Optional[SessionManager] = None,
        *,
        interval: float = 1800,
        threshold_hours: float = 2.0,
        summary_hour: int = 18,
        tz: str = "Asia/Jakarta",
        session_ttl: int = 21600,
        rate_limiters: Iterable["InMemoryRateLimiter"] = (),
        rate_limit_idle_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._jobs = jobs
        self._technicians = technicians
        self._gateway = gateway
        self._sessions = sessions
        self._interval = interval
        self._threshold = timedelta(hours=threshold_hours)
        self._summary_hour = summary_hour
        self._tz = ZoneInfo(tz)
        self._session_ttl = session_ttl
        self._rate_limiters = list(rate_limiters)
        self._rate_limit_idle = rate_limit_idle_seconds
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._running = False
        self._last_summary_date: date | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="reminder_scheduler")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Scheduler started: interval={self._interval}s, "
            f"threshold={self._threshold}, summary_hour={self._summary_hour}, tz={self._tz.key}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Scheduler tick error: {exc}", exc_info=True)
                inc_counter("scheduler_loop_errors")
            await asyncio.sleep(self._interval)

    def track_rate_limiter(self, limiter: "InMemoryRateLimiter") -> None:
        """Forget idle keys of ``limiter`` on every tick."""
        self._rate_limiters.append(limiter)

    async def tick(self) -> None:
        """One scheduler pass: reminders, the daily summary when due, housekeeping."""
        await self.run_reminder_sweep()
        if self.summary_due():
            self._last_summary_date = self._clock().astimezone(self._tz).date()
            await self.run_daily_summary()
        if self._sessions is not None:
            await self._sessions.cleanup_expired(self._session_ttl)
        for limiter in self._rate_limiters:
            limiter.cleanup(self._rate_limit_idle)

    def summary_due(self) -> bool:
        if self._summary_hour < 0:
            return False
        local = self._clock().astimezone(self._tz)
        return local.hour >= self._summary_hour and self._last_summary_date != local.date()

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def run_reminder_sweep(self) -> SweepResult:
        cutoff = self._clock() - self._threshold
        stale = await self._jobs.list_stale_assignments(cutoff)

        by_technician: dict[str, list[Job]] = defaultdict(list)
        for assignment, job in stale:
            by_technician[assignment.technician_id].append(job)

        result = SweepResult()
        for technician_id, jobs in by_technician.items():
            technician = await self._technicians.get(technician_id)
            if not technician or not technician.is_active or not technician.chat_id:
                continue
            result.candidates += 1
            await self._deliver(technician, texts.reminder(technician, jobs), "reminder", result)

        logger.info(
            f"Reminder sweep: candidates={result.candidates}, sent={result.sent}, failed={result.failed}"
        )
        return result

    async def run_daily_summary(self) -> SweepResult:
        result = SweepResult()
        for technician in await self._technicians.list_active_with_chat():
            report = await technician_status(
                self._jobs, technician.id, tz=self._tz, clock=self._clock,
            )
            result.candidates += 1
            text = texts.daily_summary(technician, report["completed_today"], report["active"])
            await self._deliver(technician, text, "daily_summary", result)

        logger.info(
            f"Daily summary: candidates={result.candidates}, sent={result.sent}, failed={result.failed}"
        )
        return result

    async def _deliver(self, technician: Technician, text: str, kind: str, result: SweepResult) -> None:
        try:
            await self._gateway.send(technician.chat_id, text)
            result.sent += 1
            AppMetrics.notification(kind, "sent")
        except MessagingDeliveryError as exc:
            result.failed += 1
            AppMetrics.notification(kind, "failed")
            logger.warning(
                f"{kind} to {mask_chat_id(technician.chat_id)} failed: {exc.detail}",
                extra={"technician_id": technician.id},
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected scheduler death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Scheduler task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
