# fieldops/core/reports.py
"""Per-technician statistics for the chat /status view and the admin API."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from fieldops.core.domain import utcnow
from fieldops.core.ports import JobStore


def _day_start(now: datetime, tz: ZoneInfo) -> datetime:
    local = now.astimezone(tz)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


async def technician_status(
    jobs: JobStore,
    technician_id: str,
    *,
    tz: Optional[ZoneInfo] = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, int]:
    """Active, completed today, completed this month and total assignments."""
    tz = tz or ZoneInfo("UTC")
    today = _day_start(clock(), tz)
    month = today.replace(day=1)

    assignments = await jobs.list_technician_assignments(technician_id)
    done = [_aware(a.completed_at) for a in assignments if a.completed_at is not None]
    return {
        "active": sum(1 for a in assignments if a.is_active),
        "completed_today": sum(1 for ts in done if ts >= today),
        "completed_month": sum(1 for ts in done if ts >= month),
        "total": len(assignments),
    }


async def technician_performance(
    jobs: JobStore,
    technician_id: str,
    days: int = 30,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, Any]:
    """
    Totals over assignments accepted in the last ``days`` days.

    ``completion_rate`` is a percentage rounded to one decimal;
    ``avg_completion_hours`` is measured from acceptance to completion.
    """
    since = clock() - timedelta(days=days)
    window = [
        a for a in await jobs.list_technician_assignments(technician_id)
        if _aware(a.accepted_at) >= since
    ]
    completed = [a for a in window if a.completed_at is not None]
    hours = [
        (_aware(a.completed_at) - _aware(a.accepted_at)).total_seconds() / 3600
        for a in completed
    ]
    total = len(window)
    return {
        "technician_id": technician_id,
        "days": days,
        "total": total,
        "completed": len(completed),
        "pending": total - len(completed),
        "completion_rate": round(len(completed) / total * 100, 1) if total else 0.0,
        "avg_completion_hours": round(sum(hours) / len(hours), 1) if hours else 0.0,
    }


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
