# fieldops/infra/memory_store.py
"""
In-process implementations of the store ports.

Default backend for development, tests and single-instance deployments.
Records are copied on the way in and out so callers never share mutable
state with the store, the same as a database round trip.  Conditional
writes run under one ``asyncio.Lock`` per store.
"""
from __future__ import annotations

import asyncio
import copy
from dataclasses import fields as dc_fields
from datetime import datetime
from typing import Any, Iterable, Optional

from fieldops.core.domain import (
    CLAIMABLE_STATUSES,
    WORKING_STATUSES,
    AdminUser,
    Assignment,
    Job,
    JobStatus,
    Registration,
    RegistrationStatus,
    Technician,
)


def _copy(record):
    return copy.copy(record) if record is not None else None


def _apply(record, updates: dict[str, Any]) -> None:
    known = {f.name for f in dc_fields(record)}
    unknown = set(updates) - known
    if unknown:
        raise ValueError(f"Unknown fields for {type(record).__name__}: {sorted(unknown)}")
    for name, value in updates.items():
        setattr(record, name, value)


# ============================================================================
# JOBS + ASSIGNMENTS
# ============================================================================

class InMemoryJobStore:
    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._assignments: dict[str, list[Assignment]] = {}
        self._lock = asyncio.Lock()

    async def get_job(self, job_id: str) -> Optional[Job]:
        return _copy(self._jobs.get(job_id))

    async def get_job_by_number(self, number: str) -> Optional[Job]:
        for job in self._jobs.values():
            if job.number == number:
                return _copy(job)
        return None

    async def save_job(self, job: Job) -> Job:
        async with self._lock:
            for other in self._jobs.values():
                if other.number == job.number and other.id != job.id:
                    raise ValueError(f"Duplicate job number {job.number}")
            self._jobs[job.id] = _copy(job)
            self._assignments.setdefault(job.id, [])
        return _copy(job)

    async def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None) -> list[Job]:
        wanted = set(statuses) if statuses is not None else None
        jobs = [
            _copy(job) for job in self._jobs.values()
            if wanted is None or job.status in wanted
        ]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    async def update_job_status(
        self,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected_status:
                return False
            _apply(job, fields)
            job.status = new_status
            return True

    async def create_assignment(self, assignment: Assignment, *, max_active: int) -> bool:
        async with self._lock:
            job = self._jobs.get(assignment.job_id)
            if job is None or not job.is_approved or job.status not in CLAIMABLE_STATUSES:
                return False
            rows = self._assignments.setdefault(assignment.job_id, [])
            if any(a.technician_id == assignment.technician_id for a in rows):
                return False
            if sum(1 for a in rows if a.is_active) >= max_active:
                return False
            rows.append(_copy(assignment))
            if job.status == JobStatus.OPEN:
                job.status = JobStatus.ASSIGNED
            return True

    async def list_assignments(self, job_id: str) -> list[Assignment]:
        return [_copy(a) for a in self._assignments.get(job_id, [])]

    async def count_active_assignments(self, job_id: str) -> int:
        return sum(1 for a in self._assignments.get(job_id, []) if a.is_active)

    async def update_assignment(self, job_id: str, technician_id: str, **fields: Any) -> None:
        async with self._lock:
            for assignment in self._assignments.get(job_id, []):
                if assignment.technician_id == technician_id:
                    _apply(assignment, fields)

    async def complete_assignments(self, job_id: str, completed_at: datetime) -> int:
        count = 0
        async with self._lock:
            for assignment in self._assignments.get(job_id, []):
                if assignment.completed_at is None:
                    assignment.completed_at = completed_at
                    count += 1
        return count

    async def list_technician_assignments(self, technician_id: str) -> list[Assignment]:
        return [
            _copy(a)
            for rows in self._assignments.values()
            for a in rows
            if a.technician_id == technician_id
        ]

    async def list_stale_assignments(self, cutoff: datetime) -> list[tuple[Assignment, Job]]:
        stale = []
        for job_id, rows in self._assignments.items():
            job = self._jobs.get(job_id)
            if job is None or job.status not in WORKING_STATUSES or job.created_at >= cutoff:
                continue
            for assignment in rows:
                if assignment.accepted_at is not None and assignment.completed_at is None:
                    stale.append((_copy(assignment), _copy(job)))
        return stale


# ============================================================================
# PEOPLE
# ============================================================================

class InMemoryTechnicianRegistry:
    def __init__(self, technicians: Iterable[Technician] = ()):
        self._items: dict[str, Technician] = {t.id: _copy(t) for t in technicians}

    async def get(self, technician_id: str) -> Optional[Technician]:
        return _copy(self._items.get(technician_id))

    async def list_active_with_chat(self) -> list[Technician]:
        return [_copy(t) for t in self._items.values() if t.is_active and t.chat_id]

    async def find_by_chat(self, chat_id: str) -> Optional[Technician]:
        for technician in self._items.values():
            if technician.chat_id == chat_id:
                return _copy(technician)
        return None

    async def find_by_phone(self, phone: str) -> Optional[Technician]:
        for technician in self._items.values():
            if technician.phone == phone:
                return _copy(technician)
        return None

    async def upsert(self, technician: Technician) -> Technician:
        self._items[technician.id] = _copy(technician)
        return _copy(technician)


class InMemoryAdminRoster:
    def __init__(self, admins: Iterable[AdminUser] = ()):
        self._items: dict[str, AdminUser] = {a.id: _copy(a) for a in admins}

    async def get(self, admin_id: str) -> Optional[AdminUser]:
        return _copy(self._items.get(admin_id))

    async def list_with_chat(self) -> list[AdminUser]:
        return [_copy(a) for a in self._items.values() if a.chat_id]

    async def find_by_chat(self, chat_id: str) -> Optional[AdminUser]:
        for admin in self._items.values():
            if admin.chat_id == chat_id:
                return _copy(admin)
        return None

    async def find_by_username(self, username: str) -> Optional[AdminUser]:
        for admin in self._items.values():
            if admin.username == username:
                return _copy(admin)
        return None

    async def upsert(self, admin: AdminUser) -> AdminUser:
        self._items[admin.id] = _copy(admin)
        return _copy(admin)


class InMemoryRegistrationRepository:
    def __init__(self):
        self._items: dict[str, Registration] = {}

    async def get(self, registration_id: str) -> Optional[Registration]:
        return _copy(self._items.get(registration_id))

    async def find_pending_by_chat(self, chat_id: str) -> Optional[Registration]:
        return self._find(lambda r: r.chat_id == chat_id and r.status == RegistrationStatus.PENDING)

    async def find_pending_by_phone(self, phone: str) -> Optional[Registration]:
        return self._find(lambda r: r.phone == phone and r.status == RegistrationStatus.PENDING)

    async def find_latest_by_chat(self, chat_id: str) -> Optional[Registration]:
        return self._find(lambda r: r.chat_id == chat_id)

    async def save(self, registration: Registration) -> Registration:
        self._items[registration.id] = _copy(registration)
        return _copy(registration)

    async def list_by_status(self, status: RegistrationStatus) -> list[Registration]:
        rows = [_copy(r) for r in self._items.values() if r.status == status]
        rows.sort(key=lambda r: r.created_at)
        return rows

    def _find(self, predicate) -> Optional[Registration]:
        """Most recently updated match."""
        matches = [r for r in self._items.values() if predicate(r)]
        if not matches:
            return None
        return _copy(max(matches, key=lambda r: r.updated_at))
