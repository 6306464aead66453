# fieldops/core/ports.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from fieldops.core.domain import (
    AdminUser,
    Assignment,
    ChatAction,
    ConversationSession,
    Job,
    JobStatus,
    Registration,
    RegistrationStatus,
    Technician,
)


# ============================================================================
# JOB STORE (single source of truth for jobs and assignments)
# ============================================================================

class JobStore(Protocol):
    async def get_job(self, job_id: str) -> Optional[Job]: ...
    async def get_job_by_number(self, number: str) -> Optional[Job]: ...
    async def save_job(self, job: Job) -> Job: ...
    async def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None) -> list[Job]: ...

    async def update_job_status(
        self,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> bool:
        """
        Conditional update.
        True  => job was in ``expected_status`` and now has ``new_status`` + fields
        False => job status changed underneath the caller, nothing written
        """
        ...

    async def create_assignment(self, assignment: Assignment, *, max_active: int) -> bool:
        """
        Conditional insert, atomic with the claim transition.
        True  => inserted; an OPEN job is now ASSIGNED
        False => job missing, not approved, not OPEN/ASSIGNED, already holds
                 ``max_active`` active assignments or this technician; nothing written
        """
        ...

    async def list_assignments(self, job_id: str) -> list[Assignment]: ...
    async def count_active_assignments(self, job_id: str) -> int: ...
    async def update_assignment(self, job_id: str, technician_id: str, **fields: Any) -> None: ...
    async def complete_assignments(self, job_id: str, completed_at: datetime) -> int: ...
    async def list_technician_assignments(self, technician_id: str) -> list[Assignment]: ...

    async def list_stale_assignments(self, cutoff: datetime) -> list[tuple[Assignment, Job]]:
        """Accepted, not completed, job ASSIGNED/IN_PROGRESS and created before ``cutoff``."""
        ...


# ============================================================================
# PEOPLE
# ============================================================================

class TechnicianRegistry(Protocol):
    async def get(self, technician_id: str) -> Optional[Technician]: ...
    async def list_active_with_chat(self) -> list[Technician]: ...
    async def find_by_chat(self, chat_id: str) -> Optional[Technician]: ...
    async def find_by_phone(self, phone: str) -> Optional[Technician]: ...
    async def upsert(self, technician: Technician) -> Technician: ...


class AdminRoster(Protocol):
    async def get(self, admin_id: str) -> Optional[AdminUser]: ...
    async def list_with_chat(self) -> list[AdminUser]: ...
    async def find_by_chat(self, chat_id: str) -> Optional[AdminUser]: ...
    async def find_by_username(self, username: str) -> Optional[AdminUser]: ...
    async def upsert(self, admin: AdminUser) -> AdminUser: ...


class RegistrationRepository(Protocol):
    async def get(self, registration_id: str) -> Optional[Registration]: ...
    async def find_pending_by_chat(self, chat_id: str) -> Optional[Registration]: ...
    async def find_pending_by_phone(self, phone: str) -> Optional[Registration]: ...
    async def find_latest_by_chat(self, chat_id: str) -> Optional[Registration]: ...
    async def save(self, registration: Registration) -> Registration: ...
    async def list_by_status(self, status: RegistrationStatus) -> list[Registration]: ...


# ============================================================================
# SESSIONS / MESSAGING
# ============================================================================

class SessionStore(Protocol):
    async def get(self, chat_id: str) -> Optional[ConversationSession]: ...
    async def upsert(self, session: ConversationSession) -> None: ...
    async def delete(self, chat_id: str) -> None: ...
    async def cleanup_expired(self, ttl_seconds: int) -> int: ...


class MessagingGateway(Protocol):
    async def send(
        self,
        chat_id: str,
        text: str,
        actions: Optional[list[list[ChatAction]]] = None,
    ) -> None:
        """Deliver one message. Raises MessagingDeliveryError on failure."""
        ...
