# fieldops/admin/models.py
"""
Pydantic request/response models for the admin API.

These live *outside* the transport layer so the service can
validate payloads without depending on FastAPI.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from fieldops.core.domain import (
    AdminRole,
    AdminUser,
    Assignment,
    Job,
    JobKind,
    Registration,
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateJobRequest(BaseModel):
    """Create an installation or repair job."""

    kind: JobKind
    address: str = Field(..., min_length=1, max_length=512)
    customer_name: str = Field(default="", max_length=256)
    customer_phone: Optional[str] = Field(default=None, max_length=32)
    sub_category: Optional[str] = Field(default=None, max_length=128)
    description: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("address")
    @classmethod
    def address_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("address must not be blank")
        return v.strip()


class ReasonRequest(BaseModel):
    """Body of reject/cancel calls."""

    reason: str = Field(..., min_length=1, max_length=1000)


class ApproveRegistrationRequest(BaseModel):
    """Optional overrides applied when approving a registration."""

    name: Optional[str] = Field(default=None, max_length=256)
    phone: Optional[str] = Field(default=None, max_length=32)


class CreateAdminRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(default="", max_length=256)
    phone: Optional[str] = Field(default=None, max_length=32)
    role: AdminRole = AdminRole.ADMIN

    @field_validator("username")
    @classmethod
    def username_must_be_slug(cls, v: str) -> str:
        import re
        if not re.match(r"^[a-zA-Z0-9_.-]+$", v):
            raise ValueError("username must contain only alphanumeric, dot, hyphen, or underscore characters")
        return v.lower()


class BroadcastRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    sender: str = Field(default="Admin", max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class AssignmentView(BaseModel):
    technician_id: str
    accepted_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_assignment(cls, assignment: Assignment) -> "AssignmentView":
        return cls(
            technician_id=assignment.technician_id,
            accepted_at=assignment.accepted_at,
            started_at=assignment.started_at,
            completed_at=assignment.completed_at,
        )


class JobView(BaseModel):
    id: str
    number: str
    kind: JobKind
    address: str
    customer_name: str
    sub_category: Optional[str] = None
    description: Optional[str] = None
    approval_status: str
    status: str
    created_at: datetime
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    completion_evidence: Optional[str] = None
    assignments: list[AssignmentView] = Field(default_factory=list)

    @classmethod
    def from_job(cls, job: Job, assignments: list[Assignment] | None = None) -> "JobView":
        # customer_phone stays internal
        return cls(
            id=job.id,
            number=job.number,
            kind=job.kind,
            address=job.address,
            customer_name=job.customer_name,
            sub_category=job.sub_category,
            description=job.description,
            approval_status=job.approval_status.value,
            status=job.status.value,
            created_at=job.created_at,
            approved_at=job.approved_at,
            completed_at=job.completed_at,
            cancelled_at=job.cancelled_at,
            rejection_reason=job.rejection_reason,
            cancel_reason=job.cancel_reason,
            completion_evidence=job.completion_evidence,
            assignments=[AssignmentView.from_assignment(a) for a in assignments or []],
        )


class RegistrationView(BaseModel):
    id: str
    name: str
    phone: str
    status: str
    created_at: datetime
    updated_at: datetime
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    technician_id: Optional[str] = None

    @classmethod
    def from_registration(cls, registration: Registration) -> "RegistrationView":
        return cls(
            id=registration.id,
            name=registration.name,
            phone=registration.phone,
            status=registration.status.value,
            created_at=registration.created_at,
            updated_at=registration.updated_at,
            reviewed_at=registration.reviewed_at,
            rejection_reason=registration.rejection_reason,
            technician_id=registration.technician_id,
        )


class AdminView(BaseModel):
    """Admin account without the password hash."""

    id: str
    username: str
    name: str
    role: AdminRole
    chat_linked: bool

    @classmethod
    def from_admin(cls, admin: AdminUser) -> "AdminView":
        return cls(
            id=admin.id,
            username=admin.username,
            name=admin.name,
            role=admin.role,
            chat_linked=admin.chat_id is not None,
        )


class OkResponse(BaseModel):
    ok: bool = True
    detail: dict[str, Any] = Field(default_factory=dict)
