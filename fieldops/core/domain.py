# fieldops/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# Business rule: a job is worked by exactly two technicians
MAX_TECHNICIANS_PER_JOB = 2

DEFAULT_SETTINGS_ISSUE = "settings issue"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS
# ============================================================================

class JobKind(str, Enum):
    INSTALLATION = "INSTALLATION"
    REPAIR = "REPAIR"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class JobStatus(str, Enum):
    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
CLAIMABLE_STATUSES = frozenset({JobStatus.OPEN, JobStatus.ASSIGNED})
WORKING_STATUSES = frozenset({JobStatus.ASSIGNED, JobStatus.IN_PROGRESS})


class AdminRole(str, Enum):
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class RegistrationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RegistrationOutcome(str, Enum):
    ALREADY_TECHNICIAN = "already_technician"
    ALREADY_PENDING = "already_pending"
    REOPENED = "reopened"
    CREATED = "created"


class SessionStep(str, Enum):
    AWAITING_PHONE = "awaiting_phone"
    AWAITING_CONTACT = "awaiting_contact"
    AWAITING_LOGIN_USERNAME = "awaiting_login_username"
    AWAITING_LOGIN_PASSWORD = "awaiting_login_password"
    AWAITING_LOGIN_PHONE = "awaiting_login_phone"
    AWAITING_BROADCAST_TEXT = "awaiting_broadcast_text"
    AWAITING_COMPLETION_PHOTO = "awaiting_completion_photo"


class Audience(str, Enum):
    ADMINS = "admins"
    TECHNICIANS = "technicians"


class EventKind(str, Enum):
    COMMAND = "command"
    CALLBACK = "callback"
    CONTACT = "contact"
    PHOTO = "photo"
    LOCATION = "location"
    TEXT = "text"


class ChatRole(str, Enum):
    ADMIN = "admin"
    TECHNICIAN = "technician"
    UNKNOWN = "unknown"


# ============================================================================
# RECORDS
# ============================================================================

@dataclass
class Job:
    id: str
    number: str
    kind: JobKind
    address: str
    customer_name: str = ""
    customer_phone: Optional[str] = None
    sub_category: Optional[str] = None
    description: Optional[str] = None
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED
    status: JobStatus = JobStatus.OPEN
    created_at: datetime = field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    completion_evidence: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED

    def is_settings_issue(self, category: str = DEFAULT_SETTINGS_ISSUE) -> bool:
        """REPAIR jobs in the settings category are handled by admins, not field crews."""
        if self.kind != JobKind.REPAIR or not self.sub_category:
            return False
        return self.sub_category.strip().casefold() == category.strip().casefold()


@dataclass
class Assignment:
    job_id: str
    technician_id: str
    accepted_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.completed_at is None


@dataclass
class Technician:
    id: str
    name: str
    phone: str
    chat_id: Optional[str] = None
    is_active: bool = True
    is_available: bool = True
    is_admin: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_location_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AdminUser:
    id: str
    username: str
    name: str = ""
    role: AdminRole = AdminRole.ADMIN
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    chat_id: Optional[str] = None


@dataclass
class Registration:
    id: str
    chat_id: str
    phone: str
    name: str = ""
    status: RegistrationStatus = RegistrationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    technician_id: Optional[str] = None


@dataclass
class ConversationSession:
    """Per-chat multi-step input state. Transient: losing it on restart is acceptable."""
    chat_id: str
    step: SessionStep
    data: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class RegistrationResult:
    outcome: RegistrationOutcome
    registration: Optional[Registration] = None
    technician: Optional[Technician] = None


@dataclass
class DispatchResult:
    """Aggregate of one fan-out. Never raised; returned to the caller."""
    job_id: Optional[str] = None
    audience: Optional[Audience] = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    per_recipient_errors: dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "audience": self.audience.value if self.audience else None,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "per_recipient_errors": dict(self.per_recipient_errors),
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class SweepResult:
    candidates: int = 0
    sent: int = 0
    failed: int = 0


# ============================================================================
# CHAT EVENTS / REPLIES
# ============================================================================

@dataclass
class ChatAction:
    """A button attached to an outbound message.

    ``data`` is the callback payload; ``request_contact`` asks the client to
    share the user's own phone number instead.
    """
    label: str
    data: Optional[str] = None
    request_contact: bool = False


@dataclass
class ChatEvent:
    """Normalised inbound chat event, independent of the transport."""
    kind: EventKind
    chat_id: str
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    message_id: Optional[str] = None
    text: Optional[str] = None
    command: Optional[str] = None
    args: list[str] = field(default_factory=list)
    callback_data: Optional[str] = None
    callback_id: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_user_id: Optional[str] = None
    photo_ref: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class BotReply:
    text: str
    actions: list[list[ChatAction]] = field(default_factory=list)
