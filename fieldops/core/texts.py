# fieldops/core/texts.py
"""
Outbound chat texts and button labels.

Messages are rendered for Telegram's HTML parse mode, so every value that
comes from a user or an operator is passed through ``html.escape``.
"""
from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Iterable, Optional

from fieldops.core.domain import (
    MAX_TECHNICIANS_PER_JOB,
    AdminUser,
    Audience,
    Job,
    JobKind,
    JobStatus,
    Registration,
    RegistrationOutcome,
    Technician,
)
from fieldops.core.errors import CompletionGateError, DispatchError
from fieldops.core.phone import mask_phone

# ============================================================================
# BUTTONS
# ============================================================================

BTN_TAKE_JOB = "✅ Take job"
BTN_START_JOB = "▶️ Start job"
BTN_COMPLETE_JOB = "🏁 Complete job"
BTN_VIEW_JOBS = "📋 Available jobs"
BTN_MY_JOBS = "🧰 My jobs"
BTN_MY_STATUS = "📊 My status"
BTN_REGISTER = "📝 Register as technician"
BTN_SHARE_CONTACT = "📱 Share my phone number"
BTN_ADMIN_LOGIN = "🔐 Admin login"
BTN_BROADCAST = "📣 Broadcast"
BTN_APPROVE_REGISTRATION = "✅ Approve registration"
BTN_BACK = "🔙 Back to menu"

_KIND_LABELS = {
    JobKind.INSTALLATION: "Installation",
    JobKind.REPAIR: "Repair",
}

_STATUS_LABELS = {
    JobStatus.OPEN: "open",
    JobStatus.ASSIGNED: "assigned",
    JobStatus.IN_PROGRESS: "in progress",
    JobStatus.COMPLETED: "completed",
    JobStatus.CANCELLED: "cancelled",
}


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y %H:%M") if value else "-"


# ============================================================================
# JOBS
# ============================================================================

def job_summary(job: Job) -> str:
    lines = [
        f"<b>{_KIND_LABELS[job.kind]} #{escape(job.number)}</b>",
        f"📍 {escape(job.address)}",
    ]
    if job.customer_name:
        lines.append(f"👤 {escape(job.customer_name)}")
    if job.sub_category:
        lines.append(f"🏷 {escape(job.sub_category)}")
    if job.description:
        lines.append(f"📝 {escape(job.description)}")
    return "\n".join(lines)


def job_broadcast(job: Job, audience: Audience) -> str:
    header = "🛠 <b>New job available</b>"
    if audience == Audience.ADMINS:
        header = "⚙️ <b>Settings issue for admins</b>"
    return (
        f"{header}\n\n{job_summary(job)}\n\n"
        f"Needs {MAX_TECHNICIANS_PER_JOB} technicians. Tap the button to take it."
    )


def job_line(job: Job, crew: int) -> str:
    return (
        f"#{escape(job.number)} {_KIND_LABELS[job.kind]}, {escape(job.address)} "
        f"({_STATUS_LABELS[job.status]}, crew {crew}/{MAX_TECHNICIANS_PER_JOB})"
    )


def job_list(title: str, lines: Iterable[str], empty: str) -> str:
    lines = list(lines)
    if not lines:
        return empty
    return f"<b>{title}</b>\n\n" + "\n".join(f"• {line}" for line in lines)


def claim_success(job: Job, crew: int) -> str:
    text = f"✅ You took job #{escape(job.number)} ({crew}/{MAX_TECHNICIANS_PER_JOB})."
    if crew < MAX_TECHNICIANS_PER_JOB:
        text += "\nWaiting for a second technician."
    return text


def crew_complete(job: Job) -> str:
    return f"👥 Job #{escape(job.number)} now has its full crew. You can start when on site."


def start_success(job: Job) -> str:
    return f"▶️ Job #{escape(job.number)} is in progress."


def ask_completion_photo(job: Job) -> str:
    return (
        f"📸 Send a photo of the finished work for job #{escape(job.number)} "
        "to complete it."
    )


def completion_success(job: Job) -> str:
    return f"🏁 Job #{escape(job.number)} is completed. Thank you!"


def job_status_changed(job: Job) -> str:
    status = _STATUS_LABELS[job.status]
    text = f"ℹ️ Job #{escape(job.number)} is now <b>{status}</b>."
    reason = job.cancel_reason or job.rejection_reason
    if job.status == JobStatus.CANCELLED and reason:
        text += f"\nReason: {escape(reason)}"
    return text


def job_not_found(number: str) -> str:
    return f"Job #{escape(number)} was not found."


def usage(command: str, argument: str) -> str:
    return f"Usage: /{command} {argument}"


# ============================================================================
# MENUS / HELP
# ============================================================================

def welcome_unknown(name: Optional[str]) -> str:
    who = escape(name) if name else "there"
    return (
        f"👋 Hi {who}!\n\n"
        "This bot dispatches installation and repair jobs to field technicians.\n"
        "Register as a technician to start receiving jobs."
    )


def welcome_technician(technician: Technician) -> str:
    return f"👋 Hi {escape(technician.name)}! What would you like to do?"


def welcome_admin(admin: AdminUser) -> str:
    return f"👋 Hi {escape(admin.name or admin.username)} (admin)."


HELP_TECHNICIAN = (
    "<b>Commands</b>\n"
    "/jobs - available jobs\n"
    "/myjobs - your jobs\n"
    "/take &lt;no&gt; - take a job\n"
    "/begin &lt;no&gt; - start a job\n"
    "/done &lt;no&gt; - complete a job with a photo\n"
    "/location - share your location\n"
    "/status - your statistics\n"
    "/cancel - abort the current step"
)

HELP_ADMIN = (
    "<b>Admin commands</b>\n"
    "/jobs - open jobs\n"
    "/broadcast &lt;text&gt; - message every technician\n"
    "/cancel - abort the current step"
)

HELP_UNKNOWN = (
    "<b>Commands</b>\n"
    "/register - register as a technician\n"
    "/adminlogin - sign in as an admin\n"
    "/cancel - abort the current step"
)

CANCELLED = "Cancelled. Back to the main menu."
UNKNOWN_INPUT = "I did not understand that. Use /help to see the commands."
NOT_REGISTERED = "You are not registered as a technician yet. Use /register first."
ADMIN_ONLY = "This action is only available to admins."
TECHNICIAN_ONLY = "This action is only available to technicians."
INTERNAL_ERROR = "Something went wrong. Please try again later."

# ============================================================================
# REGISTRATION
# ============================================================================

ASK_PHONE = (
    "📱 Send your mobile number (for example 08123456789), "
    "or tap the button to share it."
)
ASK_CONTACT = "📱 Tap the button below to share your own phone number."
CONTACT_NOT_OWN = "Please share your own contact, not someone else's."

_REGISTRATION_REPLIES = {
    RegistrationOutcome.CREATED: (
        "📝 Registration received. An admin will review it shortly."
    ),
    RegistrationOutcome.REOPENED: (
        "📝 Your registration was resubmitted. An admin will review it shortly."
    ),
    RegistrationOutcome.ALREADY_PENDING: (
        "⏳ Your registration is already waiting for review."
    ),
    RegistrationOutcome.ALREADY_TECHNICIAN: (
        "✅ You are already a registered technician. This chat is now linked to your account."
    ),
}


def registration_reply(outcome: RegistrationOutcome) -> str:
    return _REGISTRATION_REPLIES[outcome]


def registration_admin_notice(registration: Registration) -> str:
    name = escape(registration.name) if registration.name else "(no name)"
    return (
        "🆕 <b>New technician registration</b>\n\n"
        f"Name: {name}\n"
        f"Phone: {mask_phone(registration.phone)}\n"
        f"Submitted: {_fmt_time(registration.updated_at)}"
    )


def registration_approved(technician: Technician) -> str:
    return (
        f"🎉 Welcome aboard, {escape(technician.name)}! Your registration was approved.\n"
        "You will now receive new jobs. Use /help to see the commands."
    )


def registration_rejected(reason: str) -> str:
    return f"❌ Your registration was rejected.\nReason: {escape(reason)}"


def registration_decided(registration: Registration) -> str:
    return (
        f"Registration of {escape(registration.name or registration.phone)} "
        f"is now {registration.status.value.lower()}."
    )


# ============================================================================
# ADMIN LOGIN / BROADCAST
# ============================================================================

ASK_LOGIN_USERNAME = "🔐 Admin login. Send your username."
ASK_LOGIN_PASSWORD = "Send your password."
ASK_LOGIN_PHONE = "Send the phone number on record for this account."
LOGIN_FAILED = "❌ Invalid username or password."
LOGIN_PHONE_MISMATCH = "❌ That phone number does not match this admin account."
LOGIN_ADMIN_LINKED_ELSEWHERE = "❌ This admin account is already linked to another chat."
LOGIN_CHAT_IS_TECHNICIAN = "❌ This chat belongs to a technician and cannot be used for admin login."
ALREADY_ADMIN = "You are already signed in as an admin."


def login_success(admin: AdminUser) -> str:
    return f"✅ Signed in as {escape(admin.name or admin.username)}."


ASK_BROADCAST_TEXT = "📣 Send the message to broadcast to every technician."
EMPTY_BROADCAST = "The broadcast message cannot be empty."


def broadcast_message(text: str, sender: str) -> str:
    return f"📣 <b>Announcement</b>\n\n{escape(text)}\n\n- {escape(sender)}"


def broadcast_result(succeeded: int, failed: int) -> str:
    text = f"📣 Broadcast delivered to {succeeded} technician(s)."
    if failed:
        text += f" {failed} delivery(ies) failed."
    return text


# ============================================================================
# LOCATION / STATUS
# ============================================================================

ASK_LOCATION = "📍 Send your current location using the attachment menu."
LOCATION_UPDATED = "📍 Location updated. Thank you!"


def technician_status(technician: Technician, report: dict) -> str:
    return (
        f"📊 <b>{escape(technician.name)}</b>\n\n"
        f"Active jobs: {report['active']}\n"
        f"Completed today: {report['completed_today']}\n"
        f"Completed this month: {report['completed_month']}\n"
        f"Total jobs: {report['total']}"
    )


# ============================================================================
# SCHEDULER
# ============================================================================

def reminder(technician: Technician, jobs: list[Job]) -> str:
    lines = "\n".join(
        f"• #{escape(job.number)} {escape(job.address)} ({_STATUS_LABELS[job.status]})"
        for job in jobs
    )
    return (
        f"⏰ {escape(technician.name)}, these jobs are still open:\n\n{lines}\n\n"
        "Please update their status when you can."
    )


def daily_summary(technician: Technician, completed_today: int, active: int) -> str:
    return (
        f"🌙 <b>Daily summary</b> for {escape(technician.name)}\n\n"
        f"Completed today: {completed_today}\n"
        f"Still active: {active}"
    )


# ============================================================================
# ERRORS
# ============================================================================

def error_reply(exc: DispatchError) -> str:
    """User-facing rendering of a domain error."""
    if isinstance(exc, CompletionGateError):
        return "⚠️ Cannot complete the job yet. Missing: " + ", ".join(exc.missing) + "."
    return f"⚠️ {escape(exc.detail)}"
