# fieldops/core/bot.py
"""
Chat bot front end.

``DispatchBot.handle_event`` takes one normalised ``ChatEvent`` and returns
the ``BotReply`` for the sender (or ``None`` when nothing should be sent).
Transports stay outside: they translate provider updates into events and
send the reply back.

Routing order:
    1. cancel input (``/cancel``, "batal", back button) clears any flow
    2. commands and callbacks
    3. contact / photo / location attachments
    4. free text for the open session step
Domain errors are turned into user-facing replies; anything else
propagates to the transport.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from fieldops.core import texts
from fieldops.core.assignment import AssignmentEngine
from fieldops.core.domain import (
    CLAIMABLE_STATUSES,
    MAX_TECHNICIANS_PER_JOB,
    TERMINAL_STATUSES,
    WORKING_STATUSES,
    AdminUser,
    Audience,
    BotReply,
    ChatAction,
    ChatEvent,
    ChatRole,
    ConversationSession,
    EventKind,
    Job,
    JobStatus,
    SessionStep,
    Technician,
    utcnow,
)
from fieldops.core.errors import (
    DispatchError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from fieldops.core.phone import normalize_phone
from fieldops.core.ports import AdminRoster, JobStore, TechnicianRegistry
from fieldops.core.registration import RegistrationWorkflow
from fieldops.core.reports import technician_status
from fieldops.core.routing import DispatchController
from fieldops.core.sessions import SessionManager, is_cancel_input
from fieldops.infra.audit_log import audit_event
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics
from fieldops.infra.passwords import verify_password

logger = get_logger(__name__)

# Field deployment used Indonesian command names
COMMAND_ALIASES = {
    "daftar": "register",
    "ambil": "take",
    "mulai": "begin",
    "selesai": "done",
    "lokasi": "location",
}

# Upper bound of buttons in a job listing
MAX_LISTED_JOBS = 10


@dataclass
class Caller:
    chat_id: str
    role: ChatRole
    admin: Optional[AdminUser] = None
    technician: Optional[Technician] = None

    @property
    def can_admin(self) -> bool:
        return self.admin is not None or bool(self.technician and self.technician.is_admin)

    @property
    def display_name(self) -> str:
        if self.admin:
            return self.admin.name or self.admin.username
        if self.technician:
            return self.technician.name
        return "unknown"


class DispatchBot:
    def __init__(
        self,
        engine: AssignmentEngine,
        registration: RegistrationWorkflow,
        dispatcher: DispatchController,
        sessions: SessionManager,
        jobs: JobStore,
        technicians: TechnicianRegistry,
        admins: AdminRoster,
        *,
        tz: str = "Asia/Jakarta",
        clock: Callable[[], datetime] = utcnow,
    ):
        self._engine = engine
        self._registration = registration
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._jobs = jobs
        self._technicians = technicians
        self._admins = admins
        self._tz = ZoneInfo(tz)
        self._clock = clock
        self.gateway_connected = False

        self._commands: dict[str, Callable[[Caller, ChatEvent], Awaitable[BotReply]]] = {
            "start": self._cmd_menu,
            "menu": self._cmd_menu,
            "help": self._cmd_help,
            "cancel": self._cmd_cancel,
            "register": self._cmd_register,
            "jobs": self._cmd_jobs,
            "myjobs": self._cmd_my_jobs,
            "take": self._cmd_take,
            "begin": self._cmd_begin,
            "done": self._cmd_done,
            "location": self._cmd_location,
            "status": self._cmd_status,
            "broadcast": self._cmd_broadcast,
            "adminlogin": self._cmd_admin_login,
        }
        self._step_handlers: dict[SessionStep, Callable[[Caller, ConversationSession, str], Awaitable[BotReply]]] = {
            SessionStep.AWAITING_PHONE: self._step_phone,
            SessionStep.AWAITING_CONTACT: self._step_contact_text,
            SessionStep.AWAITING_LOGIN_USERNAME: self._step_login_username,
            SessionStep.AWAITING_LOGIN_PASSWORD: self._step_login_password,
            SessionStep.AWAITING_LOGIN_PHONE: self._step_login_phone,
            SessionStep.AWAITING_BROADCAST_TEXT: self._step_broadcast_text,
            SessionStep.AWAITING_COMPLETION_PHOTO: self._step_photo_text,
        }

    # ------------------------------------------------------------------
    # Gateway connection notifications
    # ------------------------------------------------------------------

    async def on_gateway_connected(self) -> None:
        self.gateway_connected = True
        AppMetrics.gateway_connection("connected")
        logger.info("Messaging gateway connected")

    async def on_gateway_disconnected(self, reason: str = "") -> None:
        self.gateway_connected = False
        AppMetrics.gateway_connection("disconnected")
        logger.warning(f"Messaging gateway disconnected: {reason or 'no reason given'}")

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: ChatEvent) -> Optional[BotReply]:
        AppMetrics.chat_event(event.kind.value)
        caller = await self.resolve_caller(event.chat_id)
        try:
            return await self._route(caller, event)
        except DispatchError as exc:
            logger.info(
                f"Chat request refused ({exc.__class__.__name__}): {exc.detail}",
                extra={"chat_id": event.chat_id},
            )
            return BotReply(texts.error_reply(exc))

    async def resolve_caller(self, chat_id: str) -> Caller:
        """Admin first, then active technician, else unknown."""
        admin = await self._admins.find_by_chat(chat_id)
        if admin:
            return Caller(chat_id, ChatRole.ADMIN, admin=admin)
        technician = await self._technicians.find_by_chat(chat_id)
        if technician and technician.is_active:
            return Caller(chat_id, ChatRole.TECHNICIAN, technician=technician)
        return Caller(chat_id, ChatRole.UNKNOWN)

    async def _route(self, caller: Caller, event: ChatEvent) -> Optional[BotReply]:
        if event.kind == EventKind.TEXT and is_cancel_input(event.text):
            return await self._cmd_cancel(caller, event)

        if event.kind == EventKind.COMMAND:
            name = COMMAND_ALIASES.get(event.command or "", event.command or "")
            handler = self._commands.get(name)
            if handler is None:
                return BotReply(texts.UNKNOWN_INPUT)
            return await handler(caller, event)

        if event.kind == EventKind.CALLBACK:
            return await self._handle_callback(caller, event)
        if event.kind == EventKind.CONTACT:
            return await self._handle_contact(caller, event)
        if event.kind == EventKind.PHOTO:
            return await self._handle_photo(caller, event)
        if event.kind == EventKind.LOCATION:
            return await self._handle_location(caller, event)

        session = await self._sessions.get(caller.chat_id)
        if session is None:
            return BotReply(texts.UNKNOWN_INPUT, self._menu(caller))
        return await self._step_handlers[session.step](caller, session, (event.text or "").strip())

    async def _handle_callback(self, caller: Caller, event: ChatEvent) -> BotReply:
        data = event.callback_data or ""
        for prefix, handler in (
            ("take_job_", self._take),
            ("start_job_", self._begin),
            ("complete_job_", self._request_completion),
        ):
            if data.startswith(prefix):
                technician = self._require_technician(caller)
                return await handler(technician, await self._engine.get_job(data[len(prefix):]))

        if data.startswith("approve_reg_"):
            return await self._approve_registration(caller, data[len("approve_reg_"):])

        simple = {
            "view_jobs": self._cmd_jobs,
            "my_jobs": self._cmd_my_jobs,
            "my_status": self._cmd_status,
            "register_technician": self._register_by_contact,
            "admin_login": self._cmd_admin_login,
            "admin_broadcast": self._cmd_broadcast,
            "back_to_main": self._cmd_menu,
        }
        handler = simple.get(data)
        if handler is None:
            logger.warning(f"Unknown callback data: {data[:40]}", extra={"chat_id": caller.chat_id})
            return BotReply(texts.UNKNOWN_INPUT, self._menu(caller))
        # Callback buttons never carry arguments
        return await handler(caller, ChatEvent(kind=EventKind.CALLBACK, chat_id=caller.chat_id))

    # ------------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------------

    def _menu(self, caller: Caller) -> list[list[ChatAction]]:
        if caller.role == ChatRole.ADMIN:
            return [
                [ChatAction(texts.BTN_VIEW_JOBS, "view_jobs")],
                [ChatAction(texts.BTN_BROADCAST, "admin_broadcast")],
            ]
        if caller.role == ChatRole.TECHNICIAN:
            rows = [
                [ChatAction(texts.BTN_VIEW_JOBS, "view_jobs"), ChatAction(texts.BTN_MY_JOBS, "my_jobs")],
                [ChatAction(texts.BTN_MY_STATUS, "my_status")],
            ]
            if caller.can_admin:
                rows.append([ChatAction(texts.BTN_BROADCAST, "admin_broadcast")])
            return rows
        return [
            [ChatAction(texts.BTN_REGISTER, "register_technician")],
            [ChatAction(texts.BTN_ADMIN_LOGIN, "admin_login")],
        ]

    async def _cmd_menu(self, caller: Caller, event: ChatEvent) -> BotReply:
        await self._sessions.clear(caller.chat_id)
        if caller.admin:
            text = texts.welcome_admin(caller.admin)
        elif caller.technician:
            text = texts.welcome_technician(caller.technician)
        else:
            text = texts.welcome_unknown(event.sender_name)
        return BotReply(text, self._menu(caller))

    async def _cmd_help(self, caller: Caller, event: ChatEvent) -> BotReply:
        if caller.role == ChatRole.ADMIN:
            return BotReply(texts.HELP_ADMIN)
        if caller.role == ChatRole.TECHNICIAN:
            return BotReply(texts.HELP_TECHNICIAN)
        return BotReply(texts.HELP_UNKNOWN)

    async def _cmd_cancel(self, caller: Caller, event: ChatEvent) -> BotReply:
        await self._sessions.clear(caller.chat_id)
        return BotReply(texts.CANCELLED, self._menu(caller))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def _cmd_register(self, caller: Caller, event: ChatEvent) -> BotReply:
        if caller.admin:
            raise StateConflictError(
                "This chat is linked to an admin account and cannot register as a technician."
            )
        if event.args:
            return await self._submit_registration(caller, event, event.args[0])
        await self._sessions.begin(caller.chat_id, SessionStep.AWAITING_PHONE)
        return BotReply(texts.ASK_PHONE, self._contact_request())

    async def _register_by_contact(self, caller: Caller, event: ChatEvent) -> BotReply:
        if caller.admin:
            raise StateConflictError(
                "This chat is linked to an admin account and cannot register as a technician."
            )
        await self._sessions.begin(caller.chat_id, SessionStep.AWAITING_CONTACT)
        return BotReply(texts.ASK_CONTACT, self._contact_request())

    @staticmethod
    def _contact_request() -> list[list[ChatAction]]:
        return [
            [ChatAction(texts.BTN_SHARE_CONTACT, request_contact=True)],
            [ChatAction(texts.BTN_BACK)],
        ]

    async def _step_phone(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        return await self._submit_registration(caller, None, text)

    async def _step_contact_text(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        return BotReply(texts.ASK_CONTACT, self._contact_request())

    async def _handle_contact(self, caller: Caller, event: ChatEvent) -> BotReply:
        if event.contact_user_id and event.sender_id and event.contact_user_id != event.sender_id:
            return BotReply(texts.CONTACT_NOT_OWN, self._contact_request())
        return await self._submit_registration(caller, event, event.contact_phone or "")

    async def _submit_registration(self, caller: Caller, event: Optional[ChatEvent], phone: str) -> BotReply:
        profile = {"name": event.sender_name if event and event.sender_name else ""}
        if not profile["name"] and caller.technician:
            profile["name"] = caller.technician.name
        result = await self._registration.submit(caller.chat_id, phone, profile)
        await self._sessions.clear(caller.chat_id)

        reply = texts.registration_reply(result.outcome)
        if result.technician:
            caller = Caller(caller.chat_id, ChatRole.TECHNICIAN, technician=result.technician)
        return BotReply(reply, self._menu(caller))

    async def _approve_registration(self, caller: Caller, registration_id: str) -> BotReply:
        self._require_admin(caller)
        registration, _ = await self._registration.approve(
            registration_id, actor=f"chat:{caller.display_name}",
        )
        return BotReply(texts.registration_decided(registration))

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _cmd_jobs(self, caller: Caller, event: ChatEvent) -> BotReply:
        if caller.role == ChatRole.ADMIN:
            open_statuses = [s for s in JobStatus if s not in TERMINAL_STATUSES]
            lines = []
            for job in await self._jobs.list_jobs(open_statuses):
                lines.append(texts.job_line(job, await self._jobs.count_active_assignments(job.id)))
            return BotReply(texts.job_list("Open jobs", lines, "There are no open jobs."))

        technician = self._require_technician(caller)
        lines: list[str] = []
        actions: list[list[ChatAction]] = []
        for job in await self._jobs.list_jobs(CLAIMABLE_STATUSES):
            if not job.is_approved:
                continue
            assignments = await self._jobs.list_assignments(job.id)
            if any(a.technician_id == technician.id for a in assignments):
                continue
            crew = sum(1 for a in assignments if a.is_active)
            if crew >= MAX_TECHNICIANS_PER_JOB:
                continue
            # Admin-routed settings jobs are not offered to field crews
            if self._dispatcher.audience_for(job) == Audience.ADMINS and not technician.is_admin:
                continue
            lines.append(texts.job_line(job, crew))
            if len(actions) < MAX_LISTED_JOBS:
                actions.append([ChatAction(f"{texts.BTN_TAKE_JOB} #{job.number}", f"take_job_{job.id}")])
        return BotReply(
            texts.job_list("Available jobs", lines, "No jobs are available right now."),
            actions,
        )

    async def _cmd_my_jobs(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        lines: list[str] = []
        actions: list[list[ChatAction]] = []
        for job in await self._active_jobs(technician):
            lines.append(texts.job_line(job, await self._jobs.count_active_assignments(job.id)))
            if job.status == JobStatus.ASSIGNED:
                actions.append([ChatAction(f"{texts.BTN_START_JOB} #{job.number}", f"start_job_{job.id}")])
            else:
                actions.append([ChatAction(f"{texts.BTN_COMPLETE_JOB} #{job.number}", f"complete_job_{job.id}")])
        return BotReply(texts.job_list("Your jobs", lines, "You have no active jobs."), actions)

    async def _cmd_take(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        return await self._take(technician, await self._job_from_args(event, "take"))

    async def _cmd_begin(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        return await self._begin(technician, await self._job_from_args(event, "begin"))

    async def _cmd_done(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        return await self._request_completion(technician, await self._job_from_args(event, "done"))

    async def _take(self, technician: Technician, job: Job) -> BotReply:
        await self._engine.claim_job(job.id, technician.id)
        crew = await self._jobs.count_active_assignments(job.id)
        if crew >= MAX_TECHNICIANS_PER_JOB:
            await self._notify_crew(job, technician, texts.crew_complete(job))
        return BotReply(
            texts.claim_success(job, crew),
            [[ChatAction(f"{texts.BTN_START_JOB} #{job.number}", f"start_job_{job.id}")]],
        )

    async def _begin(self, technician: Technician, job: Job) -> BotReply:
        job = await self._engine.start_job(job.id, technician.id)
        return BotReply(
            texts.start_success(job),
            [[ChatAction(f"{texts.BTN_COMPLETE_JOB} #{job.number}", f"complete_job_{job.id}")]],
        )

    async def _request_completion(self, technician: Technician, job: Job) -> BotReply:
        job = await self._engine.check_completion_ready(job.id, technician.id)
        if job.status == JobStatus.COMPLETED:
            return BotReply(texts.completion_success(job))
        await self._sessions.begin(
            technician.chat_id, SessionStep.AWAITING_COMPLETION_PHOTO, job_id=job.id,
        )
        return BotReply(texts.ask_completion_photo(job), [[ChatAction(texts.BTN_BACK)]])

    async def _handle_photo(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        session = await self._sessions.get(caller.chat_id)
        if session and session.step == SessionStep.AWAITING_COMPLETION_PHOTO:
            job_id = session.data["job_id"]
        else:
            active = [j for j in await self._active_jobs(technician) if j.status in WORKING_STATUSES]
            if not active:
                return BotReply("You have no active job to attach this photo to.")
            if len(active) > 1:
                return BotReply(
                    "You have several active jobs. Use /done &lt;no&gt; first to choose one."
                )
            job_id = active[0].id

        job = await self._engine.complete_job(job_id, technician.id, event.photo_ref)
        await self._sessions.clear(caller.chat_id)
        await self._notify_crew(job, technician, texts.completion_success(job))
        return BotReply(texts.completion_success(job), self._menu(caller))

    async def _step_photo_text(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        job = await self._engine.get_job(session.data["job_id"])
        return BotReply(texts.ask_completion_photo(job), [[ChatAction(texts.BTN_BACK)]])

    async def _active_jobs(self, technician: Technician) -> list[Job]:
        jobs = []
        for assignment in await self._jobs.list_technician_assignments(technician.id):
            if not assignment.is_active:
                continue
            job = await self._jobs.get_job(assignment.job_id)
            if job and not job.is_terminal:
                jobs.append(job)
        return jobs

    async def _job_from_args(self, event: ChatEvent, command: str) -> Job:
        if not event.args:
            raise ValidationError(texts.usage(command, "<job number>"))
        number = event.args[0].strip().upper()
        job = await self._jobs.get_job_by_number(number)
        if job is None:
            raise NotFoundError(f"Job {number} not found.")
        return job

    async def _notify_crew(self, job: Job, actor: Technician, text: str) -> None:
        """Tell the other technicians on ``job``; the actor gets the direct reply."""
        chat_ids = []
        for assignment in await self._jobs.list_assignments(job.id):
            if assignment.technician_id == actor.id:
                continue
            other = await self._technicians.get(assignment.technician_id)
            if other and other.chat_id:
                chat_ids.append(other.chat_id)
        if chat_ids:
            await self._dispatcher.broadcast(text, chat_ids)

    # ------------------------------------------------------------------
    # Location / status
    # ------------------------------------------------------------------

    async def _cmd_location(self, caller: Caller, event: ChatEvent) -> BotReply:
        self._require_technician(caller)
        return BotReply(texts.ASK_LOCATION)

    async def _handle_location(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        if event.latitude is None or event.longitude is None:
            raise ValidationError("Location is missing coordinates.")
        technician.latitude = event.latitude
        technician.longitude = event.longitude
        technician.last_location_at = self._clock()
        await self._technicians.upsert(technician)
        logger.info("Technician location updated", extra={"technician_id": technician.id})
        return BotReply(texts.LOCATION_UPDATED)

    async def _cmd_status(self, caller: Caller, event: ChatEvent) -> BotReply:
        technician = self._require_technician(caller)
        report = await technician_status(self._jobs, technician.id, tz=self._tz, clock=self._clock)
        return BotReply(texts.technician_status(technician, report), self._menu(caller))

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def _cmd_broadcast(self, caller: Caller, event: ChatEvent) -> BotReply:
        self._require_admin(caller)
        if event.args:
            return await self._send_broadcast(caller, " ".join(event.args))
        await self._sessions.begin(caller.chat_id, SessionStep.AWAITING_BROADCAST_TEXT)
        return BotReply(texts.ASK_BROADCAST_TEXT, [[ChatAction(texts.BTN_BACK)]])

    async def _step_broadcast_text(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        self._require_admin(caller)
        return await self._send_broadcast(caller, text)

    async def _send_broadcast(self, caller: Caller, text: str) -> BotReply:
        text = text.strip()
        if not text:
            raise ValidationError(texts.EMPTY_BROADCAST)
        recipients = await self._dispatcher.technician_recipients()
        result = await self._dispatcher.broadcast(
            texts.broadcast_message(text, caller.display_name),
            [r.chat_id for r in recipients if r.chat_id != caller.chat_id],
        )
        await self._sessions.clear(caller.chat_id)
        audit_event(
            "broadcast.send",
            actor=f"chat:{caller.display_name}",
            detail=f"sent={result.succeeded} failed={result.failed}",
        )
        return BotReply(texts.broadcast_result(result.succeeded, result.failed), self._menu(caller))

    # ------------------------------------------------------------------
    # Admin login: username -> password -> phone
    # ------------------------------------------------------------------

    async def _cmd_admin_login(self, caller: Caller, event: ChatEvent) -> BotReply:
        if caller.admin:
            return BotReply(texts.ALREADY_ADMIN, self._menu(caller))
        if caller.technician:
            return BotReply(texts.LOGIN_CHAT_IS_TECHNICIAN)

        if len(event.args) >= 2:
            admin = await self._check_credentials(caller, event.args[0], event.args[1])
            if admin is None:
                return BotReply(texts.LOGIN_FAILED)
            phone = event.args[2] if len(event.args) > 2 else None
            if admin.phone and phone is None:
                await self._sessions.begin(
                    caller.chat_id, SessionStep.AWAITING_LOGIN_PHONE, admin_id=admin.id,
                )
                return self._ask_login_phone()
            return await self._finish_login(caller, admin, phone)

        await self._sessions.begin(caller.chat_id, SessionStep.AWAITING_LOGIN_USERNAME)
        return BotReply(texts.ASK_LOGIN_USERNAME, [[ChatAction(texts.BTN_BACK)]])

    async def _step_login_username(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        if not text:
            return BotReply(texts.ASK_LOGIN_USERNAME)
        await self._sessions.advance(session, SessionStep.AWAITING_LOGIN_PASSWORD, username=text)
        return BotReply(texts.ASK_LOGIN_PASSWORD, [[ChatAction(texts.BTN_BACK)]])

    async def _step_login_password(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        admin = await self._check_credentials(caller, session.data.get("username", ""), text)
        if admin is None:
            await self._sessions.clear(caller.chat_id)
            return BotReply(texts.LOGIN_FAILED, self._menu(caller))
        if admin.phone:
            # The password itself is never kept in the session
            session.data.pop("username", None)
            await self._sessions.advance(session, SessionStep.AWAITING_LOGIN_PHONE, admin_id=admin.id)
            return self._ask_login_phone()
        return await self._finish_login(caller, admin, None)

    @staticmethod
    def _ask_login_phone() -> BotReply:
        return BotReply(texts.ASK_LOGIN_PHONE, [[ChatAction(texts.BTN_BACK)]])

    async def _step_login_phone(self, caller: Caller, session: ConversationSession, text: str) -> BotReply:
        admin = await self._admins.get(session.data.get("admin_id", ""))
        await self._sessions.clear(caller.chat_id)
        if admin is None:
            return BotReply(texts.LOGIN_FAILED, self._menu(caller))
        return await self._finish_login(caller, admin, text)

    async def _check_credentials(self, caller: Caller, username: str, password: str) -> Optional[AdminUser]:
        admin = await self._admins.find_by_username(username.strip())
        if admin is None or not verify_password(password, admin.password_hash):
            logger.warning(
                f"Admin login failed for chat {mask_chat_id(caller.chat_id)}",
                extra={"chat_id": caller.chat_id},
            )
            audit_event("admin.login_failed", actor=f"chat:{mask_chat_id(caller.chat_id)}")
            return None
        return admin

    async def _finish_login(self, caller: Caller, admin: AdminUser, phone: Optional[str]) -> BotReply:
        await self._sessions.clear(caller.chat_id)
        if admin.phone:
            try:
                matches = normalize_phone(phone) == normalize_phone(admin.phone)
            except ValidationError:
                matches = False
            if not matches:
                audit_event("admin.login_failed", actor=f"chat:{mask_chat_id(caller.chat_id)}", detail="phone mismatch")
                return BotReply(texts.LOGIN_PHONE_MISMATCH, self._menu(caller))
        if admin.chat_id and admin.chat_id != caller.chat_id:
            return BotReply(texts.LOGIN_ADMIN_LINKED_ELSEWHERE, self._menu(caller))
        if await self._technicians.find_by_chat(caller.chat_id):
            return BotReply(texts.LOGIN_CHAT_IS_TECHNICIAN)

        admin.chat_id = caller.chat_id
        admin = await self._admins.upsert(admin)
        audit_event("admin.login", actor=admin.username, detail=f"chat={mask_chat_id(caller.chat_id)}")
        caller = Caller(caller.chat_id, ChatRole.ADMIN, admin=admin)
        return BotReply(texts.login_success(admin), self._menu(caller))

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_technician(caller: Caller) -> Technician:
        if caller.technician is None:
            if caller.role == ChatRole.UNKNOWN:
                raise PermissionDeniedError(texts.NOT_REGISTERED)
            raise PermissionDeniedError(texts.TECHNICIAN_ONLY)
        return caller.technician

    @staticmethod
    def _require_admin(caller: Caller) -> None:
        if not caller.can_admin:
            raise PermissionDeniedError(texts.ADMIN_ONLY)
