# fieldops/core/registration.py
"""
Registration Approval Workflow (technician onboarding).

``submit`` is idempotent against resubmission:

    active technician owns the phone  -> relink chat, ALREADY_TECHNICIAN
    pending row for this chat         -> ALREADY_PENDING (no new row)
    pending row for phone, other chat -> DuplicateRegistrationError
    rejected row for this chat        -> reopen in place, REOPENED
    otherwise                         -> new PENDING row, CREATED
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Optional

from fieldops.core import texts
from fieldops.core.domain import (
    ChatAction,
    Registration,
    RegistrationOutcome,
    RegistrationResult,
    RegistrationStatus,
    Technician,
    utcnow,
)
from fieldops.core.errors import (
    DuplicateRegistrationError,
    MessagingDeliveryError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from fieldops.core.phone import mask_phone, normalize_phone
from fieldops.core.ports import AdminRoster, MessagingGateway, RegistrationRepository, TechnicianRegistry
from fieldops.core.routing import DispatchController
from fieldops.infra.audit_log import audit_event
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)

MIN_REJECTION_REASON = 3


class RegistrationWorkflow:
    def __init__(
        self,
        registrations: RegistrationRepository,
        technicians: TechnicianRegistry,
        admins: AdminRoster,
        gateway: MessagingGateway,
        dispatcher: DispatchController,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._registrations = registrations
        self._technicians = technicians
        self._admins = admins
        self._gateway = gateway
        self._dispatcher = dispatcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        chat_id: str,
        phone: str,
        profile: Optional[dict] = None,
    ) -> RegistrationResult:
        phone = normalize_phone(phone)
        name = ((profile or {}).get("name") or "").strip()

        if await self._admins.find_by_chat(chat_id):
            raise StateConflictError("This chat is linked to an admin account and cannot register as a technician.")

        technician = await self._technicians.find_by_phone(phone)
        if technician and technician.is_active:
            await self._unlink_other_technician(chat_id, keep_id=technician.id)
            technician.chat_id = chat_id
            technician.is_active = True
            technician = await self._technicians.upsert(technician)
            AppMetrics.registration(RegistrationOutcome.ALREADY_TECHNICIAN.value)
            logger.info(
                f"Registration relinked existing technician phone={mask_phone(phone)}",
                extra={"chat_id": chat_id, "technician_id": technician.id},
            )
            return RegistrationResult(RegistrationOutcome.ALREADY_TECHNICIAN, technician=technician)

        pending_here = await self._registrations.find_pending_by_chat(chat_id)
        if pending_here:
            AppMetrics.registration(RegistrationOutcome.ALREADY_PENDING.value)
            return RegistrationResult(RegistrationOutcome.ALREADY_PENDING, registration=pending_here)

        pending_phone = await self._registrations.find_pending_by_phone(phone)
        if pending_phone and pending_phone.chat_id != chat_id:
            AppMetrics.registration("duplicate")
            raise DuplicateRegistrationError(
                "This phone number already has a pending registration from another chat."
            )

        now = self._clock()
        latest = await self._registrations.find_latest_by_chat(chat_id)
        if latest and latest.status == RegistrationStatus.REJECTED:
            latest.phone = phone
            latest.name = name or latest.name
            latest.status = RegistrationStatus.PENDING
            latest.rejection_reason = None
            latest.reviewed_at = None
            latest.updated_at = now
            registration = await self._registrations.save(latest)
            outcome = RegistrationOutcome.REOPENED
        else:
            registration = await self._registrations.save(Registration(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                phone=phone,
                name=name,
                created_at=now,
                updated_at=now,
            ))
            outcome = RegistrationOutcome.CREATED

        AppMetrics.registration(outcome.value)
        logger.info(
            f"Registration {outcome.value}: phone={mask_phone(phone)}",
            extra={"chat_id": chat_id, "registration_id": registration.id},
        )
        await self._notify_admins(registration)
        return RegistrationResult(outcome, registration=registration)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def approve(
        self,
        registration_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        *,
        actor: str = "system",
    ) -> tuple[Registration, Technician]:
        """Create or reactivate the technician and mark the registration APPROVED."""
        registration = await self._load_pending(registration_id)
        phone = normalize_phone(phone or registration.phone)
        name = (name or registration.name or "").strip()
        if not name:
            raise ValidationError("A technician name is required.")

        existing = await self._technicians.find_by_phone(phone)
        if existing and existing.is_active:
            raise DuplicateRegistrationError(
                f"An active technician already uses phone {mask_phone(phone)}."
            )

        await self._unlink_other_technician(registration.chat_id, keep_id=existing.id if existing else None)
        if existing:
            existing.name = name
            existing.chat_id = registration.chat_id
            existing.is_active = True
            existing.is_available = True
            technician = await self._technicians.upsert(existing)
        else:
            technician = await self._technicians.upsert(Technician(
                id=str(uuid.uuid4()),
                name=name,
                phone=phone,
                chat_id=registration.chat_id,
                is_active=True,
                is_available=True,
                is_admin=False,
                created_at=self._clock(),
            ))

        now = self._clock()
        registration.status = RegistrationStatus.APPROVED
        registration.name = name
        registration.phone = phone
        registration.reviewed_at = now
        registration.updated_at = now
        registration.technician_id = technician.id
        registration = await self._registrations.save(registration)

        audit_event(
            "registration.approve",
            actor=actor,
            registration_id=registration.id,
            detail=f"technician={technician.id}",
        )
        await self._notify(registration.chat_id, texts.registration_approved(technician), "registration_approved")
        return registration, technician

    async def reject(self, registration_id: str, reason: str, *, actor: str = "system") -> Registration:
        reason = (reason or "").strip()
        if len(reason) < MIN_REJECTION_REASON:
            raise ValidationError(f"Rejection reason must be at least {MIN_REJECTION_REASON} characters.")

        registration = await self._load_pending(registration_id)
        now = self._clock()
        registration.status = RegistrationStatus.REJECTED
        registration.rejection_reason = reason
        registration.reviewed_at = now
        registration.updated_at = now
        registration = await self._registrations.save(registration)

        audit_event("registration.reject", actor=actor, registration_id=registration.id, detail=reason)
        await self._notify(registration.chat_id, texts.registration_rejected(reason), "registration_rejected")
        return registration

    async def list_pending(self) -> list[Registration]:
        return await self._registrations.list_by_status(RegistrationStatus.PENDING)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_pending(self, registration_id: str) -> Registration:
        registration = await self._registrations.get(registration_id)
        if registration is None:
            raise NotFoundError(f"Registration {registration_id} not found.")
        if registration.status != RegistrationStatus.PENDING:
            raise StateConflictError(
                f"Registration is already {registration.status.value}."
            )
        return registration

    async def _unlink_other_technician(self, chat_id: str, keep_id: Optional[str]) -> None:
        """A chat handle identifies at most one technician."""
        holder = await self._technicians.find_by_chat(chat_id)
        if holder and holder.id != keep_id:
            holder.chat_id = None
            await self._technicians.upsert(holder)
            logger.info(
                "Chat handle moved away from previous technician",
                extra={"chat_id": chat_id, "technician_id": holder.id},
            )

    async def _notify_admins(self, registration: Registration) -> None:
        recipients = await self._dispatcher.admin_recipients()
        if not recipients:
            return
        result = await self._dispatcher.broadcast(
            texts.registration_admin_notice(registration),
            [r.chat_id for r in recipients],
            [[ChatAction(texts.BTN_APPROVE_REGISTRATION, f"approve_reg_{registration.id}")]],
        )
        AppMetrics.notification("registration_admin_notice", "sent" if not result.failed else "partial")

    async def _notify(self, chat_id: str, text: str, kind: str) -> None:
        try:
            await self._gateway.send(chat_id, text)
            AppMetrics.notification(kind, "sent")
        except MessagingDeliveryError as exc:
            AppMetrics.notification(kind, "failed")
            logger.warning(f"Notification {kind} to {mask_chat_id(chat_id)} failed: {exc.detail}")
