# fieldops/core/routing.py
"""
Dispatch / Routing Controller.

Audience rule:
    REPAIR + settings-issue sub-category -> admin pool
        (AdminUsers with a chat, plus active technicians flagged is_admin)
    anything else                         -> technician pool
        (active technicians with a chat)

Every recipient is an independent send.  Sends run concurrently, bounded
by a semaphore, and each failure is captured in the returned
``DispatchResult`` instead of being raised.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable

from fieldops.core import texts
from fieldops.core.domain import (
    DEFAULT_SETTINGS_ISSUE,
    Audience,
    ChatAction,
    DispatchResult,
    Job,
)
from fieldops.core.errors import MessagingDeliveryError
from fieldops.core.ports import AdminRoster, JobStore, MessagingGateway, TechnicianRegistry
from fieldops.infra.logging_config import get_logger, mask_chat_id
from fieldops.infra.metrics import AppMetrics, observe_histogram

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    chat_id: str
    name: str


class DispatchController:
    def __init__(
        self,
        technicians: TechnicianRegistry,
        admins: AdminRoster,
        jobs: JobStore,
        gateway: MessagingGateway,
        *,
        fanout_limit: int = 10,
        settings_issue_category: str = DEFAULT_SETTINGS_ISSUE,
    ):
        self._technicians = technicians
        self._admins = admins
        self._jobs = jobs
        self._gateway = gateway
        self._fanout_limit = max(1, fanout_limit)
        self._settings_issue_category = settings_issue_category

    # ------------------------------------------------------------------
    # Audience
    # ------------------------------------------------------------------

    def audience_for(self, job: Job) -> Audience:
        if job.is_settings_issue(self._settings_issue_category):
            return Audience.ADMINS
        return Audience.TECHNICIANS

    async def select_audience(self, job: Job) -> tuple[Audience, list[Recipient]]:
        audience = self.audience_for(job)
        if audience == Audience.ADMINS:
            return audience, await self.admin_recipients()
        return audience, await self.technician_recipients()

    async def admin_recipients(self) -> list[Recipient]:
        recipients = [
            Recipient(admin.chat_id, admin.name or admin.username)
            for admin in await self._admins.list_with_chat()
            if admin.chat_id
        ]
        recipients.extend(
            Recipient(tech.chat_id, tech.name)
            for tech in await self._technicians.list_active_with_chat()
            if tech.is_admin and tech.chat_id
        )
        return _unique(recipients)

    async def technician_recipients(self) -> list[Recipient]:
        return _unique(
            Recipient(tech.chat_id, tech.name)
            for tech in await self._technicians.list_active_with_chat()
            if tech.chat_id
        )

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch(self, job: Job) -> DispatchResult:
        """Notify the job's audience with a claim action bound to ``job.id``."""
        audience, recipients = await self.select_audience(job)
        text = texts.job_broadcast(job, audience)
        actions = [[ChatAction(texts.BTN_TAKE_JOB, f"take_job_{job.id}")]]

        with AppMetrics.track_dispatch_time(audience.value):
            result = await self._fan_out(recipients, text, actions)

        result.job_id = job.id
        result.audience = audience
        AppMetrics.dispatch_sent(audience.value, result.succeeded, result.failed)
        observe_histogram("dispatch_audience_size", float(result.attempted), audience=audience.value)
        logger.info(
            f"Job {job.number} dispatched to {audience.value}: "
            f"attempted={result.attempted}, ok={result.succeeded}, failed={result.failed}",
            extra={"job_id": job.id},
        )
        return result

    async def broadcast(
        self,
        text: str,
        chat_ids: Iterable[str],
        actions: list[list[ChatAction]] | None = None,
    ) -> DispatchResult:
        """Same message to an explicit list of chats (admin broadcasts, notices)."""
        recipients = _unique(Recipient(chat_id, "") for chat_id in chat_ids if chat_id)
        return await self._fan_out(recipients, text, actions)

    async def notify_assigned(self, job: Job, text: str) -> DispatchResult:
        """Status-change notice to every technician assigned to ``job``."""
        chat_ids = []
        for assignment in await self._jobs.list_assignments(job.id):
            tech = await self._technicians.get(assignment.technician_id)
            if tech and tech.chat_id:
                chat_ids.append(tech.chat_id)
        result = await self.broadcast(text, chat_ids)
        result.job_id = job.id
        return result

    async def _fan_out(
        self,
        recipients: list[Recipient],
        text: str,
        actions: list[list[ChatAction]] | None,
    ) -> DispatchResult:
        result = DispatchResult(attempted=len(recipients))
        semaphore = asyncio.Semaphore(self._fanout_limit)

        async def _send_one(recipient: Recipient) -> None:
            async with semaphore:
                try:
                    await self._gateway.send(recipient.chat_id, text, actions)
                    result.succeeded += 1
                except MessagingDeliveryError as exc:
                    result.failed += 1
                    result.per_recipient_errors[recipient.chat_id] = exc.detail
                    logger.warning(
                        f"Delivery to {mask_chat_id(recipient.chat_id)} failed: {exc.detail}"
                    )
                except Exception as exc:
                    # Unexpected gateway fault: isolate it to this recipient
                    result.failed += 1
                    result.per_recipient_errors[recipient.chat_id] = f"{exc.__class__.__name__}: {exc}"
                    logger.error(
                        f"Delivery to {mask_chat_id(recipient.chat_id)} crashed: {exc}",
                        exc_info=True,
                    )

        await asyncio.gather(*(_send_one(r) for r in recipients))
        return result


def _unique(recipients: Iterable[Recipient]) -> list[Recipient]:
    seen: set[str] = set()
    unique: list[Recipient] = []
    for recipient in recipients:
        if recipient.chat_id in seen:
            continue
        seen.add(recipient.chat_id)
        unique.append(recipient)
    return unique
