# fieldops/infra/audit_log.py
"""
Audit logging for administrative dispatch operations.

Job approvals, rejections, cancellations, registration decisions and admin
chat logins are recorded on a dedicated logger named "audit" so they can be
routed to a separate sink through logging configuration.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    actor: str | None = None,
    job_id: str | None = None,
    registration_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "job.approve", "registration.reject")
        actor: Who performed it (admin id, "http-admin", "system")
        job_id: Job affected (if applicable)
        registration_id: Registration affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "actor": actor or "",
        "detail": detail,
    }
    if job_id:
        record["job_id"] = job_id
    if registration_id:
        record["registration_id"] = registration_id
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} actor={actor or '-'} job={job_id or '-'} "
        f"registration={registration_id or '-'} {detail}",
        extra=record,
    )
