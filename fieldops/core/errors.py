# fieldops/core/errors.py
"""
Typed domain errors for the dispatch engine.

Each error carries an HTTP-style ``status_code`` and a user-facing
``detail``.  Chat handlers turn them into replies; the HTTP layer maps
them to ``HTTPException``.  ``MessagingDeliveryError`` is the one error
that is never surfaced to the caller of a fan-out: it is captured per
recipient and aggregated.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Malformed input such as an invalid phone number (400)."""

    status_code = 400


class PermissionDeniedError(DispatchError):
    """Chat command outside the caller's role (403)."""

    status_code = 403


class NotFoundError(DispatchError):
    """Job, technician or registration missing (404)."""

    status_code = 404


class CapacityExceededError(DispatchError):
    """Job already has its full crew (409)."""

    status_code = 409


class StateConflictError(DispatchError):
    """Illegal transition or per-job lock timeout (409)."""

    status_code = 409


class CompletionGateError(DispatchError):
    """Completion attempted without the full crew or without evidence (409)."""

    status_code = 409

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__("Cannot complete job, missing: " + ", ".join(self.missing))


class DuplicateRegistrationError(DispatchError):
    """Phone already pending from another chat, or already an active technician (409)."""

    status_code = 409


class MessagingDeliveryError(DispatchError):
    """Delivery to a single recipient failed (502).

    Attributes:
        chat_id:   Recipient chat handle.
        retryable: Whether a later attempt may succeed.
    """

    status_code = 502

    def __init__(self, chat_id: str, detail: str, *, retryable: bool = False):
        self.chat_id = chat_id
        self.retryable = retryable
        super().__init__(detail)
