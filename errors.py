"""Error taxonomy for the queue engine.

Every error carries a stable ``code`` (returned to clients), the HTTP status
the API layer maps it to, and whether the caller may retry.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"
    status_code = 400
    retryable = False

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_dict(self) -> dict:
        body = {"error": self.code, "detail": self.detail}
        if self.retryable:
            body["retryable"] = True
        return body


class SystemInactive(QueueError):
    code = "system_inactive"
    status_code = 409


class BelowMinimum(QueueError):
    code = "below_minimum"
    status_code = 400


class DuplicateNumber(QueueError):
    code = "duplicate_number"
    status_code = 409


class ManualModeDisabled(QueueError):
    code = "manual_mode_disabled"
    status_code = 400


class InvalidTransition(QueueError):
    code = "invalid_transition"
    status_code = 400


class NoTicketsWaiting(QueueError):
    code = "no_tickets_waiting"
    status_code = 404


class NotFound(QueueError):
    code = "not_found"
    status_code = 404


class Conflict(QueueError):
    """Concurrent writer won the race; re-read and try again."""

    code = "conflict"
    status_code = 409
    retryable = True


class ResetFailed(QueueError):
    code = "reset_failed"
    status_code = 500
