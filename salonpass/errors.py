"""Domain errors and their HTTP rendering."""
from __future__ import annotations

from flask import Flask, jsonify


class SalonPassError(Exception):
    """Base class for errors that map onto an API response."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": self.message}


class ValidationError(SalonPassError):
    status_code = 400
    code = "invalid_payload"


class Incomplete(ValidationError):
    code = "not_enough_stamps"


class InvalidStatus(ValidationError):
    code = "invalid_status"


class InvalidTransition(ValidationError):
    code = "invalid_transition"


class Unauthorized(SalonPassError):
    status_code = 401
    code = "unauthorized"


class NotFound(SalonPassError):
    status_code = 404
    code = "not_found"


class Conflict(SalonPassError):
    status_code = 409
    code = "conflict"


class SlotConflict(Conflict):
    code = "slot_conflict"


class AlreadyComplete(Conflict):
    code = "already_full"


class GiftCardUnavailable(Conflict):
    code = "gift_card_unavailable"


class RateLimited(SalonPassError):
    status_code = 429
    code = "rate_limited"


class UpstreamFailure(SalonPassError):
    """An external collaborator (calendar, wallet, WhatsApp) failed.

    Raised by the HTTP clients and caught by the adapters that call them; the
    core write that triggered the call is never rolled back because of it.
    """

    status_code = 503
    code = "upstream_failure"

    def __init__(self, message: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_gone(self) -> bool:
        return self.status in (404, 410)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SalonPassError)
    def handle_domain_error(exc: SalonPassError):
        return jsonify(exc.to_dict()), exc.status_code
