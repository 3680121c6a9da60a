"""Booking error taxonomy and the FastAPI handler that renders it."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookingError(Exception):
    """Base error carrying a machine-readable reason and an HTTP status."""

    status_code = 400
    default_reason = "booking_error"

    def __init__(self, message: str, reason: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message, "reason": self.reason}
        payload.update({key: value for key, value in self.extra.items() if value is not None})
        return payload


class Unauthorized(BookingError):
    status_code = 401
    default_reason = "unauthorized"


class Forbidden(BookingError):
    status_code = 403
    default_reason = "forbidden"


class NotFound(BookingError):
    status_code = 404
    default_reason = "not_found"


class InvalidState(BookingError):
    status_code = 409
    default_reason = "invalid_state"


class DeadlinePassed(BookingError):
    status_code = 410
    default_reason = "deadline_passed"


class ValidationFailed(BookingError):
    status_code = 422
    default_reason = "validation_error"


class SlotContention(BookingError):
    """The slot lock stayed contended after every retry; safe to retry later."""

    status_code = 503
    default_reason = "conflict"


def booking_error_handler(_: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s: %s", exc.reason, exc.message)
    headers = {"Retry-After": "1"} if isinstance(exc, SlotContention) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def apply_error_handlers(app: FastAPI) -> None:
    """Render BookingError subclasses as structured JSON responses."""

    app.add_exception_handler(BookingError, booking_error_handler)  # type: ignore[arg-type]
