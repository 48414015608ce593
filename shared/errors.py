"""
Error taxonomy for the booking engine.

Every expected failure is a BookingEngineError carrying a stable error_code,
a human-readable message and a details dict. BookingEngine (booking/engine.py)
turns these into {"success": False, "error_code", "error_message", "details"}
results, so none of them crosses the public boundary as an exception.

TransportError never leaves the retry worker: it is recorded on the
notification (status / last_error) instead.
"""

from datetime import datetime
from typing import Any


class BookingEngineError(Exception):
    """Base exception for all expected booking engine failures."""

    error_code: str = "BOOKING_ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_result(self) -> dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
        }


class ValidationError(BookingEngineError):
    """Malformed input: bad date/time format, missing required field."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(BookingEngineError):
    """An id does not match any record."""

    error_code = "NOT_FOUND"


class ServiceNotFoundError(NotFoundError):
    error_code = "SERVICE_NOT_FOUND"

    def __init__(self, service_id: Any):
        super().__init__(
            f"Service {service_id} not found",
            details={"service_id": str(service_id)},
        )


class BookingNotFoundError(NotFoundError):
    error_code = "BOOKING_NOT_FOUND"

    def __init__(self, booking_id: Any):
        super().__init__(
            f"Booking {booking_id} not found",
            details={"booking_id": str(booking_id)},
        )


class ClientNotFoundError(NotFoundError):
    error_code = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: Any):
        super().__init__(
            f"Client {client_id} not found",
            details={"client_id": str(client_id)},
        )


class NotificationNotFoundError(NotFoundError):
    error_code = "NOTIFICATION_NOT_FOUND"

    def __init__(self, notification_id: Any):
        super().__init__(
            f"Notification {notification_id} not found",
            details={"notification_id": str(notification_id)},
        )


class ServiceInactiveError(BookingEngineError):
    error_code = "SERVICE_INACTIVE"

    def __init__(self, service_id: Any):
        super().__init__(
            f"Service {service_id} is not active",
            details={"service_id": str(service_id)},
        )


class SlotUnavailableError(BookingEngineError):
    """Policy or conflict prevents the booking / reschedule."""

    error_code = "SLOT_UNAVAILABLE"

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        self.reason = reason
        super().__init__(f"Slot unavailable: {reason}", details=details)


class InvalidStateTransitionError(BookingEngineError):
    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_status: Any, to_status: Any):
        self.from_status = str(from_status)
        self.to_status = str(to_status)
        super().__init__(
            f"Cannot transition booking from {self.from_status} to {self.to_status}",
            details={"from": self.from_status, "to": self.to_status},
        )


class ReminderWindowPassedError(BookingEngineError):
    """A computed reminder time is already in the past."""

    error_code = "REMINDER_WINDOW_PASSED"

    def __init__(self, scheduled_for: datetime, now: datetime, offset_hours: float):
        self.scheduled_for = scheduled_for
        self.now = now
        self.offset_hours = offset_hours
        super().__init__(
            f"Reminder {offset_hours}h before the appointment would fire at "
            f"{scheduled_for.isoformat()}, which is before {now.isoformat()}",
            details={
                "scheduled_for": scheduled_for.isoformat(),
                "offset_hours": offset_hours,
            },
        )


class SlotConflictError(BookingEngineError):
    """
    Raised by a Store when an insert/update would break the one-active-booking
    per slot invariant or the daily cap. Mapped to SlotUnavailableError.
    """

    error_code = "SLOT_CONFLICT"


class TransportError(BookingEngineError):
    """Notifier failure. Always recoverable through the channel retry policy."""

    error_code = "TRANSPORT_ERROR"
