"""
Input validation for the public booking operations.

BookingEngine accepts either typed values or their string forms (as they
arrive from an API layer). These helpers normalize them and raise
ValidationError on malformed input, before any store access happens.
"""

import logging
from datetime import date, datetime, time
from typing import Any
from uuid import UUID

from booking.models import Channel
from shared.errors import ValidationError

logger = logging.getLogger(__name__)


def parse_uuid(value: Any, field: str) -> UUID:
    """
    Normalize a UUID or UUID string.

    Args:
        value: UUID instance or its string form
        field: Field name reported in the error details

    Returns:
        UUID

    Raises:
        ValidationError: missing value or not a UUID

    Example:
        >>> parse_uuid("a3c1e0a2-6f0e-4c1f-9a51-2f4d9b1e7c11", "service_id")
        UUID('a3c1e0a2-6f0e-4c1f-9a51-2f4d9b1e7c11')
    """
    if isinstance(value, UUID):
        return value
    if value is None or value == "":
        raise ValidationError(f"{field} is required", details={"field": field})
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(
            f"{field} is not a valid UUID: {value!r}", details={"field": field}
        ) from None


def parse_date(value: Any, field: str = "date") -> date:
    """Normalize a date or an ISO date string (YYYY-MM-DD)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field} is required (YYYY-MM-DD)", details={"field": field})
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(
            f"{field} must be YYYY-MM-DD, got {value!r}", details={"field": field}
        ) from None


def parse_time(value: Any, field: str = "time") -> time:
    """Normalize a time or an HH:MM string. Seconds are dropped."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field} is required (HH:MM)", details={"field": field})
    try:
        parsed = time.fromisoformat(value.strip())
    except ValueError:
        raise ValidationError(
            f"{field} must be HH:MM, got {value!r}", details={"field": field}
        ) from None
    return parsed.replace(second=0, microsecond=0, tzinfo=None)


def parse_channel(value: Any) -> Channel | None:
    """Normalize an optional channel name; None means "use the default"."""
    if value is None or isinstance(value, Channel):
        return value
    try:
        return Channel(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown channel {value!r}",
            details={"field": "channel", "allowed": [c.value for c in Channel]},
        ) from None
