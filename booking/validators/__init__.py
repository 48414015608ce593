"""
Input validators for the public booking operations.

Validators:
- parse_uuid: UUID or UUID string
- parse_date: date or YYYY-MM-DD
- parse_time: time or HH:MM
- parse_channel: optional notification channel name
"""

from booking.validators.booking_validators import (
    parse_channel,
    parse_date,
    parse_time,
    parse_uuid,
)

__all__ = [
    "parse_channel",
    "parse_date",
    "parse_time",
    "parse_uuid",
]
