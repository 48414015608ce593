"""
Booking lifecycle state machine.

Public exports:
    - BookingLifecycle: create/confirm/reschedule/cancel/complete transitions
    - LifecycleResult: booking, event and notifications of a transition
"""

from booking.fsm.booking_lifecycle import (
    CANCEL_CASCADE_TYPES,
    RESCHEDULE_CASCADE_TYPES,
    BookingLifecycle,
    LifecycleResult,
)

__all__ = [
    "CANCEL_CASCADE_TYPES",
    "RESCHEDULE_CASCADE_TYPES",
    "BookingLifecycle",
    "LifecycleResult",
]
