"""
Appointment availability and notification delivery engine.

Public exports:
    - BookingEngine: dict-returning public operations
    - Store implementations live in database/ (InMemoryStore, SqlStore)
"""

from booking.engine import BookingEngine

__all__ = ["BookingEngine"]
