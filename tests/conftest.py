"""
Test configuration and fixtures.

This module sets up test environment and provides shared fixtures for all tests.
"""

import os

import pytest

# Must be set BEFORE any imports of database.connection or shared.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TIMEZONE"] = "Europe/Madrid"
os.environ["DEFAULT_CHANNEL"] = "whatsapp"
os.environ["LOG_LEVEL"] = "DEBUG"

from booking.engine import BookingEngine  # noqa: E402
from booking.models import Client, Service  # noqa: E402
from database.memory_store import InMemoryStore  # noqa: E402
from shared.clock import FixedClock  # noqa: E402
from tests.helpers import NOW, FakeNotifier  # noqa: E402


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def haircut():
    """Haircut: Mon/Wed/Fri at 10:00, 11:00 and 12:00, up to 3 per day."""
    return Service(
        name="Haircut",
        duration_minutes=30,
        available_weekdays=["monday", "wednesday", "friday"],
        available_time_slots=["10:00", "11:00", "12:00"],
        max_daily_bookings=3,
        cancellation_policy_hours=24,
    )


@pytest.fixture
def client():
    return Client(name="Ana García", phone="+34612345678", email="ana@example.com")


@pytest.fixture
def other_client():
    return Client(name="Luis Pérez", phone="+34698765432")


@pytest.fixture
async def seeded_store(store, haircut, client, other_client):
    await store.save_service(haircut)
    await store.save_client(client)
    await store.save_client(other_client)
    return store


@pytest.fixture
def engine(seeded_store, notifier, clock):
    return BookingEngine(seeded_store, notifier, clock=clock, reminder_offsets_hours=[24, 2])
