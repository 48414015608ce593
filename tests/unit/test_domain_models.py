"""
Unit tests for booking domain records (booking/models.py).

Tests cover:
- Service slot/weekday normalization and offer checks
- Booking active flag
- RetryPolicy validation, delay lookup and per-channel defaults/overrides
"""

from datetime import date, time, timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from booking.models import (
    DEFAULT_RETRY_POLICIES,
    Booking,
    BookingStatus,
    Channel,
    Priority,
    RetryPolicy,
    Service,
    Weekday,
    build_retry_policies,
)
from tests.helpers import NOW


class TestService:
    """Tests for the Service snapshot."""

    def test_weekdays_accept_names_and_ints(self):
        service = Service(duration_minutes=30, available_weekdays=["Monday", 2, Weekday.FRIDAY])
        assert service.available_weekdays == frozenset(
            {Weekday.MONDAY, Weekday.WEDNESDAY, Weekday.FRIDAY}
        )

    def test_unknown_weekday_name_rejected(self):
        with pytest.raises(PydanticValidationError):
            Service(duration_minutes=30, available_weekdays=["funday"])

    def test_time_slots_sorted_and_deduplicated(self):
        service = Service(
            duration_minutes=30,
            available_time_slots=["12:00", "10:00", time(10, 0), "11:30"],
        )
        assert service.available_time_slots == (time(10, 0), time(11, 30), time(12, 0))

    def test_offers_day_and_slot(self, haircut):
        assert haircut.offers_day(date(2025, 12, 15))  # Monday
        assert not haircut.offers_day(date(2025, 12, 16))  # Tuesday
        assert haircut.offers_slot(time(10, 0))
        assert not haircut.offers_slot(time(10, 30))

    def test_service_is_immutable(self, haircut):
        with pytest.raises(PydanticValidationError):
            haircut.name = "Other"

    def test_defaults(self):
        service = Service(duration_minutes=45)
        assert service.cancellation_policy_hours == 24
        assert service.max_daily_bookings is None
        assert service.is_active is True

    def test_non_positive_duration_rejected(self):
        with pytest.raises(PydanticValidationError):
            Service(duration_minutes=0)


class TestBooking:
    """Tests for the Booking record."""

    @pytest.mark.parametrize(
        "status,active",
        [
            (BookingStatus.PENDING, True),
            (BookingStatus.CONFIRMED, True),
            (BookingStatus.COMPLETED, False),
            (BookingStatus.CANCELLED, False),
        ],
    )
    def test_is_active(self, haircut, client, status, active):
        booking = Booking(
            client_id=client.id,
            service_id=haircut.id,
            date=date(2025, 12, 15),
            time=time(10, 0),
            status=status,
            created_at=NOW,
            updated_at=NOW,
        )
        assert booking.is_active is active


class TestRetryPolicy:
    """Tests for per-channel retry policies."""

    def test_delay_for_reuses_last_entry(self):
        policy = RetryPolicy.from_minutes(5, [1, 5])
        assert policy.delay_for(0) == timedelta(minutes=1)
        assert policy.delay_for(1) == timedelta(minutes=5)
        assert policy.delay_for(4) == timedelta(minutes=5)

    @pytest.mark.parametrize("delays", [[0], [5, -1]])
    def test_non_positive_delay_rejected(self, delays):
        with pytest.raises(PydanticValidationError, match="positive"):
            RetryPolicy.from_minutes(2, delays)

    def test_retries_without_schedule_rejected(self):
        with pytest.raises(PydanticValidationError):
            RetryPolicy(max_retries=2)

    def test_zero_retries_without_schedule_allowed(self):
        assert RetryPolicy(max_retries=0).max_retries == 0

    def test_default_channel_table(self):
        sms = DEFAULT_RETRY_POLICIES[Channel.SMS]
        assert sms.max_retries == 3
        assert sms.delay_schedule == (
            timedelta(minutes=1), timedelta(minutes=5), timedelta(minutes=15)
        )
        assert DEFAULT_RETRY_POLICIES[Channel.EMAIL].max_retries == 5
        assert DEFAULT_RETRY_POLICIES[Channel.PUSH].max_retries == 2

    def test_overrides_merge_onto_defaults(self):
        policies = build_retry_policies({"sms": {"max_retries": 1, "delay_minutes": [30]}})
        assert policies[Channel.SMS] == RetryPolicy.from_minutes(1, [30])
        assert policies[Channel.WHATSAPP] == DEFAULT_RETRY_POLICIES[Channel.WHATSAPP]

    def test_unknown_channel_override_rejected(self):
        with pytest.raises(ValueError):
            build_retry_policies({"fax": {"max_retries": 1, "delay_minutes": [1]}})


class TestPriority:
    def test_rank_order(self):
        ordered = sorted(Priority, key=lambda p: p.rank)
        assert ordered == [Priority.CRITICAL, Priority.HIGH, Priority.NORMAL, Priority.LOW]
