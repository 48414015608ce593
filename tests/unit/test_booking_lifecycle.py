"""
Unit tests for BookingLifecycle (booking/fsm/booking_lifecycle.py).

Tests cover:
- Transition table and invalid transitions
- create: capacity, conflicts, concurrent creates, unknown client
- confirm / complete / cancel / reschedule side effects on notifications
- Lost races reported as invalid transitions
- purge
"""

import asyncio
from datetime import datetime, time, timedelta
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from booking.fsm.booking_lifecycle import BookingLifecycle
from booking.models import (
    BookingStatus,
    LifecycleEventType,
    NotificationStatus,
    NotificationType,
    Service,
)
from shared.errors import (
    BookingNotFoundError,
    ClientNotFoundError,
    InvalidStateTransitionError,
    ServiceInactiveError,
    SlotUnavailableError,
)
from tests.helpers import LAST_MONDAY, NEXT_MONDAY, NEXT_TUESDAY, NEXT_WEDNESDAY, NOW, TODAY


@pytest.fixture
def lifecycle(engine) -> BookingLifecycle:
    return engine.lifecycle


@pytest.fixture
async def single_slot_service(seeded_store):
    """Mondays at 10:00 only, one booking per day."""
    service = Service(
        name="Haircut",
        duration_minutes=30,
        available_weekdays=["monday"],
        available_time_slots=["10:00"],
        max_daily_bookings=1,
    )
    await seeded_store.save_service(service)
    return service


def _by_type(notifications, notification_type):
    return [n for n in notifications if n.type == notification_type]


class TestTransitionTable:
    """Tests for BookingLifecycle.can_transition()."""

    @pytest.mark.parametrize("from_status,to_status", [
        (BookingStatus.PENDING, BookingStatus.CONFIRMED),
        (BookingStatus.PENDING, BookingStatus.COMPLETED),
        (BookingStatus.PENDING, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingStatus.COMPLETED),
        (BookingStatus.CONFIRMED, BookingStatus.CANCELLED),
    ])
    def test_allowed(self, from_status, to_status):
        assert BookingLifecycle.can_transition(from_status, to_status)

    @pytest.mark.parametrize("from_status,to_status", [
        (BookingStatus.CONFIRMED, BookingStatus.PENDING),
        (BookingStatus.CONFIRMED, BookingStatus.CONFIRMED),
        (BookingStatus.CANCELLED, BookingStatus.CONFIRMED),
        (BookingStatus.CANCELLED, BookingStatus.PENDING),
        (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    ])
    def test_rejected(self, from_status, to_status):
        assert not BookingLifecycle.can_transition(from_status, to_status)


class TestCreate:
    """Tests for BookingLifecycle.create()."""

    @pytest.mark.asyncio
    async def test_creates_pending_booking_with_notifications(
        self, lifecycle, haircut, client
    ):
        result = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

        assert result.booking.status == BookingStatus.PENDING
        assert result.event.type == LifecycleEventType.CREATED
        assert len(_by_type(result.notifications, NotificationType.CONFIRMATION)) == 1
        assert len(_by_type(result.notifications, NotificationType.REMINDER)) == 2
        assert result.rejected_reminders == []

    @pytest.mark.asyncio
    async def test_second_client_same_slot_rejected(
        self, lifecycle, single_slot_service, client, other_client
    ):
        first = await lifecycle.create(single_slot_service.id, client.id, NEXT_MONDAY, time(10, 0))
        assert first.booking.status == BookingStatus.PENDING

        with pytest.raises(SlotUnavailableError):
            await lifecycle.create(
                single_slot_service.id, other_client.id, NEXT_MONDAY, time(10, 0)
            )

    @pytest.mark.asyncio
    async def test_daily_cap_blocks_other_slot(self, lifecycle, seeded_store, client, other_client):
        capped = Service(
            name="Massage",
            duration_minutes=60,
            available_weekdays=["monday"],
            available_time_slots=["10:00", "11:00"],
            max_daily_bookings=1,
        )
        await seeded_store.save_service(capped)
        await lifecycle.create(capped.id, client.id, NEXT_MONDAY, time(10, 0))

        with pytest.raises(SlotUnavailableError) as exc_info:
            await lifecycle.create(capped.id, other_client.id, NEXT_MONDAY, time(11, 0))

        assert exc_info.value.reason == "daily capacity reached"
        assert exc_info.value.details["availability_code"] == "DAILY_CAP_REACHED"

    @pytest.mark.asyncio
    async def test_concurrent_creates_only_one_wins(
        self, lifecycle, seeded_store, haircut, client, other_client
    ):
        results = await asyncio.gather(
            lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0)),
            lifecycle.create(haircut.id, other_client.id, NEXT_MONDAY, time(10, 0)),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], SlotUnavailableError)
        assert await seeded_store.count_active_bookings(haircut.id, NEXT_MONDAY) == 1

    @pytest.mark.asyncio
    async def test_store_conflict_maps_to_slot_unavailable(
        self, lifecycle, seeded_store, haircut, client
    ):
        # Pre-check passes, the atomic guard in the store still catches the race
        existing = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        with patch.object(
            seeded_store, "find_conflicting_booking", AsyncMock(return_value=None)
        ):
            with pytest.raises(SlotUnavailableError) as exc_info:
                await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

        assert exc_info.value.reason == "slot taken"
        assert exc_info.value.details["conflicting_booking_id"] == str(existing.booking.id)

    @pytest.mark.asyncio
    async def test_past_date_rejected(self, lifecycle, haircut, client):
        with pytest.raises(SlotUnavailableError) as exc_info:
            await lifecycle.create(haircut.id, client.id, LAST_MONDAY, time(10, 0))
        assert exc_info.value.reason == "date in past"

    @pytest.mark.asyncio
    async def test_unknown_client(self, lifecycle, haircut):
        with pytest.raises(ClientNotFoundError):
            await lifecycle.create(haircut.id, uuid4(), NEXT_MONDAY, time(10, 0))

    @pytest.mark.asyncio
    async def test_inactive_service(self, lifecycle, seeded_store, haircut, client):
        await seeded_store.save_service(haircut.model_copy(update={"is_active": False}))
        lifecycle._catalog.invalidate()
        with pytest.raises(ServiceInactiveError):
            await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

    @pytest.mark.asyncio
    async def test_same_day_booking_reports_rejected_reminders(self, lifecycle, haircut, client):
        # 11:00 Madrid today is 1h away: both the 24h and 2h windows have passed
        result = await lifecycle.create(haircut.id, client.id, TODAY, time(11, 0))

        assert _by_type(result.notifications, NotificationType.REMINDER) == []
        assert [r.offset_hours for r in result.rejected_reminders] == [24.0, 2.0]

    @pytest.mark.asyncio
    async def test_notification_store_failure_keeps_booking(
        self, lifecycle, seeded_store, haircut, client
    ):
        with patch.object(
            seeded_store, "insert_notification", AsyncMock(side_effect=RuntimeError("db down"))
        ):
            result = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

        assert result.notifications == []
        assert [e["type"] for e in result.notification_errors] == [
            "confirmation", "reminder", "reminder",
        ]
        assert {e["error"] for e in result.notification_errors} == {"db down"}
        stored = await seeded_store.get_booking(result.booking.id)
        assert stored.status == BookingStatus.PENDING


class TestConfirm:
    """Tests for BookingLifecycle.confirm()."""

    @pytest.mark.asyncio
    async def test_confirm_pending(self, lifecycle, haircut, client, clock):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        clock.advance(minutes=5)

        result = await lifecycle.confirm(created.booking.id)

        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.booking.confirmed_at == NOW + timedelta(minutes=5)
        assert result.notifications == []

    @pytest.mark.asyncio
    async def test_confirm_twice_rejected(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.confirm(created.booking.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await lifecycle.confirm(created.booking.id)
        assert exc_info.value.details == {"from": "confirmed", "to": "confirmed"}

    @pytest.mark.asyncio
    async def test_confirm_unknown_booking(self, lifecycle):
        with pytest.raises(BookingNotFoundError):
            await lifecycle.confirm(uuid4())

    @pytest.mark.asyncio
    async def test_lost_race_reported_against_stored_status(
        self, lifecycle, seeded_store, haircut, client
    ):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        # Another worker cancels between our read and our conditional write
        await seeded_store.update_booking(
            created.booking.id, {"status": BookingStatus.CANCELLED}
        )
        stale = created.booking
        current = await seeded_store.get_booking(stale.id)
        with patch.object(
            seeded_store, "get_booking", AsyncMock(side_effect=[stale, current])
        ):
            with pytest.raises(InvalidStateTransitionError) as exc_info:
                await lifecycle.confirm(stale.id)

        assert exc_info.value.from_status == "cancelled"
        assert exc_info.value.to_status == "confirmed"


class TestCancel:
    """Tests for BookingLifecycle.cancel()."""

    @pytest.mark.asyncio
    async def test_cancel_cancels_pending_reminders(
        self, lifecycle, seeded_store, haircut, client
    ):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.confirm(created.booking.id)

        result = await lifecycle.cancel(created.booking.id, reason="client request")

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancellation_reason == "client request"
        stored = await seeded_store.list_notifications(created.booking.id)
        reminder_24h = next(
            n for n in stored
            if n.type == NotificationType.REMINDER and n.metadata.get("offset_hours") == 24
        )
        assert reminder_24h.scheduled_for == datetime(2025, 12, 14, 9, 0, tzinfo=NOW.tzinfo)
        assert reminder_24h.status == NotificationStatus.CANCELLED
        pending = [n for n in stored if n.status == NotificationStatus.PENDING]
        assert [n.type for n in pending] == [NotificationType.CANCELLATION]

    @pytest.mark.asyncio
    async def test_cancel_cancels_reminder_being_sent(
        self, lifecycle, seeded_store, haircut, client
    ):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        reminder = _by_type(created.notifications, NotificationType.REMINDER)[0]
        await seeded_store.claim_notification(reminder.id, NOW)

        await lifecycle.cancel(created.booking.id)

        stored = {n.id: n for n in await seeded_store.list_notifications(created.booking.id)}
        assert stored[reminder.id].status == NotificationStatus.CANCELLED
        assert stored[reminder.id].claimed_at is None

    @pytest.mark.asyncio
    async def test_sent_notifications_untouched(self, lifecycle, seeded_store, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        confirmation = _by_type(created.notifications, NotificationType.CONFIRMATION)[0]
        await seeded_store.update_notification(
            confirmation.id, {"status": NotificationStatus.SENT, "sent_at": NOW}
        )

        await lifecycle.cancel(created.booking.id)

        stored = {n.id: n for n in await seeded_store.list_notifications(created.booking.id)}
        assert stored[confirmation.id].status == NotificationStatus.SENT

    @pytest.mark.asyncio
    async def test_penalty_window_is_informational(self, lifecycle, haircut, client):
        # Today 12:00 Madrid is 2h away, inside the 24h policy
        created = await lifecycle.create(haircut.id, client.id, TODAY, time(12, 0))

        result = await lifecycle.cancel(created.booking.id)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.event.hours_until_booking == 2.0
        assert result.event.within_penalty_window is True

    @pytest.mark.asyncio
    async def test_outside_penalty_window(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_WEDNESDAY, time(10, 0))
        result = await lifecycle.cancel(created.booking.id)
        assert result.event.within_penalty_window is False
        assert result.event.hours_until_booking == 168.0

    @pytest.mark.asyncio
    async def test_cancel_frees_slot(self, lifecycle, haircut, client, other_client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.cancel(created.booking.id)

        rebooked = await lifecycle.create(haircut.id, other_client.id, NEXT_MONDAY, time(10, 0))
        assert rebooked.booking.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.cancel(created.booking.id)
        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.cancel(created.booking.id)


class TestReschedule:
    """Tests for BookingLifecycle.reschedule()."""

    @pytest.mark.asyncio
    async def test_moves_booking_and_replaces_reminders(
        self, lifecycle, seeded_store, haircut, client
    ):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.confirm(created.booking.id)

        result = await lifecycle.reschedule(
            created.booking.id, NEXT_WEDNESDAY, time(11, 0), reason="sick"
        )

        assert result.booking.date == NEXT_WEDNESDAY
        assert result.booking.time == time(11, 0)
        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.booking.notes == "Rescheduled from 2025-12-15 10:00: sick"
        assert result.event.previous_date == NEXT_MONDAY
        assert result.event.previous_time == time(10, 0)

        stored = await seeded_store.list_notifications(created.booking.id)
        for old in created.notifications:
            assert next(n for n in stored if n.id == old.id).status == NotificationStatus.CANCELLED
        pending_types = sorted(n.type.value for n in stored if n.status == NotificationStatus.PENDING)
        assert pending_types == ["reminder", "reminder", "reschedule"]

    @pytest.mark.asyncio
    async def test_preparation_instructions_follow_the_booking(
        self, lifecycle, seeded_store, haircut, client
    ):
        await seeded_store.save_service(
            haircut.model_copy(update={"preparation_instructions": "Come with unwashed hair."})
        )
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        old = _by_type(created.notifications, NotificationType.PREPARATION)[0]

        result = await lifecycle.reschedule(created.booking.id, NEXT_WEDNESDAY, time(10, 0))

        new = _by_type(result.notifications, NotificationType.PREPARATION)[0]
        assert new.scheduled_for == datetime(2025, 12, 16, 9, 0, tzinfo=NOW.tzinfo)
        stored = {n.id: n for n in await seeded_store.list_notifications(created.booking.id)}
        assert stored[old.id].status == NotificationStatus.CANCELLED
        assert stored[new.id].status == NotificationStatus.PENDING

    @pytest.mark.asyncio
    async def test_old_slot_is_freed(self, lifecycle, haircut, client, other_client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.reschedule(created.booking.id, NEXT_MONDAY, time(11, 0))

        other = await lifecycle.create(haircut.id, other_client.id, NEXT_MONDAY, time(10, 0))
        assert other.booking.time == time(10, 0)

    @pytest.mark.asyncio
    async def test_conflict_leaves_booking_unchanged(
        self, lifecycle, seeded_store, haircut, client, other_client
    ):
        mine = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.create(haircut.id, other_client.id, NEXT_MONDAY, time(11, 0))

        with pytest.raises(SlotUnavailableError) as exc_info:
            await lifecycle.reschedule(mine.booking.id, NEXT_MONDAY, time(11, 0))

        assert exc_info.value.reason == "slot taken"
        stored = await seeded_store.get_booking(mine.booking.id)
        assert (stored.date, stored.time) == (NEXT_MONDAY, time(10, 0))
        pending = [
            n for n in await seeded_store.list_notifications(mine.booking.id)
            if n.status == NotificationStatus.PENDING
        ]
        assert len(pending) == 3

    @pytest.mark.asyncio
    async def test_reschedule_to_same_slot_is_allowed(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        result = await lifecycle.reschedule(created.booking.id, NEXT_MONDAY, time(10, 0))
        assert result.booking.time == time(10, 0)

    @pytest.mark.asyncio
    async def test_day_not_offered(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        with pytest.raises(SlotUnavailableError) as exc_info:
            await lifecycle.reschedule(created.booking.id, NEXT_TUESDAY, time(10, 0))
        assert exc_info.value.details["availability_code"] == "DAY_NOT_OFFERED"

    @pytest.mark.asyncio
    async def test_cancelled_booking_cannot_be_rescheduled(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.cancel(created.booking.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await lifecycle.reschedule(created.booking.id, NEXT_WEDNESDAY, time(10, 0))
        assert exc_info.value.details == {"from": "cancelled", "to": "rescheduled"}


class TestComplete:
    """Tests for BookingLifecycle.complete()."""

    @pytest.mark.asyncio
    async def test_complete_from_pending_schedules_feedback(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

        result = await lifecycle.complete(created.booking.id, notes="all good")

        assert result.booking.status == BookingStatus.COMPLETED
        assert result.booking.completed_at == NOW
        assert result.booking.notes == "all good"
        assert [n.type for n in result.notifications] == [NotificationType.FEEDBACK]

    @pytest.mark.asyncio
    async def test_completed_is_terminal(self, lifecycle, haircut, client):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))
        await lifecycle.complete(created.booking.id)

        with pytest.raises(InvalidStateTransitionError):
            await lifecycle.cancel(created.booking.id)


class TestPurge:
    """Tests for BookingLifecycle.purge()."""

    @pytest.mark.asyncio
    async def test_purge_removes_booking_and_notifications(
        self, lifecycle, seeded_store, haircut, client
    ):
        created = await lifecycle.create(haircut.id, client.id, NEXT_MONDAY, time(10, 0))

        await lifecycle.purge(created.booking.id)

        assert await seeded_store.get_booking(created.booking.id) is None
        assert await seeded_store.list_notifications(created.booking.id) == []

    @pytest.mark.asyncio
    async def test_purge_unknown(self, lifecycle):
        with pytest.raises(BookingNotFoundError):
            await lifecycle.purge(uuid4())
