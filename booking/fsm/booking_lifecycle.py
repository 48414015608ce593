"""
BookingLifecycle - state machine for booking records.

States and transitions:

    pending   -> confirmed | completed | cancelled
    confirmed -> completed | cancelled
    completed, cancelled: terminal

Reschedule keeps the status and moves an active (pending/confirmed) booking
to a new slot.

Every transition:
- validates against TRANSITIONS before touching the store
- writes through Store.update_booking with expected_statuses, so a transition
  racing another one on the same booking loses cleanly
  (InvalidStateTransitionError) instead of overwriting it
- emits a BookingEvent and persists the notifications NotificationScheduler
  plans for it

Slot guards (conflict + daily cap) are checked first through
AvailabilityEngine for a precise reason, then enforced atomically by the
Store; a SlotConflictError from the Store surfaces as SlotUnavailableError.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import ClassVar, Optional
from uuid import UUID

from booking.models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingEvent,
    BookingStatus,
    Channel,
    LifecycleEventType,
    Notification,
    NotificationType,
)
from booking.services.availability_service import AvailabilityEngine
from booking.services.notification_scheduler import NotificationScheduler
from booking.services.service_catalog import ServiceCatalog
from database.store import Store
from shared.clock import Clock
from shared.errors import (
    BookingNotFoundError,
    ClientNotFoundError,
    InvalidStateTransitionError,
    ReminderWindowPassedError,
    SlotConflictError,
    SlotUnavailableError,
)

logger = logging.getLogger(__name__)

# Pending notifications made obsolete by moving the booking
RESCHEDULE_CASCADE_TYPES = frozenset({
    NotificationType.REMINDER,
    NotificationType.CONFIRMATION,
    NotificationType.PREPARATION,
})
CANCEL_CASCADE_TYPES = frozenset(NotificationType)


@dataclass
class LifecycleResult:
    """
    Outcome of a successful transition.

    Attributes:
        booking: Booking state after the transition
        event: Event emitted for the transition
        notifications: Notifications persisted for the event
        rejected_reminders: Reminders not scheduled because their window passed
        notification_errors: Planned notifications that could not be stored
    """
    booking: Booking
    event: BookingEvent
    notifications: list[Notification] = field(default_factory=list)
    rejected_reminders: list[ReminderWindowPassedError] = field(default_factory=list)
    notification_errors: list[dict] = field(default_factory=list)


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class BookingLifecycle:
    """
    Drives bookings through their lifecycle.

    Example:
        >>> lifecycle = BookingLifecycle(store, catalog, availability, scheduler, clock)
        >>> result = await lifecycle.create(service_id, client_id, date(2025, 12, 22), time(10, 0))
        >>> result.booking.status
        <BookingStatus.PENDING: 'pending'>
        >>> await lifecycle.confirm(result.booking.id)
    """

    # Valid status transitions: from_status -> allowed to_status values
    TRANSITIONS: ClassVar[dict[BookingStatus, frozenset[BookingStatus]]] = {
        BookingStatus.PENDING: frozenset({
            BookingStatus.CONFIRMED,
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        }),
        BookingStatus.CONFIRMED: frozenset({
            BookingStatus.COMPLETED,
            BookingStatus.CANCELLED,
        }),
        BookingStatus.COMPLETED: frozenset(),
        BookingStatus.CANCELLED: frozenset(),
    }

    def __init__(
        self,
        store: Store,
        catalog: ServiceCatalog,
        availability: AvailabilityEngine,
        scheduler: NotificationScheduler,
        clock: Clock,
    ):
        self._store = store
        self._catalog = catalog
        self._availability = availability
        self._scheduler = scheduler
        self._clock = clock

    @classmethod
    def can_transition(cls, from_status: BookingStatus, to_status: BookingStatus) -> bool:
        return to_status in cls.TRANSITIONS.get(from_status, frozenset())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def create(
        self,
        service_id: UUID,
        client_id: UUID,
        on_date: date,
        at: time,
        channel: Optional[Channel] = None,
        notes: Optional[str] = None,
    ) -> LifecycleResult:
        """
        Create a pending booking.

        Args:
            service_id: Service to book
            client_id: Client the booking belongs to
            on_date: Booking date (business timezone)
            at: Slot start time
            channel: Notification channel override for this booking's messages
            notes: Free-text notes stored on the booking

        Returns:
            LifecycleResult with the pending booking, its confirmation and
            reminder notifications

        Raises:
            ServiceNotFoundError / ServiceInactiveError: bad service
            ClientNotFoundError: unknown client
            SlotUnavailableError: availability check or atomic guard failed
        """
        service = await self._catalog.get_active(service_id)
        client = await self._store.get_client(client_id)
        if client is None:
            raise ClientNotFoundError(client_id)

        availability = await self._availability.check(service_id, on_date, at)
        if not availability.available:
            raise self._unavailable(availability.reason, availability.error_code, availability.details)

        now = self._clock.now()
        booking = Booking(
            client_id=client_id,
            service_id=service_id,
            date=on_date,
            time=at,
            status=BookingStatus.PENDING,
            created_at=now,
            updated_at=now,
            notes=notes,
        )
        try:
            booking = await self._store.insert_booking(booking, daily_cap=service.max_daily_bookings)
        except SlotConflictError as e:
            raise self._from_conflict(e) from e

        logger.info(
            f"Booking {booking.id} created for {on_date} {at.strftime('%H:%M')}",
            extra={
                "booking_id": str(booking.id),
                "service_id": str(service_id),
                "client_id": str(client_id),
            },
        )

        event = BookingEvent(
            type=LifecycleEventType.CREATED,
            booking=booking,
            service=service,
            occurred_at=now,
            channel=channel,
        )
        return await self._emit(event, client)

    async def confirm(self, booking_id: UUID) -> LifecycleResult:
        """
        Confirm a pending booking after re-checking its slot.

        Raises:
            BookingNotFoundError: unknown booking
            InvalidStateTransitionError: booking is not pending
            SlotUnavailableError: the slot is no longer valid for this booking
        """
        booking = await self._load(booking_id)
        self._require(booking.status, BookingStatus.CONFIRMED)
        service = await self._catalog.get(booking.service_id)

        availability = await self._availability.check(
            booking.service_id, booking.date, booking.time, exclude_booking_id=booking.id
        )
        if not availability.available:
            raise self._unavailable(availability.reason, availability.error_code, availability.details)

        now = self._clock.now()
        updated = await self._update(
            booking,
            BookingStatus.CONFIRMED,
            {"status": BookingStatus.CONFIRMED, "confirmed_at": now, "updated_at": now},
            expected_statuses={BookingStatus.PENDING},
            daily_cap=service.max_daily_bookings,
        )

        logger.info(f"Booking {booking_id} confirmed", extra={"booking_id": str(booking_id)})

        event = BookingEvent(
            type=LifecycleEventType.CONFIRMED,
            booking=updated,
            service=service,
            occurred_at=now,
        )
        return await self._emit(event)

    async def reschedule(
        self,
        booking_id: UUID,
        new_date: date,
        new_time: time,
        reason: Optional[str] = None,
    ) -> LifecycleResult:
        """
        Move an active booking to a new slot.

        Pending reminder and confirmation notifications of the old slot are
        cancelled in the same store transaction as the move; reminders for the
        new slot and a reschedule notice are scheduled afterwards. The old slot
        is free once this returns.

        Raises:
            BookingNotFoundError: unknown booking
            InvalidStateTransitionError: booking is completed or cancelled
            SlotUnavailableError: new slot not bookable (booking unchanged)
        """
        booking = await self._load(booking_id)
        if booking.status not in ACTIVE_BOOKING_STATUSES:
            raise InvalidStateTransitionError(booking.status, LifecycleEventType.RESCHEDULED.value)
        service = await self._catalog.get(booking.service_id)

        availability = await self._availability.check(
            booking.service_id, new_date, new_time, exclude_booking_id=booking.id
        )
        if not availability.available:
            raise self._unavailable(availability.reason, availability.error_code, availability.details)

        now = self._clock.now()
        previous = f"{booking.date.isoformat()} {booking.time.strftime('%H:%M')}"
        note = f"Rescheduled from {previous}" + (f": {reason}" if reason else "")
        updated = await self._update(
            booking,
            LifecycleEventType.RESCHEDULED.value,
            {
                "date": new_date,
                "time": new_time,
                "rescheduled_at": now,
                "updated_at": now,
                "notes": _append_note(booking.notes, note),
            },
            expected_statuses=ACTIVE_BOOKING_STATUSES,
            daily_cap=service.max_daily_bookings,
            cancel_pending_of_types=RESCHEDULE_CASCADE_TYPES,
        )

        logger.info(
            f"Booking {booking_id} rescheduled from {previous} to "
            f"{new_date.isoformat()} {new_time.strftime('%H:%M')}",
            extra={"booking_id": str(booking_id), "service_id": str(booking.service_id)},
        )

        event = BookingEvent(
            type=LifecycleEventType.RESCHEDULED,
            booking=updated,
            service=service,
            occurred_at=now,
            reason=reason,
            previous_date=booking.date,
            previous_time=booking.time,
        )
        return await self._emit(event)

    async def cancel(self, booking_id: UUID, reason: Optional[str] = None) -> LifecycleResult:
        """
        Cancel an active booking.

        All unsent (pending or processing) notifications of the booking are
        cancelled in the same store transaction. Late cancellation (inside the service's
        cancellation_policy_hours) is allowed; the event only reports it via
        within_penalty_window.

        Raises:
            BookingNotFoundError: unknown booking
            InvalidStateTransitionError: booking is completed or cancelled
        """
        booking = await self._load(booking_id)
        self._require(booking.status, BookingStatus.CANCELLED)
        service = await self._catalog.get(booking.service_id)

        now = self._clock.now()
        hours_until = self.hours_until(booking, now)
        within_penalty_window = hours_until < service.cancellation_policy_hours

        updated = await self._update(
            booking,
            BookingStatus.CANCELLED,
            {
                "status": BookingStatus.CANCELLED,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "updated_at": now,
            },
            expected_statuses=ACTIVE_BOOKING_STATUSES,
            cancel_pending_of_types=CANCEL_CASCADE_TYPES,
        )

        logger.info(
            f"Booking {booking_id} cancelled ({hours_until:.1f}h before, "
            f"within_penalty_window={within_penalty_window})",
            extra={"booking_id": str(booking_id)},
        )

        event = BookingEvent(
            type=LifecycleEventType.CANCELLED,
            booking=updated,
            service=service,
            occurred_at=now,
            reason=reason,
            hours_until_booking=round(hours_until, 2),
            within_penalty_window=within_penalty_window,
        )
        return await self._emit(event)

    async def complete(self, booking_id: UUID, notes: Optional[str] = None) -> LifecycleResult:
        """
        Mark a pending or confirmed booking as completed.

        Raises:
            BookingNotFoundError: unknown booking
            InvalidStateTransitionError: booking is completed or cancelled
        """
        booking = await self._load(booking_id)
        self._require(booking.status, BookingStatus.COMPLETED)
        service = await self._catalog.get(booking.service_id)

        now = self._clock.now()
        fields = {"status": BookingStatus.COMPLETED, "completed_at": now, "updated_at": now}
        if notes:
            fields["notes"] = _append_note(booking.notes, notes)
        updated = await self._update(
            booking,
            BookingStatus.COMPLETED,
            fields,
            expected_statuses=ACTIVE_BOOKING_STATUSES,
        )

        logger.info(f"Booking {booking_id} completed", extra={"booking_id": str(booking_id)})

        event = BookingEvent(
            type=LifecycleEventType.COMPLETED,
            booking=updated,
            service=service,
            occurred_at=now,
        )
        return await self._emit(event)

    # ------------------------------------------------------------------
    # Queries and admin
    # ------------------------------------------------------------------

    async def get(self, booking_id: UUID) -> Booking:
        return await self._load(booking_id)

    async def purge(self, booking_id: UUID) -> None:
        """Hard-delete a booking and its notifications (administrative)."""
        if not await self._store.delete_booking(booking_id):
            raise BookingNotFoundError(booking_id)
        logger.warning(f"Booking {booking_id} purged", extra={"booking_id": str(booking_id)})

    def hours_until(self, booking: Booking, now: Optional[datetime] = None) -> float:
        """Hours from now until the booking's slot starts (negative if past)."""
        now = now or self._clock.now()
        starts_at = self._clock.combine(booking.date, booking.time)
        return (starts_at - now).total_seconds() / 3600

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, booking_id: UUID) -> Booking:
        booking = await self._store.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def _require(self, from_status: BookingStatus, to_status: BookingStatus) -> None:
        if not self.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(from_status, to_status)

    async def _update(self, booking: Booking, target, fields, **kwargs) -> Booking:
        try:
            updated = await self._store.update_booking(booking.id, fields, **kwargs)
        except SlotConflictError as e:
            raise self._from_conflict(e) from e
        if updated is None:
            # Another transition won the race; report against the stored status
            current = await self._load(booking.id)
            raise InvalidStateTransitionError(current.status, target)
        return updated

    async def _emit(self, event: BookingEvent, client=None) -> LifecycleResult:
        if client is None:
            client = await self._store.get_client(event.booking.client_id)
        plan = self._scheduler.on_booking_event(event, client)
        persisted = []
        errors = []
        # The booking write already committed; a failed insert is reported, not raised
        for notification in plan.notifications:
            try:
                persisted.append(await self._store.insert_notification(notification))
            except Exception as e:
                logger.error(
                    f"Failed to store {notification.type.value} notification for booking "
                    f"{event.booking.id}: {e}",
                    exc_info=True,
                    extra={"booking_id": str(event.booking.id)},
                )
                errors.append({
                    "type": notification.type.value,
                    "scheduled_for": notification.scheduled_for.isoformat(),
                    "error": str(e),
                })
        return LifecycleResult(
            booking=event.booking,
            event=event,
            notifications=persisted,
            rejected_reminders=plan.rejected,
            notification_errors=errors,
        )

    @staticmethod
    def _unavailable(reason, error_code, details) -> SlotUnavailableError:
        return SlotUnavailableError(reason, details={"availability_code": error_code, **details})

    @staticmethod
    def _from_conflict(error: SlotConflictError) -> SlotUnavailableError:
        reason = error.details.get("reason", "slot taken")
        return SlotUnavailableError(reason, details=dict(error.details))
