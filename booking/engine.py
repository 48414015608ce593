"""
BookingEngine - public operations of the booking engine.

Every operation returns a dict and never raises for expected failures:

    Success:
        {"success": True, "data": {...}}

    Failure:
        {
            "success": False,
            "error_code": str,       # e.g. "SLOT_UNAVAILABLE", "BOOKING_NOT_FOUND"
            "error_message": str,
            "details": dict,
        }

Unexpected errors (store outage, bugs) are logged with traceback and returned
as error_code "INTERNAL_ERROR".

Inputs may be typed values or their string forms (UUID strings, YYYY-MM-DD,
HH:MM); malformed input yields VALIDATION_ERROR before any store access.
"""

import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from uuid import UUID

from booking.fsm.booking_lifecycle import BookingLifecycle, LifecycleResult
from booking.models import Booking, Notification, NotificationStatus
from booking.notifier import Notifier
from booking.services.availability_service import AvailabilityEngine
from booking.services.notification_scheduler import MessageRenderer, NotificationScheduler
from booking.services.service_catalog import ServiceCatalog
from booking.validators.booking_validators import (
    parse_channel,
    parse_date,
    parse_time,
    parse_uuid,
)
from booking.workers.retry_worker import RetryEngine
from database.criteria import BookingCriteria, parse_criteria
from database.store import Store
from shared.clock import Clock, SystemClock
from shared.errors import BookingEngineError, ValidationError

logger = logging.getLogger(__name__)

# Statuses counted as a successful delivery in notification stats
DELIVERED_STATUSES = frozenset({
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.READ,
})


def _booking_data(booking: Booking) -> dict[str, Any]:
    return booking.model_dump(mode="json")


def _notification_data(notification: Notification) -> dict[str, Any]:
    return {
        "id": str(notification.id),
        "type": notification.type.value,
        "channel": notification.channel.value,
        "priority": notification.priority.value,
        "status": notification.status.value,
        "scheduled_for": notification.scheduled_for.isoformat(),
    }


def _lifecycle_data(result: LifecycleResult) -> dict[str, Any]:
    data = {
        "booking": _booking_data(result.booking),
        "notifications": [_notification_data(n) for n in result.notifications],
    }
    if result.rejected_reminders:
        data["rejected_reminders"] = [e.details for e in result.rejected_reminders]
    if result.notification_errors:
        data["notification_errors"] = result.notification_errors
    event = result.event
    if event.within_penalty_window is not None:
        data["hours_until_booking"] = event.hours_until_booking
        data["within_penalty_window"] = event.within_penalty_window
    return data


class BookingEngine:
    """
    Facade wiring catalog, availability, lifecycle, scheduler and retry engine
    around one Store, Notifier and Clock.

    Example:
        >>> engine = BookingEngine(InMemoryStore(), notifier)
        >>> result = await engine.create_booking(service_id, client_id, "2025-12-22", "10:00")
        >>> if result["success"]:
        ...     booking_id = result["data"]["booking"]["id"]
    """

    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        clock: Optional[Clock] = None,
        renderer: Optional[MessageRenderer] = None,
        reminder_offsets_hours: Optional[list[float]] = None,
        retry_engine: Optional[RetryEngine] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.catalog = ServiceCatalog(store, self.clock)
        self.availability = AvailabilityEngine(store, self.catalog, self.clock)
        self.scheduler = NotificationScheduler(
            self.clock, reminder_offsets_hours=reminder_offsets_hours, renderer=renderer
        )
        self.lifecycle = BookingLifecycle(
            store, self.catalog, self.availability, self.scheduler, self.clock
        )
        self.retry_engine = retry_engine or RetryEngine(store, notifier, self.clock)

    async def _run(
        self,
        operation: str,
        trace_id: str,
        action: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            data = await action()
        except BookingEngineError as e:
            logger.warning(
                f"[{trace_id}] {operation} failed: {e.error_code} - {e.message}",
                extra={"trace_id": trace_id},
            )
            return e.to_result()
        except Exception as e:
            logger.error(
                f"[{trace_id}] Unexpected error in {operation}",
                extra={"trace_id": trace_id, "error": str(e)},
                exc_info=True,
            )
            return {
                "success": False,
                "error_code": "INTERNAL_ERROR",
                "error_message": f"Unexpected error in {operation}",
                "details": {"error": str(e)},
            }
        return {"success": True, "data": data}

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        service_id: UUID | str,
        client_id: UUID | str,
        on_date: date | str,
        at: time | str,
        channel: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a pending booking and schedule its confirmation and reminders.

        Args:
            service_id: Service UUID
            client_id: Client UUID
            on_date: Booking date (YYYY-MM-DD)
            at: Slot time (HH:MM)
            channel: Optional channel override ("sms", "whatsapp", "email", "push")
            notes: Optional booking notes

        Returns:
            Success data: {"booking": {...}, "notifications": [...],
            "rejected_reminders": [...] (only when some reminder window passed),
            "notification_errors": [...] (only when a notification could not be stored)}
        """
        trace_id = f"{client_id}_{on_date}_{at}"

        async def action() -> dict[str, Any]:
            result = await self.lifecycle.create(
                parse_uuid(service_id, "service_id"),
                parse_uuid(client_id, "client_id"),
                parse_date(on_date),
                parse_time(at),
                channel=parse_channel(channel),
                notes=notes,
            )
            return _lifecycle_data(result)

        return await self._run("create_booking", trace_id, action)

    async def confirm_booking(self, booking_id: UUID | str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            result = await self.lifecycle.confirm(parse_uuid(booking_id, "booking_id"))
            return _lifecycle_data(result)

        return await self._run("confirm_booking", str(booking_id), action)

    async def reschedule_booking(
        self,
        booking_id: UUID | str,
        new_date: date | str,
        new_time: time | str,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Move a booking to a new slot.

        On SLOT_UNAVAILABLE the booking keeps its original date and time.
        """
        async def action() -> dict[str, Any]:
            result = await self.lifecycle.reschedule(
                parse_uuid(booking_id, "booking_id"),
                parse_date(new_date, "new_date"),
                parse_time(new_time, "new_time"),
                reason=reason,
            )
            return _lifecycle_data(result)

        return await self._run("reschedule_booking", str(booking_id), action)

    async def cancel_booking(
        self, booking_id: UUID | str, reason: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Cancel a booking and every unsent notification of it.

        Success data includes hours_until_booking and within_penalty_window
        (informational; late cancellations are not blocked).
        """
        async def action() -> dict[str, Any]:
            result = await self.lifecycle.cancel(parse_uuid(booking_id, "booking_id"), reason=reason)
            return _lifecycle_data(result)

        return await self._run("cancel_booking", str(booking_id), action)

    async def complete_booking(
        self, booking_id: UUID | str, notes: Optional[str] = None
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            result = await self.lifecycle.complete(parse_uuid(booking_id, "booking_id"), notes=notes)
            return _lifecycle_data(result)

        return await self._run("complete_booking", str(booking_id), action)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def check_availability(
        self,
        service_id: UUID | str,
        on_date: date | str,
        at: time | str,
        exclude_booking_id: UUID | str | None = None,
    ) -> dict[str, Any]:
        """
        Check a slot without booking it.

        An unavailable slot is still a successful call:
            {"success": True, "data": {"available": False, "reason": "slot taken",
                                       "error_code": "SLOT_TAKEN", "details": {...}}}
        Unknown or inactive services are failures.
        """
        async def action() -> dict[str, Any]:
            result = await self.availability.check(
                parse_uuid(service_id, "service_id"),
                parse_date(on_date),
                parse_time(at),
                exclude_booking_id=(
                    parse_uuid(exclude_booking_id, "exclude_booking_id")
                    if exclude_booking_id is not None
                    else None
                ),
            )
            return result.to_dict()

        return await self._run("check_availability", f"{service_id}_{on_date}_{at}", action)

    async def get_available_slots(
        self, service_id: UUID | str, on_date: date | str
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            parsed_date = parse_date(on_date)
            slots = await self.availability.available_slots(
                parse_uuid(service_id, "service_id"), parsed_date
            )
            return {
                "date": parsed_date.isoformat(),
                "slots": [s.strftime("%H:%M") for s in slots],
            }

        return await self._run("get_available_slots", f"{service_id}_{on_date}", action)

    async def get_booking(self, booking_id: UUID | str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            booking = await self.lifecycle.get(parse_uuid(booking_id, "booking_id"))
            return {"booking": _booking_data(booking)}

        return await self._run("get_booking", str(booking_id), action)

    async def list_bookings(
        self, criteria: BookingCriteria | dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """
        List bookings matching typed criteria.

        Example:
            >>> await engine.list_bookings({"filters": [
            ...     {"kind": "status_in", "statuses": ["confirmed"]},
            ...     {"kind": "date_range", "start": "2025-12-01", "end": "2025-12-31"},
            ... ]})
        """
        async def action() -> dict[str, Any]:
            bookings = await self.store.find_bookings(parse_criteria(criteria))
            return {
                "bookings": [_booking_data(b) for b in bookings],
                "count": len(bookings),
            }

        return await self._run("list_bookings", "list", action)

    # ------------------------------------------------------------------
    # Notifications and admin
    # ------------------------------------------------------------------

    async def run_notification_cycle(self, now: Optional[datetime] = None) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            stats = await self.retry_engine.run_cycle(now)
            return stats.to_dict()

        return await self._run("run_notification_cycle", "retry_cycle", action)

    async def get_notification_stats(
        self, date_from: date | str, date_to: date | str
    ) -> dict[str, Any]:
        """
        Count notifications created between two business dates (inclusive).

        Returns:
            Success data: {"date_from", "date_to", "total", "by_status",
            "by_type", "by_channel", "success_rate"}; success_rate is the
            percentage (rounded) of notifications sent, delivered or read
        """
        async def action() -> dict[str, Any]:
            start = parse_date(date_from, "date_from")
            end = parse_date(date_to, "date_to")
            if end < start:
                raise ValidationError(
                    "date_to must not be before date_from", details={"field": "date_to"}
                )
            counts = await self.store.count_notifications(
                self.clock.combine(start, time(0, 0)),
                self.clock.combine(end + timedelta(days=1), time(0, 0)),
            )

            by_status, by_type, by_channel = Counter(), Counter(), Counter()
            for (status, notification_type, channel), count in counts.items():
                by_status[status.value] += count
                by_type[notification_type.value] += count
                by_channel[channel.value] += count
            total = sum(counts.values())
            delivered = sum(by_status[s.value] for s in DELIVERED_STATUSES)
            return {
                "date_from": start.isoformat(),
                "date_to": end.isoformat(),
                "total": total,
                "by_status": dict(by_status),
                "by_type": dict(by_type),
                "by_channel": dict(by_channel),
                "success_rate": round(delivered * 100 / total) if total else 0,
            }

        return await self._run("get_notification_stats", f"{date_from}_{date_to}", action)

    async def purge_booking(self, booking_id: UUID | str) -> dict[str, Any]:
        """Hard-delete a booking and its notifications."""
        async def action() -> dict[str, Any]:
            parsed = parse_uuid(booking_id, "booking_id")
            await self.lifecycle.purge(parsed)
            return {"booking_id": str(parsed), "purged": True}

        return await self._run("purge_booking", str(booking_id), action)
