"""
Availability checking for service slots.

A slot (service, date, time) is bookable when, in order:
1. the date is not in the past (business timezone)
2. the service exists and is active
3. the service is offered on that weekday
4. the time is one of the service's offered slots
5. the service's daily cap is not reached
6. no other active booking holds the exact slot

Checks short-circuit on the first failure. exclude_booking_id lets confirm and
reschedule re-check a slot while ignoring the booking being moved.

This module only reads. The same conflict and cap guards are enforced again,
atomically, by the Store on insert/update.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Any, Optional
from uuid import UUID

from booking.services.service_catalog import ServiceCatalog
from database.store import Store
from shared.clock import Clock

logger = logging.getLogger(__name__)

# Unavailability reasons
DATE_IN_PAST = "date in past"
DAY_NOT_OFFERED = "day not offered"
SLOT_NOT_OFFERED = "slot not offered"
DAILY_CAP_REACHED = "daily capacity reached"
SLOT_TAKEN = "slot taken"

REASON_CODES = {
    DATE_IN_PAST: "DATE_IN_PAST",
    DAY_NOT_OFFERED: "DAY_NOT_OFFERED",
    SLOT_NOT_OFFERED: "SLOT_NOT_OFFERED",
    DAILY_CAP_REACHED: "DAILY_CAP_REACHED",
    SLOT_TAKEN: "SLOT_TAKEN",
}


@dataclass
class AvailabilityResult:
    """
    Outcome of an availability check.

    Attributes:
        available: True if the slot can be booked
        reason: One of the module-level reason strings when unavailable
        error_code: Stable code for reason (e.g. "SLOT_TAKEN")
        details: Extra context (conflicting booking id, cap, ...)
    """
    available: bool
    reason: Optional[str] = None
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "AvailabilityResult":
        return cls(available=True)

    @classmethod
    def unavailable(cls, reason: str, **details: Any) -> "AvailabilityResult":
        return cls(
            available=False,
            reason=reason,
            error_code=REASON_CODES[reason],
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "reason": self.reason,
            "error_code": self.error_code,
            "details": self.details,
        }


class AvailabilityEngine:
    """Decides whether a slot can be booked. Read-only."""

    def __init__(self, store: Store, catalog: ServiceCatalog, clock: Clock):
        self._store = store
        self._catalog = catalog
        self._clock = clock

    async def check(
        self,
        service_id: UUID,
        on_date: date,
        at: time,
        exclude_booking_id: UUID | None = None,
    ) -> AvailabilityResult:
        """
        Check whether (service_id, on_date, at) can be booked.

        Args:
            service_id: Service to book
            on_date: Booking date (business timezone)
            at: Slot start time (wall clock)
            exclude_booking_id: Booking to ignore in the cap/conflict checks

        Returns:
            AvailabilityResult; available=False carries reason and error_code

        Raises:
            ServiceNotFoundError: unknown service
            ServiceInactiveError: service disabled

        Example:
            >>> result = await engine.check(service_id, date(2025, 12, 16), time(10, 0))
            >>> result.available, result.reason
            (False, 'slot taken')
        """
        today = self._clock.today()
        if on_date < today:
            return AvailabilityResult.unavailable(DATE_IN_PAST, today=today.isoformat())

        service = await self._catalog.get_active(service_id)

        if not service.offers_day(on_date):
            return AvailabilityResult.unavailable(
                DAY_NOT_OFFERED, weekday=on_date.strftime("%A").lower()
            )

        if not service.offers_slot(at):
            return AvailabilityResult.unavailable(
                SLOT_NOT_OFFERED,
                offered=[s.strftime("%H:%M") for s in service.available_time_slots],
            )

        if service.max_daily_bookings is not None:
            count = await self._store.count_active_bookings(
                service_id, on_date, exclude_booking_id
            )
            if count >= service.max_daily_bookings:
                return AvailabilityResult.unavailable(
                    DAILY_CAP_REACHED, daily_cap=service.max_daily_bookings
                )

        conflict = await self._store.find_conflicting_booking(
            service_id, on_date, at, exclude_booking_id
        )
        if conflict is not None:
            return AvailabilityResult.unavailable(
                SLOT_TAKEN, conflicting_booking_id=str(conflict.id)
            )

        return AvailabilityResult.ok()

    async def available_slots(self, service_id: UUID, on_date: date) -> list[time]:
        """
        Offered slots on a date that are still free, in order.

        Empty for past dates, days the service is not offered, or a day whose
        cap is already reached.
        """
        if on_date < self._clock.today():
            return []

        service = await self._catalog.get_active(service_id)
        if not service.offers_day(on_date):
            return []

        if service.max_daily_bookings is not None:
            count = await self._store.count_active_bookings(service_id, on_date)
            if count >= service.max_daily_bookings:
                return []

        free = []
        for slot in service.available_time_slots:
            conflict = await self._store.find_conflicting_booking(service_id, on_date, slot)
            if conflict is None:
                free.append(slot)

        logger.debug(
            f"{len(free)}/{len(service.available_time_slots)} slots free on {on_date}",
            extra={"service_id": str(service_id)},
        )
        return free
