"""
In-memory Store implementation.

All writes run under a single asyncio.Lock, which makes the conflict/cap
guard and the notification cascade atomic within one event loop. Records are
pydantic models and are replaced (model_copy) rather than mutated, so callers
never hold a live reference into the store.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Iterable
from datetime import date, datetime, time
from typing import Any
from uuid import UUID

from booking.models import (
    UNSENT_NOTIFICATION_STATUSES,
    Booking,
    BookingStatus,
    Channel,
    Client,
    Notification,
    NotificationStatus,
    NotificationType,
    Service,
)
from database.criteria import BookingCriteria
from shared.errors import (
    BookingNotFoundError,
    NotificationNotFoundError,
    SlotConflictError,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """Dict-backed Store. Safe for concurrent coroutines on one event loop."""

    def __init__(self) -> None:
        self._services: dict[UUID, Service] = {}
        self._clients: dict[UUID, Client] = {}
        self._bookings: dict[UUID, Booking] = {}
        self._notifications: dict[UUID, Notification] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def save_service(self, service: Service) -> Service:
        self._services[service.id] = service
        return service

    async def save_client(self, client: Client) -> Client:
        self._clients[client.id] = client
        return client

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_service(self, service_id: UUID) -> Service | None:
        return self._services.get(service_id)

    async def get_client(self, client_id: UUID) -> Client | None:
        return self._clients.get(client_id)

    async def get_booking(self, booking_id: UUID) -> Booking | None:
        return self._bookings.get(booking_id)

    async def count_active_bookings(
        self, service_id: UUID, on_date: date, exclude_booking_id: UUID | None = None
    ) -> int:
        return self._count_active(service_id, on_date, exclude_booking_id)

    async def find_conflicting_booking(
        self,
        service_id: UUID,
        on_date: date,
        at: time,
        exclude_booking_id: UUID | None = None,
    ) -> Booking | None:
        return self._conflict(service_id, on_date, at, exclude_booking_id)

    async def find_bookings(self, criteria: BookingCriteria) -> list[Booking]:
        matches = sorted(
            (b for b in self._bookings.values() if criteria.matches(b)),
            key=lambda b: (b.date, b.time, b.created_at),
        )
        if criteria.limit is not None:
            matches = matches[: criteria.limit]
        return matches

    # ------------------------------------------------------------------
    # Booking writes
    # ------------------------------------------------------------------

    async def insert_booking(self, booking: Booking, daily_cap: int | None = None) -> Booking:
        async with self._lock:
            if booking.is_active:
                self._guard_slot(booking, daily_cap)
            self._bookings[booking.id] = booking
        return booking

    async def update_booking(
        self,
        booking_id: UUID,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[BookingStatus] | None = None,
        daily_cap: int | None = None,
        cancel_pending_of_types: Iterable[NotificationType] = (),
    ) -> Booking | None:
        async with self._lock:
            current = self._bookings.get(booking_id)
            if current is None:
                raise BookingNotFoundError(booking_id)
            if expected_statuses is not None and current.status not in set(expected_statuses):
                return None

            updated = current.model_copy(update=fields)
            if updated.is_active:
                self._guard_slot(updated, daily_cap)
            self._bookings[booking_id] = updated

            cascade_types = set(cancel_pending_of_types)
            if cascade_types:
                cancelled = self._cancel_unsent(booking_id, cascade_types, updated.updated_at)
                logger.info(
                    f"Cancelled {cancelled} unsent notifications for booking {booking_id}",
                    extra={"booking_id": str(booking_id)},
                )
        return updated

    async def delete_booking(self, booking_id: UUID) -> bool:
        async with self._lock:
            if self._bookings.pop(booking_id, None) is None:
                return False
            for notification_id in [
                n.id for n in self._notifications.values() if n.booking_id == booking_id
            ]:
                del self._notifications[notification_id]
        return True

    # ------------------------------------------------------------------
    # Notification writes
    # ------------------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            self._notifications[notification.id] = notification
        return notification

    async def update_notification(
        self,
        notification_id: UUID,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[NotificationStatus] | None = None,
    ) -> Notification | None:
        async with self._lock:
            current = self._notifications.get(notification_id)
            if current is None:
                raise NotificationNotFoundError(notification_id)
            if expected_statuses is not None and current.status not in set(expected_statuses):
                return None
            updated = current.model_copy(update=fields)
            self._notifications[notification_id] = updated
        return updated

    async def claim_notification(
        self, notification_id: UUID, now: datetime
    ) -> Notification | None:
        async with self._lock:
            current = self._notifications.get(notification_id)
            if current is None or current.status != NotificationStatus.PENDING:
                return None
            claimed = current.model_copy(update={
                "status": NotificationStatus.PROCESSING,
                "claimed_at": now,
                "updated_at": now,
            })
            self._notifications[notification_id] = claimed
        return claimed

    async def find_due_notifications(
        self,
        now: datetime,
        statuses: Iterable[NotificationStatus] = (NotificationStatus.PENDING,),
        limit: int | None = None,
    ) -> list[Notification]:
        wanted = set(statuses)
        due = sorted(
            (
                n for n in self._notifications.values()
                if n.status in wanted and n.scheduled_for <= now
            ),
            key=lambda n: (n.priority.rank, n.scheduled_for),
        )
        if limit is not None:
            due = due[:limit]
        return due

    async def requeue_stale_claims(self, claimed_before: datetime, now: datetime) -> int:
        requeued = 0
        async with self._lock:
            for n in list(self._notifications.values()):
                if (
                    n.status == NotificationStatus.PROCESSING
                    and n.claimed_at is not None
                    and n.claimed_at < claimed_before
                ):
                    self._notifications[n.id] = n.model_copy(update={
                        "status": NotificationStatus.PENDING,
                        "claimed_at": None,
                        "updated_at": now,
                    })
                    requeued += 1
        return requeued

    async def delete_notifications_before(
        self, cutoff: datetime, statuses: Iterable[NotificationStatus]
    ) -> int:
        wanted = set(statuses)
        async with self._lock:
            stale = [
                n.id for n in self._notifications.values()
                if n.status in wanted and n.created_at < cutoff
            ]
            for notification_id in stale:
                del self._notifications[notification_id]
        return len(stale)

    async def list_notifications(self, booking_id: UUID) -> list[Notification]:
        return sorted(
            (n for n in self._notifications.values() if n.booking_id == booking_id),
            key=lambda n: (n.scheduled_for, n.created_at),
        )

    async def count_notifications(
        self, created_from: datetime, created_to: datetime
    ) -> dict[tuple[NotificationStatus, NotificationType, Channel], int]:
        return dict(Counter(
            (n.status, n.type, n.channel)
            for n in self._notifications.values()
            if created_from <= n.created_at < created_to
        ))

    # ------------------------------------------------------------------
    # Helpers (caller holds the lock)
    # ------------------------------------------------------------------

    def _count_active(
        self, service_id: UUID, on_date: date, exclude_booking_id: UUID | None
    ) -> int:
        return sum(
            1 for b in self._bookings.values()
            if b.service_id == service_id
            and b.date == on_date
            and b.is_active
            and b.id != exclude_booking_id
        )

    def _conflict(
        self, service_id: UUID, on_date: date, at: time, exclude_booking_id: UUID | None
    ) -> Booking | None:
        for b in self._bookings.values():
            if (
                b.service_id == service_id
                and b.date == on_date
                and b.time == at
                and b.is_active
                and b.id != exclude_booking_id
            ):
                return b
        return None

    def _guard_slot(self, booking: Booking, daily_cap: int | None) -> None:
        conflict = self._conflict(booking.service_id, booking.date, booking.time, booking.id)
        if conflict is not None:
            raise SlotConflictError(
                "Slot already held by an active booking",
                details={"reason": "slot taken", "conflicting_booking_id": str(conflict.id)},
            )
        if daily_cap is not None:
            if self._count_active(booking.service_id, booking.date, booking.id) >= daily_cap:
                raise SlotConflictError(
                    "Daily capacity reached",
                    details={"reason": "daily capacity reached", "daily_cap": daily_cap},
                )

    def _cancel_unsent(
        self, booking_id: UUID, types: set[NotificationType], now: datetime
    ) -> int:
        cancelled = 0
        for n in list(self._notifications.values()):
            if (
                n.booking_id == booking_id
                and n.status in UNSENT_NOTIFICATION_STATUSES
                and n.type in types
            ):
                self._notifications[n.id] = n.model_copy(update={
                    "status": NotificationStatus.CANCELLED,
                    "claimed_at": None,
                    "updated_at": now,
                })
                cancelled += 1
        return cancelled
