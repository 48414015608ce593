"""
Store interface.

The engine never talks to a database directly: every read and write goes
through an object satisfying this Protocol. Two implementations ship:

- database/sql_store.py: SQLAlchemy async (PostgreSQL/asyncpg in production)
- database/memory_store.py: dict-backed, for tests and single-process use

Atomicity contract:
- insert_booking / update_booking enforce "one active booking per
  (service_id, date, time)" and the daily cap atomically with the write, and
  raise SlotConflictError when either would be broken.
- update_booking applies the notification cascade (cancel_pending_of_types)
  in the same transaction as the booking update. It cancels pending and
  processing notifications of those types.
- claim_notification is a conditional pending -> processing update; exactly
  one concurrent caller wins.
- update_notification with expected_statuses is a conditional update; the
  retry worker writes its outcome only while the row is still processing.
"""

from collections.abc import Iterable
from datetime import date, datetime, time
from typing import Any, Protocol
from uuid import UUID

from booking.models import (
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


class Store(Protocol):
    # Reads

    async def get_service(self, service_id: UUID) -> Service | None: ...

    async def get_client(self, client_id: UUID) -> Client | None: ...

    async def get_booking(self, booking_id: UUID) -> Booking | None: ...

    async def count_active_bookings(
        self, service_id: UUID, on_date: date, exclude_booking_id: UUID | None = None
    ) -> int: ...

    async def find_conflicting_booking(
        self,
        service_id: UUID,
        on_date: date,
        at: time,
        exclude_booking_id: UUID | None = None,
    ) -> Booking | None: ...

    async def find_bookings(self, criteria: BookingCriteria) -> list[Booking]: ...

    # Booking writes

    async def insert_booking(self, booking: Booking, daily_cap: int | None = None) -> Booking: ...

    async def update_booking(
        self,
        booking_id: UUID,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[BookingStatus] | None = None,
        daily_cap: int | None = None,
        cancel_pending_of_types: Iterable[NotificationType] = (),
    ) -> Booking | None:
        """
        Apply fields to a booking.

        Returns None when expected_statuses is given and the stored status is
        not one of them (lost a race with another transition).
        """
        ...

    async def delete_booking(self, booking_id: UUID) -> bool: ...

    # Notification writes

    async def insert_notification(self, notification: Notification) -> Notification: ...

    async def update_notification(
        self,
        notification_id: UUID,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[NotificationStatus] | None = None,
    ) -> Notification | None:
        """
        Apply fields to a notification.

        Returns None when expected_statuses is given and the stored status is
        not one of them (e.g. cancelled by a booking cascade mid-send).
        """
        ...

    async def claim_notification(
        self, notification_id: UUID, now: datetime
    ) -> Notification | None: ...

    async def find_due_notifications(
        self,
        now: datetime,
        statuses: Iterable[NotificationStatus] = (NotificationStatus.PENDING,),
        limit: int | None = None,
    ) -> list[Notification]:
        """Due notifications ordered by priority (critical first), then scheduled_for."""
        ...

    async def requeue_stale_claims(self, claimed_before: datetime, now: datetime) -> int: ...

    async def delete_notifications_before(
        self, cutoff: datetime, statuses: Iterable[NotificationStatus]
    ) -> int: ...

    async def list_notifications(self, booking_id: UUID) -> list[Notification]: ...

    async def count_notifications(
        self, created_from: datetime, created_to: datetime
    ) -> dict[tuple[NotificationStatus, NotificationType, Channel], int]:
        """Notifications created in [created_from, created_to), counted per (status, type, channel)."""
        ...
