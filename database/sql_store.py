"""
SQLAlchemy async Store implementation.

Each operation runs in its own session and transaction. Atomicity of the
booking guards relies on the database:

- the partial unique index uq_bookings_active_slot rejects a second active
  booking for the same (service_id, date, time); the IntegrityError is mapped
  to SlotConflictError
- the daily cap is counted after locking the service row
  (SELECT ... FOR UPDATE), so two transactions for the same service and day
  serialize on that lock
- the notification cascade of cancel/reschedule runs in the booking update
  transaction

Instants are stored in UTC. Dialects without timezone support (SQLite) return
naive values, which are read back as UTC.
"""

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime, time
from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, delete, func, select, true, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking.models import (
    ACTIVE_BOOKING_STATUSES,
    PRIORITY_RANK,
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
from database import models as orm
from database.connection import get_session_factory
from database.criteria import BookingCriteria, ClientIs, DateRange, ServiceIs, StatusIn
from shared.errors import (
    BookingNotFoundError,
    NotificationNotFoundError,
    SlotConflictError,
)

logger = logging.getLogger(__name__)

# Domain field name -> ORM attribute name, where they differ
_BOOKING_COLUMNS = {"date": "booking_date", "time": "booking_time"}
_NOTIFICATION_COLUMNS = {"metadata": "metadata_"}

_ACTIVE = tuple(ACTIVE_BOOKING_STATUSES)


# ============================================================================
# Conversions
# ============================================================================


def _to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _db_value(value: Any) -> Any:
    return _to_utc(value) if isinstance(value, datetime) else value


def _service_from_row(row: orm.Service) -> Service:
    return Service(
        id=row.id,
        name=row.name,
        duration_minutes=row.duration_minutes,
        available_weekdays=row.available_weekdays or [],
        available_time_slots=row.available_time_slots or [],
        max_daily_bookings=row.max_daily_bookings,
        cancellation_policy_hours=row.cancellation_policy_hours,
        requires_deposit=row.requires_deposit,
        preparation_instructions=row.preparation_instructions,
        is_active=row.is_active,
    )


def _client_from_row(row: orm.Client) -> Client:
    return Client(
        id=row.id,
        name=row.name,
        phone=row.phone,
        email=row.email,
        preferred_channel=row.preferred_channel,
    )


def _booking_from_row(row: orm.Booking) -> Booking:
    return Booking(
        id=row.id,
        client_id=row.client_id,
        service_id=row.service_id,
        date=row.booking_date,
        time=row.booking_time,
        status=row.status,
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
        confirmed_at=_from_db(row.confirmed_at),
        cancelled_at=_from_db(row.cancelled_at),
        completed_at=_from_db(row.completed_at),
        rescheduled_at=_from_db(row.rescheduled_at),
        cancellation_reason=row.cancellation_reason,
        notes=row.notes,
    )


def _booking_to_row(booking: Booking) -> orm.Booking:
    return orm.Booking(
        id=booking.id,
        client_id=booking.client_id,
        service_id=booking.service_id,
        booking_date=booking.date,
        booking_time=booking.time,
        status=booking.status,
        created_at=_to_utc(booking.created_at),
        updated_at=_to_utc(booking.updated_at),
        confirmed_at=_to_utc(booking.confirmed_at),
        cancelled_at=_to_utc(booking.cancelled_at),
        completed_at=_to_utc(booking.completed_at),
        rescheduled_at=_to_utc(booking.rescheduled_at),
        cancellation_reason=booking.cancellation_reason,
        notes=booking.notes,
    )


def _notification_from_row(row: orm.Notification) -> Notification:
    return Notification(
        id=row.id,
        booking_id=row.booking_id,
        client_id=row.client_id,
        type=row.type,
        channel=row.channel,
        priority=row.priority,
        status=row.status,
        scheduled_for=_from_db(row.scheduled_for),
        sent_at=_from_db(row.sent_at),
        retry_count=row.retry_count,
        last_error=row.last_error,
        message=row.message,
        metadata=row.metadata_ or {},
        claimed_at=_from_db(row.claimed_at),
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _notification_to_row(notification: Notification) -> orm.Notification:
    return orm.Notification(
        id=notification.id,
        booking_id=notification.booking_id,
        client_id=notification.client_id,
        type=notification.type,
        channel=notification.channel,
        priority=notification.priority,
        status=notification.status,
        scheduled_for=_to_utc(notification.scheduled_for),
        sent_at=_to_utc(notification.sent_at),
        retry_count=notification.retry_count,
        last_error=notification.last_error,
        message=notification.message,
        metadata_=dict(notification.metadata),
        claimed_at=_to_utc(notification.claimed_at),
        created_at=_to_utc(notification.created_at),
        updated_at=_to_utc(notification.updated_at),
    )


def _criterion_clause(criterion: Any):
    if isinstance(criterion, StatusIn):
        return orm.Booking.status.in_(criterion.statuses)
    if isinstance(criterion, DateRange):
        clauses = []
        if criterion.start is not None:
            clauses.append(orm.Booking.booking_date >= criterion.start)
        if criterion.end is not None:
            clauses.append(orm.Booking.booking_date <= criterion.end)
        return and_(true(), *clauses)
    if isinstance(criterion, ServiceIs):
        return orm.Booking.service_id == criterion.service_id
    if isinstance(criterion, ClientIs):
        return orm.Booking.client_id == criterion.client_id
    raise TypeError(f"Unsupported criterion: {type(criterion).__name__}")


# Critical first; compared through the column so values bind with the enum type
_PRIORITY_ORDER = case(
    *[(orm.Notification.priority == priority, rank) for priority, rank in PRIORITY_RANK.items()],
    else_=len(PRIORITY_RANK),
)


# ============================================================================
# Store
# ============================================================================


class SqlStore:
    """
    Store backed by SQLAlchemy async sessions.

    Args:
        session_factory: async_sessionmaker to use; defaults to the shared one
            from database/connection.py (settings.DATABASE_URL)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def save_service(self, service: Service) -> Service:
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(orm.Service(
                    id=service.id,
                    name=service.name,
                    duration_minutes=service.duration_minutes,
                    available_weekdays=sorted(int(d) for d in service.available_weekdays),
                    available_time_slots=[s.strftime("%H:%M") for s in service.available_time_slots],
                    max_daily_bookings=service.max_daily_bookings,
                    cancellation_policy_hours=service.cancellation_policy_hours,
                    requires_deposit=service.requires_deposit,
                    preparation_instructions=service.preparation_instructions,
                    is_active=service.is_active,
                ))
        return service

    async def save_client(self, client: Client) -> Client:
        async with self._session_factory() as session:
            async with session.begin():
                await session.merge(orm.Client(
                    id=client.id,
                    name=client.name,
                    phone=client.phone,
                    email=client.email,
                    preferred_channel=client.preferred_channel,
                ))
        return client

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_service(self, service_id: UUID) -> Service | None:
        async with self._session_factory() as session:
            row = await session.get(orm.Service, service_id)
            return _service_from_row(row) if row is not None else None

    async def get_client(self, client_id: UUID) -> Client | None:
        async with self._session_factory() as session:
            row = await session.get(orm.Client, client_id)
            return _client_from_row(row) if row is not None else None

    async def get_booking(self, booking_id: UUID) -> Booking | None:
        async with self._session_factory() as session:
            row = await session.get(orm.Booking, booking_id)
            return _booking_from_row(row) if row is not None else None

    async def count_active_bookings(
        self, service_id: UUID, on_date: date, exclude_booking_id: UUID | None = None
    ) -> int:
        async with self._session_factory() as session:
            return await self._count_active(session, service_id, on_date, exclude_booking_id)

    async def find_conflicting_booking(
        self,
        service_id: UUID,
        on_date: date,
        at: time,
        exclude_booking_id: UUID | None = None,
    ) -> Booking | None:
        stmt = select(orm.Booking).where(
            orm.Booking.service_id == service_id,
            orm.Booking.booking_date == on_date,
            orm.Booking.booking_time == at,
            orm.Booking.status.in_(_ACTIVE),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(orm.Booking.id != exclude_booking_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt.limit(1))).scalar_one_or_none()
            return _booking_from_row(row) if row is not None else None

    async def find_bookings(self, criteria: BookingCriteria) -> list[Booking]:
        stmt = select(orm.Booking).order_by(
            orm.Booking.booking_date, orm.Booking.booking_time, orm.Booking.created_at
        )
        for criterion in criteria.filters:
            stmt = stmt.where(_criterion_clause(criterion))
        if criteria.limit is not None:
            stmt = stmt.limit(criteria.limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_booking_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Booking writes
    # ------------------------------------------------------------------

    async def insert_booking(self, booking: Booking, daily_cap: int | None = None) -> Booking:
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    if booking.is_active and daily_cap is not None:
                        await self._guard_daily_cap(session, booking, daily_cap)
                    session.add(_booking_to_row(booking))
                    await session.flush()
            except IntegrityError as e:
                logger.warning(
                    f"Active slot conflict on insert for booking {booking.id}",
                    extra={"booking_id": str(booking.id), "service_id": str(booking.service_id)},
                )
                raise SlotConflictError(
                    "Slot already held by an active booking",
                    details={"reason": "slot taken"},
                ) from e
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
        cascade_types = list(cancel_pending_of_types)
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    stmt = select(orm.Booking).where(orm.Booking.id == booking_id).with_for_update()
                    row = (await session.execute(stmt)).scalar_one_or_none()
                    if row is None:
                        raise BookingNotFoundError(booking_id)
                    if expected_statuses is not None and row.status not in set(expected_statuses):
                        return None

                    for name, value in fields.items():
                        setattr(row, _BOOKING_COLUMNS.get(name, name), _db_value(value))
                    updated = _booking_from_row(row)

                    if updated.is_active and daily_cap is not None:
                        await self._guard_daily_cap(session, updated, daily_cap)
                    await session.flush()

                    if cascade_types:
                        result = await session.execute(
                            update(orm.Notification)
                            .where(
                                orm.Notification.booking_id == booking_id,
                                orm.Notification.status.in_(UNSENT_NOTIFICATION_STATUSES),
                                orm.Notification.type.in_(cascade_types),
                            )
                            .values(
                                status=NotificationStatus.CANCELLED,
                                claimed_at=None,
                                updated_at=_to_utc(updated.updated_at),
                            )
                        )
                        logger.info(
                            f"Cancelled {result.rowcount} unsent notifications for booking {booking_id}",
                            extra={"booking_id": str(booking_id)},
                        )
            except IntegrityError as e:
                logger.warning(
                    f"Active slot conflict on update for booking {booking_id}",
                    extra={"booking_id": str(booking_id)},
                )
                raise SlotConflictError(
                    "Slot already held by an active booking",
                    details={"reason": "slot taken"},
                ) from e
        return updated

    async def delete_booking(self, booking_id: UUID) -> bool:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(orm.Notification).where(orm.Notification.booking_id == booking_id)
                )
                result = await session.execute(
                    delete(orm.Booking).where(orm.Booking.id == booking_id)
                )
                return result.rowcount > 0

    # ------------------------------------------------------------------
    # Notification writes
    # ------------------------------------------------------------------

    async def insert_notification(self, notification: Notification) -> Notification:
        async with self._session_factory() as session:
            async with session.begin():
                session.add(_notification_to_row(notification))
        return notification

    async def update_notification(
        self,
        notification_id: UUID,
        fields: dict[str, Any],
        *,
        expected_statuses: Iterable[NotificationStatus] | None = None,
    ) -> Notification | None:
        async with self._session_factory() as session:
            async with session.begin():
                stmt = (
                    select(orm.Notification)
                    .where(orm.Notification.id == notification_id)
                    .with_for_update()
                )
                row = (await session.execute(stmt)).scalar_one_or_none()
                if row is None:
                    raise NotificationNotFoundError(notification_id)
                if expected_statuses is not None and row.status not in set(expected_statuses):
                    return None
                for name, value in fields.items():
                    setattr(row, _NOTIFICATION_COLUMNS.get(name, name), _db_value(value))
                await session.flush()
                return _notification_from_row(row)

    async def claim_notification(
        self, notification_id: UUID, now: datetime
    ) -> Notification | None:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(orm.Notification)
                    .where(
                        orm.Notification.id == notification_id,
                        orm.Notification.status == NotificationStatus.PENDING,
                    )
                    .values(
                        status=NotificationStatus.PROCESSING,
                        claimed_at=_to_utc(now),
                        updated_at=_to_utc(now),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                row = await session.get(orm.Notification, notification_id, populate_existing=True)
                return _notification_from_row(row)

    async def find_due_notifications(
        self,
        now: datetime,
        statuses: Iterable[NotificationStatus] = (NotificationStatus.PENDING,),
        limit: int | None = None,
    ) -> list[Notification]:
        stmt = (
            select(orm.Notification)
            .where(
                orm.Notification.status.in_(list(statuses)),
                orm.Notification.scheduled_for <= _to_utc(now),
            )
            .order_by(_PRIORITY_ORDER, orm.Notification.scheduled_for)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_notification_from_row(row) for row in rows]

    async def requeue_stale_claims(self, claimed_before: datetime, now: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(orm.Notification)
                    .where(
                        orm.Notification.status == NotificationStatus.PROCESSING,
                        orm.Notification.claimed_at < _to_utc(claimed_before),
                    )
                    .values(
                        status=NotificationStatus.PENDING,
                        claimed_at=None,
                        updated_at=_to_utc(now),
                    )
                )
                return result.rowcount

    async def delete_notifications_before(
        self, cutoff: datetime, statuses: Iterable[NotificationStatus]
    ) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(orm.Notification).where(
                        orm.Notification.status.in_(list(statuses)),
                        orm.Notification.created_at < _to_utc(cutoff),
                    )
                )
                return result.rowcount

    async def list_notifications(self, booking_id: UUID) -> list[Notification]:
        stmt = (
            select(orm.Notification)
            .where(orm.Notification.booking_id == booking_id)
            .order_by(orm.Notification.scheduled_for, orm.Notification.created_at)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_notification_from_row(row) for row in rows]

    async def count_notifications(
        self, created_from: datetime, created_to: datetime
    ) -> dict[tuple[NotificationStatus, NotificationType, Channel], int]:
        stmt = (
            select(
                orm.Notification.status,
                orm.Notification.type,
                orm.Notification.channel,
                func.count(),
            )
            .where(
                orm.Notification.created_at >= _to_utc(created_from),
                orm.Notification.created_at < _to_utc(created_to),
            )
            .group_by(orm.Notification.status, orm.Notification.type, orm.Notification.channel)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
            return {(status, kind, channel): count for status, kind, channel, count in rows}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _count_active(
        session: AsyncSession,
        service_id: UUID,
        on_date: date,
        exclude_booking_id: UUID | None,
    ) -> int:
        stmt = select(func.count()).select_from(orm.Booking).where(
            orm.Booking.service_id == service_id,
            orm.Booking.booking_date == on_date,
            orm.Booking.status.in_(_ACTIVE),
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(orm.Booking.id != exclude_booking_id)
        return (await session.execute(stmt)).scalar_one()

    async def _guard_daily_cap(
        self, session: AsyncSession, booking: Booking, daily_cap: int
    ) -> None:
        # Serializes cap checks for the same service (no-op lock on SQLite)
        await session.execute(
            select(orm.Service.id).where(orm.Service.id == booking.service_id).with_for_update()
        )
        count = await self._count_active(session, booking.service_id, booking.date, booking.id)
        if count >= daily_cap:
            raise SlotConflictError(
                "Daily capacity reached",
                details={"reason": "daily capacity reached", "daily_cap": daily_cap},
            )
