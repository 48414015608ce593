"""
SQLAlchemy ORM models for the booking engine tables.

This module defines:
- services: bookable services with weekday/slot policy and daily cap
- clients: people who book, with their preferred notification channel
- bookings: booking lifecycle records
- notifications: scheduled/retried outbound messages tied to a booking

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for instants (stored as UTC)
- JSONB (JSON on non-PostgreSQL dialects) for list and metadata columns
- Proper indexes and constraints

The enums are shared with the domain layer (booking/models.py).
"""

from datetime import date, datetime, time
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    Uuid,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from booking.models import (
    BookingStatus,
    Channel,
    NotificationStatus,
    NotificationType,
    Priority,
)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Predicate of the partial unique index guarding active slots
ACTIVE_SLOT_PREDICATE = "status IN ('pending', 'confirmed')"


def _enum(enum_cls: type, name: str) -> SQLEnum:
    # values_callable stores .value ("pending") instead of .name ("PENDING")
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Core Models
# ============================================================================


class Service(Base):
    """
    Service model - a bookable offering and its availability policy.

    available_weekdays holds ints 0-6 (Monday=0); available_time_slots holds
    "HH:MM" strings.
    """

    __tablename__ = "services"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    available_weekdays: Mapped[list[int]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    available_time_slots: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    max_daily_bookings: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancellation_policy_hours: Mapped[int] = mapped_column(
        Integer, nullable=False, default=24, server_default="24"
    )
    requires_deposit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    preparation_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(
        "Booking", back_populates="service"
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_service_duration_positive"),
        CheckConstraint(
            "max_daily_bookings IS NULL OR max_daily_bookings > 0",
            name="check_service_daily_cap_positive",
        ),
        CheckConstraint(
            "cancellation_policy_hours >= 0",
            name="check_service_cancellation_hours_non_negative",
        ),
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', active={self.is_active})>"


class Client(Base):
    """Client model - the person a booking and its notifications belong to."""

    __tablename__ = "clients"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    preferred_channel: Mapped[Channel | None] = mapped_column(
        _enum(Channel, "notification_channel"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Client(id={self.id}, name='{self.name}')>"


# ============================================================================
# Transactional Models
# ============================================================================


class Booking(Base):
    """
    Booking model - one appointment for one service slot.

    At most one active (pending/confirmed) booking may hold a given
    (service_id, booking_date, booking_time); enforced by a partial unique
    index so concurrent inserts cannot both succeed.
    """

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Foreign keys
    client_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )

    # Slot (wall-clock in the business timezone)
    booking_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    booking_time: Mapped[time] = mapped_column("time", Time, nullable=False)

    # Status tracking
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus, "booking_status"),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True,
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rescheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Relationships
    service: Mapped["Service"] = relationship("Service", back_populates="bookings")
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification",
        back_populates="booking",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # One active booking per slot
        Index(
            "uq_bookings_active_slot",
            "service_id",
            "date",
            "time",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_PREDICATE),
            sqlite_where=text(ACTIVE_SLOT_PREDICATE),
        ),
        # Daily cap counts and availability lookups
        Index("idx_bookings_service_date_status", "service_id", "date", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, service_id={self.service_id}, "
            f"date={self.booking_date}, time={self.booking_time}, status='{self.status}')>"
        )


class Notification(Base):
    """
    Notification model - an outbound message and its delivery state.

    Processed by the retry worker: pending rows whose scheduled_for has passed
    are claimed (status=processing), sent, then marked sent or rescheduled
    according to the channel retry policy.
    """

    __tablename__ = "notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    booking_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=True, index=True
    )
    client_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)

    type: Mapped[NotificationType] = mapped_column(
        _enum(NotificationType, "notification_type"), nullable=False
    )
    channel: Mapped[Channel] = mapped_column(
        _enum(Channel, "notification_channel"), nullable=False
    )
    priority: Mapped[Priority] = mapped_column(
        _enum(Priority, "notification_priority"), nullable=False, default=Priority.NORMAL
    )
    status: Mapped[NotificationStatus] = mapped_column(
        _enum(NotificationStatus, "notification_status"),
        nullable=False,
        default=NotificationStatus.PENDING,
    )

    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # Column named metadata (attribute renamed, reserved by DeclarativeBase)
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    booking: Mapped[Optional["Booking"]] = relationship("Booking", back_populates="notifications")

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="check_notification_retry_count_non_negative"),
        # Due-notification scan of the retry worker
        Index("idx_notifications_status_scheduled", "status", "scheduled_for"),
        # Cleanup of old sent/failed rows
        Index("idx_notifications_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Notification(id={self.id}, type='{self.type}', channel='{self.channel}', "
            f"status='{self.status}', retry_count={self.retry_count})>"
        )
