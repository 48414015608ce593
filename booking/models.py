"""
Domain records for the booking engine.

These are the persistence-agnostic shapes that flow between the engine and a
Store: Service, Client, Booking, Notification, per-channel RetryPolicy and
the lifecycle events emitted by BookingLifecycle.

SQLAlchemy counterparts live in database/models.py; the Store implementations
map between the two.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Enums
# ============================================================================


class Weekday(int, Enum):
    """Day of week, matching date.weekday() (0=Monday, ..., 6=Sunday)."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6

    @classmethod
    def parse(cls, value: Any) -> "Weekday":
        """Accept a Weekday, an int 0-6 or an English day name ("monday")."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown weekday name: {value!r}") from None
        return cls(int(value))


class BookingStatus(str, Enum):
    """Booking lifecycle status."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


# Statuses that occupy a slot
ACTIVE_BOOKING_STATUSES: frozenset[BookingStatus] = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED}
)


class NotificationType(str, Enum):
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    CANCELLATION = "cancellation"
    RESCHEDULE = "reschedule"
    FEEDBACK = "feedback"
    PREPARATION = "preparation"

    def __str__(self):
        return self.value


class Channel(str, Enum):
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    PUSH = "push"

    def __str__(self):
        return self.value


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Sort key: 0 is processed first."""
        return PRIORITY_RANK[self]

    def __str__(self):
        return self.value


PRIORITY_RANK: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class NotificationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"  # Claimed by a retry worker, send in flight
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


# Not yet delivered; a booking cascade cancels these, including sends in flight
UNSENT_NOTIFICATION_STATUSES = (NotificationStatus.PENDING, NotificationStatus.PROCESSING)


class LifecycleEventType(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# ============================================================================
# Records
# ============================================================================


class Service(BaseModel):
    """
    Read-only snapshot of a service's bookable policy.

    available_time_slots is kept sorted and de-duplicated.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    duration_minutes: int = Field(gt=0)
    available_weekdays: frozenset[Weekday] = frozenset()
    available_time_slots: tuple[time, ...] = ()
    max_daily_bookings: Optional[int] = Field(default=None, ge=1)
    cancellation_policy_hours: int = Field(default=24, ge=0)
    requires_deposit: bool = False
    # Sent to the client ahead of the appointment when set (e.g. colouring, treatments)
    preparation_instructions: Optional[str] = None
    is_active: bool = True

    @field_validator("available_weekdays", mode="before")
    @classmethod
    def _parse_weekdays(cls, value: Any) -> frozenset[Weekday]:
        return frozenset(Weekday.parse(v) for v in (value or ()))

    @field_validator("available_time_slots", mode="before")
    @classmethod
    def _sort_slots(cls, value: Any) -> tuple[time, ...]:
        slots = set()
        for slot in value or ():
            if isinstance(slot, str):
                slot = time.fromisoformat(slot)
            slots.add(slot.replace(second=0, microsecond=0, tzinfo=None))
        return tuple(sorted(slots))

    def offers_day(self, day: date) -> bool:
        return Weekday(day.weekday()) in self.available_weekdays

    def offers_slot(self, at: time) -> bool:
        return at.replace(second=0, microsecond=0, tzinfo=None) in self.available_time_slots


class Client(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_channel: Optional[Channel] = None


class Booking(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    client_id: UUID
    service_id: UUID
    date: date
    time: time
    status: BookingStatus = BookingStatus.PENDING
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rescheduled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, service_id={self.service_id}, "
            f"slot={self.date.isoformat()} {self.time.strftime('%H:%M')}, status='{self.status.value}')>"
        )


class Notification(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    booking_id: Optional[UUID] = None
    client_id: UUID
    type: NotificationType
    channel: Channel
    priority: Priority = Priority.NORMAL
    status: NotificationStatus = NotificationStatus.PENDING
    scheduled_for: datetime
    sent_at: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    message: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    claimed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class RetryPolicy(BaseModel):
    """
    Per-channel retry policy.

    delay_schedule has one entry per retry attempt index; the last entry is
    reused once the schedule is exhausted. Delays must be strictly positive so
    that a rescheduled notification is never due again in the same cycle.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(ge=0)
    delay_schedule: tuple[timedelta, ...] = ()

    @field_validator("delay_schedule")
    @classmethod
    def _positive_delays(cls, value: tuple[timedelta, ...]) -> tuple[timedelta, ...]:
        for delay in value:
            if delay <= timedelta(0):
                raise ValueError("retry delays must be positive")
        return value

    @model_validator(mode="after")
    def _schedule_covers_retries(self) -> "RetryPolicy":
        if self.max_retries > 0 and not self.delay_schedule:
            raise ValueError("a policy with retries needs a delay schedule")
        return self

    @classmethod
    def from_minutes(cls, max_retries: int, delay_minutes: list[float]) -> "RetryPolicy":
        return cls(
            max_retries=max_retries,
            delay_schedule=tuple(timedelta(minutes=m) for m in delay_minutes),
        )

    def delay_for(self, retry_count: int) -> timedelta:
        """Delay before the retry that follows attempt number retry_count (0-based)."""
        if not self.delay_schedule:
            raise ValueError("policy has no delay schedule")
        return self.delay_schedule[min(retry_count, len(self.delay_schedule) - 1)]


# No retries for a channel without a policy
NO_RETRY_POLICY = RetryPolicy(max_retries=0)

DEFAULT_RETRY_POLICIES: dict[Channel, RetryPolicy] = {
    Channel.WHATSAPP: RetryPolicy.from_minutes(3, [5, 15, 60]),
    Channel.EMAIL: RetryPolicy.from_minutes(5, [2, 10, 30, 120, 360]),
    Channel.SMS: RetryPolicy.from_minutes(3, [1, 5, 15]),
    Channel.PUSH: RetryPolicy.from_minutes(2, [1, 5]),
}


def build_retry_policies(overrides: dict[str, dict[str, Any]] | None = None) -> dict[Channel, RetryPolicy]:
    """
    Merge per-channel overrides (settings.RETRY_POLICIES) onto the defaults.

    Override format: {"sms": {"max_retries": 3, "delay_minutes": [5, 15, 60]}}
    """
    policies = dict(DEFAULT_RETRY_POLICIES)
    for channel_name, config in (overrides or {}).items():
        channel = Channel(channel_name)
        policies[channel] = RetryPolicy.from_minutes(
            int(config["max_retries"]), list(config.get("delay_minutes", []))
        )
    return policies


class BookingEvent(BaseModel):
    """
    Notable booking state change, consumed by NotificationScheduler.

    booking is the state after the transition. For RESCHEDULED events
    previous_date/previous_time hold the vacated slot; for CANCELLED events
    hours_until_booking and within_penalty_window are informational.
    """

    type: LifecycleEventType
    booking: Booking
    service: Service
    occurred_at: datetime
    channel: Optional[Channel] = None
    reason: Optional[str] = None
    previous_date: Optional[date] = None
    previous_time: Optional[time] = None
    hours_until_booking: Optional[float] = None
    within_penalty_window: Optional[bool] = None
