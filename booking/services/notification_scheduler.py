"""
Notification scheduling for booking lifecycle events.

NotificationScheduler turns a BookingEvent into the list of Notification
records to persist. It does not touch the Store; BookingLifecycle inserts
what it returns.

Default policy:

    created      confirmation now, reminder at appointment - each offset,
                 preparation instructions (services that have them)
    confirmed    nothing
    rescheduled  reschedule notice now, reminders and preparation
                 instructions for the new time
    cancelled    cancellation now
    completed    feedback request now

Reminder offsets come from settings.REMINDER_OFFSETS_HOURS ([24, 2] by
default). A reminder whose time has already passed is not scheduled; it is
returned in SchedulingPlan.rejected as a ReminderWindowPassedError. With
settings.SEND_LATE_REMINDER_IMMEDIATELY, a single reminder is sent right away
instead when every window has passed but the appointment is still ahead.

Preparation instructions go out settings.PREPARATION_OFFSET_HOURS before the
appointment, or right away when that moment has passed but the appointment
is still ahead. Services without preparation_instructions get none.

Channel resolution: event override, then the client's preferred channel,
then settings.DEFAULT_CHANNEL.
"""

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from booking.models import (
    BookingEvent,
    Channel,
    Client,
    LifecycleEventType,
    Notification,
    NotificationType,
    Priority,
)
from shared.clock import Clock
from shared.config import get_settings
from shared.errors import ReminderWindowPassedError

logger = logging.getLogger(__name__)


NOTIFICATION_PRIORITIES: dict[NotificationType, Priority] = {
    NotificationType.CANCELLATION: Priority.CRITICAL,
    NotificationType.REMINDER: Priority.HIGH,
    NotificationType.CONFIRMATION: Priority.NORMAL,
    NotificationType.RESCHEDULE: Priority.NORMAL,
    NotificationType.PREPARATION: Priority.NORMAL,
    NotificationType.FEEDBACK: Priority.LOW,
}

DEFAULT_POLICY: dict[LifecycleEventType, tuple[NotificationType, ...]] = {
    LifecycleEventType.CREATED: (
        NotificationType.CONFIRMATION,
        NotificationType.REMINDER,
        NotificationType.PREPARATION,
    ),
    LifecycleEventType.CONFIRMED: (),
    LifecycleEventType.RESCHEDULED: (
        NotificationType.RESCHEDULE,
        NotificationType.REMINDER,
        NotificationType.PREPARATION,
    ),
    LifecycleEventType.CANCELLED: (NotificationType.CANCELLATION,),
    LifecycleEventType.COMPLETED: (NotificationType.FEEDBACK,),
}


class MessageRenderer(Protocol):
    def __call__(
        self, notification_type: NotificationType, channel: Channel, context: dict[str, Any]
    ) -> str: ...


_DEFAULT_TEMPLATES = {
    NotificationType.CONFIRMATION: "Your {service} booking on {date} at {time} is registered.",
    NotificationType.REMINDER: "Reminder: {service} on {date} at {time}.",
    NotificationType.RESCHEDULE: "Your {service} booking has been moved to {date} at {time}.",
    NotificationType.CANCELLATION: "Your {service} booking on {date} at {time} has been cancelled.",
    NotificationType.FEEDBACK: "Thanks for your visit! How was your {service}?",
    NotificationType.PREPARATION: "Before your {service} on {date} at {time}: {preparation}",
}


def default_renderer(
    notification_type: NotificationType, channel: Channel, context: dict[str, Any]
) -> str:
    """One plain-text line per type; channel-independent."""
    return _DEFAULT_TEMPLATES[notification_type].format(**context)


@dataclass
class SchedulingPlan:
    """
    Notifications to persist for one event.

    Attributes:
        notifications: Records ready for Store.insert_notification
        rejected: Reminders skipped because their window already passed
    """
    notifications: list[Notification] = field(default_factory=list)
    rejected: list[ReminderWindowPassedError] = field(default_factory=list)


class NotificationScheduler:
    """Pure decision component: BookingEvent in, SchedulingPlan out."""

    def __init__(
        self,
        clock: Clock,
        reminder_offsets_hours: Optional[Iterable[float]] = None,
        policy: Optional[Mapping[LifecycleEventType, Iterable[NotificationType]]] = None,
        renderer: Optional[MessageRenderer] = None,
        default_channel: Optional[Channel] = None,
        send_late_reminder_immediately: Optional[bool] = None,
        preparation_offset_hours: Optional[float] = None,
    ):
        settings = get_settings()
        self._clock = clock
        offsets = (
            settings.REMINDER_OFFSETS_HOURS
            if reminder_offsets_hours is None
            else reminder_offsets_hours
        )
        # Earliest reminder first
        self._offsets = sorted({float(o) for o in offsets}, reverse=True)
        self._policy = {k: tuple(v) for k, v in (policy or DEFAULT_POLICY).items()}
        self._render = renderer or default_renderer
        self._default_channel = default_channel or Channel(settings.DEFAULT_CHANNEL)
        self._send_late = (
            settings.SEND_LATE_REMINDER_IMMEDIATELY
            if send_late_reminder_immediately is None
            else send_late_reminder_immediately
        )
        self._preparation_offset = timedelta(hours=(
            settings.PREPARATION_OFFSET_HOURS
            if preparation_offset_hours is None
            else preparation_offset_hours
        ))

    def choose_channel(self, event: BookingEvent, client: Optional[Client]) -> Channel:
        if event.channel is not None:
            return event.channel
        if client is not None and client.preferred_channel is not None:
            return client.preferred_channel
        return self._default_channel

    def on_booking_event(
        self, event: BookingEvent, client: Optional[Client] = None
    ) -> SchedulingPlan:
        """
        Decide which notifications an event produces.

        Args:
            event: Lifecycle event (booking state after the transition)
            client: Booking's client, used for the preferred channel

        Returns:
            SchedulingPlan with notifications to insert and rejected reminders

        Example:
            >>> plan = scheduler.on_booking_event(created_event, client)
            >>> [n.type.value for n in plan.notifications]
            ['confirmation', 'reminder', 'reminder']
        """
        plan = SchedulingPlan()
        types = self._policy.get(event.type, ())
        if not types:
            return plan

        channel = self.choose_channel(event, client)
        context = self._context(event)

        for notification_type in types:
            if notification_type == NotificationType.REMINDER:
                self._plan_reminders(event, channel, context, plan)
            elif notification_type == NotificationType.PREPARATION:
                self._plan_preparation(event, channel, context, plan)
            else:
                plan.notifications.append(
                    self._build(event, notification_type, channel, event.occurred_at, context)
                )

        for rejected in plan.rejected:
            logger.info(
                f"Reminder window passed for booking {event.booking.id}: {rejected.message}",
                extra={"booking_id": str(event.booking.id), "channel": channel.value},
            )
        logger.info(
            f"Scheduled {len(plan.notifications)} notifications for {event.type.value} "
            f"event of booking {event.booking.id}",
            extra={"booking_id": str(event.booking.id), "channel": channel.value},
        )
        return plan

    def _plan_reminders(
        self,
        event: BookingEvent,
        channel: Channel,
        context: dict[str, Any],
        plan: SchedulingPlan,
    ) -> None:
        now = event.occurred_at
        appointment_at = self._clock.combine(event.booking.date, event.booking.time)
        scheduled_any = False

        for offset in self._offsets:
            scheduled_for = appointment_at - timedelta(hours=offset)
            if scheduled_for < now:
                plan.rejected.append(ReminderWindowPassedError(scheduled_for, now, offset))
                continue
            plan.notifications.append(self._build(
                event, NotificationType.REMINDER, channel, scheduled_for, context,
                metadata={"offset_hours": offset},
            ))
            scheduled_any = True

        if not scheduled_any and plan.rejected and self._send_late and appointment_at > now:
            plan.notifications.append(self._build(
                event, NotificationType.REMINDER, channel, now, context,
                metadata={"late": True},
            ))

    def _plan_preparation(
        self,
        event: BookingEvent,
        channel: Channel,
        context: dict[str, Any],
        plan: SchedulingPlan,
    ) -> None:
        if not event.service.preparation_instructions:
            return
        now = event.occurred_at
        appointment_at = self._clock.combine(event.booking.date, event.booking.time)
        if appointment_at <= now:
            return
        scheduled_for = max(appointment_at - self._preparation_offset, now)
        plan.notifications.append(self._build(
            event, NotificationType.PREPARATION, channel, scheduled_for,
            {**context, "preparation": event.service.preparation_instructions},
        ))

    def _build(
        self,
        event: BookingEvent,
        notification_type: NotificationType,
        channel: Channel,
        scheduled_for: datetime,
        context: dict[str, Any],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Notification:
        now = event.occurred_at
        return Notification(
            booking_id=event.booking.id,
            client_id=event.booking.client_id,
            type=notification_type,
            channel=channel,
            priority=NOTIFICATION_PRIORITIES[notification_type],
            scheduled_for=scheduled_for,
            message=self._render(notification_type, channel, context),
            metadata={"event": event.type.value, **(metadata or {})},
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _context(event: BookingEvent) -> dict[str, Any]:
        booking = event.booking
        context = {
            "service": event.service.name,
            "date": booking.date.isoformat(),
            "time": booking.time.strftime("%H:%M"),
            "reason": event.reason or "",
        }
        if event.previous_date is not None and event.previous_time is not None:
            context["previous_date"] = event.previous_date.isoformat()
            context["previous_time"] = event.previous_time.strftime("%H:%M")
        return context
