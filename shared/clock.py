"""
Injectable time source.

Every component that needs "now" receives a Clock instead of calling
datetime.now() directly, so availability, cancellation windows and retry
schedules can be tested against a fixed instant.

Booking dates and slot times are wall-clock values in the business timezone
(settings.TIMEZONE). Instants (created_at, scheduled_for, ...) are
timezone-aware datetimes.
"""

from datetime import UTC, date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from shared.config import get_settings


class Clock(Protocol):
    """Source of the current instant plus business-timezone date arithmetic."""

    tz: ZoneInfo

    def now(self) -> datetime: ...

    def today(self) -> date: ...

    def combine(self, day: date, at: time) -> datetime: ...


class _ZonedClock:
    def __init__(self, tz: ZoneInfo | str | None = None) -> None:
        if tz is None:
            tz = get_settings().TIMEZONE
        self.tz = ZoneInfo(tz) if isinstance(tz, str) else tz

    def now(self) -> datetime:  # pragma: no cover - overridden
        raise NotImplementedError

    def today(self) -> date:
        """Current calendar date in the business timezone."""
        return self.now().astimezone(self.tz).date()

    def combine(self, day: date, at: time) -> datetime:
        """Aware datetime for a booking slot (date + wall-clock time) in the business timezone."""
        return datetime.combine(day, at.replace(tzinfo=None), tzinfo=self.tz)


class SystemClock(_ZonedClock):
    """Real wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock(_ZonedClock):
    """
    Clock frozen at a given instant, advanced explicitly.

    Example:
        >>> clock = FixedClock(datetime(2025, 12, 15, 9, 0, tzinfo=UTC))
        >>> clock.advance(minutes=5)
    """

    def __init__(self, instant: datetime, tz: ZoneInfo | str | None = None) -> None:
        super().__init__(tz)
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.tz)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=self.tz)
        self._instant = instant

    def advance(self, **delta: float) -> datetime:
        self._instant = self._instant + timedelta(**delta)
        return self._instant
