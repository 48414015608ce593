"""
Shared test constants and test doubles.

Reference instant: Wednesday 2025-12-10 09:00 UTC (10:00 Europe/Madrid).
"""

import asyncio
from datetime import UTC, date, datetime

from booking.models import Notification
from booking.notifier import SendResult

NOW = datetime(2025, 12, 10, 9, 0, tzinfo=UTC)
TODAY = date(2025, 12, 10)  # Wednesday
NEXT_MONDAY = date(2025, 12, 15)
LAST_MONDAY = date(2025, 12, 8)
NEXT_TUESDAY = date(2025, 12, 16)
NEXT_WEDNESDAY = date(2025, 12, 17)


class FakeNotifier:
    """
    Notifier test double.

    Args:
        outcomes: Results returned in order (SendResult or Exception to raise);
            once exhausted every send succeeds
        delay: Seconds to sleep before answering (timeout tests)
    """

    def __init__(self, outcomes=None, delay: float = 0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> SendResult:
        self.sent.append(notification)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult(success=True)


class AlwaysFailingNotifier(FakeNotifier):
    async def send(self, notification: Notification) -> SendResult:
        self.sent.append(notification)
        return SendResult(success=False, provider_error="provider unavailable")
