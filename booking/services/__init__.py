"""
Booking services module.

Services:
- service_catalog: TTL-cached service lookups
- availability_service: slot availability checks and free-slot listing
- notification_scheduler: lifecycle event -> notifications to persist
"""

from booking.services.availability_service import (
    AvailabilityEngine,
    AvailabilityResult,
)
from booking.services.notification_scheduler import (
    DEFAULT_POLICY,
    NOTIFICATION_PRIORITIES,
    MessageRenderer,
    NotificationScheduler,
    SchedulingPlan,
    default_renderer,
)
from booking.services.service_catalog import ServiceCatalog

__all__ = [
    # Availability
    "AvailabilityEngine",
    "AvailabilityResult",
    # Notification scheduling
    "DEFAULT_POLICY",
    "NOTIFICATION_PRIORITIES",
    "MessageRenderer",
    "NotificationScheduler",
    "SchedulingPlan",
    "default_renderer",
    # Catalog
    "ServiceCatalog",
]
