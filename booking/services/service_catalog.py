"""
Service catalog with TTL caching.

Read-through cache of Service snapshots in front of the Store:
- TTL from settings.SERVICE_CACHE_TTL_SECONDS (expiry measured on the
  injected Clock, so tests control it)
- at most settings.SERVICE_CACHE_MAX_ENTRIES entries; the oldest entry is
  evicted when full
- invalidate() drops one service or the whole cache after an admin edit

Usage:
    catalog = ServiceCatalog(store, clock)
    service = await catalog.get_active(service_id)
"""

import asyncio
import logging
from datetime import datetime, timedelta
from uuid import UUID

from booking.models import Service
from database.store import Store
from shared.clock import Clock
from shared.config import get_settings
from shared.errors import ServiceInactiveError, ServiceNotFoundError

logger = logging.getLogger(__name__)


class ServiceCatalog:
    """Cached access to services by id."""

    def __init__(
        self,
        store: Store,
        clock: Clock,
        ttl_seconds: int | None = None,
        max_entries: int | None = None,
    ):
        settings = get_settings()
        self._store = store
        self._clock = clock
        self._ttl = timedelta(
            seconds=settings.SERVICE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        )
        self._max_entries = (
            settings.SERVICE_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        )
        self._cache: dict[UUID, dict] = {}  # service_id -> {service, expires_at}
        self._cache_lock = asyncio.Lock()

    def _is_cache_valid(self, service_id: UUID, now: datetime) -> bool:
        entry = self._cache.get(service_id)
        return entry is not None and now < entry["expires_at"]

    async def get(self, service_id: UUID) -> Service:
        """
        Get a service snapshot by id.

        Raises:
            ServiceNotFoundError: no such service
        """
        now = self._clock.now()
        async with self._cache_lock:
            if self._is_cache_valid(service_id, now):
                return self._cache[service_id]["service"]

        service = await self._store.get_service(service_id)
        if service is None:
            raise ServiceNotFoundError(service_id)

        async with self._cache_lock:
            if service_id not in self._cache and len(self._cache) >= self._max_entries > 0:
                oldest = min(self._cache, key=lambda k: self._cache[k]["expires_at"])
                del self._cache[oldest]
            if self._max_entries > 0:
                self._cache[service_id] = {
                    "service": service,
                    "expires_at": now + self._ttl,
                }

        logger.debug(
            f"Service {service_id} loaded into catalog cache",
            extra={"service_id": str(service_id)},
        )
        return service

    async def get_active(self, service_id: UUID) -> Service:
        """
        Get a service that accepts bookings.

        Raises:
            ServiceNotFoundError: no such service
            ServiceInactiveError: service exists but is disabled
        """
        service = await self.get(service_id)
        if not service.is_active:
            raise ServiceInactiveError(service_id)
        return service

    def invalidate(self, service_id: UUID | None = None) -> None:
        """Drop one cached service, or every entry when service_id is None."""
        if service_id is None:
            self._cache.clear()
        else:
            self._cache.pop(service_id, None)
