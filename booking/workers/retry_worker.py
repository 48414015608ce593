"""
Notification retry worker - Delivers due notifications with per-channel backoff.

Each cycle (RetryEngine.run_cycle):
1. Returns stale claims (status=processing for longer than
   CLAIM_TIMEOUT_SECONDS, e.g. a worker crashed mid-send) to pending
2. Loads pending notifications with scheduled_for <= now, critical priority
   first, then oldest first, at most RETRY_BATCH_SIZE
3. Claims each one (pending -> processing, conditional update) so concurrent
   workers never send the same notification twice
4. Sends it through the Notifier with a NOTIFIER_TIMEOUT_SECONDS timeout:
   - success: status=sent, sent_at=now
   - failure, exception or timeout with retries left: back to pending,
     retry_count += 1, scheduled_for = now + channel delay
   - failure with no retries left: status=failed
   Outcomes are written only while the row is still processing; a
   notification cancelled by a booking cascade mid-send stays cancelled

A failed attempt never aborts the cycle. Because retry delays are strictly
positive, a second cycle at the same instant finds nothing due.

Architecture:
    - Runs run_cycle every RETRY_CYCLE_INTERVAL_SECONDS
    - Runs cleanup (old sent/failed/cancelled rows) once per day
    - Writes a JSON health check file to HEALTH_CHECK_DIR
    - Stops gracefully on SIGTERM/SIGINT
"""

import asyncio
import json
import logging
import signal
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from booking.models import (
    Channel,
    Notification,
    NotificationStatus,
    NO_RETRY_POLICY,
    RetryPolicy,
    build_retry_policies,
)
from booking.notifier import LoggingNotifier, Notifier
from database.sql_store import SqlStore
from database.store import Store
from shared.clock import Clock, SystemClock
from shared.config import get_settings
from shared.errors import TransportError
from shared.logging_config import configure_logging

# Configure logger
logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
shutdown_requested = False

# Statuses removed by the daily cleanup job
CLEANUP_STATUSES = (
    NotificationStatus.SENT,
    NotificationStatus.FAILED,
    NotificationStatus.CANCELLED,
)


@dataclass
class CycleStats:
    """
    Counters for one retry cycle.

    Attributes:
        processed: Notifications claimed and attempted
        succeeded: Attempts that ended in status=sent
        failed: Attempts that exhausted retries (status=failed)
        rescheduled: Attempts that failed and were scheduled again
        skipped: Due notifications another worker claimed first
        cancelled_in_flight: Sends whose notification was cancelled before
            the outcome was written (booking cancelled or rescheduled)
        requeued: Stale claims returned to pending before the scan
        errors: Attempts aborted by an unexpected store error
    """
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    rescheduled: int = 0
    skipped: int = 0
    cancelled_in_flight: int = 0
    requeued: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class RetryEngine:
    """Processes due notifications; safe to run from several workers at once."""

    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        clock: Clock,
        policies: Optional[dict[Channel, RetryPolicy]] = None,
        batch_size: Optional[int] = None,
        send_timeout_seconds: Optional[float] = None,
        claim_timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._policies = (
            policies if policies is not None else build_retry_policies(settings.RETRY_POLICIES)
        )
        self._batch_size = batch_size or settings.RETRY_BATCH_SIZE
        self._send_timeout = (
            settings.NOTIFIER_TIMEOUT_SECONDS if send_timeout_seconds is None else send_timeout_seconds
        )
        self._claim_timeout = timedelta(
            seconds=settings.CLAIM_TIMEOUT_SECONDS if claim_timeout_seconds is None else claim_timeout_seconds
        )

    @property
    def clock(self) -> Clock:
        return self._clock

    def policy_for(self, channel: Channel) -> RetryPolicy:
        """Retry policy of a channel; channels without one are never retried."""
        return self._policies.get(channel, NO_RETRY_POLICY)

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleStats:
        """
        Process every notification due at `now`.

        Args:
            now: Cycle instant (defaults to the clock)

        Returns:
            CycleStats for the cycle

        Example:
            >>> stats = await engine.run_cycle()
            >>> stats.processed, stats.succeeded, stats.rescheduled
            (3, 2, 1)
        """
        now = now or self._clock.now()
        stats = CycleStats()

        stats.requeued = await self._store.requeue_stale_claims(now - self._claim_timeout, now)
        if stats.requeued:
            logger.warning(f"Requeued {stats.requeued} stale notification claims")

        due = await self._store.find_due_notifications(
            now, (NotificationStatus.PENDING,), self._batch_size
        )
        if not due:
            logger.debug("No notifications due")
            return stats

        logger.info(f"Processing {len(due)} due notifications")

        for notification in due:
            try:
                await self._attempt(notification, now, stats)
            except Exception as e:
                stats.errors += 1
                logger.error(
                    f"Error processing notification {notification.id}: {e}",
                    exc_info=True,
                    extra={"notification_id": str(notification.id)},
                )

        logger.info(
            f"Retry cycle completed: processed={stats.processed}, succeeded={stats.succeeded}, "
            f"rescheduled={stats.rescheduled}, failed={stats.failed}, "
            f"skipped={stats.skipped}, cancelled_in_flight={stats.cancelled_in_flight}, "
            f"errors={stats.errors}"
        )
        return stats

    async def _attempt(self, notification: Notification, now: datetime, stats: CycleStats) -> None:
        claimed = await self._store.claim_notification(notification.id, now)
        if claimed is None:
            stats.skipped += 1
            logger.debug(f"Notification {notification.id} already claimed, skipping")
            return

        stats.processed += 1
        log_extra = {
            "notification_id": str(claimed.id),
            "booking_id": str(claimed.booking_id),
            "channel": claimed.channel.value,
        }

        error = await self._send(claimed)

        if error is None:
            if await self._finish(claimed, now, stats, log_extra, {
                "status": NotificationStatus.SENT,
                "sent_at": now,
                "last_error": None,
            }):
                stats.succeeded += 1
                logger.info(
                    f"Notification {claimed.id} sent ({claimed.type.value} via {claimed.channel.value})",
                    extra=log_extra,
                )
            return

        policy = self.policy_for(claimed.channel)
        if claimed.retry_count < policy.max_retries:
            delay = policy.delay_for(claimed.retry_count)
            if await self._finish(claimed, now, stats, log_extra, {
                "status": NotificationStatus.PENDING,
                "retry_count": claimed.retry_count + 1,
                "scheduled_for": now + delay,
                "last_error": error,
            }):
                stats.rescheduled += 1
                logger.warning(
                    f"Notification {claimed.id} failed (attempt {claimed.retry_count + 1}), "
                    f"retrying in {delay}: {error}",
                    extra=log_extra,
                )
        elif await self._finish(claimed, now, stats, log_extra, {
            "status": NotificationStatus.FAILED,
            "last_error": error,
        }):
            stats.failed += 1
            logger.error(
                f"Notification {claimed.id} failed permanently after "
                f"{claimed.retry_count} retries: {error}",
                extra=log_extra,
            )

    async def _finish(
        self,
        claimed: Notification,
        now: datetime,
        stats: CycleStats,
        log_extra: dict[str, str],
        fields: dict[str, Any],
    ) -> bool:
        """
        Write the outcome of a send while the claim still holds.

        Returns False when the notification left processing during the send
        (a booking cascade cancelled it); the row is then left as it is.
        """
        stored = await self._store.update_notification(
            claimed.id,
            {**fields, "claimed_at": None, "updated_at": now},
            expected_statuses=(NotificationStatus.PROCESSING,),
        )
        if stored is not None:
            return True
        stats.cancelled_in_flight += 1
        logger.warning(
            f"Notification {claimed.id} was cancelled during send, outcome discarded",
            extra=log_extra,
        )
        return False

    async def _send(self, notification: Notification) -> Optional[str]:
        """Send once; returns None on success, otherwise the error text."""
        try:
            result = await asyncio.wait_for(
                self._notifier.send(notification), timeout=self._send_timeout
            )
        except asyncio.TimeoutError:
            return f"Timeout after {self._send_timeout}s"
        except TransportError as e:
            return e.message
        except Exception as e:
            logger.warning(
                f"Notifier raised for notification {notification.id}: {e}",
                exc_info=True,
                extra={"notification_id": str(notification.id)},
            )
            return f"{type(e).__name__}: {e}"
        if result.success:
            return None
        return result.provider_error or "Send failed"

    async def cleanup(self, older_than_days: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """
        Delete sent/failed/cancelled notifications created more than
        older_than_days ago (default NOTIFICATION_RETENTION_DAYS).

        Returns:
            Number of notifications deleted
        """
        if older_than_days is None:
            older_than_days = get_settings().NOTIFICATION_RETENTION_DAYS
        now = now or self._clock.now()
        deleted = await self._store.delete_notifications_before(
            now - timedelta(days=older_than_days), CLEANUP_STATUSES
        )
        logger.info(f"Cleanup removed {deleted} notifications older than {older_than_days} days")
        return deleted


def signal_handler(signum: int, frame: Any) -> None:
    """
    Handle SIGTERM/SIGINT for graceful shutdown.
    """
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


# =============================================================================
# Health Check
# =============================================================================

async def update_health_check(
    job_name: str,
    last_run: datetime,
    status: str,
    processed: int,
    errors: int,
    health_dir: Optional[Path] = None,
) -> None:
    """
    Update health check file with job statistics.

    Args:
        job_name: Name of the job
        last_run: Timestamp of job completion
        status: Health status ('healthy' or 'unhealthy')
        processed: Number of items processed
        errors: Number of errors encountered
        health_dir: Directory of the health file (default HEALTH_CHECK_DIR)
    """
    health_dir = health_dir or Path(get_settings().HEALTH_CHECK_DIR)
    health_dir.mkdir(parents=True, exist_ok=True)
    health_file = health_dir / "retry_worker_health.json"
    temp_file = health_dir / f"retry_worker_health.{int(time.time())}.tmp"

    # Load existing health data
    health_data = {}
    if health_file.exists():
        try:
            health_data = json.loads(health_file.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable health check file {health_file}: {e}")

    # Update job status
    health_data[job_name] = {
        "last_run": last_run.isoformat(),
        "status": status,
        "processed": processed,
        "errors": errors,
    }

    # Update overall status
    all_healthy = all(
        job.get("status") == "healthy"
        for job in health_data.values()
        if isinstance(job, dict)
    )
    health_data["overall_status"] = "healthy" if all_healthy else "unhealthy"
    health_data["last_updated"] = last_run.isoformat()

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)


# =============================================================================
# Main Entry Point
# =============================================================================

def build_retry_engine() -> RetryEngine:
    """RetryEngine wired to the SQL store, the dry-run notifier and the system clock."""
    return RetryEngine(SqlStore(), LoggingNotifier(), SystemClock())


async def async_main(engine: Optional[RetryEngine] = None, max_cycles: Optional[int] = None) -> None:
    """
    Main async entry point - runs retry cycles on a single event loop.

    Schedule:
    - run_cycle: every RETRY_CYCLE_INTERVAL_SECONDS
    - cleanup: once per day (first cycle of each day)

    Args:
        engine: RetryEngine to drive (default: build_retry_engine())
        max_cycles: Stop after this many cycles (None = until shutdown)

    Handles graceful shutdown on SIGTERM/SIGINT.
    """
    global shutdown_requested

    settings = get_settings()
    engine = engine or build_retry_engine()
    clock = engine.clock

    logger.info("Notification retry worker starting...")
    logger.info(
        f"Configuration: interval={settings.RETRY_CYCLE_INTERVAL_SECONDS}s, "
        f"batch_size={settings.RETRY_BATCH_SIZE}, "
        f"send_timeout={settings.NOTIFIER_TIMEOUT_SECONDS}s, "
        f"retention_days={settings.NOTIFICATION_RETENTION_DAYS}"
    )

    # Write initial health check file
    await update_health_check(
        job_name="startup",
        last_run=clock.now(),
        status="healthy",
        processed=0,
        errors=0,
    )
    logger.info("Initial health check file written")

    last_cleanup_date: str | None = None  # Format: "YYYY-MM-DD"
    cycles = 0

    while not shutdown_requested:
        today = clock.today().isoformat()
        if last_cleanup_date != today:
            try:
                await engine.cleanup()
            except Exception as e:
                logger.error(f"Error in notification cleanup: {e}", exc_info=True)
            last_cleanup_date = today

        try:
            stats = await engine.run_cycle()
            await update_health_check(
                job_name="run_cycle",
                last_run=clock.now(),
                status="healthy" if stats.errors == 0 else "unhealthy",
                processed=stats.processed,
                errors=stats.errors,
            )
        except Exception as e:
            logger.error(f"Error in run_cycle: {e}", exc_info=True)
            await update_health_check(
                job_name="run_cycle",
                last_run=clock.now(),
                status="unhealthy",
                processed=0,
                errors=1,
            )

        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break

        await asyncio.sleep(settings.RETRY_CYCLE_INTERVAL_SECONDS)

    logger.info("Retry worker shutting down gracefully...")


def run_retry_worker() -> None:
    """
    Synchronous entry point that sets up logging and signal handlers,
    then runs the async main function.
    """
    configure_logging(component="retry_worker")

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    # Run the async main with a single event loop
    asyncio.run(async_main())


if __name__ == "__main__":
    run_retry_worker()
