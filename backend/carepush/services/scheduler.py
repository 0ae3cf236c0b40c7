"""Scheduler service - delivers scheduled notifications once they fall due.

Delivery policy:
- A due row is claimed with a conditional UPDATE before dispatch, so two
  scheduler instances (or two overlapping ticks) never dispatch the same row.
- The claim marks the row sent before dispatch, so each row is attempted at
  most once, whether or not any device accepted it. There is no retry.
- One failing row never aborts the rest of the tick.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..models.notification import Notification
from .notification_service import NotificationService
from .payload import NotificationPayload

logger = logging.getLogger(__name__)

JOB_ID = "send_scheduled_notifications"


class SchedulerService:
    """Periodic job that drives due notifications through NotificationService."""

    def __init__(
        self,
        notification_service: NotificationService,
        interval_seconds: int = 60,
        max_concurrent: int = 10,
    ):
        self._service = notification_service
        self._interval = interval_seconds
        self._max_concurrent = max_concurrent
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._tick_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the scheduler."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._run_tick,
            trigger=IntervalTrigger(seconds=self._interval),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._interval,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (interval={self._interval}s, max_concurrent={self._max_concurrent})")

    def stop(self):
        """Stop the scheduler."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    async def _run_tick(self):
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Error in scheduled notifications job: {e}")

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Dispatch every due, unclaimed notification once.

        Returns the number of notifications this tick dispatched.
        """
        async with self._tick_lock:
            now = now or datetime.utcnow()
            due = await self._service.store.due_scheduled(now)
            if not due:
                return 0

            logger.info(f"Found {len(due)} scheduled notifications to send")

            semaphore = asyncio.Semaphore(self._max_concurrent)

            async def deliver_with_limit(notification: Notification) -> bool:
                async with semaphore:
                    return await self._deliver(notification, now)

            results = await asyncio.gather(*[deliver_with_limit(n) for n in due])
            return sum(1 for dispatched in results if dispatched)

    async def _deliver(self, notification: Notification, now: datetime) -> bool:
        """Claim and dispatch one row. Returns False if the row was not dispatched."""
        try:
            if not await self._service.store.claim(notification.id, now):
                logger.debug(f"Notification {notification.id} already claimed elsewhere")
                return False
        except Exception as e:
            logger.error(f"Error claiming scheduled notification {notification.id}: {e}")
            return False

        try:
            result = await self._service.send_to_user(
                notification.user_id,
                NotificationPayload.from_notification(notification),
                scheduled_for=None,
                persist=False,
            )
            logger.info(f"Scheduled notification {notification.id}: {result.message}")
        except Exception as e:
            logger.error(f"Error sending scheduled notification {notification.id}: {e}")

        try:
            await self._service.announce_notification(notification)
        except Exception as e:
            logger.error(f"Error announcing scheduled notification {notification.id}: {e}")
        return True
