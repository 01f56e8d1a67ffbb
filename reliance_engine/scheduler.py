"""
Background jobs: liveness ticks, notification drain and WAL checkpoints.

max_instances=1 keeps APScheduler from stacking runs of a slow job; the
monitor's own cycle lock covers direct callers as well.
"""

import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .liveness import LivenessMonitor
from .notifications import NotificationQueue

logger = logging.getLogger(__name__)

WAL_CHECKPOINT_SECONDS = 3600


class RelianceScheduler:
    """APScheduler wrapper owning the engine's periodic work."""

    def __init__(
        self,
        monitor: LivenessMonitor,
        queue: Optional[NotificationQueue],
        liveness_interval_seconds: int,
        queue_poll_seconds: int,
    ) -> None:
        self.monitor = monitor
        self.queue = queue
        self.liveness_interval_seconds = liveness_interval_seconds
        self.queue_poll_seconds = queue_poll_seconds
        self.scheduler = BackgroundScheduler(timezone="UTC")

    def start(self) -> None:
        self.scheduler.add_job(
            self.monitor.on_scheduled_tick,
            trigger=IntervalTrigger(seconds=self.liveness_interval_seconds),
            id="liveness",
            name=f"liveness:{self.monitor.counterparty_id}",
            max_instances=1,
            coalesce=True,
        )
        if self.queue is not None:
            self.scheduler.add_job(
                self.queue.process_due,
                trigger=IntervalTrigger(seconds=self.queue_poll_seconds),
                id="notification-drain",
                name="notification-drain",
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.add_job(
                self.queue.checkpoint,
                trigger=IntervalTrigger(seconds=WAL_CHECKPOINT_SECONDS),
                id="wal-checkpoint",
                name="wal-checkpoint",
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(
            "Scheduler started: liveness every %ss, queue drain every %ss",
            self.liveness_interval_seconds, self.queue_poll_seconds,
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def shutdown(self) -> None:
        self.monitor.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
