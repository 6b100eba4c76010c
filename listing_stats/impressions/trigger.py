from __future__ import annotations

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import QueueStoreError
from ..kinds import KINDS
from .queue_store import QueueStore

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_THRESHOLD = 50
DEFAULT_DRAIN_INTERVAL = 60

INTERVAL_JOB_ID = "impression_queue_drain"
SOON_JOB_ID = "impression_queue_drain_soon"


class DrainScheduler:
    """Runs the batch processor on a fixed interval and on demand.

    Backed by APScheduler's BackgroundScheduler so drains happen on its worker
    threads, never on the request path.
    """

    def __init__(self, run: Callable[[], object], interval_seconds: int = DEFAULT_DRAIN_INTERVAL,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.run = run
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler or BackgroundScheduler(daemon=True)

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self) -> None:
        if self.running:
            return
        self.scheduler.add_job(
            self.run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=INTERVAL_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Impression queue drain scheduled every %ss", self.interval_seconds)

    def request_run(self) -> bool:
        """Schedule a drain for as soon as a worker is free. Never blocks."""
        if not self.running:
            logger.debug("Drain requested but scheduler is not running; waiting for next start")
            return False
        # one pending early run at most; a burst of triggers collapses into it
        self.scheduler.add_job(self.run, id=SOON_JOB_ID, replace_existing=True)
        return True

    def shutdown(self, wait: bool = False) -> None:
        if self.running:
            self.scheduler.shutdown(wait=wait)


class ThresholdMonitor:
    """Requests an early drain once enough entities are pending."""

    def __init__(self, store: QueueStore, trigger: Callable[[], object],
                 threshold: int = DEFAULT_FLUSH_THRESHOLD):
        self.store = store
        self.trigger = trigger
        self.threshold = threshold

    def total_pending(self) -> int:
        return sum(len(self.store.get(kind)) for kind in KINDS)

    def check(self) -> bool:
        try:
            total = self.total_pending()
        except QueueStoreError as e:
            # the interval drain still runs; nothing to do on the request path
            logger.error("Threshold check skipped: %s", e)
            return False
        if total < self.threshold:
            return False
        logger.debug("Pending queue at %s entities (threshold %s); requesting drain", total, self.threshold)
        self.trigger()
        return True
