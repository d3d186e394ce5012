import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from context import ContextRegistry

logger = logging.getLogger(__name__)


class SchedulerManager:
    """Re-runs every open live query on an interval and drops expired sessions.

    The remote document store has no push channel over REST, so listeners are
    refreshed by polling; a listener only fires when its result changed.
    """

    def __init__(self, registry: ContextRegistry) -> None:
        settings = get_settings()
        self.registry = registry
        self.interval_secs = settings.poll_interval_secs
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        # Expired sessions are closed first so their listeners are not polled.
        evicted = self.registry.evict_expired()
        polled = 0
        seen = set()
        for context in self.registry:
            documents = context.store.documents
            # Local contexts share one document store.
            if id(documents) in seen:
                continue
            seen.add(id(documents))
            documents.poll()
            polled += 1
        logger.debug(f"scheduler_run: source={source} stores_polled={polled} evicted={evicted}")
        return polled

    def start(self) -> None:
        trigger = IntervalTrigger(seconds=self.interval_secs)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval"],
            id="live_query_poll",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        self.scheduler.start()
        logger.info(f"Scheduler started with {self.interval_secs}s live query polling")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
