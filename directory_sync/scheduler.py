"""
Background daily trigger for directory sync runs.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from directory_sync.models import utcnow
from directory_sync.reconciler import DirectorySyncReconciler, SyncRunResult

logger = logging.getLogger(__name__)

ERROR_RETRY_DELAY = timedelta(hours=1)


def next_sync_time(now: datetime, sync_hour: int) -> datetime:
    """Return the next occurrence of sync_hour:00 strictly after now (UTC)."""
    candidate = now.replace(hour=sync_hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailySyncScheduler:
    """
    Runs the reconciler once a day at the configured UTC hour.

    The loop runs in a daemon thread and waits on an event, so stop() ends it
    without waiting for the next run.
    """

    def __init__(
        self,
        reconciler: DirectorySyncReconciler,
        ad_config: dict,
        on_result: Optional[Callable[[SyncRunResult], None]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            reconciler: Reconciler to run
            ad_config: active_directory configuration
            on_result: Called with every finished run, e.g. to record it in the activity log
            clock: Returns the current UTC time
        """
        self.reconciler = reconciler
        self.enabled = ad_config.get('enabled', False)
        self.sync_hour = ad_config.get('daily_sync_hour_utc', 2)
        self.on_result = on_result
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread = None

    def start(self) -> bool:
        """Start the background thread; returns False when integration is disabled."""
        if not self.enabled:
            logger.info("Directory sync scheduler will not run - Active Directory integration is disabled.")
            return False

        if self._thread and self._thread.is_alive():
            return True

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="directory-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("Directory sync scheduler started. Will sync daily.")
        return True

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
        logger.info("Directory sync scheduler stopped.")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scheduler is stopped; returns True once stopped."""
        return self._stop_event.wait(timeout)

    def run_forever(self):
        while not self._stop_event.is_set():
            try:
                now = self.clock()
                next_run = next_sync_time(now, self.sync_hour)
                delay = (next_run - now).total_seconds()
                logger.info(f"Next directory sync scheduled at {next_run:%Y-%m-%d %H:%M} UTC "
                            f"(in {delay / 3600:.1f} hours).")

                if self._stop_event.wait(delay):
                    break

                self.run_once()

            except Exception as e:
                logger.error(f"Error in directory sync scheduler, will retry in 1 hour: {e}", exc_info=True)
                if self._stop_event.wait(ERROR_RETRY_DELAY.total_seconds()):
                    break

    def run_once(self) -> SyncRunResult:
        logger.info("Starting scheduled daily directory sync...")
        result = self.reconciler.run_sync()
        logger.info(f"Scheduled directory sync completed: {result.summary}")

        if self.on_result:
            self.on_result(result)

        return result
