import logging
import threading

import schedule

from cloudreader_sync.utils.config_loader import get_int

logger = logging.getLogger(__name__)

PERIODIC_TAG = "auto-sync"
ONE_SHOT_TAG = "one-shot"


class SyncScheduler:
    """
    Owns a private `schedule.Scheduler` and the daemon thread that drives it.

    Jobs run one at a time on that thread. The periodic job re-arms itself after
    each run; one-shot jobs cancel themselves.
    """

    def __init__(self, poll_interval: float = 1.0):
        self.scheduler = schedule.Scheduler()
        self.poll_interval = poll_interval
        self._periodic_job = None
        self._thread = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def period_mins(self) -> int:
        return max(get_int("SYNC_PERIOD_MINS"), 1)

    @property
    def is_enabled(self) -> bool:
        return self._periodic_job is not None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enable(self, job_func):
        """Arm the recurring cycle if it is not armed yet."""
        with self._lock:
            if self._periodic_job is not None:
                return
            self._periodic_job = self.scheduler.every(self.period_mins).minutes.do(
                self._run_safely, job_func
            ).tag(PERIODIC_TAG)
        logger.info(f"⏰ Auto-sync scheduled every {self.period_mins} minutes")

    def disable(self):
        with self._lock:
            if self._periodic_job is None:
                return
            self.scheduler.cancel_job(self._periodic_job)
            self._periodic_job = None
        logger.info("⏸️ Auto-sync unscheduled")

    def run_once_in(self, seconds: int, job_func):
        """Queue job_func to run once on the scheduler thread after `seconds`."""
        def once():
            self._run_safely(job_func)
            return schedule.CancelJob

        return self.scheduler.every(max(int(seconds), 1)).seconds.do(once).tag(ONE_SHOT_TAG)

    def cancel_one_shots(self):
        self.scheduler.clear(ONE_SHOT_TAG)

    @staticmethod
    def _run_safely(job_func):
        try:
            job_func()
        except Exception as e:
            logger.error(f"Scheduled job failed: {e}", exc_info=True)

    def run_pending(self):
        # Not under self._lock: a running job may enable/disable the periodic job
        self.scheduler.run_pending()

    def start(self, background: bool = True):
        if self.is_running:
            return
        self._stop_event.clear()
        if not background:
            return
        self._thread = threading.Thread(target=self._loop, name="cloudreader-scheduler", daemon=True)
        self._thread.start()
        logger.info("🔄 Scheduler thread started")

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}")
            self._stop_event.wait(self.poll_interval)

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        with self._lock:
            self.scheduler.clear()
            self._periodic_job = None
