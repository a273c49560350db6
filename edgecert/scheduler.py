"""
Daily renewal schedule.

Every instance picks a random time of day so that many tenants do not hit
the certificate authority at the same moment.
"""

import random
import threading
from typing import Optional

import schedule

from .logger import get_logger
from .renewal import RenewalCoordinator, RenewalRun


def generate_random_daily_time(rng: Optional[random.Random] = None) -> str:
    """
    Random time of day in ``HH:MM:SS`` form.

    Args:
        rng: Random source (defaults to the module-level generator)
    """
    rng = rng or random
    hour = rng.randrange(0, 24)
    minute = rng.randrange(0, 59)
    second = rng.randrange(0, 59)
    return f"{hour:02d}:{minute:02d}:{second:02d}"


class RenewalScheduler:
    """Triggers a non-forced renewal once a day and forced ones on request."""

    def __init__(
        self,
        coordinator: RenewalCoordinator,
        at_time: Optional[str] = None,
        scheduler: Optional[schedule.Scheduler] = None,
    ):
        self.coordinator = coordinator
        self.at_time = at_time or generate_random_daily_time()
        self.scheduler = scheduler or schedule.Scheduler()
        self.logger = get_logger()
        self.last_forced_run: Optional[RenewalRun] = None
        self.job = self.scheduler.every().day.at(self.at_time).do(self._run_scheduled)
        self.logger.info(f"Certificate renewal scheduled daily at {self.at_time}")

    def _run_scheduled(self) -> None:
        run = self.coordinator.trigger(forced=False)
        self.logger.info(f"Scheduled renewal finished: {run.status.value if run.status else 'unknown'}")

    def _run_forced(self) -> None:
        run = self.coordinator.trigger(forced=True)
        self.last_forced_run = run
        self.logger.info(f"Forced renewal finished: {run.status.value if run.status else 'unknown'}")

    def request_forced_renewal(self) -> threading.Thread:
        """
        Run a forced renewal on a worker thread.

        The coordinator rejects it while a scheduled run is executing.
        """
        worker = threading.Thread(target=self._run_forced, name="forced-renewal", daemon=True)
        worker.start()
        return worker

    def run_pending(self) -> None:
        self.scheduler.run_pending()

    def run_forever(self, stop_event: threading.Event, poll_seconds: float = 1) -> None:
        """Run due jobs until stop_event is set."""
        while not stop_event.is_set():
            self.scheduler.run_pending()
            stop_event.wait(poll_seconds)
        self.logger.info("Scheduler stopped")
