"""
Cron Runner

Repeats a job on a standard 5-field cron schedule (minute hour day month
weekday). The job runs once immediately, then at every tick. A tick that
arrives while the previous run is still going is skipped, so runs never
overlap.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime

from croniter import croniter

from imap_errors import ConfigInvalid

logger = logging.getLogger(__name__)


def parse_schedule(expression: str, start: datetime | None = None) -> croniter:
    """
    Raises:
        ConfigInvalid: Not a valid 5-field cron expression.
    """
    fields = (expression or "").split()
    if len(fields) != 5:
        raise ConfigInvalid(f"Invalid CRON_SCHEDULE {expression!r}: expected 5 fields, got {len(fields)}")
    try:
        return croniter(" ".join(fields), start or datetime.now())
    except (ValueError, KeyError) as e:
        raise ConfigInvalid(f"Invalid CRON_SCHEDULE {expression!r}: {e}") from e


class CronRunner:
    """
    Runs job() on a cron schedule with overlap protection.

    Jobs run on a background thread so the scheduling loop keeps ticking (and
    logging skipped ticks) while a long run is in progress. Exceptions in
    fatal_errors stop the schedule and are re-raised from run_forever(); any
    other exception is logged and the schedule continues.
    """

    def __init__(self, expression, job, fatal_errors=(), now=None):
        self.expression = expression
        self.job = job
        self.fatal_errors = tuple(fatal_errors)
        self._now = now or datetime.now
        self._schedule = parse_schedule(expression, self._now())
        self._running = threading.Lock()
        self._fatal = None
        self._threads = []
        self.runs = 0
        self.skipped = 0

    def next_run(self) -> datetime:
        return self._schedule.get_next(datetime)

    def _execute(self):
        try:
            self.job()
            self.runs += 1
        except self.fatal_errors as e:
            self._fatal = e
        except Exception as e:
            self.runs += 1
            logger.exception("Scheduled run failed: %s", e)
        finally:
            self._running.release()

    def trigger(self) -> threading.Thread | None:
        """Start a run unless one is in progress. Returns the run thread, or None when skipped."""
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.warning("Previous run still in progress, skipping this tick")
            return None
        thread = threading.Thread(target=self._execute, name="cron-run", daemon=True)
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()
        return thread

    def run_forever(self, stop_event: threading.Event) -> None:
        """Run now, then on every tick until stop_event is set or a fatal error occurs."""
        logger.info("Cron schedule: %s", self.expression)
        self.trigger()
        while not stop_event.is_set():
            scheduled = self.next_run()
            logger.info("Next run at %s", scheduled.strftime("%Y-%m-%d %H:%M:%S"))
            while not stop_event.is_set() and self._fatal is None:
                remaining = (scheduled - self._now()).total_seconds()
                if remaining <= 0:
                    break
                stop_event.wait(min(remaining, 1.0))
            if self._fatal is not None:
                break
            if not stop_event.is_set():
                self.trigger()

        for thread in self._threads:
            thread.join()
        if self._fatal is not None:
            raise self._fatal


def run_on_schedule(expression, job, stop_event, fatal_errors=()):
    """Convenience wrapper around CronRunner.run_forever()."""
    CronRunner(expression, job, fatal_errors=fatal_errors).run_forever(stop_event)
