from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Final, Optional

from apscheduler.triggers.cron import CronTrigger

from config import BILLING_SCHEDULE_CRON, BILLING_SCHEDULE_TIMEZONE
from observability import get_logger, log_event

_LOGGER = get_logger("billing.scheduler")

OUTCOME_IDLE: Final[str] = "idle"
OUTCOME_COMPLETED: Final[str] = "completed"
OUTCOME_FAILED: Final[str] = "failed"
OUTCOME_SKIPPED: Final[str] = "skipped"

ScheduledJob = Callable[[datetime], Any]


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def wait(self, seconds: float, stop_event: threading.Event) -> bool:
        """Sleep up to ``seconds``; return True if ``stop_event`` was set."""
        return stop_event.wait(max(0.0, float(seconds)))


class BillingScheduler:
    """
    Fire ``job`` once per cron trigger.

    Missed triggers (process down, long pass) are never replayed: after
    each run the next fire time is computed from the current time. A job
    exception is logged and the scheduler keeps going. Only one run is
    active at a time; an overlapping run reports ``skipped``.
    """

    def __init__(
        self,
        job: ScheduledJob,
        *,
        cron: Optional[str] = None,
        timezone_name: Optional[str] = None,
        clock: Optional[SystemClock] = None,
        job_name: str = "billing.generate_invoices",
        max_wait_seconds: float = 300.0,
    ) -> None:
        self.cron = (cron or BILLING_SCHEDULE_CRON).strip()
        self.timezone_name = (timezone_name or BILLING_SCHEDULE_TIMEZONE).strip()
        self.job_name = job_name
        self._job = job
        self._trigger = CronTrigger.from_crontab(self.cron, timezone=self.timezone_name)
        self._clock = clock or SystemClock()
        # Upper bound on one sleep so wall-clock jumps are noticed.
        self._max_wait_seconds = max(1.0, float(max_wait_seconds))
        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._next_fire_at: Optional[datetime] = None
        self.last_fired_at: Optional[datetime] = None

    @property
    def next_fire_at(self) -> Optional[datetime]:
        return self._next_fire_at

    @property
    def is_running_job(self) -> bool:
        return self._run_lock.locked()

    def _compute_next(self, after: datetime) -> Optional[datetime]:
        next_fire = self._trigger.get_next_fire_time(None, after)
        if next_fire is None:
            return None
        return next_fire.astimezone(timezone.utc)

    def tick(self) -> str:
        """Run the job if its trigger time has arrived. Never raises."""

        now = self._clock.now()
        if self._next_fire_at is None:
            self._next_fire_at = self._compute_next(now)
        if self._next_fire_at is None or now < self._next_fire_at:
            return OUTCOME_IDLE

        fire_time = self._next_fire_at
        self.last_fired_at = fire_time
        outcome = self.run_now(now)
        self._next_fire_at = self._compute_next(max(self._clock.now(), fire_time + timedelta(microseconds=1)))
        return outcome

    def run_now(self, now: Optional[datetime] = None) -> str:
        if not self._run_lock.acquire(blocking=False):
            log_event(_LOGGER, logging.WARNING, "billing.scheduler.run_skipped", job=self.job_name, reason="in_progress")
            return OUTCOME_SKIPPED
        current = now or self._clock.now()
        try:
            log_event(_LOGGER, logging.INFO, "billing.scheduler.run_started", job=self.job_name, now=current)
            self._job(current)
        except Exception:  # noqa: BLE001
            log_event(_LOGGER, logging.ERROR, "billing.scheduler.run_failed", exc_info=True, job=self.job_name)
            return OUTCOME_FAILED
        finally:
            self._run_lock.release()
        log_event(_LOGGER, logging.INFO, "billing.scheduler.run_completed", job=self.job_name)
        return OUTCOME_COMPLETED

    def seconds_until_next(self) -> float:
        if self._next_fire_at is None:
            return self._max_wait_seconds
        delta = (self._next_fire_at - self._clock.now()).total_seconds()
        return max(0.0, min(delta, self._max_wait_seconds))

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop = stop_event or self._stop
        log_event(
            _LOGGER,
            logging.INFO,
            "billing.scheduler.started",
            job=self.job_name,
            cron=self.cron,
            timezone=self.timezone_name,
        )
        while not stop.is_set():
            self.tick()
            if self._clock.wait(self.seconds_until_next(), stop):
                break
        log_event(_LOGGER, logging.INFO, "billing.scheduler.stopped", job=self.job_name)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever,
            args=(self._stop,),
            name=f"scheduler:{self.job_name}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None
