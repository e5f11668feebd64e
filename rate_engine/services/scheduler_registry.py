"""Registry of background jobs that periodically materialize surge configs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import Event, Lock, Thread
from typing import Any, Callable, Optional

from rate_engine.repository.codec import dt_to_text
from rate_engine.services.surge_materializer import (
    SurgeHourAlreadyMaterializedError,
    SurgeMaterializationService,
)
from rate_engine.utils.config import Settings, get_settings
from rate_engine.utils.logger import get_logger
from rate_engine.utils.time_utils import utc_now


logger = get_logger(__name__)


class SchedulerError(Exception):
    """Base exception for scheduler registry failures."""


class JobAlreadyRunningError(SchedulerError):
    """Raised when a job is started twice for the same surge config."""


class JobNotFoundError(SchedulerError):
    """Raised when stopping a job that is not registered."""


class InvalidIntervalError(SchedulerError):
    """Raised when the requested interval is below the configured minimum."""


@dataclass(frozen=True)
class ScheduledJobInfo:
    config_id: str
    interval_seconds: float
    started_at: datetime
    runs: int
    failures: int
    last_run_at: Optional[datetime]
    last_error: Optional[str]
    running: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "config_id": self.config_id,
            "interval_seconds": self.interval_seconds,
            "started_at": dt_to_text(self.started_at),
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": dt_to_text(self.last_run_at),
            "last_error": self.last_error,
            "running": self.running,
        }


class _ScheduledJob:
    def __init__(self, config_id: str, interval_seconds: float, task: Callable[[], Any]) -> None:
        self.config_id = config_id
        self.interval_seconds = interval_seconds
        self.started_at = utc_now()
        self._task = task
        self._stop = Event()
        self._state_lock = Lock()
        self._runs = 0
        self._failures = 0
        self._last_run_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._thread = Thread(
            target=self._loop,
            name=f"surge-scheduler-{config_id}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._thread.join(timeout)

    def _run_once(self) -> None:
        try:
            self._task()
            error = None
        except Exception as exc:  # failures never stop the job
            logger.exception("Scheduled materialization failed | config_id=%s", self.config_id)
            error = str(exc)
        with self._state_lock:
            self._runs += 1
            self._last_run_at = utc_now()
            self._last_error = error
            if error is not None:
                self._failures += 1

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._run_once()
            if self._stop.wait(self.interval_seconds):
                break

    def info(self) -> ScheduledJobInfo:
        with self._state_lock:
            return ScheduledJobInfo(
                config_id=self.config_id,
                interval_seconds=self.interval_seconds,
                started_at=self.started_at,
                runs=self._runs,
                failures=self._failures,
                last_run_at=self._last_run_at,
                last_error=self._last_error,
                running=self._thread.is_alive() and not self._stop.is_set(),
            )


class SurgeSchedulerRegistry:
    """Explicit start/stop/list lifecycle for periodic surge materialization."""

    def __init__(
        self,
        materializer: SurgeMaterializationService,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._materializer = materializer
        self._jobs: dict[str, _ScheduledJob] = {}
        self._lock = Lock()

    def _materialize_tick(self, config_id: str) -> None:
        try:
            self._materializer.materialize(config_id)
        except SurgeHourAlreadyMaterializedError as exc:
            # stale snapshot; the hour was handled by an earlier tick
            logger.info(
                "Scheduled tick skipped | config_id=%s | existing_layer_id=%s",
                config_id,
                exc.layer_id,
            )

    def start(self, config_id: str, interval_seconds: Optional[float] = None) -> ScheduledJobInfo:
        interval = (
            interval_seconds
            if interval_seconds is not None
            else self._settings.scheduler_default_interval_seconds
        )
        if interval < self._settings.scheduler_min_interval_seconds:
            raise InvalidIntervalError(
                f"interval_seconds must be >= {self._settings.scheduler_min_interval_seconds}"
            )
        self._materializer.get_config(config_id)

        with self._lock:
            if config_id in self._jobs:
                raise JobAlreadyRunningError(f"A scheduler is already running for {config_id}")
            job = _ScheduledJob(
                config_id=config_id,
                interval_seconds=interval,
                task=lambda: self._materialize_tick(config_id),
            )
            self._jobs[config_id] = job
        job.start()
        logger.info("Scheduler started | config_id=%s | interval_seconds=%.1f", config_id, interval)
        return job.info()

    def stop(self, config_id: str) -> ScheduledJobInfo:
        with self._lock:
            job = self._jobs.pop(config_id, None)
        if job is None:
            raise JobNotFoundError(f"No scheduler running for {config_id}")
        job.stop(timeout=5.0)
        logger.info("Scheduler stopped | config_id=%s", config_id)
        return job.info()

    def list_jobs(self) -> list[ScheduledJobInfo]:
        with self._lock:
            jobs = list(self._jobs.values())
        return [job.info() for job in sorted(jobs, key=lambda item: item.config_id)]

    def stop_all(self) -> None:
        with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
        for job in jobs:
            job.stop(timeout=5.0)
        if jobs:
            logger.info("All schedulers stopped | count=%s", len(jobs))
