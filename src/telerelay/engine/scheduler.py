# src/telerelay/engine/scheduler.py
"""Recurring job registry and an in-process runner.

StoreJobScheduler keeps job definitions (enabled flag, base interval) in
the relay store; the failover orchestrator creates and toggles jobs
through the JobScheduler protocol. JobRunner executes registered
callables for enabled jobs on their intervals, in a daemon thread or one
pass at a time via run_pending(). A job never overlaps with itself: a
run that is still in progress makes the next due run a no-op.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from telerelay.core.diagnostics import DiagnosticSink, NullDiagnostics
from telerelay.core.store.database import RelayDB, as_utc
from telerelay.core.store.schema import scheduled_jobs_table
from telerelay.engine.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class JobDefinition:
    """Stored recurring job."""

    name: str
    enabled: bool
    interval_seconds: int
    description: str | None = None
    updated_at: datetime | None = None


class JobScheduler(Protocol):
    """Operations the orchestrator needs from a scheduler."""

    def job_exists(self, name: str) -> bool: ...

    def create_job(self, name: str, *, interval_seconds: int, enabled: bool, description: str | None = None) -> bool: ...

    def set_enabled(self, name: str, enabled: bool) -> None: ...

    def is_enabled(self, name: str) -> bool: ...

    def list_jobs(self) -> list[JobDefinition]: ...


class StoreJobScheduler:
    """Job definitions persisted in the scheduled_jobs table."""

    def __init__(self, db: RelayDB, *, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock if clock is not None else DEFAULT_CLOCK

    def job_exists(self, name: str) -> bool:
        return self.get_job(name) is not None

    def get_job(self, name: str) -> JobDefinition | None:
        query = select(scheduled_jobs_table).where(scheduled_jobs_table.c.name == name)
        with self._db.connection() as conn:
            row = conn.execute(query).fetchone()
        return self._to_definition(row) if row is not None else None

    def create_job(self, name: str, *, interval_seconds: int, enabled: bool, description: str | None = None) -> bool:
        """Create a job if it does not exist.

        Returns:
            False if the job already existed (left unchanged).
        """
        now = self._clock.now()
        try:
            with self._db.connection() as conn:
                conn.execute(
                    insert(scheduled_jobs_table).values(
                        name=name,
                        enabled=enabled,
                        interval_seconds=interval_seconds,
                        description=description,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            return False
        logger.info("job_created", job=name, enabled=enabled, interval_seconds=interval_seconds)
        return True

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable a job.

        Raises:
            KeyError: If the job does not exist.
        """
        stmt = (
            update(scheduled_jobs_table)
            .where(scheduled_jobs_table.c.name == name)
            .values(enabled=enabled, updated_at=self._clock.now())
        )
        with self._db.connection() as conn:
            if conn.execute(stmt).rowcount == 0:
                raise KeyError(name)
        logger.info("job_toggled", job=name, enabled=enabled)

    def is_enabled(self, name: str) -> bool:
        job = self.get_job(name)
        return job is not None and job.enabled

    def list_jobs(self) -> list[JobDefinition]:
        query = select(scheduled_jobs_table).order_by(scheduled_jobs_table.c.name)
        with self._db.connection() as conn:
            return [self._to_definition(row) for row in conn.execute(query)]

    @staticmethod
    def _to_definition(row: Any) -> JobDefinition:
        return JobDefinition(
            name=row.name,
            enabled=bool(row.enabled),
            interval_seconds=row.interval_seconds,
            description=row.description,
            updated_at=as_utc(row.updated_at),
        )


@dataclass(slots=True)
class _RegisteredJob:
    name: str
    func: Callable[[], object]
    interval_scale: Callable[[float], float] | None
    lock: threading.Lock
    next_due: datetime | None = None
    runs: int = 0
    failures: int = 0


class JobRunner:
    """Runs registered job callables for enabled jobs on their intervals.

    Example:
        runner = JobRunner(scheduler)
        runner.register("delivery.local", worker.run_once, interval_scale=pulse.scale_interval)
        runner.start(poll_seconds=1.0)
        ...
        runner.stop()
    """

    def __init__(
        self,
        scheduler: StoreJobScheduler,
        *,
        clock: Clock | None = None,
        diagnostics: DiagnosticSink | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._clock = clock if clock is not None else DEFAULT_CLOCK
        self._diagnostics: DiagnosticSink = diagnostics if diagnostics is not None else NullDiagnostics()
        self._jobs: dict[str, _RegisteredJob] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0

    def register(
        self,
        name: str,
        func: Callable[[], object],
        *,
        interval_scale: Callable[[float], float] | None = None,
    ) -> None:
        self._jobs[name] = _RegisteredJob(name=name, func=func, interval_scale=interval_scale, lock=threading.Lock())

    def run_job(self, name: str) -> bool:
        """Run one job now unless it is already running.

        Returns:
            False if a previous run of the same job was still in progress.
        """
        job = self._jobs[name]
        if not job.lock.acquire(blocking=False):
            logger.debug("job_overlap_skipped", job=name)
            return False
        try:
            job.runs += 1
            job.func()
        except Exception as e:
            job.failures += 1
            logger.exception("job_failed", job=name, error=str(e))
            self._diagnostics.record("engine.scheduler", f"Job {name} failed: {e}", error_code="job_failed")
        finally:
            job.lock.release()
        return True

    def run_pending(self) -> list[str]:
        """Run every enabled job whose interval has elapsed; return their names."""
        ran: list[str] = []
        now = self._clock.now()
        definitions = {d.name: d for d in self._scheduler.list_jobs()}
        for name, job in self._jobs.items():
            definition = definitions.get(name)
            if definition is None or not definition.enabled:
                job.next_due = None
                continue
            if job.next_due is not None and now < job.next_due:
                continue
            interval = float(definition.interval_seconds)
            if job.interval_scale is not None:
                interval = job.interval_scale(interval)
            job.next_due = now + timedelta(seconds=interval)
            if self.run_job(name):
                ran.append(name)
        return ran

    def start(self, poll_seconds: float = 1.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning("job_runner_already_started")
            return
        self._stop_event.clear()

        def _loop() -> None:
            logger.info("job_runner_started", poll_seconds=poll_seconds, jobs=sorted(self._jobs))
            while not self._stop_event.is_set():
                self._tick_count += 1
                try:
                    self.run_pending()
                except Exception as e:
                    # Store unavailable; try again next poll
                    logger.exception("job_runner_tick_failed", error=str(e))
                self._stop_event.wait(poll_seconds)
            logger.info("job_runner_stopped", ticks=self._tick_count)

        self._thread = threading.Thread(target=_loop, daemon=True, name="telerelay-jobs")
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("job_runner_stop_timeout")
            self._thread = None

    def health(self) -> dict[str, Any]:
        return {
            "running": self._thread is not None and self._thread.is_alive(),
            "tick_count": self._tick_count,
            "jobs": {name: {"runs": job.runs, "failures": job.failures} for name, job in self._jobs.items()},
        }
