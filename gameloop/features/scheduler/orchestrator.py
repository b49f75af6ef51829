"""
Scheduler orchestrator.

Binds cadences to tasks and runs them on a thread pool.

Rules
-----
- At most one execution per task. A trigger that fires while the task is in
  flight is dropped, never queued.
- Missed fires coalesce: after a fire the next one is computed strictly after
  "now".
- Every execution is wrapped; a raising task is logged and counted and the
  loop carries on.
- A run past its deadline is marked `timeout`, its RunContext is cancelled
  and its in-flight flag released. Threads cannot be killed, so whatever the
  abandoned run returns later is ignored.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union
from uuid import uuid4

from gameloop.core.clock import Clock, SystemClock
from gameloop.core.errors import RunCancelledError, SchedulerConfigError
from gameloop.core.logging import log_event, run_id_ctx_var
from gameloop.core.metrics import (
    scheduler_run_duration_ms,
    scheduler_runs_in_flight,
    scheduler_runs_total,
    scheduler_triggers_dropped_total,
)
from gameloop.features.scheduler.cadence import Cadence, parse_cadence
from gameloop.models.scheduler_run import RunContext, RunRecord, RunTrigger

logger = logging.getLogger("gameloop.scheduler")

Task = Callable[[RunContext], Any]


@dataclass
class _Job:
    name: str
    cadence: Cadence
    task: Task
    timeout_seconds: float
    next_fire: Optional[datetime] = None


@dataclass
class _ActiveRun:
    job: _Job
    record: RunRecord
    ctx: RunContext
    started_monotonic: float


class Orchestrator:
    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        max_workers: int = 4,
        default_timeout_seconds: float = 600.0,
        poll_interval_seconds: float = 1.0,
        history_size: int = 200,
        timezone=None,
    ):
        if default_timeout_seconds <= 0:
            raise SchedulerConfigError("default_timeout_seconds must be positive")
        self._clock = clock or SystemClock()
        self._tz = timezone
        self._default_timeout = default_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._jobs: Dict[str, _Job] = {}
        self._active: Dict[str, _ActiveRun] = {}
        self._history: Deque[RunRecord] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = False
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gameloop-run")

    # Registration -----------------------------------------------------
    def schedule_recurring(
        self,
        name: str,
        cadence: Union[Cadence, str],
        task: Task,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> Cadence:
        if self._started:
            raise SchedulerConfigError(f"Cannot register {name!r} after start()")
        if not name:
            raise SchedulerConfigError("Job name must not be empty")
        if not callable(task):
            raise SchedulerConfigError(f"Task for {name!r} is not callable")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise SchedulerConfigError(f"timeout_seconds for {name!r} must be positive")
        parsed = cadence if isinstance(cadence, Cadence) else parse_cadence(cadence, self._tz)

        with self._lock:
            if name in self._jobs:
                raise SchedulerConfigError(f"Job {name!r} is already registered")
            job = _Job(
                name=name,
                cadence=parsed,
                task=task,
                timeout_seconds=timeout_seconds or self._default_timeout,
                next_fire=parsed.next_fire_after(self._clock.now()),
            )
            self._jobs[name] = job
        logger.info("job registered", extra={"task": name, "cadence": parsed.expression, "next_fire": job.next_fire.isoformat()})
        return parsed

    def job_names(self) -> List[str]:
        with self._lock:
            return sorted(self._jobs)

    def next_fire_time(self, name: str) -> Optional[datetime]:
        with self._lock:
            job = self._jobs.get(name)
            return job.next_fire if job else None

    # Dispatch ---------------------------------------------------------
    def run_now(self, name: str) -> bool:
        """Dispatch outside the cadence. False when dropped because the task is in flight."""
        with self._lock:
            job = self._jobs.get(name)
        if job is None:
            raise SchedulerConfigError(f"Unknown job {name!r}")
        return self._dispatch(job, "manual", self._clock.now())

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Expire overdue runs, then dispatch every job whose fire time has come.

        Returns the names of the jobs dispatched on this tick.
        """
        current = now or self._clock.now()
        self.expire_overdue(current)

        with self._lock:
            due = [job for job in self._jobs.values() if job.next_fire is not None and current >= job.next_fire]
            for job in due:
                job.next_fire = job.cadence.next_fire_after(current)

        return [job.name for job in due if self._dispatch(job, "cadence", current)]

    def _dispatch(self, job: _Job, trigger: RunTrigger, now: datetime) -> bool:
        with self._lock:
            if job.name in self._active:
                in_flight = self._active[job.name].record.run_id
                dropped = True
            else:
                dropped = False
                run_id = uuid4().hex
                record = RunRecord(run_id=run_id, task=job.name, trigger=trigger, started_at=now)
                ctx = RunContext(
                    run_id=run_id,
                    task=job.name,
                    started_at=now,
                    deadline=now + timedelta(seconds=job.timeout_seconds),
                )
                run = _ActiveRun(job=job, record=record, ctx=ctx, started_monotonic=time.perf_counter())
                self._active[job.name] = run
                self._history.append(record)

        if dropped:
            scheduler_triggers_dropped_total.inc(labels={"task": job.name})
            log_event(
                "warning",
                "trigger dropped, task still in flight",
                task=job.name,
                run_id=in_flight,
                outcome="dropped",
                extra={"trigger": trigger},
            )
            return False

        scheduler_runs_in_flight.inc(labels={"task": job.name})
        log_event("info", "run started", task=job.name, run_id=run_id, extra={"trigger": trigger})
        try:
            self._executor.submit(self._execute, run)
        except RuntimeError:
            # Pool already shut down
            self._finish(run, "cancelled", "scheduler stopped", {})
            return False
        return True

    def _execute(self, run: _ActiveRun) -> None:
        token = run_id_ctx_var.set(run.record.run_id)
        outcome, error, summary = "success", None, {}
        try:
            result = run.job.task(run.ctx)
            if result is not None:
                outcome = getattr(result, "outcome", None) or "success"
                if hasattr(result, "as_dict"):
                    summary = result.as_dict()
        except RunCancelledError as exc:
            outcome, error = "cancelled", str(exc)
        except Exception as exc:
            outcome, error = "failure", f"{type(exc).__name__}: {exc}"
            logger.exception(
                "run failed",
                extra={"task": run.job.name, "run_id": run.record.run_id, "error_code": getattr(exc, "code", "internal_error")},
            )
        finally:
            run_id_ctx_var.reset(token)
        self._finish(run, outcome, error, summary)

    def _finish(self, run: _ActiveRun, outcome: str, error: Optional[str], summary: dict) -> None:
        duration_ms = round((time.perf_counter() - run.started_monotonic) * 1000.0, 2)
        with self._idle:
            if self._active.get(run.job.name) is not run:
                late = True
            else:
                late = False
                del self._active[run.job.name]
                record = run.record
                record.finished_at = self._clock.now()
                record.duration_ms = duration_ms
                record.outcome = outcome  # type: ignore[assignment]
                record.error = error
                record.summary = dict(summary)
                if not self._active:
                    self._idle.notify_all()

        if late:
            log_event(
                "warning",
                "late result ignored",
                task=run.job.name,
                run_id=run.record.run_id,
                outcome=outcome,
                extra={"duration_ms": duration_ms},
            )
            return

        scheduler_runs_in_flight.dec(labels={"task": run.job.name})
        scheduler_runs_total.inc(labels={"task": run.job.name, "outcome": outcome})
        scheduler_run_duration_ms.set(duration_ms, labels={"task": run.job.name})
        log_event(
            "error" if outcome == "failure" else "info",
            "run finished",
            task=run.job.name,
            run_id=run.record.run_id,
            outcome=outcome,
            extra={"duration_ms": duration_ms, "started_at": run.record.started_at.isoformat(), "summary": summary},
        )

    def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """Mark runs past their deadline as timed out; returns their task names."""
        now = now or self._clock.now()
        with self._idle:
            overdue = [
                run for run in self._active.values()
                if run.ctx.deadline is not None and now >= run.ctx.deadline
            ]
            for run in overdue:
                del self._active[run.job.name]
                run.ctx.cancelled.set()
                record = run.record
                record.finished_at = now
                record.duration_ms = round((now - record.started_at).total_seconds() * 1000.0, 2)
                record.outcome = "timeout"
                record.error = f"exceeded {run.job.timeout_seconds}s"
            if overdue and not self._active:
                self._idle.notify_all()

        for run in overdue:
            scheduler_runs_in_flight.dec(labels={"task": run.job.name})
            scheduler_runs_total.inc(labels={"task": run.job.name, "outcome": "timeout"})
            log_event(
                "error",
                "run timed out",
                task=run.job.name,
                run_id=run.record.run_id,
                outcome="timeout",
                error_code="run_timeout",
                extra={"timeout_seconds": run.job.timeout_seconds},
            )
        return [run.job.name for run in overdue]

    # Lifecycle --------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._started:
                raise SchedulerConfigError("Orchestrator already started")
            if not self._jobs:
                raise SchedulerConfigError("No jobs registered")
            self._started = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="gameloop-scheduler", daemon=True)
        self._thread.start()
        logger.info("scheduler started", extra={"jobs": ",".join(self.job_names())})

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler tick failed")
            self._stop_event.wait(self._poll_interval)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        drained = self.wait_idle(timeout) if wait else False
        if not drained:
            with self._lock:
                active = list(self._active.values())
            for run in active:
                run.ctx.cancelled.set()
        # Stuck runs stay behind on their worker threads; shutdown never waits on them
        self._executor.shutdown(wait=drained, cancel_futures=not drained)
        logger.info("scheduler stopped", extra={"wait": wait, "drained": drained})

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._active, timeout)

    # Observability ----------------------------------------------------
    def in_flight(self) -> List[str]:
        with self._lock:
            return sorted(self._active)

    def recent_runs(self, task: Optional[str] = None, limit: int = 20) -> List[RunRecord]:
        with self._lock:
            records = [replace(r) for r in reversed(self._history) if task is None or r.task == task]
        return records[:limit]
