"""
scheduler/runner.py — TaskRunner

Executes one dispatch of a Task and always leaves the scheduler in a sane
state afterwards:

* Fail-safe: exceptions from the action are caught, logged and reported
  to observers as a failed TaskRun. They NEVER reach the trigger loop.
* No overlap: a task is marked busy the moment it is dispatched. A tick
  that finds it still busy skips it and the next tick tries again.
* Drift-free: after every run next_run_at moves forward by exactly one
  interval from its previous value, not from "now".
* Durable: the new next_run_at is written through the StateStore before
  the run is reported done. A failed write is logged and counted; the
  in-memory schedule still advances.
* Optional bounded concurrency across different tasks (semaphore).
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from pipeclock.exceptions import PersistenceError, TaskExecutionError
from pipeclock.observability.logger import bind_task_run, clear_task_run, get_logger
from pipeclock.scheduler.clock import Clock
from pipeclock.scheduler.store import StateStore
from pipeclock.scheduler.task import Action, Task

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# TaskRun — runtime record for one execution
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TaskRun:
    run_id: str
    task_name: str
    scheduled_for: datetime
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    succeeded: Optional[bool] = None
    error: Optional[str] = None

    @property
    def duration_s(self) -> float:
        end = self.finished_at or time.monotonic()
        return end - self.started_at

    def finish(self, *, succeeded: bool, error: Optional[str] = None) -> None:
        self.finished_at = time.monotonic()
        self.succeeded = succeeded
        self.error = error


# ─────────────────────────────────────────────────────────────────────────────
# SchedulerStats
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class SchedulerStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    persist_failures: int = 0
    last_run_at: Optional[str] = None
    last_run_task: Optional[str] = None
    last_error: Optional[str] = None


# Sync or async callable; a returned awaitable is awaited before the run
# is reported done.
Observer = Callable[[TaskRun], Any]


# ─────────────────────────────────────────────────────────────────────────────
# TaskRunner
# ─────────────────────────────────────────────────────────────────────────────

class TaskRunner:
    def __init__(
        self,
        store: StateStore,
        clock: Clock,
        *,
        max_concurrent_tasks: Optional[int] = None,
        history_limit: int = 100,
        observers: Optional[Iterable[Observer]] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._semaphore = asyncio.Semaphore(max_concurrent_tasks) if max_concurrent_tasks else None
        self._observers: list[Observer] = list(observers or [])

        self._busy: set[str] = set()
        self._overlapping: set[str] = set()
        self._in_flight: set[asyncio.Task] = set()

        self.stats = SchedulerStats()
        self.task_history: list[TaskRun] = []
        self._history_limit = history_limit

    # ── Introspection ─────────────────────────────────────────────────────────

    def is_busy(self, name: str) -> bool:
        return name in self._busy

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def last_run(self, name: str) -> Optional[TaskRun]:
        return next((r for r in reversed(self.task_history) if r.task_name == name), None)

    # ── Dispatch ──────────────────────────────────────────────────────────────

    def dispatch(self, task: Task, now: Optional[datetime] = None) -> Optional[asyncio.Task]:
        """
        Start one run of task in the background.

        Returns None if the previous run of the same task has not finished
        yet. next_run_at only advances when a run ends, so a busy task looks
        due on every tick of its own run; only once the run has also eaten
        into the following interval is that counted (once) as a skip.
        Synchronous up to create_task, so the busy mark is in place before
        the caller's next tick.
        """
        if task.name in self._busy:
            now = now or self._clock.now()
            if now >= task.next_run_at + task.interval and task.name not in self._overlapping:
                self._overlapping.add(task.name)
                self.stats.skipped_runs += 1
                log.warning(
                    "scheduler.task_skipped.still_running",
                    task=task.name,
                    next_run_at=task.next_run_at.isoformat(),
                )
            return None

        self._busy.add(task.name)
        job = asyncio.create_task(
            self.run(task),
            name=f"scheduler:run:{task.name}:{uuid.uuid4().hex[:6]}",
        )
        self._in_flight.add(job)
        job.add_done_callback(lambda j, name=task.name: self._on_done(j, name))
        return job

    def _on_done(self, job: asyncio.Task, name: str) -> None:
        self._in_flight.discard(job)
        self._busy.discard(name)
        self._overlapping.discard(name)

    async def drain(self) -> None:
        """Wait until every dispatched run has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    # ── Task execution ────────────────────────────────────────────────────────

    async def run(self, task: Task) -> TaskRun:
        """Execute one task run. Never raises except on cancellation."""
        self._busy.add(task.name)
        try:
            if self._semaphore is None:
                return await self._execute(task)
            async with self._semaphore:
                return await self._execute(task)
        finally:
            self._busy.discard(task.name)
            self._overlapping.discard(task.name)

    async def _execute(self, task: Task) -> TaskRun:
        run = TaskRun(
            run_id=uuid.uuid4().hex[:12],
            task_name=task.name,
            scheduled_for=task.next_run_at,
        )
        self.stats.total_runs += 1
        self.stats.last_run_task = task.name
        self.stats.last_run_at = self._clock.now().isoformat()

        bind_task_run(task.name, run.run_id)
        try:
            log.info(
                "scheduler.task_start",
                task=task.name,
                run_id=run.run_id,
                scheduled_for=run.scheduled_for.isoformat(),
            )
            try:
                outcome = await self._invoke(task.action)

            except asyncio.CancelledError:
                run.finish(succeeded=False, error="Cancelled")
                log.info("scheduler.task_cancelled", task=task.name, run_id=run.run_id)
                raise

            except Exception as e:
                err = TaskExecutionError(task.name, e)
                run.finish(succeeded=False, error=str(err))
                self.stats.failed_runs += 1
                self.stats.last_error = str(err)
                log.error(
                    "scheduler.task_error",
                    task=task.name,
                    run_id=run.run_id,
                    error=f"{type(e).__name__}: {e}",
                    duration_s=round(run.duration_s, 3),
                    exc_info=e,
                )

            else:
                if outcome is False:
                    err = TaskExecutionError(task.name)
                    run.finish(succeeded=False, error=str(err))
                    self.stats.failed_runs += 1
                    self.stats.last_error = str(err)
                    log.warning(
                        "scheduler.task_failed",
                        task=task.name,
                        run_id=run.run_id,
                        duration_s=round(run.duration_s, 3),
                    )
                else:
                    run.finish(succeeded=True)
                    self.stats.successful_runs += 1
                    log.info(
                        "scheduler.task_complete",
                        task=task.name,
                        run_id=run.run_id,
                        duration_s=round(run.duration_s, 3),
                    )

            next_run = task.advance()
            await self._persist(task.name, next_run)

            self._record(run)
            await self._notify(run)
            return run
        finally:
            clear_task_run()

    @staticmethod
    async def _invoke(action: Action) -> Any:
        """
        Call the action without blocking the event loop.

        Coroutine functions run on the loop. Plain callables run in the
        default executor; if they hand back an awaitable (a lambda wrapping
        a coroutine, a mock) it is awaited on the loop.
        """
        if inspect.iscoroutinefunction(action):
            return await action()
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, action)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _persist(self, name: str, next_run: datetime) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._store.save, name, next_run)
        except PersistenceError as e:
            self.stats.persist_failures += 1
            log.warning(
                "scheduler.state.write_failed",
                task=name,
                next_run_at=next_run.isoformat(),
                error=str(e),
            )

    def _record(self, run: TaskRun) -> None:
        self.task_history.append(run)
        if len(self.task_history) > self._history_limit:
            self.task_history = self.task_history[-self._history_limit:]

    async def _notify(self, run: TaskRun) -> None:
        """Call every observer. Async observers are awaited in turn."""
        for observer in list(self._observers):
            try:
                result = observer(run)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log.error(
                    "scheduler.observer_error",
                    task=run.task_name,
                    run_id=run.run_id,
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=f"{type(e).__name__}: {e}",
                )
