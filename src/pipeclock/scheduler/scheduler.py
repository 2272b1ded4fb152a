"""
scheduler/scheduler.py — Scheduler

Recurring-task scheduler. Callers register named tasks with a fluent
builder; start() runs a single polling loop that dispatches every due task
to the TaskRunner; each task's next run time survives restarts through the
StateStore.

Design
------
* Pure asyncio — one trigger loop per Scheduler, actions run as separate
  asyncio Tasks so a slow action never delays the next tick.
* The due-scan in each tick has no awaits, so it sees a consistent view of
  every Task and cannot race the same task onto two dispatches.
* Time comes from an injected Clock; tests drive a ManualClock.
* Restart-safe: a persisted next_run_at that is still in the future wins
  over the freshly computed now + interval.
* Graceful shutdown: stop() ends the loop after the current tick; the
  completion signal returned by start() resolves once every in-flight run
  has finished. Running actions are never cancelled.

States::

    IDLE --start()--> RUNNING --stop()--> STOPPING --(drained)--> IDLE

Usage::

    scheduler = Scheduler.from_settings(load_settings())
    scheduler.task("sync_notes").every("2 minutes").do(sync_notes)
    done = scheduler.start()   # asyncio.Task, resolves after stop()
    ...
    scheduler.stop()
    await done
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from enum import Enum
from typing import Iterable, Optional

from pipeclock.config.settings import Settings, get_settings
from pipeclock.exceptions import InvalidIntervalError, PersistenceError, SchedulerError
from pipeclock.observability.logger import get_logger
from pipeclock.scheduler.clock import Clock, SystemClock
from pipeclock.scheduler.interval import format_interval
from pipeclock.scheduler.runner import Observer, SchedulerStats, TaskRun, TaskRunner
from pipeclock.scheduler.store import StateStore
from pipeclock.scheduler.task import Action, Task, TaskBuilder

log = get_logger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


class Scheduler:
    """
    Owns the registered Tasks and the trigger loop.

    Lifecycle::

        done = scheduler.start()   # IDLE -> RUNNING, returns completion task
        scheduler.stop()           # RUNNING -> STOPPING (idempotent)
        await done                 # back to IDLE, in-flight runs finished

    Introspection::

        scheduler.stats            # SchedulerStats counters
        scheduler.list_tasks()     # List[dict] for status display
        scheduler.task_history     # List[TaskRun] (capped)
    """

    def __init__(
        self,
        store: Optional[StateStore] = None,
        *,
        clock: Optional[Clock] = None,
        tick_seconds: float = 0.5,
        max_concurrent_tasks: Optional[int] = None,
        history_limit: int = 100,
        observers: Optional[Iterable[Observer]] = None,
    ) -> None:
        if not (0.0 < tick_seconds <= 1.0):
            raise ValueError("tick_seconds must be > 0 and <= 1.0")

        self._store = store if store is not None else StateStore.from_settings(get_settings())
        self._clock: Clock = clock or SystemClock()
        self._tick_seconds = tick_seconds

        self._tasks: dict[str, Task] = {}
        self._state = SchedulerState.IDLE
        self._loop_task: Optional[asyncio.Task] = None

        self._runner = TaskRunner(
            self._store,
            self._clock,
            max_concurrent_tasks=max_concurrent_tasks,
            history_limit=history_limit,
            observers=observers,
        )

        log.info(
            "scheduler.init",
            state_dir=str(self._store.directory),
            tick_s=tick_seconds,
            max_concurrent=max_concurrent_tasks,
        )

    # ── Factory ───────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        observers: Optional[Iterable[Observer]] = None,
    ) -> "Scheduler":
        return cls(
            StateStore.from_settings(settings),
            clock=clock,
            tick_seconds=settings.scheduler.tick_seconds,
            max_concurrent_tasks=settings.scheduler.max_concurrent_tasks,
            history_limit=settings.scheduler.history_limit,
            observers=observers,
        )

    # ── Registration ──────────────────────────────────────────────────────────

    def task(self, name: str) -> TaskBuilder:
        """Begin registering (or redefining) the task called name."""
        return TaskBuilder(name, self._register)

    def _register(self, name: str, interval: timedelta, action: Action) -> Task:
        existing = self._tasks.get(name)
        if existing is not None:
            existing.action = action
            existing.interval = interval
            log.info(
                "scheduler.task_redefined",
                task=name,
                interval=format_interval(interval),
                next_run_at=existing.next_run_at.isoformat(),
            )
            return existing

        now = self._clock.now()
        try:
            first_run = now + interval
        except OverflowError as e:
            raise InvalidIntervalError(
                format_interval(interval),
                f"Interval {format_interval(interval)!r} for task '{name}' runs past the end of the calendar.",
            ) from e
        persisted = self._store.load(name)
        if persisted is not None and persisted > now:
            task = Task(name=name, interval=interval, action=action, next_run_at=persisted)
            log.info(
                "scheduler.task_restored",
                task=name,
                interval=format_interval(interval),
                next_run_at=persisted.isoformat(),
            )
        else:
            task = Task(name=name, interval=interval, action=action, next_run_at=first_run)
            if persisted is not None:
                log.info("scheduler.task_state_stale", task=name, persisted=persisted.isoformat())
            try:
                self._store.save(name, task.next_run_at)
            except PersistenceError as e:
                self._runner.stats.persist_failures += 1
                log.warning("scheduler.state.write_failed", task=name, error=str(e))
            log.info(
                "scheduler.task_registered",
                task=name,
                interval=format_interval(interval),
                next_run_at=task.next_run_at.isoformat(),
            )

        self._tasks[name] = task
        return task

    def remove_task(self, name: str, *, forget: bool = False) -> bool:
        """
        Unregister a task. A run already in flight still completes.
        With forget=True the persisted record is deleted as well.
        """
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if forget:
            try:
                self._store.delete(name)
            except PersistenceError as e:
                log.warning("scheduler.state.delete_failed", task=name, error=str(e))
        log.info("scheduler.task_removed", task=name, forget=forget)
        return True

    def add_observer(self, observer: Observer) -> None:
        self._runner.add_observer(observer)

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    @property
    def tasks(self) -> list[Task]:
        """Registered tasks in registration order."""
        return list(self._tasks.values())

    def get_task(self, name: str) -> Optional[Task]:
        return self._tasks.get(name)

    @property
    def stats(self) -> SchedulerStats:
        return self._runner.stats

    @property
    def task_history(self) -> list[TaskRun]:
        return self._runner.task_history

    def start(self) -> asyncio.Task:
        """
        Enter RUNNING and start the trigger loop. Must be called from a
        running event loop.

        Returns the loop's asyncio.Task, which completes once the scheduler
        has fully stopped. Calling start() while RUNNING returns the same
        task.
        """
        if self._state is SchedulerState.RUNNING and self._loop_task is not None:
            log.warning("scheduler.already_running")
            return self._loop_task
        if self._state is SchedulerState.STOPPING:
            raise SchedulerError(
                "Scheduler is still stopping; await the previous start() result before restarting."
            )

        loop = asyncio.get_running_loop()
        self._state = SchedulerState.RUNNING
        self._loop_task = loop.create_task(self._run_loop(), name="scheduler:loop")
        log.info(
            "scheduler.started",
            tasks=[t.name for t in self._tasks.values()],
            tick_s=self._tick_seconds,
        )
        return self._loop_task

    def stop(self) -> None:
        """Request a graceful stop. No-op unless RUNNING."""
        if self._state is not SchedulerState.RUNNING:
            return
        self._state = SchedulerState.STOPPING
        log.info("scheduler.stopping", in_flight=self._runner.in_flight)

    async def shutdown(self) -> None:
        """stop() and wait until the loop and every in-flight run are done."""
        loop_task = self._loop_task
        self.stop()
        if loop_task is not None:
            await loop_task

    def list_tasks(self) -> list[dict]:
        """Return a status summary of all tasks."""
        result = []
        for task in self._tasks.values():
            last = self._runner.last_run(task.name)
            result.append({
                "name": task.name,
                "interval": format_interval(task.interval),
                "interval_s": task.interval.total_seconds(),
                "next_run_at": task.next_run_at.isoformat(),
                "running": self._runner.is_busy(task.name),
                "last_run_succeeded": last.succeeded if last else None,
                "last_run_duration_s": round(last.duration_s, 3) if last else None,
                "last_error": last.error if last else None,
            })
        return result

    # ── Trigger loop ──────────────────────────────────────────────────────────

    async def _run_loop(self) -> None:
        try:
            while self._state is SchedulerState.RUNNING:
                self._tick()
                await self._clock.sleep(self._tick_seconds)

            if self._runner.in_flight:
                log.info("scheduler.draining", in_flight=self._runner.in_flight)
            await self._runner.drain()

        except asyncio.CancelledError:
            log.warning("scheduler.loop_cancelled")
            raise
        finally:
            self._state = SchedulerState.IDLE
            self._loop_task = None
            log.info(
                "scheduler.stopped",
                total_runs=self.stats.total_runs,
                failed_runs=self.stats.failed_runs,
                skipped_runs=self.stats.skipped_runs,
            )

    def _tick(self) -> None:
        """Dispatch every due task once. No awaits: the scan is atomic."""
        now = self._clock.now()
        for task in list(self._tasks.values()):
            if not task.is_due(now):
                continue
            try:
                self._runner.dispatch(task, now)
            except Exception as e:
                log.error(
                    "scheduler.dispatch_error",
                    task=task.name,
                    error=f"{type(e).__name__}: {e}",
                    exc_info=e,
                )
