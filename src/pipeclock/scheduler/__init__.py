"""
scheduler/ — recurring-task scheduler

    from pipeclock.scheduler import Scheduler
    scheduler = Scheduler.from_settings(settings)
    scheduler.task("sync_notes").every("2 minutes").do(sync_notes)
"""

from pipeclock.scheduler.clock import Clock, ManualClock, SystemClock
from pipeclock.scheduler.interval import format_interval, parse_interval
from pipeclock.scheduler.runner import SchedulerStats, TaskRun, TaskRunner
from pipeclock.scheduler.scheduler import Scheduler, SchedulerState
from pipeclock.scheduler.store import StateStore
from pipeclock.scheduler.task import Task, TaskBuilder

__all__ = [
    "Clock",
    "ManualClock",
    "Scheduler",
    "SchedulerState",
    "SchedulerStats",
    "StateStore",
    "SystemClock",
    "Task",
    "TaskBuilder",
    "TaskRun",
    "TaskRunner",
    "format_interval",
    "parse_interval",
]
