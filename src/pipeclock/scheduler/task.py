"""
scheduler/task.py — Task and TaskBuilder

A Task is one recurring unit of work: a name, a fixed interval, an action
and the next time it becomes due. TaskBuilder is the fluent front door:

    scheduler.task("sync_notes").every("2 minutes").do(sync_notes)

The builder only accumulates; nothing is registered until do() is called.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

from pipeclock.exceptions import IncompleteTaskDefinitionError, InvalidTaskNameError
from pipeclock.scheduler.interval import format_interval, parse_interval

# A zero-argument callable. May be a coroutine function. Returning False
# marks the run as failed; raising does too.
Action = Callable[[], Union[Any, Awaitable[Any]]]

# Task names double as file names in the state directory, so they must be
# a single path component. Anything else (spaces, colons, unicode) is fine.
_FORBIDDEN_NAME_CHARS = ("/", "\\", "\x00")
_RESERVED_NAMES = {".", ".."}


def is_valid_task_name(name: object) -> bool:
    return (
        isinstance(name, str)
        and bool(name)
        and name not in _RESERVED_NAMES
        and not any(ch in name for ch in _FORBIDDEN_NAME_CHARS)
    )


def validate_task_name(name: str) -> str:
    if not is_valid_task_name(name):
        raise InvalidTaskNameError(name)
    return name


@dataclass
class Task:
    """
    One registered recurring task.

    name          Unique within one Scheduler; also the persisted record key.
    interval      Fixed distance between consecutive runs.
    action        Zero-argument callable (sync or async).
    next_run_at   UTC instant at or after which the task is due.
    """
    name: str
    interval: timedelta
    action: Action
    next_run_at: datetime

    def is_due(self, now: datetime) -> bool:
        return self.next_run_at <= now

    def advance(self) -> datetime:
        """Move next_run_at forward by exactly one interval (no drift)."""
        self.next_run_at = self.next_run_at + self.interval
        return self.next_run_at

    def describe(self) -> str:
        return f"{self.name} every {format_interval(self.interval)}"


class TaskBuilder:
    """Accumulates name → interval → action, then hands off to the scheduler."""

    def __init__(self, name: str, register: Callable[[str, timedelta, Action], Task]) -> None:
        self._name = validate_task_name(name)
        self._register = register
        self._interval: Optional[timedelta] = None

    @property
    def name(self) -> str:
        return self._name

    def every(self, phrase: str) -> "TaskBuilder":
        self._interval = parse_interval(phrase)
        return self

    def do(self, action: Action) -> None:
        if self._interval is None:
            raise IncompleteTaskDefinitionError(
                f"Task '{self._name}' has no interval. Call .every('<n> <unit>') before .do()."
            )
        if not callable(action):
            raise IncompleteTaskDefinitionError(
                f"Task '{self._name}' action must be callable, got {type(action).__name__}."
            )
        self._register(self._name, self._interval, action)
