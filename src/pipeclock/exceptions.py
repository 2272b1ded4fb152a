"""
exceptions.py — pipeclock Unified Error Hierarchy

All pipeclock-specific exceptions live here. Every layer raises typed
subclasses of PipeclockError — never bare Exception.

Import from here, not from individual modules:
    from pipeclock.exceptions import InvalidIntervalError, PersistenceError

Hierarchy:
    PipeclockError
    ├── SchedulerError
    │   ├── InvalidIntervalError
    │   ├── InvalidTaskNameError
    │   ├── IncompleteTaskDefinitionError
    │   └── TaskExecutionError
    └── PersistenceError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class PipeclockError(Exception):
    """Base class for all pipeclock exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Scheduler layer
# ─────────────────────────────────────────────────────────────────────────────

class SchedulerError(PipeclockError):
    """Base for scheduling and registration errors."""


class InvalidIntervalError(SchedulerError):
    """Interval phrase is not of the form '<positive integer> <unit>'."""

    def __init__(self, phrase: object, message: str = "") -> None:
        self.phrase = phrase
        super().__init__(
            message or f"Invalid interval {phrase!r}. Expected e.g. '1 minute' or '2 hours'."
        )


class InvalidTaskNameError(SchedulerError):
    """Task name cannot be used as a persisted record key."""

    def __init__(self, name: object, message: str = "") -> None:
        self.name = name
        super().__init__(
            message
            or f"Invalid task name {name!r}. It must be a non-empty single path "
            f"component: no '/', '\\' or NUL, and not '.' or '..'."
        )


class IncompleteTaskDefinitionError(SchedulerError):
    """The builder chain was finalized before it had everything it needs."""


class TaskExecutionError(SchedulerError):
    """A task action failed during a dispatch. Reported, never propagated."""

    def __init__(self, task_name: str, cause: Optional[BaseException] = None, message: str = "") -> None:
        self.task_name = task_name
        self.cause = cause
        if not message:
            if cause is not None:
                message = f"Task '{task_name}' failed: {type(cause).__name__}: {cause}"
            else:
                message = f"Task '{task_name}' reported failure."
        super().__init__(message)


# ─────────────────────────────────────────────────────────────────────────────
# Persistence layer
# ─────────────────────────────────────────────────────────────────────────────

class PersistenceError(PipeclockError):
    """A state record could not be written (or removed) on disk."""

    def __init__(self, task_name: str, message: str = "") -> None:
        self.task_name = task_name
        super().__init__(message or f"Could not persist state for task '{task_name}'.")


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "PipeclockError",
    # Scheduler
    "SchedulerError",
    "InvalidIntervalError",
    "InvalidTaskNameError",
    "IncompleteTaskDefinitionError",
    "TaskExecutionError",
    # Persistence
    "PersistenceError",
]
