"""observability/ — structured logging for pipeclock."""

from pipeclock.observability.logger import bind_task_run, clear_task_run, get_logger, setup_logging

__all__ = ["bind_task_run", "clear_task_run", "get_logger", "setup_logging"]
