"""
pipeclock — recurring-task scheduler with restart-safe state.

    from pipeclock import Scheduler
    scheduler = Scheduler()
    scheduler.task("sync_notes").every("2 minutes").do(sync_notes)
"""

from pipeclock.scheduler import Scheduler

__version__ = "0.1.0"

__all__ = ["Scheduler", "__version__"]
