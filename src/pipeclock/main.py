"""
main.py — pipeclock state inspection CLI

Usage:
    pipeclock status                        # persisted next-run times
    pipeclock status --namespace reports    # another scheduler namespace
    pipeclock reset sync_notes              # forget one task's schedule
    pipeclock --dir /tmp/state status       # override PIPECLOCK_DIR
    pipeclock --log-level DEBUG status
    pipeclock --config path/to/config.yaml status
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table


def _find_env_file() -> Path | None:
    """Walk up from CWD looking for .env file."""
    cwd = Path.cwd()
    for d in [cwd, *cwd.parents]:
        candidate = d / ".env"
        if candidate.is_file():
            return candidate
    return None


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pipeclock",
        description="Inspect and reset persisted recurring-task schedules.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $PIPECLOCK_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--dir",
        default=None,
        help="Storage root (default: $PIPECLOCK_DIR or ~/.pipeclock)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="List persisted next-run times.")
    status.add_argument("--namespace", default=None, help="Scheduler namespace to read.")

    reset = sub.add_parser("reset", help="Delete one task's persisted record.")
    reset.add_argument("name", help="Task name.")
    reset.add_argument("--namespace", default=None, help="Scheduler namespace to modify.")

    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log), or None after printing the problem.
    """
    from pydantic import ValidationError

    from pipeclock.config.settings import ConfigError, load_settings
    from pipeclock.observability.logger import get_logger, setup_logging

    overrides: dict = {}
    if args.dir:
        overrides["PIPECLOCK_DIR"] = args.dir

    try:
        settings = load_settings(args.config, **overrides)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(f"\n❌  Config validation failed:\n\n{problems}\n", file=sys.stderr)
        return None
    except (OSError, ValueError) as exc:
        print(f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        return None

    namespace = getattr(args, "namespace", None)
    if namespace:
        settings.scheduler.namespace = namespace

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return None

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    return settings, get_logger("pipeclock.main")


def _cmd_status(store, console: Console) -> int:
    records = store.list_records()
    if not records:
        console.print(f"[dim]No persisted tasks in {store.directory}[/]")
        return 0

    now = datetime.now(timezone.utc)
    table = Table(title=str(store.directory), box=box.SIMPLE_HEAVY)
    table.add_column("Task", style="bold")
    table.add_column("Next run (UTC)")
    table.add_column("Status")
    for name, when in records.items():
        if when is None:
            table.add_row(name, "—", "[red]unreadable[/]")
        elif when <= now:
            table.add_row(name, when.isoformat(), "[yellow]overdue[/]")
        else:
            table.add_row(name, when.isoformat(), "[green]scheduled[/]")
    console.print(table)
    return 0


def _cmd_reset(store, name: str, console: Console, log) -> int:
    from pipeclock.exceptions import PipeclockError

    try:
        removed = store.delete(name)
    except PipeclockError as e:
        console.print(f"[red]❌ {e}[/]")
        return 1
    if not removed:
        console.print(f"[yellow]No persisted record for '{name}'.[/]")
        return 1
    log.info("pipeclock.reset", task=name)
    console.print(f"[green]✓[/] Reset '{name}'. It will be rescheduled on next registration.")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    env_path = _find_env_file()
    if env_path:
        load_dotenv(dotenv_path=env_path)

    args = parse_args(argv)
    booted = bootstrap(args)
    if booted is None:
        return 1
    settings, log = booted

    from pipeclock.scheduler.store import StateStore

    store = StateStore.from_settings(settings)
    console = Console()
    log.info("pipeclock.command", command=args.command, state_dir=str(store.directory))

    if args.command == "status":
        return _cmd_status(store, console)
    if args.command == "reset":
        return _cmd_reset(store, args.name, console, log)
    return 1
