"""
scheduler/interval.py — Interval phrase parser

Turns "1 minute", "2 hours", "30 Seconds" into a timedelta. Only the
"<positive integer> <unit>" shape is understood; anything cron-like is
rejected.
"""

from __future__ import annotations

import re
from datetime import timedelta

from pipeclock.exceptions import InvalidIntervalError

INTERVAL_RE = re.compile(r"^(\d+)\s+([a-z]+)$")

_UNIT_SECONDS: dict[str, int] = {
    "second": 1,
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
}

# Longest accepted interval. Keeps now + interval inside datetime range.
MAX_INTERVAL = timedelta(days=36500)


def parse_interval(phrase: str) -> timedelta:
    """
    Parse an interval phrase into a duration.

    >>> parse_interval("2 minutes")
    datetime.timedelta(seconds=120)

    Raises InvalidIntervalError for malformed phrases, non-positive counts,
    unknown units and intervals longer than MAX_INTERVAL.
    """
    if not isinstance(phrase, str):
        raise InvalidIntervalError(phrase)

    match = INTERVAL_RE.match(phrase.strip().lower())
    if not match:
        raise InvalidIntervalError(phrase)

    amount = int(match.group(1))
    if amount <= 0:
        raise InvalidIntervalError(phrase, f"Interval {phrase!r} must be greater than zero.")

    unit = match.group(2)
    if unit.endswith("s"):
        unit = unit[:-1]
    seconds = _UNIT_SECONDS.get(unit)
    if seconds is None:
        raise InvalidIntervalError(
            phrase,
            f"Unknown unit in interval {phrase!r}. Use one of: {', '.join(_UNIT_SECONDS)}.",
        )
    total = amount * seconds
    if total > MAX_INTERVAL.total_seconds():
        raise InvalidIntervalError(
            phrase, f"Interval {phrase!r} is too long. The maximum is {MAX_INTERVAL.days} days."
        )
    return timedelta(seconds=total)


def format_interval(interval: timedelta) -> str:
    """Render a timedelta back as the largest whole unit, e.g. '2 minutes'."""
    total = int(interval.total_seconds())
    for unit, size in sorted(_UNIT_SECONDS.items(), key=lambda kv: kv[1], reverse=True):
        if total >= size and total % size == 0:
            n = total // size
            return f"{n} {unit}" + ("s" if n != 1 else "")
    return f"{interval.total_seconds():g} seconds"
