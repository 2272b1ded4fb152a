"""
scheduler/store.py — StateStore

Persists each task's next_run_at so a restarted process picks up where the
previous one left off.

Layout:
    <storage-root>/<namespace>/<task-name>

Each file holds one ISO-8601 timestamp and nothing else. Epoch milliseconds
are accepted when reading. Writes go to a temp file in the same directory
and are moved into place with os.replace, so a record is either the old
value or the new one, never half of each.

Read problems (corrupt text, permissions) degrade to "no record" with a
warning. Write problems raise PersistenceError; callers decide whether
that is fatal (the scheduler never treats it as such).
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pipeclock.config.settings import DEFAULT_NAMESPACE, Settings
from pipeclock.exceptions import PersistenceError
from pipeclock.observability.logger import get_logger
from pipeclock.scheduler.task import validate_task_name

log = get_logger(__name__)

_TMP_PREFIX = ".tmp-"


def serialize_timestamp(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw: str) -> datetime:
    """Parse a stored record. Raises ValueError for anything unreadable."""
    text = raw.strip()
    if not text:
        raise ValueError("empty record")
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    when = datetime.fromisoformat(text)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


class StateStore:
    """
    File-per-task store for next-run timestamps.

    Each call touches only its own record, so runs of different tasks can
    save concurrently without stepping on each other.
    """

    def __init__(self, root: str | Path, namespace: str = DEFAULT_NAMESPACE) -> None:
        self._root = Path(root).expanduser()
        self._namespace = namespace
        self._dir = self._root / namespace

    @classmethod
    def from_settings(cls, settings: Settings) -> "StateStore":
        return cls(settings.storage_root, settings.scheduler.namespace)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path:
        return self._dir / validate_task_name(name)

    # ── Reads ────────────────────────────────────────────────────────────────

    def load(self, name: str) -> Optional[datetime]:
        """Return the stored next-run time, or None if absent or unreadable."""
        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            log.warning("scheduler.state.unreadable", task=name, path=str(path), error=str(e))
            return None

        try:
            return parse_timestamp(raw)
        except (ValueError, OverflowError, OSError) as e:
            log.warning(
                "scheduler.state.corrupt",
                task=name,
                path=str(path),
                error=f"{type(e).__name__}: {e}",
            )
            return None

    def list_records(self) -> dict[str, Optional[datetime]]:
        """All records in this namespace. Corrupt ones map to None."""
        if not self._dir.is_dir():
            return {}
        records: dict[str, Optional[datetime]] = {}
        for entry in sorted(self._dir.iterdir()):
            if not entry.is_file() or entry.name.startswith(_TMP_PREFIX):
                continue
            records[entry.name] = self.load(entry.name)
        return records

    # ── Writes ───────────────────────────────────────────────────────────────

    def save(self, name: str, when: datetime) -> None:
        path = self.path_for(name)
        payload = serialize_timestamp(when)
        tmp_name: Optional[str] = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=_TMP_PREFIX, dir=self._dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise PersistenceError(
                name, f"Could not write state for task '{name}' to {path}: {e}"
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        log.debug("scheduler.state.saved", task=name, next_run_at=payload)

    def delete(self, name: str) -> bool:
        """Remove a record. Returns False if there was nothing to remove."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(name, f"Could not remove state for task '{name}': {e}") from e
        log.info("scheduler.state.deleted", task=name)
        return True
