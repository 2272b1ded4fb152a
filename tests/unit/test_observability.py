"""
tests/unit/test_observability.py — structured logging setup

Covers:
  - setup_logging() creates the log directory and writes JSON lines
  - task-run context (task, run_id) is merged into every line and cleared
"""

from __future__ import annotations

import json
import logging

import pytest
import structlog
from structlog.testing import capture_logs

from pipeclock.observability.logger import (
    LOG_FILE_NAME,
    bind_task_run,
    clear_task_run,
    get_logger,
    setup_logging,
)


@pytest.fixture(autouse=True)
def _restore_logging():
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def _read_lines(log_dir):
    for handler in logging.getLogger().handlers:
        handler.flush()
    text = (log_dir / LOG_FILE_NAME).read_text(encoding="utf-8")
    return [json.loads(line) for line in text.splitlines() if line.strip()]


class TestSetupLogging:

    def test_creates_log_file(self, tmp_path):
        log_dir = tmp_path / "logs"
        setup_logging(level="INFO", log_dir=log_dir, console_output=False)
        get_logger("pipeclock.test").info("scheduler.started", tasks=["a"])

        lines = _read_lines(log_dir)
        assert lines[-1]["event"] == "scheduler.started"
        assert lines[-1]["tasks"] == ["a"]
        assert lines[-1]["level"] == "info"
        assert lines[-1]["logger"] == "pipeclock.test"
        assert "timestamp" in lines[-1]

    def test_level_filters(self, tmp_path):
        setup_logging(level="WARNING", log_dir=tmp_path, console_output=False)
        log = get_logger("pipeclock.test")
        log.info("quiet")
        log.warning("loud")
        events = [line["event"] for line in _read_lines(tmp_path)]
        assert "loud" in events
        assert "quiet" not in events

    def test_task_run_context_in_file(self, tmp_path):
        setup_logging(level="DEBUG", log_dir=tmp_path, console_output=False)
        log = get_logger("pipeclock.test")
        bind_task_run("sync_notes", "abc123")
        log.info("inside")
        clear_task_run()
        log.info("outside")

        lines = {line["event"]: line for line in _read_lines(tmp_path)}
        assert lines["inside"]["task"] == "sync_notes"
        assert lines["inside"]["run_id"] == "abc123"
        assert "task" not in lines["outside"]


class TestContext:

    def test_initial_values_bound(self):
        with capture_logs() as logs:
            get_logger("pipeclock.test", component="store").info("hello")
        assert logs[0]["component"] == "store"

    def test_bind_and_clear(self):
        bind_task_run("t", "r1")
        assert structlog.contextvars.get_contextvars() == {"task": "t", "run_id": "r1"}
        clear_task_run()
        assert structlog.contextvars.get_contextvars() == {}
