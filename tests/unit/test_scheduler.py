"""
tests/unit/test_scheduler.py — Scheduler

Covers:
  - registration: first due time, persisted record, redefinition
  - trigger loop under a ManualClock: exact dispatch counts, catch-up,
    independent tasks, failing tasks
  - restart: a future persisted due time wins, a stale one is replaced
  - overlap: a slow task is never run twice at once
  - lifecycle: start/stop/shutdown/restart, start() without a loop
  - removal and status listing
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from pipeclock.config.settings import Settings
from pipeclock.exceptions import (
    IncompleteTaskDefinitionError,
    InvalidIntervalError,
    InvalidTaskNameError,
    SchedulerError,
)
from pipeclock.scheduler import ManualClock, Scheduler, SchedulerState, StateStore

T0 = datetime(2023, 1, 1, tzinfo=timezone.utc)
SECOND = timedelta(seconds=1)
MINUTE = timedelta(minutes=1)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_scheduler(tmp_path, clock: ManualClock, **kwargs) -> Scheduler:
    kwargs.setdefault("tick_seconds", 0.01)
    return Scheduler(StateStore(tmp_path), clock=clock, **kwargs)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def _settle(seconds: float = 0.05) -> None:
    """Let the trigger loop spin for a few ticks of real time."""
    await asyncio.sleep(seconds)


def _counter():
    calls: list[datetime] = []

    async def action():
        calls.append(datetime.now(timezone.utc))

    return calls, action


@pytest.fixture
def clock():
    return ManualClock(T0)


# ─────────────────────────────────────────────────────────────────────────────
# Construction
# ─────────────────────────────────────────────────────────────────────────────

class TestConstruction:

    @pytest.mark.parametrize("tick", [0, -1, 1.5])
    def test_tick_bounds(self, tmp_path, clock, tick):
        with pytest.raises(ValueError):
            _make_scheduler(tmp_path, clock, tick_seconds=tick)

    def test_default_store_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PIPECLOCK_DIR", str(tmp_path))
        s = Scheduler(clock=ManualClock(T0))
        s.task("a").every("1 minute").do(lambda: None)
        assert (tmp_path / "scheduler" / "a").is_file()

    def test_from_settings(self, tmp_path, clock):
        settings = Settings(
            PIPECLOCK_DIR=str(tmp_path),
            scheduler={"namespace": "reports", "tick_seconds": 0.2, "history_limit": 7},
        )
        s = Scheduler.from_settings(settings, clock=clock)
        s.task("weekly").every("7 days").do(lambda: None)
        assert (tmp_path / "reports" / "weekly").is_file()
        assert s.state is SchedulerState.IDLE


# ─────────────────────────────────────────────────────────────────────────────
# Registration
# ─────────────────────────────────────────────────────────────────────────────

class TestRegistration:

    def test_first_due_time_and_record(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        s.task("test_task").every("1 minute").do(lambda: None)
        task = s.get_task("test_task")
        assert task.next_run_at == T0 + MINUTE
        assert StateStore(tmp_path).load("test_task") == T0 + MINUTE

    def test_redefinition_keeps_due_time(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        first, second = (lambda: "first"), (lambda: "second")
        s.task("t").every("1 minute").do(first)
        clock.advance(timedelta(seconds=20))
        s.task("t").every("5 minutes").do(second)
        assert len(s.tasks) == 1
        task = s.get_task("t")
        assert task.action is second
        assert task.interval == timedelta(minutes=5)
        assert task.next_run_at == T0 + MINUTE

    def test_incomplete_definition_registers_nothing(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        with pytest.raises(IncompleteTaskDefinitionError):
            s.task("t").do(lambda: None)
        assert s.tasks == []
        assert StateStore(tmp_path).load("t") is None

    def test_bad_interval(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        with pytest.raises(InvalidIntervalError):
            s.task("t").every("0 minutes")
        assert s.tasks == []

    def test_bad_name(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        with pytest.raises(InvalidTaskNameError):
            s.task("a/b")

    @pytest.mark.parametrize("name", ["daily report", "sync:notes"])
    def test_free_form_name(self, tmp_path, clock, name):
        s = _make_scheduler(tmp_path, clock)
        s.task(name).every("1 minute").do(lambda: None)
        assert s.get_task(name).next_run_at == T0 + MINUTE
        assert StateStore(tmp_path).load(name) == T0 + MINUTE

    def test_oversized_interval_rejected(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        with pytest.raises(InvalidIntervalError):
            s.task("t").every("9999999 days").do(lambda: None)
        assert s.tasks == []

    def test_interval_past_calendar_end_rejected(self, tmp_path):
        late = ManualClock(datetime(9990, 1, 1, tzinfo=timezone.utc))
        s = _make_scheduler(tmp_path, late)
        with pytest.raises(InvalidIntervalError, match="past the end"):
            s.task("t").every("36500 days").do(lambda: None)
        assert s.tasks == []
        assert StateStore(tmp_path).load("t") is None

    def test_future_persisted_time_wins(self, tmp_path, clock):
        s1 = _make_scheduler(tmp_path, clock)
        s1.task("t").every("1 minute").do(lambda: None)
        clock.advance(timedelta(seconds=30))
        s2 = _make_scheduler(tmp_path, clock)
        s2.task("t").every("1 minute").do(lambda: None)
        assert s2.get_task("t").next_run_at == T0 + MINUTE

    def test_stale_persisted_time_replaced(self, tmp_path, clock):
        store = StateStore(tmp_path)
        store.save("t", T0 - timedelta(hours=1))
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(lambda: None)
        assert s.get_task("t").next_run_at == T0 + MINUTE
        assert store.load("t") == T0 + MINUTE

    def test_corrupt_record_treated_as_absent(self, tmp_path, clock):
        store = StateStore(tmp_path)
        store.directory.mkdir(parents=True)
        store.path_for("t").write_text("garbage", encoding="utf-8")
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(lambda: None)
        assert s.get_task("t").next_run_at == T0 + MINUTE
        assert store.load("t") == T0 + MINUTE

    def test_unwritable_store_does_not_block_registration(self, tmp_path, clock):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        s = Scheduler(StateStore(blocker), clock=clock, tick_seconds=0.01)
        s.task("t").every("1 minute").do(lambda: None)
        assert s.get_task("t").next_run_at == T0 + MINUTE
        assert s.stats.persist_failures == 1


# ─────────────────────────────────────────────────────────────────────────────
# Trigger loop
# ─────────────────────────────────────────────────────────────────────────────

class TestTriggerLoop:

    @pytest.mark.asyncio
    async def test_nothing_runs_before_due(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(action)
        s.start()
        clock.advance(timedelta(seconds=59))
        await _settle()
        assert calls == []
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_exactly_one_run_after_one_interval(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("test_task").every("1 minute").do(action)
        s.start()
        clock.advance(MINUTE)
        await _wait_until(lambda: len(calls) == 1 and not s.list_tasks()[0]["running"])
        await _settle()
        assert len(calls) == 1
        assert s.get_task("test_task").next_run_at == T0 + 2 * MINUTE
        assert StateStore(tmp_path).load("test_task") == T0 + 2 * MINUTE
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_catch_up_runs_each_missed_slot(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("test_task").every("1 minute").do(action)
        s.start()
        clock.advance(2 * MINUTE)
        await _wait_until(lambda: len(calls) == 2)
        await _settle()
        assert len(calls) == 2
        assert [r.scheduled_for for r in s.task_history] == [T0 + MINUTE, T0 + 2 * MINUTE]
        assert s.get_task("test_task").next_run_at == T0 + 3 * MINUTE
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_tasks_run_independently(self, tmp_path, clock):
        a_calls, a = _counter()
        b_calls, b = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("a").every("1 minute").do(a)
        s.task("b").every("2 minutes").do(b)
        s.start()
        clock.advance(2 * MINUTE)
        await _wait_until(lambda: len(a_calls) >= 2 and len(b_calls) >= 1)
        await _settle()
        assert len(a_calls) == 2
        assert len(b_calls) == 1
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_sync_action_runs(self, tmp_path, clock):
        calls = []
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 second").do(lambda: calls.append("x"))
        s.start()
        clock.advance(SECOND)
        await _wait_until(lambda: calls == ["x"])
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_failing_task_keeps_being_scheduled(self, tmp_path, clock):
        attempts = []
        ok_calls, ok = _counter()

        async def broken():
            attempts.append(clock.now())
            raise RuntimeError("upstream down")

        s = _make_scheduler(tmp_path, clock)
        s.task("broken").every("1 minute").do(broken)
        s.task("healthy").every("1 minute").do(ok)
        s.start()

        clock.advance(MINUTE)
        await _wait_until(lambda: len(attempts) == 1 and len(ok_calls) == 1)
        assert s.get_task("broken").next_run_at == T0 + 2 * MINUTE

        clock.advance(MINUTE)
        await _wait_until(lambda: len(attempts) == 2 and len(ok_calls) == 2)
        assert s.stats.failed_runs == 2
        assert s.stats.successful_runs == 2
        assert s.running
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_returning_false_is_counted_as_failure(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)

        async def nope():
            return False

        s.task("t").every("1 minute").do(nope)
        s.start()
        clock.advance(MINUTE)
        await _wait_until(lambda: s.stats.total_runs == 1 and s.task_history)
        assert s.stats.failed_runs == 1
        assert s.list_tasks()[0]["last_run_succeeded"] is False
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_restart_honours_future_persisted_time(self, tmp_path, clock):
        s1 = _make_scheduler(tmp_path, clock)
        s1.task("t").every("1 minute").do(lambda: None)

        clock.advance(timedelta(seconds=30))
        calls, action = _counter()
        s2 = _make_scheduler(tmp_path, clock)
        s2.task("t").every("1 minute").do(action)
        s2.start()
        await _settle()
        assert calls == []

        clock.advance(timedelta(seconds=30))
        await _wait_until(lambda: len(calls) == 1)
        await s2.shutdown()

    @pytest.mark.asyncio
    async def test_register_while_running(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.start()
        await _settle()
        s.task("late").every("1 minute").do(action)
        assert s.get_task("late").next_run_at == T0 + MINUTE
        clock.advance(MINUTE)
        await _wait_until(lambda: len(calls) == 1)
        await s.shutdown()

    @pytest.mark.asyncio
    async def test_observer_sees_every_run(self, tmp_path, clock):
        seen = []
        s = _make_scheduler(tmp_path, clock, observers=[seen.append])
        s.task("t").every("1 minute").do(lambda: None)
        s.start()
        clock.advance(2 * MINUTE)
        await _wait_until(lambda: len(seen) == 2)
        assert all(r.task_name == "t" and r.succeeded for r in seen)
        await s.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Overlap
# ─────────────────────────────────────────────────────────────────────────────

class TestOverlap:

    @pytest.mark.asyncio
    async def test_slow_task_never_runs_concurrently(self, tmp_path, clock):
        release = asyncio.Event()
        calls: list[datetime] = []
        active = 0
        max_active = 0

        async def slow():
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            calls.append(clock.now())
            try:
                if len(calls) == 1:
                    await release.wait()
            finally:
                active -= 1

        s = _make_scheduler(tmp_path, clock)
        s.task("slow").every("1 second").do(slow)
        s.start()

        clock.advance(SECOND)
        await _wait_until(lambda: len(calls) == 1)
        clock.advance(4 * SECOND)
        await _settle()
        assert len(calls) == 1
        assert s.stats.skipped_runs >= 1

        release.set()
        await _wait_until(lambda: len(calls) == 5)
        await _settle()
        assert len(calls) == 5
        assert max_active == 1
        assert s.get_task("slow").next_run_at == T0 + 6 * SECOND
        await s.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    def test_start_without_event_loop(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        with pytest.raises(RuntimeError):
            s.start()
        assert s.state is SchedulerState.IDLE

    def test_stop_when_idle_is_noop(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        s.stop()
        assert s.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_task(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        first = s.start()
        second = s.start()
        assert first is second
        assert s.state is SchedulerState.RUNNING
        await s.shutdown()
        assert first.done()

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_run(self, tmp_path, clock):
        release = asyncio.Event()
        finished = []

        async def slow():
            await release.wait()
            finished.append(True)

        s = _make_scheduler(tmp_path, clock)
        s.task("slow").every("1 minute").do(slow)
        done = s.start()
        clock.advance(MINUTE)
        await _wait_until(lambda: s.list_tasks()[0]["running"])

        s.stop()
        assert s.state is SchedulerState.STOPPING
        s.stop()  # idempotent
        await _settle()
        assert not done.done()

        with pytest.raises(SchedulerError):
            s.start()

        release.set()
        await done
        assert finished == [True]
        assert s.state is SchedulerState.IDLE
        assert StateStore(tmp_path).load("slow") == T0 + 2 * MINUTE

    @pytest.mark.asyncio
    async def test_no_dispatch_after_stop(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(action)
        await s.shutdown()  # never started: no-op
        s.start()
        s.stop()
        clock.advance(MINUTE)
        await _settle()
        assert calls == []
        assert s.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(action)
        first = s.start()
        await s.shutdown()
        assert s.state is SchedulerState.IDLE

        second = s.start()
        assert second is not first
        clock.advance(MINUTE)
        await _wait_until(lambda: len(calls) == 1)
        await s.shutdown()


# ─────────────────────────────────────────────────────────────────────────────
# Removal / status
# ─────────────────────────────────────────────────────────────────────────────

class TestRemovalAndStatus:

    def test_remove_keeps_record(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(lambda: None)
        assert s.remove_task("t") is True
        assert s.get_task("t") is None
        assert StateStore(tmp_path).load("t") == T0 + MINUTE

    def test_remove_and_forget(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(lambda: None)
        assert s.remove_task("t", forget=True) is True
        assert StateStore(tmp_path).load("t") is None

    def test_remove_unknown(self, tmp_path, clock):
        assert _make_scheduler(tmp_path, clock).remove_task("nope") is False

    @pytest.mark.asyncio
    async def test_removed_task_stops_running(self, tmp_path, clock):
        calls, action = _counter()
        s = _make_scheduler(tmp_path, clock)
        s.task("t").every("1 minute").do(action)
        s.start()
        s.remove_task("t")
        clock.advance(MINUTE)
        await _settle()
        assert calls == []
        await s.shutdown()

    def test_list_tasks(self, tmp_path, clock):
        s = _make_scheduler(tmp_path, clock)
        s.task("sync").every("2 minutes").do(lambda: None)
        s.task("digest").every("1 day").do(lambda: None)
        listing = s.list_tasks()
        assert [t["name"] for t in listing] == ["sync", "digest"]
        assert listing[0] == {
            "name": "sync",
            "interval": "2 minutes",
            "interval_s": 120.0,
            "next_run_at": (T0 + 2 * MINUTE).isoformat(),
            "running": False,
            "last_run_succeeded": None,
            "last_run_duration_s": None,
            "last_error": None,
        }
