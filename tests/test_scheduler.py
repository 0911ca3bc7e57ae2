from __future__ import annotations

import random
import threading
from collections.abc import Callable

from genmix.engine.models import RunReport
from genmix.engine.scheduler import TaskScheduler

OK = RunReport(success=True)
FAIL = RunReport(success=False)
REDIRECT = RunReport(success=False, retry_after_redirect=True)


class Recorder:
    def __init__(self, decide: Callable[[str, int], RunReport] | None = None) -> None:
        self.calls: list[str] = []
        self.decide = decide or (lambda _id, _n: OK)

    def __call__(self, task_id: str) -> RunReport:
        self.calls.append(task_id)
        return self.decide(task_id, self.calls.count(task_id))


def _scheduler(execute: Callable[[str], RunReport], **kwargs) -> TaskScheduler:  # noqa: ANN003
    kwargs.setdefault("sleep", lambda _s: None)
    return TaskScheduler(execute, **kwargs)


def _run(scheduler: TaskScheduler, ids: list[str]) -> None:
    assert scheduler.run_all(ids) is True
    assert scheduler.wait(timeout=5)


def test_runs_every_task_once_in_order() -> None:
    rec = Recorder()
    scheduler = _scheduler(rec)
    _run(scheduler, ["a", "b", "c", "d"])

    assert rec.calls == ["a", "b", "c", "d"]
    snap = scheduler.snapshot()
    assert snap.is_running is False
    assert snap.queued_ids == ()
    assert snap.executing_id is None


def test_randomized_delay_only_between_tasks() -> None:
    sleeps: list[float] = []
    scheduler = _scheduler(Recorder(), sleep=sleeps.append, rng=random.Random(7))
    _run(scheduler, ["a", "b", "c"])
    assert len(sleeps) == 2
    assert all(1.0 <= s <= 4.0 for s in sleeps)


def test_failure_is_retried_consecutively_when_enabled() -> None:
    rec = Recorder(lambda task_id, n: FAIL if task_id == "a" and n < 3 else OK)
    scheduler = _scheduler(rec, retry_on_fail=True)
    _run(scheduler, ["a", "b"])
    assert rec.calls == ["a", "a", "a", "b"]


def test_failure_moves_on_without_retry() -> None:
    rec = Recorder(lambda task_id, _n: FAIL if task_id == "a" else OK)
    scheduler = _scheduler(rec)
    _run(scheduler, ["a", "b"])
    assert rec.calls == ["a", "b"]


def test_without_auto_next_only_the_first_task_runs() -> None:
    for outcome in (OK, FAIL):
        rec = Recorder(lambda _id, _n, outcome=outcome: outcome)
        scheduler = _scheduler(rec, auto_next=False)
        _run(scheduler, ["a", "b"])
        assert rec.calls == ["a"]


def test_redirect_retries_same_task_without_using_retry_budget() -> None:
    rec = Recorder(lambda task_id, n: REDIRECT if task_id == "a" and n <= 5 else OK)
    sleeps: list[float] = []
    scheduler = _scheduler(rec, sleep=sleeps.append, redirect_settle_s=0.25)
    _run(scheduler, ["a", "b"])
    assert rec.calls == ["a"] * 6 + ["b"]
    assert sleeps.count(0.25) == 5


def test_redirect_loops_until_stopped() -> None:
    scheduler: TaskScheduler

    def decide(_task_id: str, n: int) -> RunReport:
        if n == 50:
            scheduler.stop()
        return REDIRECT

    rec = Recorder(decide)
    scheduler = _scheduler(rec)
    _run(scheduler, ["a", "b"])
    assert rec.calls == ["a"] * 50


def test_redirect_cap_turns_into_failure() -> None:
    rec = Recorder(lambda task_id, _n: REDIRECT if task_id == "a" else OK)
    scheduler = _scheduler(rec, max_redirects=2)
    _run(scheduler, ["a", "b"])
    assert rec.calls == ["a", "a", "a", "b"]


def test_stop_during_task_prevents_later_tasks() -> None:
    stopped: list[bool] = []
    scheduler: TaskScheduler

    def decide(task_id: str, _n: int) -> RunReport:
        if task_id == "b":
            scheduler.stop()
        return OK

    rec = Recorder(decide)
    scheduler = _scheduler(rec, on_stop=lambda: stopped.append(True))
    _run(scheduler, ["a", "b", "c", "d"])
    assert rec.calls == ["a", "b"]
    assert stopped == [True]
    assert scheduler.snapshot().queued_ids == ()


def test_snapshot_while_running_and_duplicate_start_ignored() -> None:
    gate = threading.Event()
    entered = threading.Event()

    def execute(_task_id: str) -> RunReport:
        entered.set()
        gate.wait(5)
        return OK

    scheduler = _scheduler(execute)
    assert scheduler.run_all(["a", "b"]) is True
    assert entered.wait(5)

    snap = scheduler.snapshot()
    assert snap.is_running is True
    assert snap.executing_id == "a"
    assert snap.queued_ids == ("a", "b")
    assert scheduler.run_single("c") is False

    gate.set()
    assert scheduler.wait(timeout=5)
    assert scheduler.is_running is False


def test_empty_run_is_ignored() -> None:
    scheduler = _scheduler(Recorder())
    assert scheduler.run_all([]) is False
    assert scheduler.run_single("") is False
    assert scheduler.snapshot().is_running is False


def test_crashing_task_counts_as_failure() -> None:
    calls: list[str] = []

    def execute(task_id: str) -> RunReport:
        calls.append(task_id)
        if task_id == "a":
            raise RuntimeError("boom")
        return OK

    scheduler = _scheduler(execute)
    _run(scheduler, ["a", "b"])
    assert calls == ["a", "b"]


def test_scheduler_can_run_again_after_stop() -> None:
    rec = Recorder()
    scheduler = _scheduler(rec)
    scheduler.stop()
    _run(scheduler, ["a"])
    assert rec.calls == ["a"]
