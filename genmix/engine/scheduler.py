"""Queue scheduler: run tasks one at a time with retry, redirect and stop policy.

Per iteration:

1. Take the head task (it stays queued until its outcome is known).
2. Execute it.
3. Stopped while it ran: end the run.
4. Redirected: wait for the new page, then run the same task again.
5. Dequeue it; a failure with retry-on-fail goes back to the front.
6. Without auto-next: end the run.
7. Otherwise wait a randomized delay (only if tasks remain) and continue.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable

from .models import QueueSnapshot, RunReport

_LOGGER = logging.getLogger("genmix.engine.scheduler")


class TaskScheduler:
    def __init__(
        self,
        execute_task: Callable[[str], RunReport],
        *,
        on_stop: Callable[[], None] | None = None,
        auto_next: bool = True,
        retry_on_fail: bool = False,
        delay_min_s: float = 1.0,
        delay_max_s: float = 4.0,
        redirect_settle_s: float = 3.0,
        max_redirects: int = 0,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._execute_task = execute_task
        self._on_stop = on_stop
        self.auto_next = bool(auto_next)
        self.retry_on_fail = bool(retry_on_fail)
        self.delay_min_s = float(delay_min_s)
        self.delay_max_s = max(float(delay_min_s), float(delay_max_s))
        self.redirect_settle_s = float(redirect_settle_s)
        self.max_redirects = max(0, int(max_redirects))
        self._rng = rng or random.Random()

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self._queue: list[str] = []
        self._executing_id: str | None = None
        self._running = False
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def snapshot(self) -> QueueSnapshot:
        with self._lock:
            return QueueSnapshot(
                executing_id=self._executing_id,
                queued_ids=tuple(self._queue),
                is_running=self._running,
                auto_next=self.auto_next,
                retry_on_fail=self.retry_on_fail,
            )

    def run_all(self, task_ids: list[str]) -> bool:
        """Start a run over `task_ids` in order. Ignored while a run is active or when empty."""
        return self._start(list(task_ids))

    def run_single(self, task_id: str) -> bool:
        return self._start([task_id] if task_id else [])

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            self._queue.clear()
            running = self._running
        _LOGGER.info("stop_requested running=%s", running)
        if self._on_stop is not None:
            try:
                self._on_stop()
            except Exception:  # noqa: BLE001
                _LOGGER.warning("on_stop_failed", exc_info=True)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current run ends. Returns False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _start(self, task_ids: list[str]) -> bool:
        with self._lock:
            if self._running:
                _LOGGER.info("run_ignored reason=already_running")
                return False
            if not task_ids:
                return False
            self._queue = task_ids
            self._running = True
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, name="genmix-scheduler", daemon=True)
            self._thread.start()
        _LOGGER.info("run_started tasks=%d", len(task_ids))
        return True

    def _random_delay(self) -> None:
        delay = self._rng.uniform(self.delay_min_s, self.delay_max_s)
        _LOGGER.debug("delay seconds=%.2f", delay)
        self._sleep(delay)

    def _next_id(self) -> str | None:
        with self._lock:
            if self._stop.is_set() or not self._queue:
                return None
            self._executing_id = self._queue[0]
            return self._executing_id

    def _loop(self) -> None:
        redirects: dict[str, int] = {}
        try:
            while True:
                task_id = self._next_id()
                if task_id is None:
                    break

                try:
                    report = self._execute_task(task_id)
                except Exception:  # noqa: BLE001
                    _LOGGER.exception("execute_crashed task=%s", task_id)
                    report = RunReport(success=False)

                if self._stop.is_set():
                    break

                if report.retry_after_redirect:
                    count = redirects.get(task_id, 0) + 1
                    redirects[task_id] = count
                    if not self.max_redirects or count <= self.max_redirects:
                        _LOGGER.info("redirect_retry task=%s attempt=%d", task_id, count)
                        self._sleep(self.redirect_settle_s)
                        continue
                    _LOGGER.warning("redirect_limit task=%s limit=%d", task_id, self.max_redirects)
                    report = RunReport(success=False)
                redirects.pop(task_id, None)

                with self._lock:
                    if self._queue and self._queue[0] == task_id:
                        self._queue.pop(0)
                    retry = not report.success and self.retry_on_fail
                    if retry:
                        self._queue.insert(0, task_id)
                    remaining = len(self._queue)

                _LOGGER.info("task_done task=%s success=%s retry=%s remaining=%d", task_id, report.success, retry, remaining)
                if retry:
                    self._random_delay()
                    continue
                if not self.auto_next:
                    break
                if remaining:
                    self._random_delay()
        finally:
            with self._lock:
                self._running = False
                self._executing_id = None
                self._queue = []
            _LOGGER.info("run_finished stopped=%s", self._stop.is_set())


__all__ = ["TaskScheduler"]
