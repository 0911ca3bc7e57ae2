"""Apply execution outcomes to the task store and cache result media.

Media caching is best-effort and runs off the calling thread: a task is marked
completed as soon as its result is stored, and cache handles are attached to
the result later, if any download succeeds.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures

from .models import (
    CapturedItem,
    ExecutionOutcome,
    RedirectRequired,
    Success,
    TaskResult,
    TextContent,
    media_urls,
    now_ms,
)
from .stores import MediaStore, TaskStore

_LOGGER = logging.getLogger("genmix.engine.capture")


class ResultCapture:
    def __init__(self, tasks: TaskStore, media: MediaStore | None = None, *, max_workers: int = 2) -> None:
        self._tasks = tasks
        self._media = media
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="genmix-media")
        self._lock = threading.Lock()
        self._jobs: set[Future] = set()

    def record(self, task_id: str, outcome: ExecutionOutcome, *, fill_only: bool = False) -> TaskResult | None:
        """Update the task for one outcome. Returns the appended result, if any."""
        if isinstance(outcome, Success):
            if fill_only:
                self._tasks.update_task(task_id, status="pending")
                return None
            # A run that finished without anything to capture still leaves a record.
            content = outcome.payload if outcome.payload is not None else TextContent(raw_text="")
            result = TaskResult.create(content)
            self._tasks.append_result(task_id, result)
            self._tasks.update_task(task_id, status="completed", last_executed_at=now_ms())
            _LOGGER.info("recorded task=%s outcome=success result=%s", task_id, content.type)
            self._schedule_cache(task_id, result)
            return result

        if isinstance(outcome, RedirectRequired):
            self._tasks.update_task(task_id, status="pending")
        else:
            self._tasks.update_task(task_id, status="failed")
        _LOGGER.info("recorded task=%s outcome=%s", task_id, type(outcome).__name__.lower())
        return None

    def import_captured(self, task_id: str, items: list[CapturedItem]) -> list[TaskResult]:
        """Attach artifacts found by a page sweep to a task."""
        results: list[TaskResult] = []
        for item in items:
            result = item.to_result()
            if self._tasks.append_result(task_id, result) is None:
                break
            results.append(result)
            self._schedule_cache(task_id, result)
        if results:
            self._tasks.update_task(task_id, status="completed", last_executed_at=now_ms())
        _LOGGER.info("imported task=%s items=%d", task_id, len(results))
        return results

    def _schedule_cache(self, task_id: str, result: TaskResult) -> None:
        if self._media is None:
            return
        if not any(not url.startswith("data:") for url, _ in media_urls(result.content)):
            return
        fut = self._executor.submit(self.cache_media, task_id, result)
        with self._lock:
            self._jobs.add(fut)
        fut.add_done_callback(self._job_done)

    def _job_done(self, fut: Future) -> None:
        with self._lock:
            self._jobs.discard(fut)
        exc = fut.exception()
        if exc is not None:
            _LOGGER.warning("media_cache_job_failed error=%s", exc)

    def cache_media(self, task_id: str, result: TaskResult) -> TaskResult | None:
        """Download every remote media URL of `result`; update the stored result with the handles."""
        if self._media is None:
            return None
        handles: list[str] = []
        for url, kind in media_urls(result.content):
            if url.startswith("data:"):
                continue
            try:
                handles.append(self._media.cache_remote_media(url, kind))
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("media_cache_failed task=%s kind=%s url=%s error=%s", task_id, kind, url[:120], exc)
        if not handles:
            return None
        updated = result.with_cached_media(handles)
        if not self._tasks.replace_result(task_id, updated):
            _LOGGER.warning("media_cache_orphaned task=%s result=%s", task_id, result.id)
            return None
        _LOGGER.info("media_cached task=%s result=%s count=%d", task_id, result.id, len(handles))
        return updated

    def flush(self, timeout: float | None = None) -> bool:
        """Wait for outstanding media jobs. Returns True when none are left."""
        with self._lock:
            jobs = list(self._jobs)
        if not jobs:
            return True
        _done, not_done = wait_futures(jobs, timeout=timeout)
        return not not_done

    def close(self) -> None:
        self._executor.shutdown(wait=True)


__all__ = ["ResultCapture"]
