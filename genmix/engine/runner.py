from __future__ import annotations

import logging
from collections.abc import Callable

from .capture import ResultCapture
from .channel import ConnectivityError, PageChannel
from .models import ExecutionRequest, Failure, RedirectRequired, RunReport, Success
from .stores import ImageStore, TaskStore

_LOGGER = logging.getLogger("genmix.engine.runner")

RELOAD_HINT = "Reload the page to reconnect the automation"


class TaskRunner:
    """Execute one task end to end: mark, send, follow redirects, record."""

    def __init__(
        self,
        tasks: TaskStore,
        images: ImageStore,
        channel: PageChannel,
        capture: ResultCapture,
        navigate: Callable[[str], object] | None = None,
    ) -> None:
        self._tasks = tasks
        self._images = images
        self._channel = channel
        self._capture = capture
        self._navigate = navigate
        # Human-readable message for the last unsuccessful run; None after a success.
        self.last_error: str | None = None

    def execute(self, task_id: str, fill_only: bool = False) -> RunReport:
        task = self._tasks.get_task(task_id)
        if task is None:
            self.last_error = f"Task not found: {task_id}"
            _LOGGER.warning("task_missing task=%s", task_id)
            return RunReport(success=False)

        self._tasks.update_task(task_id, status="in_progress")
        try:
            images = self._images.resolve_reference_images(task.reference_image_ids)
            request = ExecutionRequest(task=task, images=tuple(images), fill_only=fill_only)
            _LOGGER.info("execute task=%s tool=%s images=%d fill_only=%s", task_id, task.tool, len(images), fill_only)
            outcome = self._channel.execute(request)
        except ConnectivityError as exc:
            _LOGGER.warning("connectivity task=%s error=%s", task_id, exc)
            self._capture.record(task_id, Failure(reason=str(exc)))
            self.last_error = RELOAD_HINT
            return RunReport(success=False)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("execute_failed task=%s", task_id)
            reason = str(exc) or exc.__class__.__name__
            self._capture.record(task_id, Failure(reason=reason))
            self.last_error = f"Failed: {reason}"
            return RunReport(success=False)

        if isinstance(outcome, RedirectRequired):
            return self._redirect(task_id, outcome)

        self._capture.record(task_id, outcome, fill_only=fill_only)
        if isinstance(outcome, Success):
            self.last_error = None
            return RunReport(success=True)
        self.last_error = f"Failed: {outcome.reason}"
        return RunReport(success=False)

    def _redirect(self, task_id: str, outcome: RedirectRequired) -> RunReport:
        self.last_error = outcome.reason or f"Redirecting to {outcome.target_url}"
        if self._navigate is None:
            _LOGGER.warning("redirect_unhandled task=%s url=%s", task_id, outcome.target_url)
            self._capture.record(task_id, Failure(reason=self.last_error))
            return RunReport(success=False)
        try:
            self._navigate(outcome.target_url)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("redirect_failed task=%s url=%s error=%s", task_id, outcome.target_url, exc)
            self._capture.record(task_id, Failure(reason=str(exc)))
            self.last_error = f"Failed: {exc}"
            return RunReport(success=False)
        self._capture.record(task_id, outcome)
        _LOGGER.info("redirected task=%s url=%s", task_id, outcome.target_url)
        return RunReport(success=False, retry_after_redirect=True)


__all__ = ["RELOAD_HINT", "TaskRunner"]
