"""Drive one adapter through a single generation round-trip.

Step order (each gated by a cancellation check):

    validate -> clear -> fill images -> fill prompt -> (fill-only stop)
    -> send -> settle -> wait for completion -> capture

Any exception raised by a step ends the run as a Failure; cooperative
cancellation ends it as Cancelled. Only a lost tab connection
(CdpDisconnectedError) propagates, for the host to report as lost connectivity.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from .adapters.base import ExecutionCancelled, ToolAdapter
from .models import Cancelled, ExecutionOutcome, ExecutionRequest, Failure, RedirectRequired, Success
from .page_session import Page
from .session_cdp import CdpDisconnectedError

_LOGGER = logging.getLogger("genmix.engine.orchestrator")


def _capability(adapter: ToolAdapter, name: str) -> Callable | None:
    fn = getattr(adapter, name, None)
    return fn if callable(fn) else None


class Orchestrator:
    def __init__(self, *, settle_after_send: float = 2.0, sleep: Callable[[float], None] | None = None) -> None:
        self.settle_after_send = float(settle_after_send)
        self.sleep = sleep or time.sleep

    def run(
        self,
        adapter: ToolAdapter,
        page: Page,
        request: ExecutionRequest,
        cancel: threading.Event | None = None,
    ) -> ExecutionOutcome:
        cancel = cancel if cancel is not None else threading.Event()
        task = request.task
        try:
            return self._run(adapter, page, request, cancel)
        except ExecutionCancelled as exc:
            _LOGGER.info("cancelled adapter=%s task=%s", adapter.name, task.id)
            return Cancelled(reason=str(exc) or "Execution cancelled")
        except CdpDisconnectedError:
            raise
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("step_failed adapter=%s task=%s error=%s", adapter.name, task.id, exc)
            return Failure(reason=str(exc) or exc.__class__.__name__)

    def _checkpoint(self, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise ExecutionCancelled()

    def _run(
        self,
        adapter: ToolAdapter,
        page: Page,
        request: ExecutionRequest,
        cancel: threading.Event,
    ) -> ExecutionOutcome:
        task = request.task

        self._checkpoint(cancel)
        validate = _capability(adapter, "validate_state")
        if validate is not None:
            check = validate(page, task)
            if not check.valid:
                if check.redirect_url:
                    _LOGGER.info("redirect adapter=%s task=%s url=%s", adapter.name, task.id, check.redirect_url)
                    return RedirectRequired(target_url=check.redirect_url, reason=check.error or "")
                return Failure(reason=check.error or "Page is not ready for this task")

        self._checkpoint(cancel)
        clear = _capability(adapter, "clear_editor")
        if clear is not None:
            clear(page)

        self._checkpoint(cancel)
        if request.images:
            fill_images = _capability(adapter, "fill_images")
            if fill_images is not None:
                fill_images(page, list(request.images))
            else:
                _LOGGER.warning(
                    "reference_images_unsupported adapter=%s count=%d", adapter.name, len(request.images)
                )

        self._checkpoint(cancel)
        adapter.fill_prompt(page, request.prompt)

        if request.fill_only:
            _LOGGER.info("filled adapter=%s task=%s fill_only=true", adapter.name, task.id)
            return Success(payload=None)

        self._checkpoint(cancel)
        adapter.click_send(page)

        # Give the site time to register the submission before polling.
        self.sleep(self.settle_after_send)

        self._checkpoint(cancel)
        adapter.wait_for_completion(page, cancel)

        self._checkpoint(cancel)
        payload = adapter.get_latest_result(page, task.result_type)
        _LOGGER.info(
            "completed adapter=%s task=%s result=%s",
            adapter.name,
            task.id,
            payload.type if payload is not None else "none",
        )
        return Success(payload=payload)


__all__ = ["Orchestrator"]
