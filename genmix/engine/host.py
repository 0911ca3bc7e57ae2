"""Execution host: the page-side end of the channel, bound to one tab.

The adapter is chosen once, at attach time, from the tab's URL. Execute
messages are served one at a time on the host's own worker thread. Cancel is
answered immediately on the caller's thread so a cancel never waits behind the
execution it is meant to stop. Ping evaluates a trivial script in the tab; a
lost CDP connection detaches the host.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future, InvalidStateError
from contextlib import suppress
from typing import Any

from .adapters.base import ToolAdapter
from .adapters.registry import AdapterRegistry
from .channel import Cancel, ConnectivityError, Execute, Message, Ping
from .models import Failure, outcome_to_wire
from .orchestrator import Orchestrator
from .page_session import Page
from .session_cdp import CdpDisconnectedError

_LOGGER = logging.getLogger("genmix.engine.host")


def _resolved(value: Any) -> Future:
    fut: Future = Future()
    fut.set_result(value)
    return fut


def _close_page(page: Page | None) -> None:
    close = getattr(page, "close", None)
    if callable(close):
        with suppress(Exception):
            close()


class ExecutionHost:
    def __init__(
        self,
        connect: Callable[[], Page],
        registry: AdapterRegistry,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self._connect = connect
        self._registry = registry
        self._orchestrator = orchestrator or Orchestrator()
        self._lock = threading.Lock()
        self._page: Page | None = None
        self._adapter: ToolAdapter | None = None
        self._inbox: queue.Queue | None = None
        self._pending: set[Future] = set()
        self._cancel: threading.Event | None = None

    @property
    def attached(self) -> bool:
        with self._lock:
            return self._inbox is not None

    @property
    def adapter(self) -> ToolAdapter | None:
        with self._lock:
            return self._adapter

    @property
    def page(self) -> Page | None:
        with self._lock:
            return self._page

    def open_page(self) -> Page:
        return self._connect()

    def attach(self, page: Page | None = None) -> bool:
        """Bind to the tab. Returns False (and stays detached) when no adapter handles its URL."""
        if self.attached:
            return True
        page = page if page is not None else self._connect()
        try:
            url = page.get_url()
        except Exception:
            _close_page(page)
            raise
        adapter = self._registry.select(url=url)
        if adapter is None:
            _LOGGER.info("no_adapter url=%s", url)
            _close_page(page)
            return False

        inbox: queue.Queue = queue.Queue()
        with self._lock:
            self._page = page
            self._adapter = adapter
            self._inbox = inbox
        worker = threading.Thread(target=self._serve, args=(inbox,), name=f"genmix-host-{adapter.name}", daemon=True)
        worker.start()
        _LOGGER.info("attached adapter=%s url=%s", adapter.name, url)
        return True

    def detach(self, reason: str = "Execution context detached", *, close_page: bool = True) -> Page | None:
        """Drop the tab binding. In-flight and queued requests fail with ConnectivityError.

        With close_page=False the page session is handed back to the caller
        (used to navigate and reattach without reconnecting).
        """
        with self._lock:
            page = self._page
            inbox = self._inbox
            cancel = self._cancel
            pending = list(self._pending)
            self._page = None
            self._adapter = None
            self._inbox = None
            self._cancel = None
            self._pending.clear()

        if inbox is not None:
            inbox.put(None)
            _LOGGER.info("detached reason=%s pending=%d", reason, len(pending))
        if cancel is not None:
            cancel.set()
        for fut in pending:
            if not fut.done():
                with suppress(InvalidStateError):
                    fut.set_exception(ConnectivityError(reason))
        if close_page:
            _close_page(page)
            return None
        return page

    def post(self, message: Message) -> Future:
        if isinstance(message, Cancel):
            return _resolved({"success": self.cancel()})
        if isinstance(message, Ping):
            return self._ping()
        if not isinstance(message, Execute):
            raise TypeError(f"Unsupported message: {message!r}")

        fut: Future = Future()
        # A fresh token per execution, armed before the run starts so an early
        # Cancel is not lost.
        token = threading.Event()
        with self._lock:
            if self._inbox is None:
                raise ConnectivityError("No execution context is attached to the tab")
            self._pending.add(fut)
            self._cancel = token
            self._inbox.put((message, fut, token, self._page, self._adapter))
        return fut

    def cancel(self) -> bool:
        """Signal the in-flight execution, if any. Returns whether one was running."""
        with self._lock:
            token = self._cancel
        if token is None:
            return False
        token.set()
        _LOGGER.info("cancel_requested")
        return True

    def _ping(self) -> Future:
        """Round-trip a trivial script through the tab, off the caller's thread.

        The caller bounds the wait (`PageChannel.ping_timeout`).
        """
        with self._lock:
            page = self._page
            inbox = self._inbox
        if page is None:
            return _resolved({"success": False})
        fut: Future = Future()

        def round_trip() -> None:
            try:
                page.eval_js("1")
            except CdpDisconnectedError as exc:
                self._lost(inbox, str(exc))
                fut.set_result({"success": False})
            except Exception as exc:  # noqa: BLE001
                _LOGGER.debug("ping_failed error=%s", exc)
                fut.set_result({"success": False})
            else:
                fut.set_result({"success": True})

        threading.Thread(target=round_trip, name="genmix-host-ping", daemon=True).start()
        return fut

    def _lost(self, inbox: queue.Queue | None, reason: str) -> None:
        with self._lock:
            current = inbox is not None and self._inbox is inbox
        if current:
            _LOGGER.warning("page_lost reason=%s", reason)
            self.detach(reason)

    def _serve(self, inbox: queue.Queue) -> None:
        while True:
            item = inbox.get()
            if item is None:
                return
            message, fut, token, page, adapter = item
            if fut.done():
                continue
            with self._lock:
                if self._inbox is not inbox:
                    continue
            try:
                outcome = self._orchestrator.run(adapter, page, message.request, token)
            except CdpDisconnectedError as exc:
                # Detaching fails every pending request, this one included.
                self._lost(inbox, str(exc))
                return
            except Exception as exc:  # noqa: BLE001
                _LOGGER.exception("orchestrator_crashed adapter=%s", adapter.name)
                outcome = Failure(reason=str(exc))
            finally:
                with self._lock:
                    if self._cancel is token:
                        self._cancel = None
                    self._pending.discard(fut)
            if not fut.done():
                with suppress(InvalidStateError):
                    fut.set_result(outcome_to_wire(outcome))


class TabController:
    """Navigates the host's tab; the host is re-bound to the page that loads."""

    def __init__(self, host: ExecutionHost, *, load_timeout: float = 15.0) -> None:
        self._host = host
        self.load_timeout = float(load_timeout)

    def navigate(self, url: str) -> bool:
        page = self._host.detach("Page navigated", close_page=False)
        if page is None:
            page = self._host.open_page()
        try:
            page.navigate(url, wait_load=True, timeout=self.load_timeout)
        except Exception:
            _close_page(page)
            raise
        _LOGGER.info("navigated url=%s", url)
        return self._host.attach(page)


__all__ = ["ExecutionHost", "TabController"]
