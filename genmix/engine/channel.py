"""Request/response channel from the scheduler side to the tab's execution host.

The host lives "on the page": it can vanish at any moment (tab closed,
navigation, CDP socket dropped). Losing it is reported as ConnectivityError,
which callers must keep apart from an adapter's own Failure outcome.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Protocol, Union

from .models import ExecutionOutcome, ExecutionRequest, outcome_from_wire

_LOGGER = logging.getLogger("genmix.engine.channel")


class ConnectivityError(Exception):
    """The execution context on the tab could not be reached."""


@dataclass(frozen=True)
class Execute:
    request: ExecutionRequest


@dataclass(frozen=True)
class Cancel:
    pass


@dataclass(frozen=True)
class Ping:
    pass


Message = Union[Execute, Cancel, Ping]


class Endpoint(Protocol):
    def post(self, message: Message) -> Future: ...


class PageChannel:
    """At most one Execute is outstanding at a time; the tab is a mutex."""

    def __init__(self, endpoint: Endpoint, *, timeout: float = 900.0, ping_timeout: float = 2.0) -> None:
        self._endpoint = endpoint
        self.timeout = float(timeout)
        self.ping_timeout = float(ping_timeout)
        self._lock = threading.Lock()

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        with self._lock:
            fut = self._endpoint.post(Execute(request))
            try:
                response: Any = fut.result(timeout=max(0.1, self.timeout))
            except ConnectivityError:
                raise
            except FutureTimeoutError as exc:
                # Stop the orphaned run before the tab is handed to the next request.
                self.cancel()
                raise ConnectivityError(f"No response from the page within {self.timeout:.0f}s") from exc
        outcome = outcome_from_wire(response)
        _LOGGER.debug("execute task=%s outcome=%s", request.task.id, type(outcome).__name__)
        return outcome

    def cancel(self) -> None:
        """Fire-and-forget; a missing host just means there is nothing to cancel."""
        try:
            self._endpoint.post(Cancel())
        except Exception:  # noqa: BLE001
            _LOGGER.debug("cancel_not_delivered", exc_info=True)

    def ping(self) -> bool:
        try:
            response = self._endpoint.post(Ping()).result(timeout=self.ping_timeout)
        except Exception:  # noqa: BLE001
            return False
        return isinstance(response, dict) and bool(response.get("success"))


__all__ = ["Cancel", "ConnectivityError", "Endpoint", "Execute", "Message", "PageChannel", "Ping"]
