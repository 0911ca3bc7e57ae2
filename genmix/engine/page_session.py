"""High-level wrapper over one tab's CDP connection."""

from __future__ import annotations

import json
from contextlib import suppress
from typing import Any, Protocol

from .http_client import HttpClientError
from .session_cdp import CdpConnection


class Page(Protocol):
    """What adapters need from a page: evaluation, URL and navigation."""

    def eval_js(self, expression: str, *, timeout: float | None = None) -> Any: ...

    def call_js(self, function_source: str, *args: Any, timeout: float | None = None) -> Any: ...

    def get_url(self) -> str: ...

    def navigate(self, url: str, wait_load: bool = True, timeout: float = 15.0) -> str: ...


class PageSession:
    """
    High-level page session for a specific tab.

    Wraps CdpConnection with the handful of operations the engine needs.
    """

    def __init__(self, connection: CdpConnection, tab_id: str, tab_url: str = ""):
        self.conn = connection
        self.tab_id = tab_id
        self.tab_url = tab_url
        self._page_enabled = False
        self._runtime_enabled = False

    def __enter__(self) -> PageSession:
        return self

    def __exit__(self, *args):
        self.close()

    def close(self) -> None:
        self.conn.close()

    def enable_page(self) -> None:
        """Enable Page domain for navigation events."""
        if not self._page_enabled:
            self.conn.send("Page.enable", {})
            self._page_enabled = True

    def enable_runtime(self) -> None:
        """Enable Runtime domain for JS evaluation."""
        if not self._runtime_enabled:
            self.conn.send("Runtime.enable", {})
            self._runtime_enabled = True

    def navigate(self, url: str, wait_load: bool = True, timeout: float = 15.0) -> str:
        """Navigate to URL, optionally waiting for load."""
        with suppress(Exception):
            self.enable_page()
        result = self.conn.send("Page.navigate", {"url": url})
        if isinstance(result, dict) and result.get("errorText"):
            raise HttpClientError(f"Navigation failed: {result.get('errorText')}")
        if wait_load:
            self.wait_load(timeout)
        # A navigation destroys the old execution context.
        self._runtime_enabled = False
        self.tab_url = url
        return url

    def wait_load(self, timeout: float = 15.0) -> bool:
        """Wait for page load event."""
        return self.conn.wait_for_event("Page.loadEventFired", timeout) is not None

    def eval_js(self, expression: str, *, timeout: float | None = None) -> Any:
        """Evaluate JavaScript and return the JSON-able result.

        Exceptions thrown inside the page surface as HttpClientError carrying the
        page's own message, so adapter steps can report it verbatim.
        """
        self.enable_runtime()

        old_timeout: float | None = None
        if timeout is not None:
            try:
                old_timeout = float(self.conn.timeout)
                self.conn.timeout = float(timeout)
            except Exception:
                old_timeout = None

        try:
            result = self.conn.send(
                "Runtime.evaluate",
                {
                    "expression": expression,
                    "returnByValue": True,
                    "awaitPromise": True,
                },
            )
        finally:
            if old_timeout is not None:
                with suppress(Exception):
                    self.conn.timeout = old_timeout

        details = result.get("exceptionDetails") if isinstance(result, dict) else None
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            message = exc.get("description") or details.get("text") or "JavaScript exception"
            # "Error: foo\n    at <anonymous>:1:7" -> "foo"
            first = str(message).splitlines()[0]
            if first.startswith("Error: "):
                first = first[len("Error: ") :]
            raise HttpClientError(first)

        if not isinstance(result, dict) or "result" not in result:
            return None
        value = result["result"]
        # Normalize undefined and null to Python None.
        if isinstance(value, dict) and value.get("type") == "undefined":
            return None
        if isinstance(value, dict) and value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value", value) if isinstance(value, dict) else value

    def call_js(self, function_source: str, *args: Any, timeout: float | None = None) -> Any:
        """Invoke `function_source` with JSON-serialised arguments inside the page."""
        payload = ", ".join(json.dumps(arg, ensure_ascii=False) for arg in args)
        return self.eval_js(f"({function_source})({payload})", timeout=timeout)

    def get_url(self) -> str:
        """Get current page URL."""
        return self.eval_js("window.location.href") or ""


__all__ = ["Page", "PageSession"]
