from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

from ..models import ImageContent, ResultContent, TextContent, VideoContent
from ..page_session import Page

_LOGGER = logging.getLogger("genmix.engine.adapters")


class AdapterStepError(RuntimeError):
    """One automation step failed on the tool's page."""

    def __init__(
        self,
        *,
        adapter: str,
        step: str,
        reason: str,
        suggestion: str = "",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(reason)
        self.adapter = adapter
        self.step = step
        self.reason = reason
        self.suggestion = suggestion
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "adapter": self.adapter,
            "step": self.step,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "details": self.details,
        }


class ExecutionCancelled(RuntimeError):
    def __init__(self, reason: str = "Execution cancelled"):
        super().__init__(reason)


class CompletionTimeout(RuntimeError):
    """The completion wait hit its deadline and the policy says that is a failure."""


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    redirect_url: str | None = None
    error: str | None = None


def choose_content(
    *,
    images: list[str],
    videos: list[str],
    text: str = "",
    html: str = "",
    expected_type: str | None = None,
    image_description: str = "",
) -> ResultContent | None:
    """Normalize raw page artifacts, preferring the caller's expected type.

    Falls back to whatever the page actually produced: video, then images,
    then text. Returns None when nothing was produced.
    """
    if expected_type in ("video", "mixed") and videos:
        return VideoContent(urls=tuple(videos))
    if expected_type in ("image", "mixed") and images:
        return ImageContent(urls=tuple(images), description=image_description or text)
    if videos:
        return VideoContent(urls=tuple(videos))
    if images:
        return ImageContent(urls=tuple(images), description=image_description or text)
    if text:
        return TextContent(raw_text=text, html_content=html)
    return None


def urls_from(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    out: list[str] = []
    for u in raw:
        if isinstance(u, str) and u and not u.startswith("data:image/svg") and u not in out:
            out.append(u)
    return out


def host_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except Exception:
        return ""


class ToolAdapter(ABC):
    """Base class for tool adapters.

    Mandatory: detect, fill_prompt, click_send, wait_for_completion,
    get_latest_result. Optional capabilities (validate_state, clear_editor,
    fill_images, scan_all_results) are discovered with getattr by callers;
    subclasses only define the ones their site supports.
    """

    name: str
    hosts: tuple[str, ...] = ()

    poll_interval_s: float = 1.0
    completion_timeout_s: float = 120.0
    # Grace period after the busy indicators clear, for final rendering.
    completion_settle_s: float = 0.5

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] | None = None,
        timeout_policy: str = "complete",
        completion_timeout_s: float | None = None,
        poll_interval_s: float | None = None,
    ) -> None:
        self.sleep = sleep or time.sleep
        self.timeout_policy = timeout_policy
        if completion_timeout_s is not None:
            self.completion_timeout_s = float(completion_timeout_s)
        if poll_interval_s is not None:
            self.poll_interval_s = float(poll_interval_s)

    def detect(self, url: str) -> bool:
        host = host_of(url)
        return any(host == h or host.endswith("." + h) for h in self.hosts)

    def error(self, step: str, reason: str, suggestion: str = "", **details: Any) -> AdapterStepError:
        return AdapterStepError(adapter=self.name, step=step, reason=reason, suggestion=suggestion, details=details)

    @abstractmethod
    def fill_prompt(self, page: Page, text: str) -> None:
        """Write the prompt and fire the input/change events the page listens to."""

    @abstractmethod
    def click_send(self, page: Page) -> None:
        """Submit the prompt."""

    @abstractmethod
    def completion_probe(self, page: Page) -> bool:
        """Return True once the page shows no generation in progress."""

    @abstractmethod
    def get_latest_result(self, page: Page, expected_type: str | None = None) -> ResultContent | None:
        """Read the newest artifact without touching the page."""

    def wait_for_completion(self, page: Page, cancel: threading.Event | None = None) -> None:
        """Poll `completion_probe` until it reports done, the deadline passes, or cancel is set."""
        deadline = time.monotonic() + self.completion_timeout_s
        while True:
            if cancel is not None and cancel.is_set():
                raise ExecutionCancelled()
            if self.completion_probe(page):
                _LOGGER.info("completion adapter=%s", self.name)
                if self.completion_settle_s > 0:
                    self.sleep(self.completion_settle_s)
                return
            if time.monotonic() >= deadline:
                if self.timeout_policy == "fail":
                    raise CompletionTimeout(
                        f"{self.name}: generation did not finish within {self.completion_timeout_s:.0f}s"
                    )
                _LOGGER.warning(
                    "completion_timeout adapter=%s timeout_s=%.0f treating_as=complete",
                    self.name,
                    self.completion_timeout_s,
                )
                return
            if cancel is not None:
                if cancel.wait(self.poll_interval_s):
                    raise ExecutionCancelled()
            else:
                self.sleep(self.poll_interval_s)


__all__ = [
    "AdapterStepError",
    "CompletionTimeout",
    "ExecutionCancelled",
    "ToolAdapter",
    "ValidationResult",
    "choose_content",
    "urls_from",
    "host_of",
]
