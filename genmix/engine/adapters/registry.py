from __future__ import annotations

import logging
from collections.abc import Callable

from .base import ToolAdapter

_LOGGER = logging.getLogger("genmix.engine.adapters.registry")


class AdapterRegistry:
    """Registry of tool adapters, in registration order."""

    def __init__(self) -> None:
        self._adapters: dict[str, ToolAdapter] = {}

    def register(self, adapter: ToolAdapter) -> None:
        self._adapters[str(adapter.name)] = adapter

    def available(self) -> list[str]:
        return list(self._adapters.keys())

    def get(self, name: str) -> ToolAdapter | None:
        return self._adapters.get(str(name or "").strip().lower())

    def select(self, *, url: str) -> ToolAdapter | None:
        """First adapter whose detect() accepts the URL; None means no adapter for this page."""
        u = str(url or "").strip()
        if not u:
            return None
        for adapter in self._adapters.values():
            try:
                if adapter.detect(u):
                    return adapter
            except Exception:
                _LOGGER.debug("detect_failed adapter=%s", adapter.name, exc_info=True)
                continue
        return None


def create_default_registry(
    *,
    timeout_policy: str = "complete",
    sleep: Callable[[float], None] | None = None,
) -> AdapterRegistry:
    from .chatgpt import ChatGPTAdapter
    from .gemini import GeminiAdapter
    from .jimeng import JimengAdapter

    registry = AdapterRegistry()
    for cls in (ChatGPTAdapter, GeminiAdapter, JimengAdapter):
        registry.register(cls(timeout_policy=timeout_policy, sleep=sleep))
    return registry
