"""Tab discovery over the CDP HTTP endpoint (`/json/list`)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

from .config import EngineConfig
from .http_client import HttpClientError, http_get_json
from .page_session import PageSession
from .session_cdp import CdpConnection

_LOGGER = logging.getLogger("genmix.engine.tabs")


def list_page_targets(config: EngineConfig) -> list[dict[str, Any]]:
    """Return the browser's `page` targets (tabs), in CDP order."""
    try:
        targets = http_get_json(f"{config.cdp_base_url}/json/list") or []
    except HttpClientError as exc:
        raise HttpClientError(
            f"Chrome DevTools endpoint unreachable at {config.cdp_base_url}: {exc}. "
            "Start Chrome with --remote-debugging-port."
        ) from exc
    if not isinstance(targets, list):
        return []
    return [t for t in targets if isinstance(t, dict) and t.get("type") == "page" and t.get("webSocketDebuggerUrl")]


def find_target(
    config: EngineConfig,
    *,
    tab_id: str | None = None,
    url_match: Callable[[str], bool] | None = None,
) -> dict[str, Any] | None:
    """Pick a tab by id, or the first tab whose URL satisfies `url_match`."""
    for target in list_page_targets(config):
        if tab_id:
            if target.get("id") == tab_id:
                return target
            continue
        if url_match is None:
            return target
        url = str(target.get("url") or "")
        try:
            if url_match(url):
                return target
        except Exception:
            continue
    return None


def connect_page(config: EngineConfig, target: dict[str, Any]) -> PageSession:
    ws_url = target.get("webSocketDebuggerUrl")
    if not isinstance(ws_url, str) or not ws_url:
        raise HttpClientError("Target has no webSocketDebuggerUrl (is another DevTools client attached?)")
    conn = CdpConnection(ws_url, timeout=config.cdp_timeout)
    _LOGGER.info("connected tab=%s host=%s", target.get("id"), urlparse(str(target.get("url") or "")).hostname)
    return PageSession(conn, tab_id=str(target.get("id") or ""), tab_url=str(target.get("url") or ""))


__all__ = ["connect_page", "find_target", "list_page_targets"]
