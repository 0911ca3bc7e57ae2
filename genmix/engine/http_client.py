from __future__ import annotations

import json
import ssl
import urllib.parse
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, HTTPSHandler, Request, build_opener, urlopen

from .config import EngineConfig


class HttpClientError(Exception):
    pass


class _SafeRedirectHandler(HTTPRedirectHandler):
    def __init__(self, config: EngineConfig) -> None:
        super().__init__()
        self._config = config

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        # urllib may pass relative URLs here; normalize against the previous URL.
        absolute = urllib.parse.urljoin(req.full_url, str(newurl))
        parsed = urllib.parse.urlparse(absolute)
        if parsed.scheme not in ("http", "https"):
            raise HttpClientError("Only http/https are supported (redirect)")
        if not self._config.is_host_allowed(parsed.hostname or ""):
            raise HttpClientError(f"Host {parsed.hostname} is not in allowlist (redirect)")
        return super().redirect_request(req, fp, code, msg, headers, absolute)


def http_get_bytes(url: str, config: EngineConfig) -> dict[str, Any]:
    """Fetch a remote media URL in full.

    Unlike text fetches, a body larger than `media_max_bytes` is an error: a
    truncated image or video is worse than no cached copy at all.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise HttpClientError("Only http/https are supported")
    if not config.is_host_allowed(parsed.hostname or ""):
        raise HttpClientError(f"Host {parsed.hostname} is not in allowlist")
    req = Request(url, headers={"User-Agent": "genmix-engine/1.0"})
    try:
        ctx = ssl.create_default_context()
        opener = build_opener(_SafeRedirectHandler(config), HTTPSHandler(context=ctx))
        with opener.open(req, timeout=config.http_timeout) as resp:
            body = resp.read(config.media_max_bytes + 1)
            if len(body) > config.media_max_bytes:
                raise HttpClientError(f"Response exceeds {config.media_max_bytes} bytes")
            return {
                "status": resp.status,
                "headers": dict(resp.headers),
                "content_type": str(resp.headers.get("Content-Type") or ""),
                "body": body,
            }
    except HTTPError as exc:
        raise HttpClientError(f"HTTP {exc.code}") from exc
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from a local endpoint (CDP discovery)."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (TimeoutError, URLError) as exc:
        raise HttpClientError(str(exc)) from exc
    except json.JSONDecodeError as exc:
        raise HttpClientError(f"Invalid JSON from {url}") from exc
