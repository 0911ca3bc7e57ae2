"""Raw CDP WebSocket connection to a single tab target."""

from __future__ import annotations

import json
import socket
import threading
import time
from collections import deque
from contextlib import suppress
from typing import Any

import websocket

from .http_client import HttpClientError

# The tab went away (closed, crashed, or another client took over).
_DETACH_EVENTS = frozenset({"Inspector.detached", "Inspector.targetCrashed"})


class CdpDisconnectedError(HttpClientError):
    """The tab's socket is gone; nothing sent on this connection can succeed."""


class CdpConnection:
    """Blocking CDP client: one command in flight, events buffered for later waits."""

    def __init__(self, ws_url: str, timeout: float = 10.0):
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout, suppress_origin=True)
        except Exception as exc:  # noqa: BLE001
            raise HttpClientError(f"CDP connect failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        # Commands can be issued from the host worker while a cancel arrives on
        # another thread; serialize socket access.
        self._lock = threading.RLock()
        self._events: deque[dict[str, Any]] = deque(maxlen=500)

    def _read_frame(self, remaining: float) -> dict[str, Any] | None:
        """Read one frame; None on a poll timeout or an undecodable frame."""
        # recv() blocks forever without a socket timeout; keep each read short
        # so the caller's deadline holds.
        try:
            self.ws.settimeout(max(0.05, min(0.5, remaining)))
            raw = self.ws.recv()
        except websocket.WebSocketTimeoutException:
            return None
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                return None
            raise CdpDisconnectedError(f"CDP connection lost: {exc}") from exc
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        if data.get("method") in _DETACH_EVENTS:
            reason = (data.get("params") or {}).get("reason") or data.get("method")
            raise CdpDisconnectedError(f"Tab detached: {reason}")
        return data

    @staticmethod
    def _is_event(data: dict[str, Any]) -> bool:
        return "id" not in data and isinstance(data.get("method"), str)

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        """Take the oldest buffered event of this name, returning its params."""
        with self._lock:
            for ev in list(self._events):
                if ev.get("method") == event_name:
                    self._events.remove(ev)
                    params = ev.get("params")
                    return params if isinstance(params, dict) else {}
        return None

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a command and block for its result."""
        with self._lock:
            msg_id = self._next_id
            self._next_id += 1
            msg: dict[str, Any] = {"id": msg_id, "method": method}
            if params:
                msg["params"] = params
            try:
                self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
                self.ws.send(json.dumps(msg))
            except Exception as exc:  # noqa: BLE001
                raise CdpDisconnectedError(f"CDP send failed ({method}): {exc}") from exc

            deadline = time.monotonic() + float(self.timeout)
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise HttpClientError(f"CDP response timed out ({method})")
                data = self._read_frame(remaining)
                if data is None:
                    continue
                if self._is_event(data):
                    self._events.append(data)
                    continue
                if data.get("id") != msg_id:
                    continue
                error = data.get("error")
                if error is not None:
                    message = error.get("message") if isinstance(error, dict) else None
                    raise HttpClientError(f"CDP {method} failed: {message or error}")
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict | None:
        """Block until `event_name` arrives (or was already buffered). None on timeout."""
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued
        with self._lock:
            deadline = time.monotonic() + timeout
            while (remaining := deadline - time.monotonic()) > 0:
                data = self._read_frame(remaining)
                if data is None or not self._is_event(data):
                    continue
                if data.get("method") == event_name:
                    params = data.get("params")
                    return params if isinstance(params, dict) else {}
                self._events.append(data)
        return None

    def abort(self) -> None:
        """Hard-close the underlying socket; unblocks a reader on another thread."""
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()

    def close(self) -> None:
        # websocket-client close() performs a handshake that can hang on a
        # wedged tab; a raw socket shutdown is enough here.
        self.abort()


__all__ = ["CdpConnection", "CdpDisconnectedError"]
