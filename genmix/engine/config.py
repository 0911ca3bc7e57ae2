from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _repo_root() -> Path:
    # genmix/engine/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_float(name: str, default: float, *, lo: float, hi: float) -> float:
    raw = os.environ.get(name)
    try:
        value = float(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(lo, min(value, hi))


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.environ.get(name)
    try:
        value = int(raw) if raw not in (None, "") else default
    except Exception:
        value = default
    return max(lo, min(value, hi))


@dataclass
class EngineConfig:
    data_dir: str
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    cdp_timeout: float = 10.0
    allow_hosts: list[str] = field(default_factory=list)
    http_timeout: float = 30.0
    media_max_bytes: int = 200 * 1024 * 1024
    execute_timeout: float = 900.0
    send_settle_s: float = 2.0
    redirect_settle_s: float = 3.0
    delay_min_s: float = 1.0
    delay_max_s: float = 4.0
    completion_timeout_policy: str = "complete"
    max_redirects: int = 0

    @staticmethod
    def normalize_timeout_policy(raw: str | None) -> str:
        policy = (raw or "").strip().lower()
        if policy in {"fail", "failure", "error", "strict"}:
            return "fail"
        return "complete"

    @classmethod
    def from_env(cls) -> EngineConfig:
        data_dir = expand_path(os.environ.get("GENMIX_DATA_DIR") or str(_repo_root() / "data"))
        allow_raw = os.environ.get("GENMIX_ALLOW_HOSTS", "")
        allow_hosts = [host.strip().lower() for host in allow_raw.split(",") if host.strip() and host.strip() != "*"]
        delay_min = _env_float("GENMIX_DELAY_MIN", 1.0, lo=0.0, hi=600.0)
        delay_max = _env_float("GENMIX_DELAY_MAX", 4.0, lo=0.0, hi=600.0)
        return cls(
            data_dir=data_dir,
            cdp_host=(os.environ.get("GENMIX_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_env_int("GENMIX_CDP_PORT", 9222, lo=1, hi=65535),
            cdp_timeout=_env_float("GENMIX_CDP_TIMEOUT", 10.0, lo=1.0, hi=120.0),
            allow_hosts=allow_hosts,
            http_timeout=_env_float("GENMIX_HTTP_TIMEOUT", 30.0, lo=1.0, hi=600.0),
            media_max_bytes=_env_int("GENMIX_MEDIA_MAX_BYTES", 200 * 1024 * 1024, lo=1024, hi=2**34),
            execute_timeout=_env_float("GENMIX_EXECUTE_TIMEOUT", 900.0, lo=5.0, hi=7200.0),
            send_settle_s=_env_float("GENMIX_SEND_SETTLE", 2.0, lo=0.0, hi=60.0),
            redirect_settle_s=_env_float("GENMIX_REDIRECT_SETTLE", 3.0, lo=0.0, hi=120.0),
            delay_min_s=min(delay_min, delay_max),
            delay_max_s=max(delay_min, delay_max),
            completion_timeout_policy=cls.normalize_timeout_policy(os.environ.get("GENMIX_COMPLETION_TIMEOUT_POLICY")),
            max_redirects=_env_int("GENMIX_MAX_REDIRECTS", 0, lo=0, hi=1000),
        )

    @property
    def cdp_base_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not self.allow_hosts:
            return True
        for raw_allowed in self.allow_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed:
                return True
            if host.endswith("." + allowed):
                return True
        return False
