"""Task, result and execution data types.

Persisted shapes use the camelCase keys of the extension's storage format so
exported task lists stay interchangeable.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field, replace
from typing import Any, Union

TASK_STATUSES = ("pending", "in_progress", "completed", "failed")
TOOLS = ("chatgpt", "gemini", "sora", "jimeng", "other")
RESULT_TYPES = ("text", "image", "video", "mixed")
MAX_REFERENCE_IMAGES = 12


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid.uuid4())


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, str) and v]


def _int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


# ─────────────────────────────────────────────────────────────────────────────
# Result content
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextContent:
    raw_text: str
    html_content: str = ""

    type = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "rawText": self.raw_text, "htmlContent": self.html_content}


@dataclass(frozen=True)
class ImageContent:
    urls: tuple[str, ...]
    description: str = ""

    type = "image"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "image",
            "imageUrl": self.urls[0] if self.urls else "",
            "allImageUrls": list(self.urls),
            "imageDescription": self.description,
        }


@dataclass(frozen=True)
class VideoContent:
    urls: tuple[str, ...]

    type = "video"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "video",
            "videoUrl": self.urls[0] if self.urls else "",
            "allVideoUrls": list(self.urls),
        }


ResultContent = Union[TextContent, ImageContent, VideoContent]


def parse_content(raw: Any) -> ResultContent:
    """Parse stored or wire result content into a ResultContent.

    Accepts the dict shapes, their JSON-string encoding (legacy storage) and the
    older `{"type": "text", "content": ...}` form. Anything unparsable is kept
    verbatim as text.
    """
    if raw is None:
        return TextContent(raw_text="")
    if isinstance(raw, (TextContent, ImageContent, VideoContent)):
        return raw
    data: Any = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError):
            return TextContent(raw_text=raw)
        if not isinstance(data, dict):
            return TextContent(raw_text=raw)
    if not isinstance(data, dict):
        return TextContent(raw_text=str(raw))

    kind = data.get("type")
    if kind == "image":
        urls = _str_list(data.get("allImageUrls"))
        if not urls and isinstance(data.get("imageUrl"), str) and data.get("imageUrl"):
            urls = [data["imageUrl"]]
        return ImageContent(urls=tuple(urls), description=str(data.get("imageDescription") or ""))
    if kind == "video":
        urls = _str_list(data.get("allVideoUrls"))
        if not urls and isinstance(data.get("videoUrl"), str) and data.get("videoUrl"):
            urls = [data["videoUrl"]]
        return VideoContent(urls=tuple(urls))
    if kind == "text":
        text = data.get("rawText")
        if not isinstance(text, str):
            text = data.get("content") if isinstance(data.get("content"), str) else ""
        return TextContent(raw_text=text, html_content=str(data.get("htmlContent") or ""))
    return TextContent(raw_text=raw if isinstance(raw, str) else json.dumps(data, ensure_ascii=False))


def media_urls(content: ResultContent) -> Iterator[tuple[str, str]]:
    """Yield (url, kind) for every remote media item referenced by content."""
    if isinstance(content, ImageContent):
        for url in content.urls:
            yield url, "image"
    elif isinstance(content, VideoContent):
        # Only the primary video is cached; alternates are usually renditions.
        if content.urls:
            yield content.urls[0], "video"


# ─────────────────────────────────────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TaskResult:
    id: str
    content: ResultContent
    created_at: int
    cached_media_ids: tuple[str, ...] = ()

    @classmethod
    def create(cls, content: ResultContent) -> TaskResult:
        return cls(id=new_id(), content=content, created_at=now_ms())

    def with_cached_media(self, media_ids: list[str]) -> TaskResult:
        return replace(self, cached_media_ids=tuple(media_ids))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "content": self.content.to_dict(),
            "createdAt": self.created_at,
        }
        if self.cached_media_ids:
            out["cachedMediaIds"] = list(self.cached_media_ids)
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskResult:
        return cls(
            id=str(data.get("id") or new_id()),
            content=parse_content(data.get("content")),
            created_at=_int(data.get("createdAt"), 0),
            cached_media_ids=tuple(_str_list(data.get("cachedMediaIds"))),
        )


@dataclass
class Task:
    id: str
    prompt: str
    tool: str = "other"
    result_type: str = "mixed"
    title: str = ""
    status: str = "pending"
    results: list[TaskResult] = field(default_factory=list)
    reference_image_ids: list[str] = field(default_factory=list)
    last_executed_at: int | None = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "prompt": self.prompt,
            "tool": self.tool,
            "resultType": self.result_type,
            "status": self.status,
            "results": [r.to_dict() for r in self.results],
            "referenceImageIds": list(self.reference_image_ids),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.last_executed_at is not None:
            out["lastExecutedAt"] = self.last_executed_at
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        tool = str(data.get("tool") or "other")
        result_type = str(data.get("resultType") or "mixed")
        status = str(data.get("status") or "pending")
        results = data.get("results") if isinstance(data.get("results"), list) else []
        last = data.get("lastExecutedAt")
        return cls(
            id=str(data.get("id") or new_id()),
            title=str(data.get("title") or ""),
            prompt=str(data.get("prompt") or ""),
            tool=tool if tool in TOOLS else "other",
            result_type=result_type if result_type in RESULT_TYPES else "mixed",
            status=status if status in TASK_STATUSES else "pending",
            results=[TaskResult.from_dict(r) for r in results if isinstance(r, dict)],
            reference_image_ids=_str_list(data.get("referenceImageIds"))[:MAX_REFERENCE_IMAGES],
            last_executed_at=(_int(last, 0) or None) if isinstance(last, (int, float)) else None,
            created_at=_int(data.get("createdAt"), 0) or now_ms(),
            updated_at=_int(data.get("updatedAt"), 0) or now_ms(),
        )


@dataclass(frozen=True)
class CapturedItem:
    """One artifact found by a full-page sweep (bulk import)."""

    id: str
    type: str
    url: str = ""
    urls: tuple[str, ...] = ()
    raw_text: str = ""
    html_content: str = ""
    source_index: int = 0

    def to_content(self) -> ResultContent:
        if self.type == "image":
            urls = self.urls or ((self.url,) if self.url else ())
            return ImageContent(urls=tuple(urls), description=f"Captured image ({len(urls)} results)")
        if self.type == "video":
            return VideoContent(urls=(self.url,) if self.url else ())
        return TextContent(raw_text=self.raw_text, html_content=self.html_content)

    def to_result(self) -> TaskResult:
        return TaskResult.create(self.to_content())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapturedItem:
        try:
            source_index = int(data.get("sourceIndex") or 0)
        except (TypeError, ValueError):
            source_index = 0
        return cls(
            id=str(data.get("id") or new_id()),
            type=str(data.get("type") or "text"),
            url=str(data.get("url") or ""),
            urls=tuple(_str_list(data.get("urls"))),
            raw_text=str(data.get("rawText") or ""),
            html_content=str(data.get("htmlContent") or ""),
            source_index=source_index,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Execution
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ReferenceImage:
    name: str
    mime_type: str
    data: bytes


@dataclass(frozen=True)
class ExecutionRequest:
    task: Task
    images: tuple[ReferenceImage, ...] = ()
    fill_only: bool = False

    @property
    def prompt(self) -> str:
        return self.task.prompt


@dataclass(frozen=True)
class Success:
    payload: ResultContent | None = None


@dataclass(frozen=True)
class Failure:
    reason: str


@dataclass(frozen=True)
class RedirectRequired:
    target_url: str
    reason: str = ""


@dataclass(frozen=True)
class Cancelled:
    reason: str = "Execution cancelled"


ExecutionOutcome = Union[Success, Failure, RedirectRequired, Cancelled]


def outcome_to_wire(outcome: ExecutionOutcome) -> dict[str, Any]:
    """Encode an outcome as the channel response shape."""
    if isinstance(outcome, Success):
        return {"success": True, "result": outcome.payload.to_dict() if outcome.payload is not None else None}
    if isinstance(outcome, RedirectRequired):
        return {"success": False, "redirectUrl": outcome.target_url, "error": outcome.reason}
    if isinstance(outcome, Cancelled):
        return {"success": False, "cancelled": True, "error": outcome.reason}
    return {"success": False, "error": outcome.reason}


def outcome_from_wire(response: Any) -> ExecutionOutcome:
    if not isinstance(response, dict):
        return Failure(reason="Unknown error")
    if response.get("success"):
        result = response.get("result")
        return Success(payload=parse_content(result) if result not in (None, "") else None)
    if isinstance(response.get("redirectUrl"), str) and response.get("redirectUrl"):
        return RedirectRequired(target_url=response["redirectUrl"], reason=str(response.get("error") or ""))
    if response.get("cancelled"):
        return Cancelled(reason=str(response.get("error") or "Execution cancelled"))
    return Failure(reason=str(response.get("error") or "Unknown error"))


@dataclass(frozen=True)
class RunReport:
    """What the scheduler learns from one task invocation."""

    success: bool
    retry_after_redirect: bool = False


@dataclass(frozen=True)
class QueueSnapshot:
    executing_id: str | None
    queued_ids: tuple[str, ...]
    is_running: bool
    auto_next: bool
    retry_on_fail: bool
