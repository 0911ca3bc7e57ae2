"""Disk-backed stores: tasks, reference images and cached result media.

Design
- Tasks live in one JSON snapshot (`tasks.json`), rewritten atomically on every
  change: write a temp file, then replace. The previous snapshot is kept as
  `tasks.json.bak`.
- Blobs (reference images, cached media) are `<id>.bin` plus `<id>.meta.json`.
- One process owns the data dir; an in-process lock serialises writers.
  Last write wins on the whole task record.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import shutil
import threading
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import EngineConfig
from .http_client import HttpClientError, http_get_bytes
from .models import MAX_REFERENCE_IMAGES, ReferenceImage, Task, TaskResult, new_id, now_ms

_LOGGER = logging.getLogger("genmix.engine.stores")

_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,127}$")

_UPDATABLE_FIELDS = frozenset(
    {"title", "prompt", "tool", "result_type", "status", "reference_image_ids", "last_executed_at"}
)


def _write_atomic(path: Path, text: str, *, backup: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    if backup:
        try:
            if path.exists() and path.is_file():
                shutil.copyfile(path, path.with_suffix(path.suffix + ".bak"))
        except OSError:
            # Backup is best-effort.
            _LOGGER.debug("backup_failed path=%s", path, exc_info=True)
    tmp.write_text(text, encoding="utf-8")
    with suppress(Exception):
        os.chmod(tmp, 0o600)
    tmp.replace(path)


class TaskStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.RLock()
        self._tasks: list[Task] | None = None

    @classmethod
    def in_dir(cls, data_dir: str | Path) -> TaskStore:
        return cls(Path(data_dir) / "tasks.json")

    def _load(self) -> list[Task]:
        if self._tasks is not None:
            return self._tasks
        tasks: list[Task] = []
        if self.path.is_file():
            try:
                obj = json.loads(self.path.read_text(encoding="utf-8", errors="replace"))
            except ValueError:
                # Keep the unreadable snapshot; the next save must not replace the only copy.
                self._set_aside(self.path, "corrupt")
                obj = []
            raw = obj.get("tasks") if isinstance(obj, dict) else obj
            rejected: list[Any] = []
            for item in raw if isinstance(raw, list) else []:
                try:
                    if not isinstance(item, dict):
                        raise ValueError("task record is not an object")
                    tasks.append(Task.from_dict(item))
                except (TypeError, ValueError) as exc:
                    _LOGGER.warning("task_record_rejected path=%s error=%s", self.path, exc)
                    rejected.append(item)
            if rejected:
                rejected_path = self.path.with_name(f"{self.path.name}.rejected-{now_ms()}")
                _write_atomic(rejected_path, json.dumps(rejected, ensure_ascii=False, indent=2))
                _LOGGER.warning("task_records_set_aside path=%s count=%d", rejected_path, len(rejected))
        self._tasks = tasks
        return tasks

    @staticmethod
    def _set_aside(path: Path, label: str) -> Path:
        """Rename `path` out of the way. Raises OSError when that is impossible."""
        target = path.with_name(f"{path.name}.{label}-{now_ms()}")
        path.replace(target)
        _LOGGER.warning("task_store_unreadable path=%s moved_to=%s", path, target)
        return target

    def _save(self) -> None:
        tasks = self._load()
        payload = {"version": 1, "updatedAt": now_ms(), "tasks": [t.to_dict() for t in tasks]}
        _write_atomic(self.path, json.dumps(payload, ensure_ascii=False, indent=2), backup=True)

    def _find(self, task_id: str) -> Task | None:
        for task in self._load():
            if task.id == task_id:
                return task
        return None

    def list_tasks(self) -> list[Task]:
        with self._lock:
            return copy.deepcopy(self._load())

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._find(task_id)
            return copy.deepcopy(task) if task is not None else None

    def add_task(
        self,
        prompt: str,
        *,
        tool: str = "other",
        result_type: str = "mixed",
        title: str = "",
        reference_image_ids: list[str] | None = None,
    ) -> Task:
        """Create a task; new tasks go to the front of the list."""
        task = Task(
            id=new_id(),
            prompt=prompt,
            tool=tool,
            result_type=result_type,
            title=title,
            reference_image_ids=list(reference_image_ids or [])[:MAX_REFERENCE_IMAGES],
        )
        with self._lock:
            self._load().insert(0, task)
            self._save()
        return copy.deepcopy(task)

    def update_task(self, task_id: str, **fields: Any) -> Task | None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown task field(s): {', '.join(sorted(unknown))}")
        with self._lock:
            task = self._find(task_id)
            if task is None:
                return None
            for key, value in fields.items():
                setattr(task, key, value)
            task.updated_at = now_ms()
            self._save()
            return copy.deepcopy(task)

    def append_result(self, task_id: str, result: TaskResult) -> Task | None:
        with self._lock:
            task = self._find(task_id)
            if task is None:
                return None
            task.results.append(result)
            task.updated_at = now_ms()
            self._save()
            return copy.deepcopy(task)

    def replace_result(self, task_id: str, result: TaskResult) -> bool:
        """Swap in a new version of an existing result (matched by result id)."""
        with self._lock:
            task = self._find(task_id)
            if task is None:
                return False
            for i, existing in enumerate(task.results):
                if existing.id == result.id:
                    task.results[i] = result
                    task.updated_at = now_ms()
                    self._save()
                    return True
            return False

    def delete_task(
        self,
        task_id: str,
        *,
        images: ImageStore | None = None,
        media: MediaStore | None = None,
    ) -> bool:
        """Remove a task, and with the stores given, its reference images and cached media.

        Reference images still used by another task (duplicates share them) are kept.
        """
        with self._lock:
            tasks = self._load()
            removed = next((t for t in tasks if t.id == task_id), None)
            if removed is None:
                return False
            tasks.remove(removed)
            self._save()
            still_used = {image_id for t in tasks for image_id in t.reference_image_ids}
        if images is not None:
            for image_id in removed.reference_image_ids:
                if image_id not in still_used:
                    images.delete(image_id)
        if media is not None:
            for result in removed.results:
                for media_id in result.cached_media_ids:
                    media.delete(media_id)
        return True

    def duplicate_task(self, task_id: str) -> Task | None:
        """Copy prompt, settings and reference images; results are not copied."""
        with self._lock:
            source = self._find(task_id)
            if source is None:
                return None
            title = f"{source.title} (copy)" if source.title else ""
            return self.add_task(
                source.prompt,
                tool=source.tool,
                result_type=source.result_type,
                title=title,
                reference_image_ids=list(source.reference_image_ids),
            )


@dataclass(frozen=True)
class MediaRecord:
    id: str
    kind: str
    mime_type: str
    source_url: str
    created_at: int
    data: bytes


class _BlobDir:
    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def _validate_id(self, blob_id: str) -> str:
        if not isinstance(blob_id, str) or not _ID_RE.match(blob_id):
            raise ValueError("invalid blob id")
        return blob_id

    def _data_path(self, blob_id: str) -> Path:
        return self.base_dir / f"{self._validate_id(blob_id)}.bin"

    def _meta_path(self, blob_id: str) -> Path:
        return self.base_dir / f"{self._validate_id(blob_id)}.meta.json"

    def _put(self, data: bytes, meta: dict[str, Any]) -> str:
        blob_id = new_id()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._data_path(blob_id).write_bytes(bytes(data))
        meta = {"id": blob_id, "bytes": len(data), "createdAt": now_ms(), **meta}
        _write_atomic(self._meta_path(blob_id), json.dumps(meta, ensure_ascii=False, indent=2))
        return blob_id

    def _get(self, blob_id: str) -> tuple[dict[str, Any], bytes] | None:
        try:
            data_path = self._data_path(blob_id)
            meta_path = self._meta_path(blob_id)
        except ValueError:
            return None
        if not data_path.is_file() or not meta_path.is_file():
            return None
        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(meta, dict):
            return None
        return meta, data_path.read_bytes()

    def delete(self, blob_id: str) -> bool:
        try:
            paths = (self._data_path(blob_id), self._meta_path(blob_id))
        except ValueError:
            return False
        removed = False
        for path in paths:
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed


class ImageStore(_BlobDir):
    """Reference images attached to tasks."""

    def save_image(self, data: bytes, name: str = "", mime_type: str = "image/png") -> str:
        return self._put(data, {"name": name, "mimeType": mime_type or "image/png"})

    def get_image(self, image_id: str) -> ReferenceImage | None:
        found = self._get(image_id)
        if found is None:
            return None
        meta, data = found
        return ReferenceImage(
            name=str(meta.get("name") or f"{image_id}.png"),
            mime_type=str(meta.get("mimeType") or "image/png"),
            data=data,
        )

    def resolve_reference_images(self, image_ids: list[str]) -> list[ReferenceImage]:
        """Load images in the given order; ids with no stored image are skipped."""
        out: list[ReferenceImage] = []
        for image_id in image_ids:
            image = self.get_image(image_id)
            if image is None:
                _LOGGER.warning("reference_image_missing id=%s", image_id)
                continue
            out.append(image)
        return out


class MediaStore(_BlobDir):
    """Local copies of generated media, so results outlive the sites' signed URLs."""

    def __init__(self, base_dir: Path, config: EngineConfig) -> None:
        super().__init__(base_dir)
        self.config = config

    def save_media(self, data: bytes, kind: str, mime_type: str = "", source_url: str = "") -> str:
        return self._put(data, {"kind": kind, "mimeType": mime_type, "sourceUrl": source_url})

    def get_media(self, media_id: str) -> MediaRecord | None:
        found = self._get(media_id)
        if found is None:
            return None
        meta, data = found
        return MediaRecord(
            id=media_id,
            kind=str(meta.get("kind") or ""),
            mime_type=str(meta.get("mimeType") or ""),
            source_url=str(meta.get("sourceUrl") or ""),
            created_at=int(meta.get("createdAt") or 0),
            data=data,
        )

    def cache_remote_media(self, url: str, kind: str) -> str:
        """Download `url` and store it. Raises HttpClientError when the fetch fails."""
        if url.startswith("data:"):
            raise HttpClientError("data: URLs are not cached")
        resp = http_get_bytes(url, self.config)
        mime = str(resp.get("content_type") or "").split(";")[0].strip()
        if not mime:
            mime = "video/mp4" if kind == "video" else "image/png"
        return self.save_media(resp["body"], kind, mime, url)


__all__ = ["ImageStore", "MediaRecord", "MediaStore", "TaskStore"]
