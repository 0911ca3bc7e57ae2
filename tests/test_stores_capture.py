from __future__ import annotations

import json
from pathlib import Path

import pytest

import genmix.engine.stores as stores_mod
from genmix.engine.config import EngineConfig
from genmix.engine.capture import ResultCapture
from genmix.engine.http_client import HttpClientError
from genmix.engine.models import (
    CapturedItem,
    Cancelled,
    Failure,
    ImageContent,
    RedirectRequired,
    Success,
    TaskResult,
    TextContent,
    VideoContent,
)
from genmix.engine.stores import ImageStore, MediaStore, TaskStore

PNG = b"\x89PNG\r\n\x1a\n" + bytes(range(256))


def _fake_fetch(bodies: dict[str, bytes]):
    def fetch(url: str, _config: EngineConfig) -> dict:
        if url not in bodies:
            raise HttpClientError("HTTP 404")
        return {"status": 200, "headers": {}, "content_type": "image/png; charset=binary", "body": bodies[url]}

    return fetch


def test_task_store_persists_across_instances(tmp_path: Path) -> None:
    store = TaskStore.in_dir(tmp_path)
    first = store.add_task("a cat", tool="gemini", result_type="image", title="Cat")
    second = store.add_task("a dog")

    assert [t.id for t in store.list_tasks()] == [second.id, first.id]

    store.update_task(first.id, status="failed")
    result = TaskResult.create(TextContent(raw_text="hi"))
    store.append_result(first.id, result)

    reloaded = TaskStore.in_dir(tmp_path).get_task(first.id)
    assert reloaded is not None
    assert reloaded.status == "failed"
    assert reloaded.tool == "gemini"
    assert reloaded.results[0].id == result.id
    assert reloaded.updated_at >= reloaded.created_at

    raw = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert (tmp_path / "tasks.json.bak").exists()


def test_task_store_returns_copies(tmp_path: Path) -> None:
    store = TaskStore.in_dir(tmp_path)
    task = store.add_task("x")
    fetched = store.get_task(task.id)
    fetched.status = "completed"
    assert store.get_task(task.id).status == "pending"


def test_task_store_update_rejects_unknown_fields(tmp_path: Path) -> None:
    store = TaskStore.in_dir(tmp_path)
    task = store.add_task("x")
    with pytest.raises(ValueError):
        store.update_task(task.id, results=[])
    assert store.update_task("missing", status="failed") is None


def test_task_store_replace_duplicate_delete(tmp_path: Path) -> None:
    store = TaskStore.in_dir(tmp_path)
    task = store.add_task("x", title="T", reference_image_ids=["i1"])
    result = TaskResult.create(ImageContent(urls=("https://x/a.png",)))
    store.append_result(task.id, result)

    assert store.replace_result(task.id, result.with_cached_media(["m1"])) is True
    assert store.get_task(task.id).results[0].cached_media_ids == ("m1",)
    assert store.replace_result(task.id, TaskResult.create(TextContent(raw_text="?"))) is False

    copy = store.duplicate_task(task.id)
    assert copy.title == "T (copy)"
    assert copy.reference_image_ids == ["i1"]
    assert copy.results == []

    assert store.delete_task(task.id) is True
    assert store.delete_task(task.id) is False
    assert [t.id for t in store.list_tasks()] == [copy.id]


def test_task_store_sets_aside_corrupt_file(tmp_path: Path) -> None:
    (tmp_path / "tasks.json").write_text("{not json", encoding="utf-8")
    store = TaskStore.in_dir(tmp_path)
    assert store.list_tasks() == []

    store.add_task("fresh")
    store.add_task("fresher")

    (kept,) = tmp_path.glob("tasks.json.corrupt-*")
    assert kept.read_text(encoding="utf-8") == "{not json"


def test_task_store_keeps_good_records_next_to_bad_ones(tmp_path: Path) -> None:
    records = [
        {"id": "keep-me", "prompt": "cat", "createdAt": 1700000000000},
        {"id": "odd-dates", "prompt": "dog", "createdAt": "yesterday", "updatedAt": None},
        "not a task",
    ]
    (tmp_path / "tasks.json").write_text(json.dumps({"version": 1, "tasks": records}), encoding="utf-8")
    store = TaskStore.in_dir(tmp_path)

    assert [t.id for t in store.list_tasks()] == ["keep-me", "odd-dates"]
    assert store.get_task("keep-me").created_at == 1700000000000
    assert store.get_task("odd-dates").created_at > 0

    store.add_task("one")
    store.add_task("two")
    saved = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert {"keep-me", "odd-dates"} <= {t["id"] for t in saved["tasks"]}
    (rejected,) = tmp_path.glob("tasks.json.rejected-*")
    assert json.loads(rejected.read_text(encoding="utf-8")) == ["not a task"]


def test_delete_task_removes_its_blobs(tmp_path: Path) -> None:
    store = TaskStore.in_dir(tmp_path)
    images = ImageStore(tmp_path / "images")
    media = MediaStore(tmp_path / "media", EngineConfig(data_dir=str(tmp_path)))
    shared = images.save_image(b"shared", "s.png")
    own = images.save_image(b"own", "o.png")
    cached = media.save_media(PNG, "image", "image/png", "https://x/a.png")

    task = store.add_task("x", reference_image_ids=[shared, own])
    store.append_result(task.id, TaskResult.create(ImageContent(urls=("https://x/a.png",))).with_cached_media([cached]))
    other = store.add_task("y", reference_image_ids=[shared])

    assert store.delete_task(task.id, images=images, media=media) is True

    assert images.get_image(own) is None
    assert images.get_image(shared) is not None
    assert media.get_media(cached) is None
    assert store.get_task(other.id) is not None


def test_image_store_resolves_in_order_and_skips_missing(tmp_path: Path) -> None:
    images = ImageStore(tmp_path / "images")
    a = images.save_image(b"aaa", "a.png", "image/png")
    b = images.save_image(b"bbb", "b.jpg", "image/jpeg")

    resolved = images.resolve_reference_images([b, "gone", a, "../etc"])
    assert [(r.name, r.mime_type, r.data) for r in resolved] == [
        ("b.jpg", "image/jpeg", b"bbb"),
        ("a.png", "image/png", b"aaa"),
    ]


def test_media_cache_round_trip_is_byte_identical(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(stores_mod, "http_get_bytes", _fake_fetch({"https://x/a.png": PNG}))
    media = MediaStore(tmp_path / "media", EngineConfig(data_dir=str(tmp_path)))

    handle = media.cache_remote_media("https://x/a.png", "image")
    record = media.get_media(handle)

    assert record is not None
    assert record.data == PNG
    assert record.mime_type == "image/png"
    assert record.source_url == "https://x/a.png"
    assert media.get_media("unknown") is None

    with pytest.raises(HttpClientError):
        media.cache_remote_media("https://x/missing.png", "image")
    with pytest.raises(HttpClientError):
        media.cache_remote_media("data:image/png;base64,AAAA", "image")


def _capture(tmp_path: Path, bodies: dict[str, bytes], monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(stores_mod, "http_get_bytes", _fake_fetch(bodies))
    tasks = TaskStore.in_dir(tmp_path)
    media = MediaStore(tmp_path / "media", EngineConfig(data_dir=str(tmp_path)))
    return tasks, media, ResultCapture(tasks, media)


def test_success_appends_result_and_caches_media(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tasks, media, capture = _capture(tmp_path, {"https://x/a.png": PNG}, monkeypatch)
    task = tasks.add_task("cat", result_type="image")

    content = ImageContent(urls=("https://x/a.png", "https://x/broken.png", "data:image/png;base64,AAAA"))
    result = capture.record(task.id, Success(payload=content))
    assert capture.flush(timeout=5)
    capture.close()

    stored = tasks.get_task(task.id)
    assert stored.status == "completed"
    assert stored.last_executed_at is not None
    assert len(stored.results) == 1
    assert stored.results[0].id == result.id
    assert stored.results[0].content == content
    (handle,) = stored.results[0].cached_media_ids
    assert media.get_media(handle).data == PNG


def test_video_without_reachable_media_keeps_plain_result(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tasks, _media, capture = _capture(tmp_path, {}, monkeypatch)
    task = tasks.add_task("clip", result_type="video")
    capture.record(task.id, Success(payload=VideoContent(urls=("https://v/1.mp4",))))
    assert capture.flush(timeout=5)
    capture.close()
    assert tasks.get_task(task.id).results[0].cached_media_ids == ()


@pytest.mark.parametrize(
    ("outcome", "fill_only", "status"),
    [
        (Success(payload=None), True, "pending"),
        (Failure(reason="nope"), False, "failed"),
        (Cancelled(), False, "failed"),
        (RedirectRequired(target_url="https://a/b"), False, "pending"),
    ],
)
def test_non_result_outcomes_only_change_status(
    outcome, fill_only: bool, status: str, monkeypatch: pytest.MonkeyPatch, tmp_path: Path  # noqa: ANN001
) -> None:
    tasks, _media, capture = _capture(tmp_path, {}, monkeypatch)
    task = tasks.add_task("x")
    tasks.update_task(task.id, status="in_progress")
    assert capture.record(task.id, outcome, fill_only=fill_only) is None
    capture.close()
    stored = tasks.get_task(task.id)
    assert stored.status == status
    assert stored.results == []


def test_import_captured_appends_every_item(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tasks, _media, capture = _capture(tmp_path, {"https://x/a.png": PNG}, monkeypatch)
    task = tasks.add_task("x")
    items = [
        CapturedItem(id="gemini-img-0", type="image", url="https://x/a.png", urls=("https://x/a.png",)),
        CapturedItem(id="gemini-txt-0", type="text", raw_text="caption"),
    ]
    results = capture.import_captured(task.id, items)
    assert capture.flush(timeout=5)
    capture.close()

    stored = tasks.get_task(task.id)
    assert len(results) == 2
    assert stored.status == "completed"
    assert stored.results[1].content == TextContent(raw_text="caption")
    assert len(stored.results[0].cached_media_ids) == 1


def test_success_without_payload_stores_empty_text(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    tasks, _media, capture = _capture(tmp_path, {}, monkeypatch)
    task = tasks.add_task("x")
    result = capture.record(task.id, Success(payload=None))
    capture.close()

    stored = tasks.get_task(task.id)
    assert stored.status == "completed"
    assert stored.last_executed_at is not None
    assert [r.id for r in stored.results] == [result.id]
    assert stored.results[0].content == TextContent(raw_text="")
