from __future__ import annotations

import threading

import pytest

from fakes import FakePage

from genmix.engine.adapters import AdapterStepError, CompletionTimeout, ExecutionCancelled, create_default_registry
from genmix.engine.adapters import chatgpt as chatgpt_mod
from genmix.engine.adapters import gemini as gemini_mod
from genmix.engine.adapters import jimeng as jimeng_mod
from genmix.engine.adapters.js import CLICK_LAST_JS, INJECT_FILE_JS, SET_NATIVE_VALUE_JS
from genmix.engine.models import ImageContent, ReferenceImage, Task, TextContent, VideoContent


def _no_sleep(_s: float) -> None:
    return None


def test_registry_selects_adapter_by_origin() -> None:
    registry = create_default_registry(sleep=_no_sleep)
    assert registry.available() == ["chatgpt", "gemini", "jimeng"]
    assert registry.select(url="https://chatgpt.com/c/abc").name == "chatgpt"
    assert registry.select(url="https://chat.openai.com/").name == "chatgpt"
    assert registry.select(url="https://gemini.google.com/app/123").name == "gemini"
    assert registry.select(url="https://jimeng.jianying.com/ai-tool/generate?type=image").name == "jimeng"
    assert registry.select(url="https://example.com/chatgpt.com") is None
    assert registry.select(url="") is None


def test_registry_passes_timeout_policy_to_adapters() -> None:
    registry = create_default_registry(timeout_policy="fail", sleep=_no_sleep)
    assert registry.get("gemini").timeout_policy == "fail"
    assert registry.get("jimeng").completion_timeout_s == 180.0
    assert registry.get("jimeng").poll_interval_s == 2.0


@pytest.mark.parametrize(
    ("result_type", "url", "redirect"),
    [
        ("image", "https://jimeng.jianying.com/ai-tool/generate?type=video", "?type=image"),
        ("video", "https://jimeng.jianying.com/ai-tool/home", "?type=video"),
    ],
)
def test_jimeng_validate_state_redirects_to_matching_mode(result_type: str, url: str, redirect: str) -> None:
    adapter = jimeng_mod.JimengAdapter(sleep=_no_sleep)
    check = adapter.validate_state(FakePage(url), Task(id="t", prompt="cat", result_type=result_type))
    assert check.valid is False
    assert check.redirect_url == jimeng_mod.GENERATE_URL + redirect
    assert result_type in (check.error or "")


def test_jimeng_validate_state_accepts_mixed_and_matching_mode() -> None:
    adapter = jimeng_mod.JimengAdapter(sleep=_no_sleep)
    page = FakePage("https://jimeng.jianying.com/ai-tool/generate?type=image")
    assert adapter.validate_state(page, Task(id="t", prompt="cat", result_type="image")).valid
    assert adapter.validate_state(page, Task(id="t", prompt="cat", result_type="mixed")).valid


def _jimeng_page(items: list[dict]) -> FakePage:
    def responder(source: str, args: tuple):
        if source is jimeng_mod._EXTRACT_JS:
            return items[:1] if args[0] else items
        if source is jimeng_mod._NEWEST_JS:
            return {"loading": False, "completed": True, "progress": None}
        return None

    return FakePage("https://jimeng.jianying.com/ai-tool/generate?type=image", responder)


def test_jimeng_latest_result_is_read_only_and_idempotent() -> None:
    page = _jimeng_page(
        [{"index": 0, "itemId": "x1", "images": ["https://p/1.png", "https://p/2.png"], "video": None}]
    )
    adapter = jimeng_mod.JimengAdapter(sleep=_no_sleep)

    adapter.wait_for_completion(page)
    first = adapter.get_latest_result(page, "image")
    adapter.wait_for_completion(page)
    second = adapter.get_latest_result(page, "image")

    assert first == second
    assert isinstance(first, ImageContent)
    assert first.urls == ("https://p/1.png", "https://p/2.png")
    assert first.description == "Jimeng generated image (2 results)"


def test_jimeng_latest_result_respects_expected_type() -> None:
    page = _jimeng_page([{"index": 0, "itemId": "v1", "images": [], "video": "https://v/1.mp4"}])
    adapter = jimeng_mod.JimengAdapter(sleep=_no_sleep)
    assert adapter.get_latest_result(page, "video") == VideoContent(urls=("https://v/1.mp4",))
    assert adapter.get_latest_result(page, "image") is None
    assert adapter.get_latest_result(page, "text") is None


def test_jimeng_scan_skips_unfinished_items_and_lists_oldest_first() -> None:
    page = _jimeng_page(
        [
            {"index": 0, "itemId": "new", "images": ["https://p/new.png"]},
            {"index": 1, "itemId": "busy", "loading": True, "images": []},
            {"index": 2, "itemId": "bad", "failed": True, "images": ["https://p/bad.png"]},
            {"index": 3, "itemId": None, "images": [], "video": "https://v/old.mp4"},
        ]
    )
    items = jimeng_mod.JimengAdapter(sleep=_no_sleep).scan_all_results(page)
    assert [i.id for i in items] == ["jimeng-vid-3", "jimeng-img-new"]
    assert items[1].urls == ("https://p/new.png",)


def test_jimeng_fill_images_uploads_each_file_through_the_input() -> None:
    page = FakePage("https://jimeng.jianying.com/", lambda source, _args: source is INJECT_FILE_JS or None)
    sleeps: list[float] = []
    adapter = jimeng_mod.JimengAdapter(sleep=sleeps.append)
    images = [ReferenceImage(name="a.jpg", mime_type="image/jpeg", data=b"\xff\xd8a"), ReferenceImage("b", "image/png", b"b")]

    adapter.fill_images(page, images)

    uploads = [args for source, args in page.calls if source is INJECT_FILE_JS]
    assert [u[2] for u in uploads] == ["reference-1.png", "reference-2.png"]
    assert all(u[4] == "input" for u in uploads)
    assert sleeps == [0.8, 0.8, 0.5]


def test_jimeng_fill_images_without_file_input_fails() -> None:
    adapter = jimeng_mod.JimengAdapter(sleep=_no_sleep)
    with pytest.raises(AdapterStepError) as excinfo:
        adapter.fill_images(FakePage("https://jimeng.jianying.com/"), [ReferenceImage("a", "image/png", b"a")])
    assert "file input not found" in str(excinfo.value)
    assert excinfo.value.step == "fill_images"


def test_jimeng_fill_prompt_uses_native_setter() -> None:
    page = FakePage("https://jimeng.jianying.com/", lambda source, _args: source is SET_NATIVE_VALUE_JS)
    jimeng_mod.JimengAdapter(sleep=_no_sleep).fill_prompt(page, "a red fox")
    source, args = page.calls[-1]
    assert source is SET_NATIVE_VALUE_JS
    assert args[1] == "a red fox"


def test_chatgpt_click_send_missing_button_raises() -> None:
    page = FakePage("https://chatgpt.com/", lambda source, _args: "missing" if source is CLICK_LAST_JS else None)
    with pytest.raises(AdapterStepError) as excinfo:
        chatgpt_mod.ChatGPTAdapter(sleep=_no_sleep).click_send(page)
    assert excinfo.value.to_dict()["step"] == "click_send"


def test_chatgpt_latest_result_falls_back_to_text() -> None:
    turn = {"index": 0, "images": [], "markdownText": "Hello there", "htmlContent": "<p>Hello there</p>"}
    page = FakePage("https://chatgpt.com/", lambda source, _args: [turn] if source is chatgpt_mod._EXTRACT_JS else None)
    result = chatgpt_mod.ChatGPTAdapter(sleep=_no_sleep).get_latest_result(page, "image")
    assert result == TextContent(raw_text="Hello there", html_content="<p>Hello there</p>")


def test_gemini_mixed_result_prefers_video() -> None:
    response = {"index": 2, "rawText": "Here you go", "images": ["https://g/1.png"], "videos": ["https://g/1.mp4"]}
    page = FakePage(
        "https://gemini.google.com/app", lambda source, _args: [response] if source is gemini_mod._EXTRACT_JS else None
    )
    adapter = gemini_mod.GeminiAdapter(sleep=_no_sleep)
    assert adapter.get_latest_result(page, "mixed") == VideoContent(urls=("https://g/1.mp4",))
    image = adapter.get_latest_result(page, "image")
    assert isinstance(image, ImageContent)
    assert image.description == "Here you go"


def test_wait_for_completion_polls_until_page_is_idle() -> None:
    answers = iter([False, False, True])
    page = FakePage("https://chatgpt.com/", lambda source, _args: next(answers) if source is chatgpt_mod._COMPLETION_JS else None)
    sleeps: list[float] = []
    adapter = chatgpt_mod.ChatGPTAdapter(sleep=sleeps.append)

    adapter.wait_for_completion(page)

    # Two poll ticks, then the settle delay.
    assert sleeps == [1.0, 1.0, 0.5]


def test_wait_for_completion_timeout_policy() -> None:
    page = FakePage("https://chatgpt.com/", lambda _source, _args: False)

    lenient = chatgpt_mod.ChatGPTAdapter(sleep=_no_sleep, completion_timeout_s=0)
    lenient.wait_for_completion(page)

    strict = chatgpt_mod.ChatGPTAdapter(sleep=_no_sleep, completion_timeout_s=0, timeout_policy="fail")
    with pytest.raises(CompletionTimeout):
        strict.wait_for_completion(page)


def test_wait_for_completion_observes_cancellation() -> None:
    page = FakePage("https://chatgpt.com/", lambda _source, _args: False)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ExecutionCancelled):
        chatgpt_mod.ChatGPTAdapter(sleep=_no_sleep).wait_for_completion(page, cancel)
