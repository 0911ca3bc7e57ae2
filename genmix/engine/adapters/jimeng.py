from __future__ import annotations

import logging
from typing import Any

from ..models import CapturedItem, ImageContent, ReferenceImage, ResultContent, Task, VideoContent
from ..page_session import Page
from .base import ToolAdapter, ValidationResult, urls_from
from .js import CLICK_LAST_JS, INJECT_FILE_JS, SET_NATIVE_VALUE_JS, encode_image

_LOGGER = logging.getLogger("genmix.engine.adapters.jimeng")

GENERATE_URL = "https://jimeng.jianying.com/ai-tool/generate"

_TEXTAREA = 'textarea[class*="prompt-textarea-"]'
_FILE_INPUT = 'input[type="file"][class*="file-input-"]'
# Two buttons share this class (collapsed and expanded toolbar); the last one is live.
_SUBMIT = ['button[class*="submit-button-KJTUYS"]']

_REMOVE_REFERENCES_JS = """
async (pauseMs) => {
  const buttons = Array.from(document.querySelectorAll('[class*="remove-button-UmHkUb"]'));
  for (const b of buttons) {
    b.click();
    await new Promise((r) => setTimeout(r, pauseMs));
  }
  return buttons.length;
}
"""

# The newest generation is always data-index="0".
_NEWEST_JS = """
() => {
  const item = document.querySelector('.item-Xh64V7[data-index="0"]');
  if (!item) return null;
  const badge = item.querySelector('[class*="progress-badge-"]');
  return {
    loading: !!item.querySelector('[class*="loading-container-"]'),
    completed: !!item.querySelector('img[class*="image-TLmgkP"]'),
    progress: badge ? (badge.textContent || '').trim() : null,
  };
}
"""

_EXTRACT_JS = """
(onlyNewest) => {
  const read = (item) => {
    const video = item.querySelector('video:not([class*="loading-animation-"])');
    return {
      index: parseInt(item.getAttribute('data-index') || '0', 10),
      itemId: item.getAttribute('data-id'),
      loading: !!item.querySelector('[class*="loading-container-"]'),
      failed: !!item.querySelector('[class*="error-tips-"]'),
      images: Array.from(item.querySelectorAll('img[class*="image-TLmgkP"]')).map((i) => i.src).filter(Boolean),
      video: video && video.src ? video.src : null,
    };
  };
  if (onlyNewest) {
    const item = document.querySelector('.item-Xh64V7[data-index="0"]');
    return item ? [read(item)] : [];
  }
  return Array.from(document.querySelectorAll('.item-Xh64V7[data-index]')).map(read);
}
"""


class JimengAdapter(ToolAdapter):
    name = "jimeng"
    hosts = ("jimeng.jianying.com",)

    poll_interval_s = 2.0
    # Video generation can sit in Jimeng's queue for a while.
    completion_timeout_s = 180.0
    completion_settle_s = 0.8

    image_settle_s = 0.8

    def validate_state(self, page: Page, task: Task) -> ValidationResult:
        # Generation mode lives in the query string: ?type=image or ?type=video.
        url = page.get_url()
        if task.result_type == "image" and "type=image" not in url:
            return ValidationResult(
                valid=False,
                redirect_url=f"{GENERATE_URL}?type=image",
                error="Task requires image generation but current page is not set to image mode.",
            )
        if task.result_type == "video" and "type=video" not in url:
            return ValidationResult(
                valid=False,
                redirect_url=f"{GENERATE_URL}?type=video",
                error="Task requires video generation but current page is not set to video mode.",
            )
        return ValidationResult(valid=True)

    def clear_editor(self, page: Page) -> None:
        removed = page.call_js(_REMOVE_REFERENCES_JS, 300)
        if removed:
            _LOGGER.info("removed_reference_images count=%s", removed)
            self.sleep(0.5)
        page.call_js(SET_NATIVE_VALUE_JS, _TEXTAREA, "", False)
        self.sleep(0.3)

    def fill_images(self, page: Page, images: list[ReferenceImage]) -> None:
        if not images:
            return
        for i, image in enumerate(images):
            ok = page.call_js(
                INJECT_FILE_JS,
                _FILE_INPUT,
                encode_image(image),
                f"reference-{i + 1}.png",
                image.mime_type,
                "input",
            )
            if not ok:
                raise self.error(
                    "fill_images",
                    "Jimeng file input not found: cannot upload reference images",
                    selector=_FILE_INPUT,
                )
            _LOGGER.info("injected_reference_image index=%d total=%d bytes=%d", i + 1, len(images), len(image.data))
            # Jimeng processes one upload at a time.
            self.sleep(self.image_settle_s)
        self.sleep(0.5)

    def fill_prompt(self, page: Page, text: str) -> None:
        if not page.call_js(SET_NATIVE_VALUE_JS, _TEXTAREA, text, True):
            raise self.error("fill_prompt", "Jimeng prompt textarea not found", selector=_TEXTAREA)
        # Give React time to enable the submit button.
        self.sleep(0.5)

    def click_send(self, page: Page) -> None:
        state = page.call_js(CLICK_LAST_JS, _SUBMIT)
        if state == "missing":
            raise self.error("click_send", "Jimeng submit button not found", selectors=_SUBMIT)
        if state == "disabled":
            _LOGGER.warning("submit_button_disabled adapter=jimeng (prompt may be empty or unchanged)")

    def completion_probe(self, page: Page) -> bool:
        newest = page.call_js(_NEWEST_JS)
        if not isinstance(newest, dict):
            return False
        if newest.get("progress"):
            _LOGGER.debug("progress adapter=jimeng value=%s", newest.get("progress"))
        return bool(newest.get("completed")) and not newest.get("loading")

    def _items(self, page: Page, *, only_newest: bool) -> list[dict[str, Any]]:
        raw = page.call_js(_EXTRACT_JS, only_newest)
        return [i for i in raw if isinstance(i, dict)] if isinstance(raw, list) else []

    def get_latest_result(self, page: Page, expected_type: str | None = None) -> ResultContent | None:
        items = self._items(page, only_newest=True)
        if not items:
            return None
        item = items[0]
        # Jimeng produces several images or a single video, never text.
        wants_image = expected_type in (None, "mixed", "image")
        wants_video = expected_type in (None, "mixed", "video")
        images = urls_from(item.get("images"))
        if wants_image and images:
            return ImageContent(urls=tuple(images), description=f"Jimeng generated image ({len(images)} results)")
        video = item.get("video")
        if wants_video and isinstance(video, str) and video:
            return VideoContent(urls=(video,))
        if expected_type == "text":
            _LOGGER.warning("text_result_requested adapter=jimeng (only images/videos are produced)")
        return None

    def scan_all_results(self, page: Page) -> list[CapturedItem]:
        items: list[CapturedItem] = []
        for item in self._items(page, only_newest=False):
            if item.get("loading") or item.get("failed"):
                continue
            idx = int(item.get("index") or 0)
            item_id = str(item.get("itemId") or idx)
            images = urls_from(item.get("images"))
            if images:
                items.append(
                    CapturedItem(id=f"jimeng-img-{item_id}", type="image", url=images[0], urls=tuple(images), source_index=idx)
                )
            video = item.get("video")
            if isinstance(video, str) and video:
                items.append(CapturedItem(id=f"jimeng-vid-{item_id}", type="video", url=video, source_index=idx))
        # data-index 0 is the newest; report oldest first like the other sites.
        items.reverse()
        return items
