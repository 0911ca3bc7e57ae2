from __future__ import annotations

import logging
from typing import Any

from ..models import CapturedItem, ReferenceImage, ResultContent
from ..page_session import Page
from .base import ToolAdapter, choose_content, urls_from
from .js import EXISTS_JS, INJECT_FILE_JS, SET_RICH_TEXT_JS, encode_image, image_file_name

_LOGGER = logging.getLogger("genmix.engine.adapters.gemini")

_EDITOR = ".ql-editor"
_SEND = "button.send-button"

# Gemini turns the send button into a stop button while generating, and shows
# a spinner / processing state next to the response.
_COMPLETION_JS = """
() => {
  const send = document.querySelector('button.send-button');
  const stopping = !!send && (
    send.classList.contains('stop') ||
    (send.getAttribute('aria-label') || '').includes('停止') ||
    (send.getAttribute('aria-label') || '').toLowerCase().includes('stop') ||
    send.querySelector('.stop-icon') !== null
  );
  const processing = document.querySelector('.extension-processing-state:not([hidden])');
  const spinner = document.querySelector('.avatar_spinner_animation:not([style*="visibility: hidden"])');
  if (stopping || processing || spinner) return false;
  return document.querySelectorAll('model-response').length > 0;
}
"""

# Text is read from a clone with attachment and "thoughts" containers removed,
# otherwise player timestamps ("0:00 / 0:08") leak into the text.
_EXTRACT_JS = """
(onlyLatest) => {
  const read = (response, index) => {
    let rawText = '', htmlContent = '';
    const md = response.querySelector('message-content .markdown');
    if (md) {
      const clone = md.cloneNode(true);
      clone.querySelectorAll('.attachment-container, .thoughts-container').forEach((n) => n.remove());
      rawText = (clone.textContent || '').trim();
      htmlContent = (clone.innerHTML || '').trim();
    }
    const images = Array.from(response.querySelectorAll('generated-image img.image')).map((i) => i.src);
    const videos = Array.from(response.querySelectorAll('generated-video video')).map((v) => v.src).filter(Boolean);
    return { index, rawText, htmlContent, images, videos };
  };
  const all = Array.from(document.querySelectorAll('model-response'));
  if (onlyLatest) return all.length ? [read(all[all.length - 1], all.length - 1)] : [];
  return all.map((r, i) => read(r, i));
}
"""


class GeminiAdapter(ToolAdapter):
    name = "gemini"
    hosts = ("gemini.google.com",)

    poll_interval_s = 1.0
    completion_timeout_s = 300.0
    completion_settle_s = 1.0

    image_settle_s = 1.5

    def fill_images(self, page: Page, images: list[ReferenceImage]) -> None:
        # Quill accepts images the way a user's Ctrl+V delivers them.
        if not images:
            return
        for i, image in enumerate(images):
            ok = page.call_js(
                INJECT_FILE_JS,
                _EDITOR,
                encode_image(image),
                image_file_name("reference_image_", i, image),
                image.mime_type,
                "paste",
            )
            if not ok:
                _LOGGER.warning("editor_missing step=fill_images selector=%s", _EDITOR)
                return
            _LOGGER.info("pasted_reference_image index=%d total=%d", i + 1, len(images))
            self.sleep(self.image_settle_s)
        self.sleep(0.5)

    def fill_prompt(self, page: Page, text: str) -> None:
        if not page.call_js(SET_RICH_TEXT_JS, [_EDITOR], text, True):
            raise self.error("fill_prompt", "Gemini input editor not found.", "Open a Gemini chat page", selector=_EDITOR)
        self.sleep(0.2)

    def click_send(self, page: Page) -> None:
        if not page.call_js(EXISTS_JS, [_SEND]):
            raise self.error("click_send", "Gemini send button not found", selector=_SEND)
        # The button only enables after the editor state settles.
        self.sleep(0.3)
        page.eval_js(f"document.querySelector({_SEND!r}).click()")

    def completion_probe(self, page: Page) -> bool:
        return bool(page.call_js(_COMPLETION_JS))

    def _responses(self, page: Page, *, only_latest: bool) -> list[dict[str, Any]]:
        raw = page.call_js(_EXTRACT_JS, only_latest)
        return [r for r in raw if isinstance(r, dict)] if isinstance(raw, list) else []

    def get_latest_result(self, page: Page, expected_type: str | None = None) -> ResultContent | None:
        responses = self._responses(page, only_latest=True)
        if not responses:
            return None
        latest = responses[-1]
        images = urls_from(latest.get("images"))
        text = str(latest.get("rawText") or "")
        return choose_content(
            images=images,
            videos=urls_from(latest.get("videos")),
            text=text,
            html=str(latest.get("htmlContent") or ""),
            expected_type=expected_type,
            image_description=text or f"Gemini generated image ({len(images)} results)",
        )

    def scan_all_results(self, page: Page) -> list[CapturedItem]:
        items: list[CapturedItem] = []
        for response in self._responses(page, only_latest=False):
            idx = int(response.get("index") or 0)
            images = urls_from(response.get("images"))
            if images:
                items.append(
                    CapturedItem(id=f"gemini-img-{idx}", type="image", url=images[0], urls=tuple(images), source_index=idx)
                )
            for v_idx, url in enumerate(urls_from(response.get("videos"))):
                items.append(CapturedItem(id=f"gemini-vid-{idx}-{v_idx}", type="video", url=url, source_index=idx))
            text = str(response.get("rawText") or "")
            if text:
                items.append(
                    CapturedItem(
                        id=f"gemini-txt-{idx}",
                        type="text",
                        raw_text=text,
                        html_content=str(response.get("htmlContent") or ""),
                        source_index=idx,
                    )
                )
        return items
