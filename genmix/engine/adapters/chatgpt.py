from __future__ import annotations

import logging
from typing import Any

from ..models import CapturedItem, ResultContent, TextContent
from ..page_session import Page
from .base import ToolAdapter, choose_content, urls_from
from .js import CLICK_LAST_JS, SET_RICH_TEXT_JS

_LOGGER = logging.getLogger("genmix.engine.adapters.chatgpt")

_EDITORS = ["#prompt-textarea.ProseMirror", 'div[contenteditable="true"][id="prompt-textarea"]']
_SEND_BUTTONS = ['[data-testid="send-button"]', "#composer-submit-button"]

# Busy while text streams (stop button) or an image is being generated.
_COMPLETION_JS = """
() => {
  const streaming = document.querySelector('[data-testid="stop-button"]');
  const shimmer = document.querySelector('.loading-shimmer');
  const creating = (document.body.innerText || '').includes('Creating image');
  const imageLoading = document.querySelector('[class*="imagegen-image"] .pointer-events-none');
  return !(streaming || shimmer || creating || imageLoading);
}
"""

_EXTRACT_JS = """
(onlyLatest) => {
  const read = (turn, index) => {
    const container = turn.querySelector('[class*="imagegen-image"]') || turn.querySelector('[id^="image-"]');
    let images = [];
    if (container) {
      const img = container.querySelector('img[src*="backend-api/estuary"]') || container.querySelector('img[alt="Generated image"]');
      if (img && img.src) images = [img.src];
    }
    const desc = turn.querySelector('.text-token-text-tertiary');
    const md = turn.querySelector('.markdown');
    return {
      index,
      images,
      imageDescription: desc ? desc.innerText : '',
      markdownText: md ? (md.innerText || '').trim() : null,
      htmlContent: md ? (md.innerHTML || '').trim() : '',
      turnText: (turn.innerText || '').trim(),
    };
  };
  const turns = Array.from(document.querySelectorAll('article[data-turn="assistant"]'));
  if (onlyLatest) return turns.length ? [read(turns[turns.length - 1], turns.length - 1)] : [];
  return turns.map((t, i) => read(t, i));
}
"""


class ChatGPTAdapter(ToolAdapter):
    name = "chatgpt"
    hosts = ("chatgpt.com", "chat.openai.com")

    poll_interval_s = 1.0
    completion_timeout_s = 120.0
    completion_settle_s = 0.5

    def fill_prompt(self, page: Page, text: str) -> None:
        # ProseMirror root; the <p> wrapper matches what the composer itself emits.
        if not page.call_js(SET_RICH_TEXT_JS, _EDITORS, text, False):
            raise self.error(
                "fill_prompt",
                "ChatGPT input element not found",
                "Open a ChatGPT conversation page and make sure the composer is visible",
                selectors=_EDITORS,
            )

    def click_send(self, page: Page) -> None:
        # The send button enables only after the composer state updates.
        self.sleep(0.5)
        state = page.call_js(CLICK_LAST_JS, _SEND_BUTTONS)
        if state == "missing":
            raise self.error("click_send", "Send button not found", selectors=_SEND_BUTTONS)
        if state == "disabled":
            _LOGGER.warning("send_button_disabled adapter=chatgpt (input may not have triggered validation)")

    def completion_probe(self, page: Page) -> bool:
        return bool(page.call_js(_COMPLETION_JS))

    def _turns(self, page: Page, *, only_latest: bool) -> list[dict[str, Any]]:
        raw = page.call_js(_EXTRACT_JS, only_latest)
        return [t for t in raw if isinstance(t, dict)] if isinstance(raw, list) else []

    def get_latest_result(self, page: Page, expected_type: str | None = None) -> ResultContent | None:
        turns = self._turns(page, only_latest=True)
        if not turns:
            return None
        turn = turns[-1]
        images = urls_from(turn.get("images"))
        markdown = turn.get("markdownText")
        text = markdown if isinstance(markdown, str) else str(turn.get("turnText") or "")
        content = choose_content(
            images=images,
            videos=[],
            text=text,
            html=str(turn.get("htmlContent") or ""),
            expected_type=expected_type,
            image_description=str(turn.get("imageDescription") or ""),
        )
        # A finished turn with no artifacts is still an (empty) text answer.
        return content if content is not None else TextContent(raw_text=text)

    def scan_all_results(self, page: Page) -> list[CapturedItem]:
        items: list[CapturedItem] = []
        for turn in self._turns(page, only_latest=False):
            idx = int(turn.get("index") or 0)
            images = urls_from(turn.get("images"))
            if images:
                items.append(
                    CapturedItem(id=f"chatgpt-img-{idx}", type="image", url=images[0], urls=tuple(images), source_index=idx)
                )
            text = turn.get("markdownText")
            if isinstance(text, str) and text:
                items.append(
                    CapturedItem(
                        id=f"chatgpt-txt-{idx}",
                        type="text",
                        raw_text=text,
                        html_content=str(turn.get("htmlContent") or ""),
                        source_index=idx,
                    )
                )
        return items
