"""JavaScript snippets shared by the tool adapters.

Every snippet is a function expression; adapters invoke it with
`page.call_js(SNIPPET, *args)` so arguments travel as JSON, never as string
interpolation into code.
"""

from __future__ import annotations

import base64

from ..models import ReferenceImage

# Reactive frameworks (React, Angular) track a private copy of an input's value.
# Assigning `el.value` directly is ignored by their dirty-checking; the native
# prototype setter followed by bubbling input/change events is not.
SET_NATIVE_VALUE_JS = """
(selector, value, focus) => {
  const el = document.querySelector(selector);
  if (!el) return false;
  const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
  const setter = Object.getOwnPropertyDescriptor(proto, 'value')?.set;
  if (setter) setter.call(el, value); else el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  if (focus) el.focus();
  return true;
}
"""

# Rich-text editors (ProseMirror, Quill) own a contenteditable root.
SET_RICH_TEXT_JS = """
(selectors, text, fireChange) => {
  let editor = null;
  for (const s of selectors) { editor = document.querySelector(s); if (editor) break; }
  if (!editor) return false;
  const p = document.createElement('p');
  p.textContent = text;
  editor.replaceChildren(p);
  editor.dispatchEvent(new Event('input', { bubbles: true }));
  if (fireChange) editor.dispatchEvent(new Event('change', { bubbles: true }));
  editor.focus();
  return true;
}
"""

# Build a File from base64 and hand it to the page either through a file
# input (`input` mode) or as a clipboard paste on an editor (`paste` mode).
INJECT_FILE_JS = """
(selector, b64, name, mime, mode) => {
  const el = document.querySelector(selector);
  if (!el) return false;
  const bin = atob(b64);
  const bytes = new Uint8Array(bin.length);
  for (let i = 0; i < bin.length; i++) bytes[i] = bin.charCodeAt(i);
  const file = new File([bytes], name, { type: mime || 'image/png' });
  const dt = new DataTransfer();
  dt.items.add(file);
  if (mode === 'paste') {
    el.focus();
    el.dispatchEvent(new ClipboardEvent('paste', { bubbles: true, cancelable: true, clipboardData: dt }));
  } else {
    el.files = dt.files;
    el.dispatchEvent(new Event('change', { bubbles: true }));
  }
  return true;
}
"""

# Click the last element matching any selector, in order. Returns
# "missing" | "disabled" | "clicked"; a disabled button is still clicked.
CLICK_LAST_JS = """
(selectors) => {
  for (const s of selectors) {
    const all = document.querySelectorAll(s);
    const el = all[all.length - 1];
    if (el instanceof HTMLElement) {
      const disabled = !!el.disabled;
      el.click();
      return disabled ? 'disabled' : 'clicked';
    }
  }
  return 'missing';
}
"""

EXISTS_JS = """
(selectors) => selectors.some((s) => document.querySelector(s) !== null)
"""


def image_file_name(prefix: str, index: int, image: ReferenceImage) -> str:
    ext = "png" if (image.mime_type or "image/png") == "image/png" else "jpg"
    return f"{prefix}{index + 1}.{ext}"


def encode_image(image: ReferenceImage) -> str:
    return base64.b64encode(image.data).decode("ascii")


__all__ = [
    "CLICK_LAST_JS",
    "EXISTS_JS",
    "INJECT_FILE_JS",
    "SET_NATIVE_VALUE_JS",
    "SET_RICH_TEXT_JS",
    "encode_image",
    "image_file_name",
]
