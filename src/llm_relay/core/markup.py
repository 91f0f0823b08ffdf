"""
Markup helpers shared by the relay server and the chat client.

Model output is rendered as Markdown (markdown-it-py, raw HTML passed through),
then reduced by nh3 to a small tag subset (b, i, p, br) with no attributes.
Running `sanitize_markup` on its own output is a no-op.
"""

from __future__ import annotations

import html
import re
from typing import Optional

import nh3
from markdown_it import MarkdownIt

ALLOWED_TAGS = frozenset({"b", "i", "p", "br"})
# Kept through cleaning so they can be renamed to b / i afterwards.
_RENAMED_TAGS = {"strong": "b", "em": "i"}
# Dropped together with their content.
_CONTENT_TAGS = frozenset({"script", "style", "textarea", "option"})

_RENAME_RE = re.compile(r"<(/?)(strong|em)>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")
_TRAILING_DOTS_RE = re.compile(r"\n?\s*\.+\s*$")

_md = MarkdownIt("commonmark", {"html": True})


def escape_html(s: object) -> str:
    return html.escape(str(s), quote=True)


def markdown_to_html(markdown: str) -> str:
    return _md.render(str(markdown or "").replace("\r\n", "\n"))


def sanitize_markup(raw: Optional[str]) -> str:
    text = str(raw or "")
    if not text.strip():
        return ""

    cleaned = nh3.clean(
        markdown_to_html(text),
        tags=set(ALLOWED_TAGS | set(_RENAMED_TAGS)),
        clean_content_tags=set(_CONTENT_TAGS),
        attributes={},
    )
    out = _RENAME_RE.sub(lambda m: "<%s%s>" % (m.group(1), _RENAMED_TAGS[m.group(2)]), cleaned)
    # No blank lines: a second Markdown pass then reads the whole output as one HTML block.
    out = _BLANK_LINES_RE.sub("\n", out).strip()
    # Unwrapped blocks (headings, lists, code) lose their tags; keep the result a paragraph.
    if out and not out.startswith("<p>"):
        out = "<p>%s</p>" % out
    return out


def remove_trailing_model_name(text: str, model_name: str) -> str:
    if not model_name or not text:
        return text
    pattern = r"(?:\s|\.|,)*%s$" % re.escape(model_name)
    return re.sub(pattern, "", text).strip()


def strip_trailing_artifacts(text: str, model_name: str) -> str:
    """
    Drop an echoed model name and any trailing ellipsis placeholder from streamed text.
    """
    cleaned = remove_trailing_model_name(text or "", model_name)
    return _TRAILING_DOTS_RE.sub("", cleaned)
