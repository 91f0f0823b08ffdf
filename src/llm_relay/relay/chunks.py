"""
Turn one raw line from a backend stream into at most one text fragment.

Each line is classified exactly once into a StructuredValue (it parsed as JSON)
or PlainText (it did not); extraction then dispatches on that tag.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

# Fields probed, in order, when looking for text inside a structured payload.
TEXT_PRIORITY_FIELDS = ("response", "text", "output", "content", "chunk", "message", "delta")

EVENT_STREAM_PREFIX = "data:"

_BLOB_RE = re.compile(r"^[\[{].*[\]}]$")
_QUOTED_KEY_RE = re.compile(r'"[^"]*"\s*:')
_LETTER_RE = re.compile(r"[^\W\d_]")


@dataclass(frozen=True)
class StructuredValue:
    value: Any


@dataclass(frozen=True)
class PlainText:
    text: str


Chunk = Union[StructuredValue, PlainText]


def classify_line(line: str) -> Optional[Chunk]:
    s = (line or "").strip()
    if s.startswith(EVENT_STREAM_PREFIX):
        s = s[len(EVENT_STREAM_PREFIX):].strip()
    if not s:
        return None
    try:
        return StructuredValue(json.loads(s))
    except (ValueError, RecursionError):
        return PlainText(s)


def find_text(value: Any, fields: Sequence[str] = TEXT_PRIORITY_FIELDS) -> Optional[str]:
    """
    First non-empty text in a parsed payload.

    Priority fields are probed in order at every object level. Other keys are only
    descended into when they hold nested objects/lists, so bookkeeping scalars like
    `model` or `created_at` are never mistaken for output.
    """
    return _search(value, fields, True)


def _search(value: Any, fields: Sequence[str], via_field: bool) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int, float)):
        if not via_field:
            return None
        text = value if isinstance(value, str) else str(value)
        return text if text.strip() else None
    if isinstance(value, list):
        for item in value:
            found = _search(item, fields, via_field)
            if found:
                return found
        return None
    if isinstance(value, dict):
        for key in fields:
            if key in value:
                found = _search(value[key], fields, True)
                if found:
                    return found
        for key, nested in value.items():
            if key in fields or not isinstance(nested, (dict, list)):
                continue
            found = _search(nested, fields, False)
            if found:
                return found
    return None


def extract_text(chunk: Chunk, fields: Sequence[str] = TEXT_PRIORITY_FIELDS) -> Optional[str]:
    if isinstance(chunk, StructuredValue):
        return find_text(chunk.value, fields)

    text = chunk.text
    # Looks like a JSON fragment that failed to parse: drop it.
    if _BLOB_RE.match(text) or _QUOTED_KEY_RE.search(text):
        return None
    if _LETTER_RE.search(text):
        return text
    return None


def interpret_line(line: str, fields: Sequence[str] = TEXT_PRIORITY_FIELDS) -> Optional[str]:
    chunk = classify_line(line)
    if chunk is None:
        return None
    return extract_text(chunk, fields)
