"""
Layered JSON extraction from free-form LLM output.

Models wrap JSON in commentary, code fences, or truncate it at the token
limit. The parser tries, in order (first success wins):

    1. a fenced block labelled ``json``
    2. any fenced block whose interior starts with ``[`` or ``{``
    3. the first ``[`` through the last ``]``
    4. the first ``{`` through the last ``}``

Each candidate gets one cleanup pass (trailing commas, tabs) if the
direct parse fails. Nothing here raises; ``None`` means "no artifacts".
"""

import json
import re
from typing import Any

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*([\s\S]*?)\s*```")
_ARRAY_SPAN_RE = re.compile(r"(\[[\s\S]*\])")
_OBJECT_SPAN_RE = re.compile(r"(\{[\s\S]*\})")

_COMMA_BEFORE_CLOSE_RE = re.compile(r",\s*([}\]])")
_TRAILING_COMMA_EOL_RE = re.compile(r",\s*$", re.MULTILINE)


def extract_json_string(text: str | None) -> str | None:
    """Return the most likely JSON substring of ``text``, or None."""
    if not text:
        return None

    match = _JSON_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()

    for fence in _ANY_FENCE_RE.finditer(text):
        inner = fence.group(1).strip()
        if inner.startswith("[") or inner.startswith("{"):
            return inner

    match = _ARRAY_SPAN_RE.search(text)
    if match:
        return match.group(1)

    match = _OBJECT_SPAN_RE.search(text)
    if match:
        return match.group(1)

    return None


def _cleanup(candidate: str) -> str:
    cleaned = _COMMA_BEFORE_CLOSE_RE.sub(r"\1", candidate)
    cleaned = _TRAILING_COMMA_EOL_RE.sub("", cleaned)
    return cleaned.replace("\t", "    ")


def try_parse_json(candidate: str | None) -> Any | None:
    """Parse ``candidate``; on failure retry once after cleanup. Never raises."""
    if candidate is None:
        return None
    text = candidate.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        pass
    try:
        return json.loads(_cleanup(text))
    except (ValueError, TypeError):
        return None


def parse_llm_json(text: str | None) -> Any | None:
    """Extract and parse a JSON value from model output.

    Falls back to parsing the whole text when the extracted candidate
    is unusable. Deterministic: the same input always yields the same value.
    """
    parsed = try_parse_json(extract_json_string(text))
    if parsed is None:
        parsed = try_parse_json(text)
    return parsed


def coerce_list(value: Any, wrapper_keys: tuple = ()) -> list:
    """Normalise a parsed value into a list of items.

    - list → itself
    - dict holding a list under one of ``wrapper_keys`` (or its only list value) → that list
    - any other dict → ``[dict]``
    - anything else → ``[]``
    """
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in wrapper_keys:
            inner = value.get(key)
            if isinstance(inner, list):
                return inner
        list_values = [v for v in value.values() if isinstance(v, list) and v and isinstance(v[0], dict)]
        if len(list_values) == 1 and len(value) == 1:
            return list_values[0]
        return [value]
    return []
