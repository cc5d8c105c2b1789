"""Best-effort JSON recovery from model-generated text."""

from __future__ import annotations

import json
import re

from convo_insights.orchestrator.errors import InvalidResponse
from convo_insights.orchestrator.redaction import sanitize_preview

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def normalize_json_text(text: str) -> str:
    """Recover a JSON document from model text.

    Tries the text as is, then a fenced code block, then the first balanced
    object or array.
    """

    stripped = text.strip()
    if is_json(stripped):
        return stripped

    fenced = _FENCED_BLOCK.search(stripped)
    if fenced is not None and is_json(fenced.group(1)):
        return fenced.group(1).strip()

    extracted = _first_balanced_json(stripped)
    if extracted is not None:
        return extracted
    raise InvalidResponse(
        f"Backend output is not JSON: {sanitize_preview(stripped, max_chars=200)!r}",
    )


def is_json(text: str) -> bool:
    if not text:
        return False
    try:
        json.loads(text)
    except json.JSONDecodeError:
        return False
    return True


def _first_balanced_json(text: str) -> str | None:
    start = 0
    while True:
        positions = [pos for pos in (text.find("{", start), text.find("[", start)) if pos != -1]
        if not positions:
            return None
        begin = min(positions)
        end = _matching_close(text, begin)
        if end is not None:
            candidate = text[begin : end + 1]
            if is_json(candidate):
                return candidate
        start = begin + 1


def _matching_close(text: str, begin: int) -> int | None:
    closers = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(begin, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in closers:
            stack.append(closers[char])
        elif char in ("}", "]"):
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return index
    return None
