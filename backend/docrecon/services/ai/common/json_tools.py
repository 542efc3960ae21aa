"""JSON recovery from model output: fenced blocks, leading prose, trailing chatter."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_PAIRS = {"{": "}", "[": "]"}


def extract_json(text: str) -> dict | list | None:
    """Return the first JSON object or array found in *text*, else ``None``.

    Tries, in order: the whole text, each fenced code block, then every
    ``{``/``[`` position scanned with string-aware bracket balancing.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    candidates.extend(block.strip() for block in _FENCE_RE.findall(text))
    for candidate in candidates:
        parsed = _loads(candidate)
        if isinstance(parsed, (dict, list)):
            return parsed

    stripped = candidates[0]
    for start, ch in enumerate(stripped):
        if ch not in _PAIRS:
            continue
        end = _balanced_end(stripped, start)
        if end is None:
            continue
        parsed = _loads(stripped[start : end + 1])
        if isinstance(parsed, (dict, list)):
            return parsed
    return None


def _loads(raw: str):
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _balanced_end(text: str, start: int) -> int | None:
    """Index of the bracket closing ``text[start]``; ``None`` if never closed."""
    stack = [_PAIRS[text[start]]]
    in_string = False
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _PAIRS:
            stack.append(_PAIRS[ch])
        elif ch in ("}", "]"):
            if ch != stack.pop():
                return None
            if not stack:
                return i
    return None
