"""Extract a JSON value from free-form agent output.

Agents often wrap JSON in prose or Markdown fences. Extraction tries, in
order: parsing the whole text, each fenced code block, then the first
balanced ``{...}`` or ``[...]`` span that parses.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Literal

ExtractMethod = Literal["direct", "fenced", "balanced"]

FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


@dataclass
class ExtractResult:
    ok: bool
    value: Any = None
    method: ExtractMethod | None = None
    error: str | None = None


def _try_parse(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def find_balanced(text: str, start: int) -> int | None:
    """Index just past the bracket closing the one at ``start``.

    String literals and escapes are respected so brackets inside strings do
    not count.
    """
    pairs = {"{": "}", "[": "]"}
    stack = [pairs[text[start]]]
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
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if ch != stack[-1]:
                return None
            stack.pop()
            if not stack:
                return i + 1
    return None


def extract_json(text: str) -> ExtractResult:
    """Extract the first parseable JSON object or array from text."""
    if not text or not text.strip():
        return ExtractResult(ok=False, error="empty output")

    ok, value = _try_parse(text.strip())
    if ok:
        return ExtractResult(ok=True, value=value, method="direct")

    for match in FENCE_RE.finditer(text):
        ok, value = _try_parse(match.group(1).strip())
        if ok:
            return ExtractResult(ok=True, value=value, method="fenced")

    for i, ch in enumerate(text):
        if ch not in "{[":
            continue
        end = find_balanced(text, i)
        if end is None:
            continue
        ok, value = _try_parse(text[i:end])
        if ok:
            return ExtractResult(ok=True, value=value, method="balanced")

    return ExtractResult(ok=False, error="no JSON object found in output")
