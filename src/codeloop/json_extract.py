"""Pull one JSON value out of free-form agent output.

Agents answer in prose with the structured part embedded somewhere inside:
a fenced ```json block, a bare object after a preamble, or an array
followed by commentary. ``extract_json`` tries the fenced blocks first,
then every opening bracket in turn, and returns the first candidate that
``json.loads`` accepts.

The scanner tracks string literals so braces inside strings
(``"use {name} here"``) never change the nesting depth.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterator
from typing import Any, Literal

Expect = Literal["object", "array"]
Accept = Callable[[Any], bool]

_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"  # CSI sequences (colors, cursor movement)
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC sequences (window titles)
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\r?\n(.*?)```", re.DOTALL)

_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}", "]"}


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and carriage returns."""
    return _ANSI_RE.sub("", text).replace("\r", "")


def _matches(value: Any, expect: Expect | None) -> bool:
    if expect == "object":
        return isinstance(value, dict)
    if expect == "array":
        return isinstance(value, list)
    return isinstance(value, (dict, list))


def _scan_balanced(text: str, start: int) -> int | None:
    """Return the index of the bracket closing ``text[start]``.

    ``None`` when the input ends first or a closer does not match its opener.
    """
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
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
        elif char in _OPENERS:
            stack.append(_OPENERS[char])
        elif char in _CLOSERS:
            if not stack or stack.pop() != char:
                return None
            if not stack:
                return index
    return None


def iter_json_candidates(text: str) -> Iterator[str]:
    """Yield balanced bracketed substrings, one per opening bracket, in order."""
    for start, char in enumerate(text):
        if char not in _OPENERS:
            continue
        end = _scan_balanced(text, start)
        if end is not None:
            yield text[start : end + 1]


def _loads(candidate: str, expect: Expect | None, accept: Accept | None) -> Any | None:
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    if not _matches(value, expect):
        return None
    if accept is not None and not accept(value):
        return None
    return value


def extract_json(
    text: str | None,
    expect: Expect | None = None,
    accept: Accept | None = None,
) -> Any | None:
    """Return the first JSON object/array found in *text*, or ``None``.

    *expect* restricts the accepted top-level type and *accept* lets the
    caller reject candidates that parse but do not fit (the scan then moves
    on to the next one). The result is deterministic for a given input.
    """
    if not text:
        return None
    cleaned = strip_ansi(text)

    for match in _FENCE_RE.finditer(cleaned):
        block = match.group(1).strip()
        value = _loads(block, expect, accept)
        if value is not None:
            return value
        # A fenced block may still carry prose around the payload.
        for candidate in iter_json_candidates(block):
            value = _loads(candidate, expect, accept)
            if value is not None:
                return value

    for candidate in iter_json_candidates(cleaned):
        value = _loads(candidate, expect, accept)
        if value is not None:
            return value
    return None
