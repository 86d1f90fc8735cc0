# -*- coding: utf-8 -*-
"""
inkpilot/extraction.py

Tool-call extraction from free-form assistant text.

Models without native tool calling are told to answer with JSON such as
``{"function": "name", "arguments": {...}}``. What comes back is usually
close to that and often slightly broken: wrapped in prose, fenced or not,
with comments, bare keys, single quotes or trailing commas. This module
finds the candidate objects, repairs what it can, and maps every accepted
shape onto a ``ToolCall``.

Everything here is pure: no I/O, no logging side effects beyond debug lines.

Accepted call shapes:
    {"function": "<name>", "arguments": {...}}
    {"tool": "<name>", "args": {...} | [...]}      (list -> {"_args": [...]})
    {"name": "<name>", "arguments": {...}}         ("arguments" required)
"""

from __future__ import annotations

import json
from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from markdown_it import MarkdownIt

from .logging_utils import get_logger
from .messages import ToolCall

log = get_logger("inkpilot.extraction")

# Fragments containing one of these are reported when they fail to parse.
_TOOL_SHAPED_MARKERS = ('"function"', '"tool"', '"name"')
_ERROR_SNIPPET_CHARS = 500


# =============================================================================
# 1) Result types
# =============================================================================


@dataclass(frozen=True)
class ParseError:
    error: str
    original_json: str


@dataclass(frozen=True)
class ParseAttempt:
    value: Any = None
    error: str | None = None
    original_json: str = ""
    repaired: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class JsonSpan:
    start: int
    end: int
    text: str


@dataclass
class ExtractionResult:
    calls: list[ToolCall] = field(default_factory=list)
    parse_errors: list[ParseError] = field(default_factory=list)


# =============================================================================
# 2) Brace scanner
# =============================================================================


class ScanState(Enum):
    NORMAL = "normal"
    IN_STRING = "in_string"
    ESCAPED = "escaped"


def _step(state: ScanState, ch: str) -> ScanState:
    if state is ScanState.ESCAPED:
        return ScanState.IN_STRING
    if state is ScanState.IN_STRING:
        if ch == "\\":
            return ScanState.ESCAPED
        if ch == '"':
            return ScanState.NORMAL
        return ScanState.IN_STRING
    if ch == '"':
        return ScanState.IN_STRING
    return ScanState.NORMAL


def find_json_objects(text: str) -> list[JsonSpan]:
    """
    Return the top-level brace-balanced ``{...}`` spans of ``text``.

    Braces inside double-quoted strings (including escaped quotes) do not
    count. A ``{`` that never closes is skipped and scanning resumes just
    after it.
    """
    spans: list[JsonSpan] = []
    n = len(text)
    i = 0
    while i < n:
        if text[i] != "{":
            i += 1
            continue

        start = i
        depth = 0
        state = ScanState.NORMAL
        end: int | None = None
        j = i
        while j < n:
            ch = text[j]
            if state is ScanState.NORMAL:
                if ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                    if depth == 0:
                        end = j + 1
                        break
            state = _step(state, ch)
            j += 1

        if end is None:
            i = start + 1
            continue
        spans.append(JsonSpan(start=start, end=end, text=text[start:end]))
        i = end
    return spans


# =============================================================================
# 3) JSON repair
# =============================================================================


def strip_json_comments(text: str) -> str:
    """Remove ``//`` line comments and ``/* */`` block comments outside strings."""
    out: list[str] = []
    quote: str | None = None
    escape = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote is not None:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
            i += 1
            continue

        if ch in ('"', "'"):
            quote = ch
            out.append(ch)
            i += 1
            continue

        nxt = text[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            i += 2
            while i < n and text[i] != "\n":
                i += 1
            continue
        if ch == "/" and nxt == "*":
            close = text.find("*/", i + 2)
            i = n if close == -1 else close + 2
            continue

        out.append(ch)
        i += 1
    return "".join(out)


def convert_single_quotes(text: str) -> str:
    """Rewrite single-quoted strings as double-quoted JSON strings."""
    out: list[str] = []
    in_double = False
    in_single = False
    escape = False
    for ch in text:
        if in_double:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_double = False
            continue

        if in_single:
            if escape:
                escape = False
                # \' is not a JSON escape; every other escape is kept as-is.
                out.append("'" if ch == "'" else "\\" + ch)
            elif ch == "\\":
                escape = True
            elif ch == "'":
                in_single = False
                out.append('"')
            elif ch == '"':
                out.append('\\"')
            else:
                out.append(ch)
            continue

        if ch == '"':
            in_double = True
        elif ch == "'":
            in_single = True
            out.append('"')
            continue
        out.append(ch)
    return "".join(out)


def _is_ident_start(ch: str) -> bool:
    return ch.isalpha() or ch in "_$"


def _is_ident_char(ch: str) -> bool:
    return ch.isalnum() or ch in "_$"


def quote_bare_keys(text: str) -> str:
    """``{name: "x"}`` -> ``{"name": "x"}``; identifiers not followed by ``:`` are kept."""
    out: list[str] = []
    in_string = False
    escape = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            i += 1
            continue

        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
            continue

        prev = text[i - 1] if i > 0 else "{"
        if _is_ident_start(ch) and (prev in "{," or prev.isspace()):
            j = i
            while j < n and _is_ident_char(text[j]):
                j += 1
            ident = text[i:j]
            k = j
            while k < n and text[k].isspace():
                k += 1
            if k < n and text[k] == ":":
                out.append(f'"{ident}"')
                i = j
                continue
            out.append(ident)
            i = j
            continue

        out.append(ch)
        i += 1
    return "".join(out)


def remove_trailing_commas(text: str) -> str:
    """Drop commas that directly precede ``}`` or ``]`` (whitespace allowed)."""
    out: list[str] = []
    in_string = False
    escape = False
    n = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            k = i + 1
            while k < n and text[k].isspace():
                k += 1
            if k < n and text[k] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def repair_json(text: str) -> str:
    """Apply every repair, in order: comments, quotes, bare keys, trailing commas."""
    text = strip_json_comments(text)
    text = convert_single_quotes(text)
    text = quote_bare_keys(text)
    return remove_trailing_commas(text)


def _snippet(text: str) -> str:
    if len(text) <= _ERROR_SNIPPET_CHARS:
        return text
    return text[:_ERROR_SNIPPET_CHARS] + "..."


def try_parse_json(text: str) -> ParseAttempt:
    """Parse ``text`` directly, then once more after ``repair_json``."""
    try:
        return ParseAttempt(value=json.loads(text))
    except json.JSONDecodeError:
        pass
    try:
        return ParseAttempt(value=json.loads(repair_json(text)), repaired=True)
    except json.JSONDecodeError as e:
        return ParseAttempt(error=str(e), original_json=_snippet(text))


def _is_tool_shaped(fragment: str) -> bool:
    return any(marker in fragment for marker in _TOOL_SHAPED_MARKERS)


# =============================================================================
# 4) Canonicalization
# =============================================================================


def _as_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip().startswith("{"):
        attempt = try_parse_json(raw)
        if attempt.ok and isinstance(attempt.value, dict):
            return attempt.value
    return {}


def canonical_call(obj: Any) -> ToolCall | None:
    """Map one parsed object onto a ToolCall, or None if it is not a call."""
    if not isinstance(obj, dict):
        return None

    fn = obj.get("function")
    if isinstance(fn, str) and fn:
        return ToolCall(name=fn, arguments=_as_arguments(obj.get("arguments")))

    tool = obj.get("tool")
    if isinstance(tool, str) and tool:
        args = obj.get("args")
        if isinstance(args, list):
            return ToolCall(name=tool, arguments={"_args": args})
        return ToolCall(name=tool, arguments=_as_arguments(args))

    name = obj.get("name")
    if isinstance(name, str) and name and obj.get("arguments") is not None:
        return ToolCall(name=name, arguments=_as_arguments(obj.get("arguments")))

    return None


def _calls_from_value(value: Any) -> list[ToolCall]:
    items: Iterable[Any] = value if isinstance(value, list) else [value]
    out: list[ToolCall] = []
    for item in items:
        call = canonical_call(item)
        if call is not None:
            out.append(call)
    return out


# =============================================================================
# 5) Fenced blocks
# =============================================================================


@dataclass(frozen=True)
class _Fence:
    start: int
    end: int
    content: str


def _line_offsets(text: str) -> list[int]:
    offsets = [0]
    for i, ch in enumerate(text):
        if ch == "\n":
            offsets.append(i + 1)
    return offsets


def find_fenced_blocks(text: str) -> list[_Fence]:
    """Fenced code blocks (any info string) with their character ranges."""
    md = MarkdownIt("commonmark")
    offsets = _line_offsets(text)
    fences: list[_Fence] = []
    for tok in md.parse(text):
        if tok.type != "fence" or not tok.map:
            continue
        first, last = tok.map
        start = offsets[first] if first < len(offsets) else len(text)
        end = offsets[last] if last < len(offsets) else len(text)
        fences.append(_Fence(start=start, end=end, content=tok.content.strip()))
    return fences


# =============================================================================
# 6) Extraction
# =============================================================================


def extract_tool_calls(text: str) -> ExtractionResult:
    """
    Recover tool calls from assistant text.

    Fenced blocks are tried first; a block that does not parse as a whole
    is scanned for objects. Objects outside fenced blocks are then scanned
    from the full text. Calls come back in document order, with repeats
    (same name and same arguments regardless of key order) dropped.
    """
    result = ExtractionResult()
    if not text:
        return result

    found: list[tuple[int, ToolCall]] = []

    def handle(fragment: str, position: int, report: bool = True) -> bool:
        attempt = try_parse_json(fragment)
        if not attempt.ok:
            if report and _is_tool_shaped(fragment):
                result.parse_errors.append(
                    ParseError(error=attempt.error or "", original_json=attempt.original_json)
                )
            return False
        for call in _calls_from_value(attempt.value):
            found.append((position, call))
        return True

    fences = find_fenced_blocks(text)
    for fence in fences:
        if not fence.content:
            continue
        if handle(fence.content, fence.start, report=False):
            continue
        inner = find_json_objects(fence.content)
        if not inner:
            handle(fence.content, fence.start)
            continue
        for span in inner:
            handle(span.text, fence.start + span.start)

    fence_starts = [f.start for f in fences]

    def inside_fence(pos: int) -> bool:
        idx = bisect_right(fence_starts, pos) - 1
        return idx >= 0 and pos < fences[idx].end

    for span in find_json_objects(text):
        if inside_fence(span.start):
            continue
        attempt = try_parse_json(span.text)
        if not attempt.ok:
            if _is_tool_shaped(span.text):
                result.parse_errors.append(
                    ParseError(error=attempt.error or "", original_json=attempt.original_json)
                )
            continue
        for call in _calls_from_value(attempt.value):
            found.append((span.start, call))

    found.sort(key=lambda item: item[0])
    seen: set[tuple[str, str]] = set()
    for _, call in found:
        sig = call.signature()
        if sig in seen:
            continue
        seen.add(sig)
        result.calls.append(call)

    if result.calls:
        log.debug("Parsed %d tool call(s) from text", len(result.calls))
    elif '"function"' in text or '"tool"' in text:
        log.debug("Text mentions a tool but no call parsed: %s", text[:200])
    return result


def looks_like_tool_call(text: str) -> bool:
    """
    True if ``text`` carries JSON shaped like a tool call.

    Used on the native path, where such JSON means the model wrote a call
    into its content instead of using structured tool calls.
    """
    for span in find_json_objects(text or ""):
        attempt = try_parse_json(span.text)
        if not attempt.ok or not isinstance(attempt.value, dict):
            continue
        obj = attempt.value
        if canonical_call(obj) is not None:
            return True
        fn = obj.get("function")
        if isinstance(fn, dict) and fn.get("name"):
            return True
        if isinstance(obj.get("tool_calls"), list):
            return True
        if isinstance(obj.get("name"), str) and "parameters" in obj:
            return True
    return False


__all__ = [
    "ExtractionResult",
    "JsonSpan",
    "ParseAttempt",
    "ParseError",
    "ScanState",
    "canonical_call",
    "convert_single_quotes",
    "extract_tool_calls",
    "find_fenced_blocks",
    "find_json_objects",
    "looks_like_tool_call",
    "quote_bare_keys",
    "remove_trailing_commas",
    "repair_json",
    "strip_json_comments",
    "try_parse_json",
]
