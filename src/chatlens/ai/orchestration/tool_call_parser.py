"""Fallback parsing for models that write tool calls and reasoning as text.

Some models ignore the structured tool-call channel and instead emit
``<tool_call>{"name": ..., "arguments": ...}</tool_call>`` tags (or the
``<|tool_calls_begin|>`` delimited format) inside their reply, often next to
``<think>...</think>`` reasoning blocks. The helpers here recover both.

Markers are located on a glyph-normalized copy of the text; the translation
maps every glyph to exactly one character so offsets carry back to the
original, which is where tag bodies are sliced from. Argument text therefore
keeps any full-width punctuation the model wrote.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Iterable

from ..ai_types import ToolCall
from ...utils.logging import truncate_for_log

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "THINK_BLOCK_RE",
    "TOOL_CALL_TAG_RE",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "extract_thinking",
    "find_tool_call_marker",
    "has_tool_call_marker",
    "partial_marker_length",
    "parse_tag_tool_calls",
    "strip_tool_call_markup",
    "normalize_tool_marker_text",
    "parsed_tool_call_id",
    "try_parse_json_block",
]

LOGGER = logging.getLogger(__name__)

# Normalizes stylized glyphs inside <|tool ...|> markers emitted by some models.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        ord("＜"): "<",
        ord("﹤"): "<",
        ord("〈"): "<",
        ord("＞"): ">",
        ord("﹥"): ">",
        ord("〉"): ">",
        ord("｜"): "|",
        ord("￨"): "|",
        ord("│"): "|",
        ord("︱"): "|",
        ord("︲"): "|",
        ord("▁"): "_",
        ord("\u00a0"): " ",
        ord("\u2002"): " ",
        ord("\u2003"): " ",
        ord("\u2009"): " ",
        ord("\u200b"): " ",
        ord("\u202f"): " ",
        ord("\u3000"): " ",
        ord("\ufeff"): " ",
    }
)

THINK_BLOCK_RE = re.compile(r"<think>(?P<body>.*?)</think>", re.IGNORECASE | re.DOTALL)

TOOL_CALL_TAG_RE = re.compile(
    r"<\s*tool_call\s*>(?P<body>.*?)<\s*/\s*tool_call\s*>",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALLS_BLOCK_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>(?P<body>.*?)<\s*\|?\s*tool[\s_]*calls[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    r"<\s*\|?\s*tool[\s_]*call[\s_]*begin\s*\|?\s*>(?P<name>.*?)<\s*\|?\s*tool[\s_]*sep\s*\|?\s*>(?P<args>.*?)<\s*\|?\s*tool[\s_]*call[\s_]*end\s*\|?\s*>",
    re.IGNORECASE | re.DOTALL,
)

_MARKER_RE = re.compile(
    r"<\s*tool_call\s*>|<\s*\|?\s*tool[\s_]*calls[\s_]*begin\s*\|?\s*>",
    re.IGNORECASE,
)

# Openers with spacing, pipes and underscores removed, as compared by partial_marker_length.
_COMPACT_OPENERS = ("<toolcall>", "<toolcallsbegin>")
_MARKER_FILLER_RE = re.compile(r"[\s|_]+")
_PARTIAL_LOOKBACK = 40


def normalize_tool_marker_text(text: str) -> str:
    """Normalize stylized Unicode glyphs to ASCII equivalents for tool parsing."""
    return text.translate(TOOL_MARKER_TRANSLATION)


# -----------------------------------------------------------------------------
# Reasoning blocks
# -----------------------------------------------------------------------------


def extract_thinking(text: str) -> tuple[str, str]:
    """Split ``<think>`` blocks out of ``text``.

    Returns:
        ``(thinking, remainder)``. ``thinking`` joins the trimmed inner texts
        with newlines; ``remainder`` is the trimmed text without the blocks.
        Text without any block comes back unchanged with empty thinking.
    """
    if not text:
        return "", text or ""
    parts: list[str] = []

    def _collect(match: re.Match[str]) -> str:
        parts.append(match.group("body").strip())
        return ""

    remainder = THINK_BLOCK_RE.sub(_collect, text)
    if not parts:
        return "", text
    thinking = "\n".join(part for part in parts if part)
    return thinking, remainder.strip()


# -----------------------------------------------------------------------------
# Tool call markers
# -----------------------------------------------------------------------------


def find_tool_call_marker(text: str) -> int:
    """Return the offset of the first tool-call opener in ``text``, or -1."""
    if not text:
        return -1
    match = _MARKER_RE.search(normalize_tool_marker_text(text))
    return match.start() if match else -1


def has_tool_call_marker(text: str) -> bool:
    return find_tool_call_marker(text) >= 0


def partial_marker_length(text: str) -> int:
    """Length of the trailing fragment of ``text`` that could still open a tool-call marker.

    Both ``<tool_call>`` and the ``<|tool_calls_begin|>`` opener count, in any
    spacing or glyph variant the full-marker patterns accept. Streaming callers
    hold that many trailing characters back until the next delta shows whether
    a marker is being written.
    """
    if not text:
        return 0
    start = max(0, len(text) - _PARTIAL_LOOKBACK)
    tail = normalize_tool_marker_text(text[start:])
    index = tail.rfind("<")
    if index < 0:
        return 0
    fragment = _MARKER_FILLER_RE.sub("", tail[index:]).lower()
    if any(len(fragment) < len(opener) and opener.startswith(fragment) for opener in _COMPACT_OPENERS):
        return len(tail) - index
    return 0


def parse_tag_tool_calls(text: str) -> list[ToolCall] | None:
    """Recover tool calls written as text.

    Each ``<tool_call>`` body must be a JSON object with a ``name`` and an
    ``arguments`` key. Bodies that fail to parse are logged and skipped.

    Returns:
        The parsed calls in textual order, or ``None`` when none were valid.
    """
    if not text:
        return None
    normalized = normalize_tool_marker_text(text)
    calls: list[ToolCall] = []
    for match in TOOL_CALL_TAG_RE.finditer(normalized):
        body = text[match.start("body"):match.end("body")]
        call = _parse_tag_body(body, len(calls))
        if call is not None:
            calls.append(call)
    calls.extend(_parse_delimited_calls(text, normalized, start_index=len(calls)))
    return calls or None


def strip_tool_call_markup(text: str) -> str:
    """Remove tool-call tags and delimited blocks, keeping the surrounding prose."""
    if not text:
        return text or ""
    normalized = normalize_tool_marker_text(text)
    spans = [match.span() for match in TOOL_CALL_TAG_RE.finditer(normalized)]
    spans.extend(match.span() for match in TOOL_CALLS_BLOCK_RE.finditer(normalized))
    return _remove_spans(text, spans).strip()


def parsed_tool_call_id(name: str, index: int) -> str:
    """Generate a unique tool call ID for parsed tool calls."""
    return f"fallback-{name}-{index}-{uuid.uuid4().hex[:8]}"


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    if not text:
        return None
    try:
        result = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(result, dict):
        return result
    return None


def _parse_tag_body(body: str, index: int) -> ToolCall | None:
    payload = try_parse_json_block(body.strip())
    if payload is None:
        LOGGER.warning("Skipping unparseable tool_call tag: %s", truncate_for_log(body.strip()))
        return None
    name = payload.get("name")
    if not isinstance(name, str) or not name.strip() or "arguments" not in payload:
        LOGGER.warning("Skipping tool_call tag without name/arguments: %s", truncate_for_log(body.strip()))
        return None
    name = name.strip()
    return ToolCall(
        id=parsed_tool_call_id(name, index),
        name=name,
        arguments=_arguments_text(payload["arguments"]),
    )


def _parse_delimited_calls(text: str, normalized: str, *, start_index: int) -> list[ToolCall]:
    calls: list[ToolCall] = []
    index = start_index
    for block in TOOL_CALLS_BLOCK_RE.finditer(normalized):
        for entry in TOOL_CALL_ENTRY_RE.finditer(normalized, block.start("body"), block.end("body")):
            name = text[entry.start("name"):entry.end("name")].strip().strip("\"' \t\n\r")
            args_raw = text[entry.start("args"):entry.end("args")].strip()
            if not name:
                LOGGER.warning("Skipping delimited tool call without a name")
                continue
            calls.append(
                ToolCall(id=parsed_tool_call_id(name, index), name=name, arguments=args_raw or "{}")
            )
            index += 1
    return calls


def _arguments_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return "{}"
    return json.dumps(value, ensure_ascii=False)


def _remove_spans(text: str, spans: Iterable[tuple[int, int]]) -> str:
    pieces: list[str] = []
    cursor = 0
    for start, end in sorted(spans):
        if start < cursor:
            start = cursor
        if start >= end:
            continue
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)
