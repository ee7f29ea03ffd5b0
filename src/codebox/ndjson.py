"""Parser for the agent CLI's ``--output-format stream-json`` lines.

Each stdout line is one JSON object::

    {"type": "system", "subtype": "init", ...}
    {"type": "assistant", "message": {"content": [...]}}
    {"type": "result", "subtype": "success", "result": "...", "is_error": false, ...}

Anything else (blank lines, malformed JSON, unknown types) parses to None.
"""

from __future__ import annotations

import json
import math
from typing import Any

from codebox.models import AssistantEvent, ResultEvent, StreamEvent, SystemEvent


def _content_blocks(msg: dict[str, Any]) -> list[dict[str, Any]]:
    message = msg.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def _assistant_text(msg: dict[str, Any]) -> str:
    """Concatenate text blocks and append a bracketed list of tool names."""
    blocks = _content_blocks(msg)
    text = "".join(str(b.get("text", "")) for b in blocks if b.get("type") == "text")
    tools = [str(b.get("name", "")) for b in blocks if b.get("type") == "tool_use"]
    if tools:
        text += f" [{', '.join(tools)}]"
    return text


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    # json.loads accepts NaN, Infinity and overflowing literals like 1e400.
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def parse_ndjson_line(line: str) -> StreamEvent | None:
    """Parse one NDJSON line into a typed event, or None. Never raises."""
    if not line or not line.strip():
        return None

    try:
        msg = json.loads(line)
    except (ValueError, TypeError):
        return None
    if not isinstance(msg, dict):
        return None

    kind = msg.get("type")
    if kind == "system":
        subtype = msg.get("subtype")
        return SystemEvent(subtype=subtype if isinstance(subtype, str) else None)

    if kind == "assistant":
        return AssistantEvent(text=_assistant_text(msg))

    if kind == "result":
        result = msg.get("result")
        subtype = msg.get("subtype")
        return ResultEvent(
            subtype=subtype if isinstance(subtype, str) else None,
            text=result if isinstance(result, str) else None,
            is_error=msg.get("is_error") is True,
            duration_ms=_as_int(msg.get("duration_ms")),
            num_turns=_as_int(msg.get("num_turns")),
            cost_usd=_as_float(msg.get("total_cost_usd")),
        )

    return None
