from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from typing import Any

from turnflow.agent.models import TurnMessage
from turnflow.graph.turn.utils import _clip_text

TRUNCATION_MARKER = "\n... (output truncated)"
NO_TOOLS_EXECUTED = "No tools have been executed yet."
_ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}


def merge_messages(
    current: Sequence[TurnMessage] | None,
    update: Sequence[TurnMessage] | TurnMessage | None,
) -> list[TurnMessage]:
    """Append ``update`` to ``current`` and drop duplicates.

    Duplicates share ``(role, content, name-or-call-id)``. The scan runs from the
    newest entry backwards and keeps the first hit, so the most recent copy
    survives and relative order is preserved.
    """
    if isinstance(update, TurnMessage):
        update = [update]
    combined = [*(current or []), *(update or [])]
    seen: set[tuple[str, str, str]] = set()
    kept: list[TurnMessage] = []
    for message in reversed(combined):
        key = message.dedup_key
        if key in seen:
            continue
        seen.add(key)
        kept.append(message)
    kept.reverse()
    return kept


def last_user_message(messages: Iterable[TurnMessage]) -> str:
    last = ""
    for message in messages:
        if message.role == "user" and message.content.strip():
            last = message.content
    return last


def stringify_output(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def clip_tool_output(text: str, limit: int) -> str:
    if limit > 0 and len(text) > limit:
        return text[:limit] + TRUNCATION_MARKER
    return text


def render_chat_history(messages: Sequence[TurnMessage], max_chars: int) -> str:
    """Render user/assistant/system lines, dropping the oldest ones past ``max_chars``.

    The newest line is always kept, clipped when it alone exceeds the limit.
    """
    lines: list[str] = []
    used = 0
    for message in reversed(list(messages)):
        label = _ROLE_LABELS.get(message.role)
        if label is None:
            continue
        line = f"{label}: {message.content}"
        cost = len(line) + (1 if lines else 0)
        if max_chars > 0 and used + cost > max_chars:
            if not lines:
                lines.append(_clip_text(line, limit=max(1, max_chars - 3)))
            break
        lines.append(line)
        used += cost
    lines.reverse()
    return "\n".join(lines)


def render_execution_history(messages: Sequence[TurnMessage], max_tool_chars: int) -> str:
    blocks: list[str] = []
    for message in messages:
        if message.role != "tool":
            continue
        content = clip_tool_output(message.content, max_tool_chars)
        blocks.append(f"Tool: {message.name or 'unknown'}\nResult: {content}")
    return "\n\n---\n\n".join(blocks) or NO_TOOLS_EXECUTED
