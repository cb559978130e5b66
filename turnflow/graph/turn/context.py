from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from typing import Any

from turnflow.agent.models import TurnMessage
from turnflow.core.config import settings
from turnflow.graph.turn.messages import (
    last_user_message,
    merge_messages,
    render_chat_history,
    render_execution_history,
)
from turnflow.graph.turn.state import state_validation

_MESSAGES_KEY = "messages"


def _layer_messages(layer: Mapping[str, Any] | None) -> list[TurnMessage]:
    raw = (layer or {}).get(_MESSAGES_KEY)
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, TurnMessage)]


def _plain(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return value


def resolve_context(
    global_context: Mapping[str, Any] | None,
    session_context: Mapping[str, Any] | None,
    conversation_context: Mapping[str, Any] | None,
    turn_context: Mapping[str, Any] | None,
    *,
    max_history_chars: int | None = None,
    max_tool_chars: int | None = None,
) -> dict[str, Any]:
    """Flatten the four context layers into one map.

    The most specific layer wins on key collisions (turn > conversation >
    session > global). ``None`` values are treated as absent. Messages found in
    the conversation and turn layers are rendered into ``chat_history`` and
    ``execution_history`` instead of being copied; ``user_message`` is always
    present.
    """
    resolved: dict[str, Any] = {}
    for layer in (global_context, session_context, conversation_context, turn_context):
        for key, value in dict(layer or {}).items():
            if key == _MESSAGES_KEY or value is None:
                continue
            resolved[str(key)] = _plain(value)

    history = merge_messages(_layer_messages(conversation_context), _layer_messages(turn_context))
    history_limit = (
        settings.TURN_CHAT_HISTORY_MAX_CHARS if max_history_chars is None else max_history_chars
    )
    tool_limit = settings.TURN_TOOL_OUTPUT_MAX_CHARS if max_tool_chars is None else max_tool_chars
    resolved["chat_history"] = render_chat_history(history, history_limit)
    resolved["execution_history"] = render_execution_history(history, tool_limit)

    user_message = str(resolved.get("user_message") or "").strip()
    if not user_message:
        user_message = last_user_message(history)
    resolved["user_message"] = user_message
    return resolved


def turn_layer(state: Mapping[str, Any]) -> dict[str, Any]:
    validation = state_validation(state)
    return {
        "chat_id": state.get("chat_id"),
        "user_message": state.get("user_message"),
        "objective": state.get("objective") or None,
        "working_understanding": state.get("working_understanding") or None,
        "plan": list(state.get("plan") or []),
        "plan_cursor": state.get("plan_cursor"),
        "tools_used": list(state.get("tools_used") or []),
        "current_tool": state.get("current_tool"),
        "current_params": state.get("current_params"),
        "validation_errors": list(validation.errors) or None,
        "memory": state.get("memory_digest") or None,
        "error": state.get("error") or None,
        "iteration": state.get("iteration"),
        "max_iterations": state.get("max_iterations"),
        _MESSAGES_KEY: list(state.get(_MESSAGES_KEY) or []),
    }


def resolve_for_state(
    state: Mapping[str, Any],
    global_context: Mapping[str, Any] | None,
    *,
    max_tool_chars: int | None = None,
) -> dict[str, Any]:
    return resolve_context(
        global_context,
        state.get("session_context"),
        state.get("conversation_context"),
        turn_layer(state),
        max_tool_chars=max_tool_chars,
    )
