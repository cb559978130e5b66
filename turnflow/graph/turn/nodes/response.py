from __future__ import annotations

from typing import Any

import structlog

from turnflow.agent.errors import LanguageModelError
from turnflow.agent.models import ResponseOutput
from turnflow.graph.turn.messages import last_user_message
from turnflow.graph.turn.state import (
    DEFAULT_COMPLETION_MESSAGE,
    PHASE_RESPOND,
    TurnState,
    state_validation,
)
from turnflow.graph.turn.utils import state_get_list, state_get_str, track_node_timing

from .common import invoke_structured, node_context
from .types import TurnComponents

logger = structlog.get_logger(__name__)


def fallback_message(state: TurnState) -> str:
    errors = state_validation(state).errors
    if not errors:
        return DEFAULT_COMPLETION_MESSAGE
    return f"{DEFAULT_COMPLETION_MESSAGE}\n\nUnresolved issues: {'; '.join(errors)}"


@track_node_timing(PHASE_RESPOND)
async def respond_node(state: TurnState, components: TurnComponents) -> dict[str, Any]:
    done: dict[str, Any] = {
        "phase": PHASE_RESPOND,
        "outcome": "complete",
        "is_completed": True,
    }
    existing = state_get_str(state, "final_output")
    if existing:
        return {**done, "final_output": existing}

    chat_id = state_get_str(state, "chat_id")
    messages = state_get_list(state, "messages")
    query = last_user_message(messages) or state_get_str(state, "user_message")
    final_output = ""
    try:
        digest = await components.memory.get_relevant_context(
            chat_id,
            query,
            objective=state_get_str(state, "objective") or None,
            recent_messages=messages,
        )
        context = node_context({**state, "memory_digest": digest}, components, user_query=query)
        output = await invoke_structured(components, "respond", context, ResponseOutput)
        final_output = output.response.strip()
    except LanguageModelError as exc:
        logger.warning("response_generation_failed", chat_id=chat_id, error=str(exc))

    if not final_output:
        final_output = fallback_message(state)
    return {**done, "final_output": final_output}
