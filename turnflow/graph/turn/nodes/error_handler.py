from __future__ import annotations

from typing import Any

import structlog

from turnflow.agent.errors import ERROR_CODE_NODE_FAILED, merge_error_codes
from turnflow.agent.models import ValidationState
from turnflow.graph.turn.state import ERROR_DETAIL_LIMIT, PHASE_ERROR, TurnState, state_validation
from turnflow.graph.turn.utils import _clip_text, state_get_str, track_node_timing

from .types import TurnComponents

logger = structlog.get_logger(__name__)


@track_node_timing(PHASE_ERROR)
async def error_handler_node(state: TurnState, components: TurnComponents) -> dict[str, Any]:
    """Turn a node failure into a terminal answer. Never routes back into planning."""
    error = state_get_str(state, "error") or ERROR_CODE_NODE_FAILED
    detail = _clip_text(error, limit=ERROR_DETAIL_LIMIT)
    logger.warning("turn_error_handled", chat_id=state_get_str(state, "chat_id"), error=detail)

    message = f"Something went wrong while working on your request: {detail}"
    understanding = state_get_str(state, "working_understanding")
    if understanding:
        message += f"\n\nWhat I had established so far: {understanding}"

    validation = state_validation(state)
    return {
        "phase": PHASE_ERROR,
        "outcome": "complete",
        "is_completed": True,
        "final_output": message,
        "stop_reason": state_get_str(state, "stop_reason") or ERROR_CODE_NODE_FAILED,
        "validation": ValidationState(
            errors=merge_error_codes(list(validation.errors), [error]),
            corrections=list(validation.corrections),
        ),
    }
