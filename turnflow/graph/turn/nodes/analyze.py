from __future__ import annotations

from typing import Any

import structlog

from turnflow.agent.errors import ERROR_CODE_ANALYSIS_FAILED
from turnflow.agent.models import AnalysisOutput, ValidationState
from turnflow.core.config import settings
from turnflow.graph.turn.state import ERROR_DETAIL_LIMIT, PHASE_ANALYZE, TurnState
from turnflow.graph.turn.utils import _clip_text, state_get_list, state_get_str, track_node_timing

from .common import invoke_structured, node_context
from .types import TurnComponents

logger = structlog.get_logger(__name__)


@track_node_timing(PHASE_ANALYZE)
async def analyze_node(state: TurnState, components: TurnComponents) -> dict[str, Any]:
    chat_id = state_get_str(state, "chat_id")
    user_message = state_get_str(state, "user_message")
    try:
        digest = await components.memory.get_relevant_context(
            chat_id,
            user_message,
            recent_messages=state_get_list(state, "messages"),
        )
        context = node_context({**state, "memory_digest": digest}, components)
        analysis = await invoke_structured(components, "analyze", context, AnalysisOutput)
    except Exception as exc:
        # No plan exists to recover from, so analysis failure ends the turn.
        detail = _clip_text(str(exc) or type(exc).__name__, limit=ERROR_DETAIL_LIMIT)
        logger.error(
            "analysis_failed",
            chat_id=chat_id,
            error=detail,
            exc_info=settings.TURN_LOG_EXC_INFO,
        )
        return {
            "phase": PHASE_ANALYZE,
            "outcome": "complete",
            "is_completed": True,
            "final_output": f"I could not analyze your request: {detail}",
            "validation": ValidationState(errors=[f"{ERROR_CODE_ANALYSIS_FAILED}: {detail}"]),
            "stop_reason": ERROR_CODE_ANALYSIS_FAILED,
        }

    understanding = analysis.understanding.strip() or user_message
    plan = [step for step in analysis.initial_plan if step]
    logger.info(
        "analysis_completed",
        chat_id=chat_id,
        plan_steps=len(plan),
        has_entities=bool(analysis.extracted_entities),
    )
    return {
        "phase": PHASE_ANALYZE,
        "outcome": "continue",
        "objective": understanding,
        "working_understanding": understanding,
        "plan": plan,
        "plan_cursor": 0,
        "memory_digest": digest,
        "extracted_entities": analysis.extracted_entities,
    }
