from __future__ import annotations

from collections import Counter
from dataclasses import asdict
from typing import Any

from turnflow.agent.models import PlanningHistoryEntry
from turnflow.core.config import settings
from turnflow.graph.turn.state import FINAL_OUTPUT_PREVIEW_LIMIT, TurnState, state_validation
from turnflow.graph.turn.utils import _clip_text


def build_turn_trace(state: TurnState) -> dict[str, Any]:
    history = [
        asdict(entry)
        for entry in list(state.get("planning_history") or [])
        if isinstance(entry, PlanningHistoryEntry)
    ]
    step_statuses = Counter(str(entry.get("status") or "unknown") for entry in history)
    return {
        "engine": str(state.get("strategy") or "graph"),
        "stop_reason": str(state.get("stop_reason") or "completed"),
        "iterations": int(state.get("iteration") or 0),
        "max_iterations": int(state.get("max_iterations") or 0),
        "node_iterations": dict(state.get("node_iterations") or {}),
        "tools_used": list(state.get("tools_used") or []),
        "plan": list(state.get("plan") or []),
        "step_statuses": dict(step_statuses),
        "steps": history,
        "validation_errors": list(state_validation(state).errors),
        "degraded": bool(state.get("degraded")),
        "cancelled": bool(state.get("cancelled")),
        "error": state.get("error") or None,
        "final_output_preview": _clip_text(
            state.get("final_output"), limit=FINAL_OUTPUT_PREVIEW_LIMIT
        ),
        "stage_timings_ms": dict(state.get("stage_timings_ms") or {}),
        "stage_budgets_ms": {
            "model": int(settings.TURN_TIMEOUT_MODEL_MS),
            "tool": int(settings.TURN_TIMEOUT_TOOL_MS),
            "total": int(settings.TURN_TIMEOUT_TOTAL_MS),
        },
    }
