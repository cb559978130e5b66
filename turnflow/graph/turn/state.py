from __future__ import annotations

import operator
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any, NotRequired, TypedDict

from turnflow.agent.models import (
    NodeOutcome,
    PlanningHistoryEntry,
    PlanStep,
    TurnMessage,
    ValidationState,
)
from turnflow.core.config import Settings
from turnflow.graph.turn.messages import merge_messages

HARD_MAX_ITERATIONS = 50
HARD_MAX_NODE_ITERATIONS = 20
FINAL_OUTPUT_PREVIEW_LIMIT = 180
ERROR_DETAIL_LIMIT = 300

PHASE_ANALYZE = "analyze"
PHASE_EXECUTE = "execute"
PHASE_VALIDATE = "validate"
PHASE_RESPOND = "respond"
PHASE_ERROR = "error_handler"

DEFAULT_COMPLETION_MESSAGE = "I have finished working on your request."


def union_ordered(current: list[str] | None, update: list[str] | None) -> list[str]:
    out = list(current or [])
    for item in list(update or []):
        if item not in out:
            out.append(item)
    return out


def merge_counters(
    current: dict[str, int] | None, update: dict[str, int] | None
) -> dict[str, int]:
    return {**(current or {}), **(update or {})}


@dataclass(frozen=True)
class TurnLimits:
    max_iterations: int
    max_node_iterations: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, source: Settings) -> "TurnLimits":
        return cls(
            max_iterations=_clamp(source.TURN_MAX_ITERATIONS, HARD_MAX_ITERATIONS),
            max_node_iterations={
                PHASE_EXECUTE: _clamp(source.TURN_MAX_EXECUTE_ITERATIONS, HARD_MAX_NODE_ITERATIONS),
                PHASE_VALIDATE: _clamp(
                    source.TURN_MAX_VALIDATE_ITERATIONS, HARD_MAX_NODE_ITERATIONS
                ),
            },
        )


def _clamp(value: object, hard_cap: int) -> int:
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        parsed = 1
    return max(1, min(hard_cap, parsed))


class TurnState(TypedDict):
    chat_id: str
    trace_id: str
    start_time: float
    user_message: str
    messages: Annotated[list[TurnMessage], merge_messages]
    objective: str
    working_understanding: str
    plan: list[PlanStep]
    plan_cursor: int
    tools_used: Annotated[list[str], union_ordered]
    used_tool_keys: Annotated[list[str], union_ordered]
    validation: ValidationState
    requires_validation: bool
    iteration: int
    node_iterations: Annotated[dict[str, int], merge_counters]
    max_iterations: int
    max_node_iterations: dict[str, int]
    planning_history: Annotated[list[PlanningHistoryEntry], operator.add]
    is_completed: bool
    session_context: dict[str, Any]
    conversation_context: dict[str, Any]
    phase: NotRequired[str]
    outcome: NotRequired[NodeOutcome]
    current_tool: NotRequired[str | None]
    current_params: NotRequired[dict[str, Any] | None]
    retry_tool_call: NotRequired[bool]
    last_tool_output: NotRequired[Any]
    memory_digest: NotRequired[str]
    extracted_entities: NotRequired[dict[str, Any] | None]
    final_output: NotRequired[str | None]
    error: NotRequired[str | None]
    cancelled: NotRequired[bool]
    stop_reason: NotRequired[str]
    degraded: NotRequired[bool]
    strategy: NotRequired[str]
    stage_timings_ms: NotRequired[dict[str, float]]


def state_validation(state: Mapping[str, Any]) -> ValidationState:
    value = state.get("validation")
    if isinstance(value, ValidationState):
        return value
    return ValidationState()
