from __future__ import annotations

import time
import uuid
from typing import Any

import structlog

from turnflow.agent.errors import (
    ERROR_CODE_MISSING_TOOL,
    ERROR_CODE_NODE_FAILED,
    ERROR_CODE_TOOL_FAILED,
    ERROR_CODE_TOOL_NOT_REGISTERED,
    ERROR_CODE_TOOL_TIMEOUT,
    LanguageModelError,
)
from turnflow.agent.models import (
    InterpretationOutput,
    PlanningHistoryEntry,
    ReasonOutput,
    ToolExecutionResult,
    ToolInvocation,
    TurnEvent,
    TurnMessage,
    ValidationState,
)
from turnflow.core.config import settings
from turnflow.graph.turn.messages import clip_tool_output, merge_messages, stringify_output
from turnflow.graph.turn.state import (
    ERROR_DETAIL_LIMIT,
    PHASE_EXECUTE,
    TurnState,
    state_validation,
)
from turnflow.graph.turn.utils import (
    _clip_text,
    state_get_dict,
    state_get_int,
    state_get_list,
    state_get_str,
    tool_dedup_key,
    track_node_timing,
    with_timeout,
)

from .common import invoke_structured, node_context
from .types import TurnComponents

logger = structlog.get_logger(__name__)


def _ceiling_update(state: TurnState) -> dict[str, Any]:
    max_iterations = state_get_int(state, "max_iterations", 1)
    understanding = state_get_str(state, "working_understanding")
    message = f"I reached the limit of {max_iterations} steps before finishing."
    if understanding:
        message += f" Here is what I have so far: {understanding}"
    return {
        "phase": PHASE_EXECUTE,
        "outcome": "complete",
        "is_completed": True,
        "final_output": message,
        "stop_reason": "max_iterations_reached",
        "retry_tool_call": False,
    }


def _validation_error(state: TurnState, error: str) -> ValidationState:
    current = state_validation(state)
    return ValidationState(errors=[*current.errors, error], corrections=list(current.corrections))


@track_node_timing(PHASE_EXECUTE)
async def execute_node(state: TurnState, components: TurnComponents) -> dict[str, Any]:
    iteration = state_get_int(state, "iteration", 0)
    if iteration + 1 > state_get_int(state, "max_iterations", 1):
        return _ceiling_update(state)

    iteration += 1
    base: dict[str, Any] = {
        "phase": PHASE_EXECUTE,
        "iteration": iteration,
        "retry_tool_call": False,
        "requires_validation": False,
        "stop_reason": "",
    }
    chat_id = state_get_str(state, "chat_id")
    try:
        current_tool = state_get_str(state, "current_tool")
        if state.get("retry_tool_call") and current_tool:
            invocation = ToolInvocation(
                name=current_tool,
                params=state_get_dict(state, "current_params"),
            )
            logger.info("tool_call_retry", chat_id=chat_id, tool=current_tool, iteration=iteration)
        else:
            decision = await invoke_structured(
                components, "reason", node_context(state, components), ReasonOutput
            )
            if decision.next_action == "respond":
                response = str(decision.response or "").strip()
                updates: dict[str, Any] = {
                    **base,
                    "outcome": "complete",
                    "working_understanding": decision.reasoning
                    or state_get_str(state, "working_understanding"),
                }
                if response:
                    updates["is_completed"] = True
                    updates["final_output"] = response
                return updates

            tool_name = str(decision.tool or "").strip()
            if not tool_name:
                return {
                    **base,
                    "outcome": "continue",
                    "requires_validation": True,
                    "validation": _validation_error(
                        state, f"{ERROR_CODE_MISSING_TOOL}: reasoning chose use_tool without a tool"
                    ),
                }
            invocation = ToolInvocation(name=tool_name, params=dict(decision.parameters))

        return {**base, **await _dispatch(state, components, invocation, iteration)}
    except Exception as exc:
        detail = _clip_text(str(exc) or type(exc).__name__, limit=ERROR_DETAIL_LIMIT)
        logger.error(
            "execute_node_failed",
            chat_id=chat_id,
            iteration=iteration,
            error=detail,
            exc_info=settings.TURN_LOG_EXC_INFO,
        )
        return {
            **base,
            "outcome": "fail",
            "error": f"{ERROR_CODE_NODE_FAILED}: {detail}",
            "stop_reason": "execute_failed",
        }


async def _dispatch(
    state: TurnState,
    components: TurnComponents,
    invocation: ToolInvocation,
    iteration: int,
) -> dict[str, Any]:
    chat_id = state_get_str(state, "chat_id")
    name = invocation.name
    key = tool_dedup_key(name, invocation.params)

    if key in state_get_list(state, "used_tool_keys"):
        logger.info("tool_call_deduplicated", chat_id=chat_id, tool=name, iteration=iteration)
        return {
            "outcome": "continue",
            "stop_reason": "duplicate_tool_call",
            "messages": [
                TurnMessage(
                    role="system",
                    content=(
                        f"Skipped {name}: it already ran this turn with the same parameters. "
                        "Use its earlier result or choose a different action."
                    ),
                    name=name,
                )
            ],
        }

    if components.tools.get_tool(name) is None:
        return {
            "outcome": "continue",
            "requires_validation": True,
            "current_tool": name,
            "current_params": dict(invocation.params),
            "validation": _validation_error(state, f"{ERROR_CODE_TOOL_NOT_REGISTERED}: {name}"),
        }

    result, duration_ms = await _run_tool(state, components, invocation, iteration)
    output = stringify_output(result.data) if result.success else f"Error: {result.error}"
    tool_message = TurnMessage(role="tool", content=output, name=name, call_id=uuid.uuid4().hex)
    history_entry = PlanningHistoryEntry(
        action=f"tool:{name}",
        step_name=PHASE_EXECUTE,
        status="completed" if result.success else "failed",
        timestamp=time.time(),
        result={"duration_ms": duration_ms} if result.success else None,
        error=result.error,
        iteration=iteration,
    )
    updates: dict[str, Any] = {
        "current_tool": name,
        "current_params": dict(invocation.params),
        "tools_used": [name],
        "used_tool_keys": [key],
        "last_tool_output": result.data if result.success else result.error,
        "messages": [tool_message],
        "planning_history": [history_entry],
    }

    if not result.success:
        updates.update(
            {
                "outcome": "continue",
                "requires_validation": True,
                "validation": _validation_error(
                    state, f"{ERROR_CODE_TOOL_FAILED}: {name}: {result.error}"
                ),
            }
        )
        return updates

    plan = state_get_list(state, "plan")
    updates["plan_cursor"] = min(state_get_int(state, "plan_cursor", 0) + 1, len(plan))

    interim = {
        **state,
        **updates,
        "messages": merge_messages(state_get_list(state, "messages"), [tool_message]),
    }
    try:
        interpretation = await invoke_structured(
            components,
            "interpret",
            node_context(
                interim,
                components,
                tool_output=clip_tool_output(output, components.tool_output_max_chars),
            ),
            InterpretationOutput,
        )
    except LanguageModelError as exc:
        # The tool already ran, so its bookkeeping is kept.
        detail = _clip_text(str(exc) or type(exc).__name__, limit=ERROR_DETAIL_LIMIT)
        logger.error("tool_interpretation_failed", chat_id=chat_id, tool=name, error=detail)
        updates.update(
            {
                "outcome": "fail",
                "error": f"{ERROR_CODE_NODE_FAILED}: interpretation of {name} failed: {detail}",
                "stop_reason": "execute_failed",
            }
        )
        return updates
    updates["working_understanding"] = interpretation.understanding.strip() or state_get_str(
        state, "working_understanding"
    )
    if interpretation.next_action == "respond":
        updates["outcome"] = "complete"
        response = str(interpretation.response or "").strip()
        if response:
            updates["is_completed"] = True
            updates["final_output"] = response
    else:
        updates["outcome"] = "continue"
    return updates


async def _run_tool(
    state: TurnState,
    components: TurnComponents,
    invocation: ToolInvocation,
    iteration: int,
) -> tuple[ToolExecutionResult, float]:
    chat_id = state_get_str(state, "chat_id")
    components.recorder.emit(
        TurnEvent(
            kind="tool_started",
            chat_id=chat_id,
            iteration=iteration,
            timestamp=time.time(),
            phase=PHASE_EXECUTE,
            tool=invocation.name,
        )
    )
    t_tool = time.perf_counter()
    metadata = {
        "chat_id": chat_id,
        "trace_id": state_get_str(state, "trace_id"),
        "iteration": iteration,
    }
    try:
        result = await with_timeout(
            components.tools.execute(invocation.name, dict(invocation.params), metadata),
            components.tool_timeout_ms,
        )
    except TimeoutError:
        result = ToolExecutionResult(
            success=False,
            error=f"{ERROR_CODE_TOOL_TIMEOUT}: {components.tool_timeout_ms}ms",
        )
    except Exception as exc:
        logger.error("tool_execution_failed", tool=invocation.name, error=str(exc))
        result = ToolExecutionResult(success=False, error=str(exc) or type(exc).__name__)
    duration_ms = round((time.perf_counter() - t_tool) * 1000.0, 2)

    components.recorder.emit(
        TurnEvent(
            kind="tool_completed" if result.success else "error",
            chat_id=chat_id,
            iteration=iteration,
            timestamp=time.time(),
            phase=PHASE_EXECUTE,
            duration_ms=duration_ms,
            tool=invocation.name,
            success=result.success,
            error=result.error,
        )
    )
    return result, duration_ms
