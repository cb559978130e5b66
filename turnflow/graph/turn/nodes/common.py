from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from turnflow.agent.errors import LanguageModelError
from turnflow.graph.turn.context import resolve_for_state
from turnflow.graph.turn.utils import with_timeout

from .types import TurnComponents

M = TypeVar("M", bound=BaseModel)

CANCELLED_MESSAGE = "The request was cancelled before it finished."
TIMEOUT_MESSAGE = "The request took too long and was stopped before it finished."
TIMEOUT_STOP_REASON = "turn_timeout"


async def invoke_structured(
    components: TurnComponents,
    prompt: str,
    inputs: Mapping[str, Any],
    schema: type[M],
) -> M:
    """Call the model and validate its output.

    Timeouts and schema mismatches surface as ``LanguageModelError`` so every
    node handles a single failure type.
    """
    try:
        raw = await with_timeout(
            components.model.invoke(prompt, inputs),
            components.model_timeout_ms,
        )
    except TimeoutError as exc:
        raise LanguageModelError(f"model_timeout: {prompt}") from exc
    try:
        return schema.model_validate(raw)
    except ValidationError as exc:
        raise LanguageModelError(
            f"invalid_model_output: {prompt}: {exc.error_count()} error(s)"
        ) from exc


def node_context(
    state: Mapping[str, Any],
    components: TurnComponents,
    **extra: Any,
) -> dict[str, Any]:
    context = resolve_for_state(
        state, components.global_context, max_tool_chars=components.tool_output_max_chars
    )
    context["available_tools"] = components.tools.describe()
    context.update({key: value for key, value in extra.items() if value is not None})
    return context


def cancellation_update(phase: str, reason: str = "cancelled") -> dict[str, Any]:
    return {
        "phase": phase,
        "outcome": "complete",
        "cancelled": True,
        "is_completed": True,
        "final_output": TIMEOUT_MESSAGE if reason == TIMEOUT_STOP_REASON else CANCELLED_MESSAGE,
        "stop_reason": reason,
    }
