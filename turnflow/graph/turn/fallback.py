from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass
from typing import Any, Protocol, cast

import structlog

from turnflow.agent.errors import (
    ERROR_CODE_ENGINE_FAILED,
    ERROR_CODE_FALLBACK_FAILED,
    merge_error_codes,
)
from turnflow.agent.models import PlanningHistoryEntry, ValidationState
from turnflow.core.config import settings
from turnflow.graph.turn.nodes.common import cancellation_update
from turnflow.graph.turn.state import ERROR_DETAIL_LIMIT, TurnState, state_validation
from turnflow.graph.turn.utils import _clip_text, state_get_list, state_get_str

logger = structlog.get_logger(__name__)

FAILURE_MESSAGE = "I could not complete your request because of an internal error."


class TurnStrategy(Protocol):
    name: str

    async def run(
        self,
        state: TurnState,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnState: ...


def _describe(exc: BaseException) -> str:
    return _clip_text(f"{type(exc).__name__}: {exc}", limit=ERROR_DETAIL_LIMIT)


def build_fallback_input(
    original: TurnState,
    error: str,
    *,
    action: str = "engine_failure",
    step_name: str = "graph",
) -> TurnState:
    """Fresh input for the secondary strategy, derived from the untouched turn input."""
    state: dict[str, Any] = copy.copy(dict(original))
    state["planning_history"] = [
        *state_get_list(original, "planning_history"),
        PlanningHistoryEntry(
            action=action,
            step_name=step_name,
            status="failed",
            timestamp=time.time(),
            error=error,
        ),
    ]
    state["error"] = error
    return cast(TurnState, state)


def failed_terminal_state(fallback_input: TurnState, *errors: str) -> TurnState:
    state: dict[str, Any] = dict(fallback_input)
    error = "; ".join(errors)
    validation = state_validation(fallback_input)
    state.update(
        {
            "error": error,
            "is_completed": True,
            "outcome": "fail",
            "final_output": f"{FAILURE_MESSAGE}\n\nDetails: {error}",
            "degraded": True,
            "stop_reason": ERROR_CODE_FALLBACK_FAILED,
            "validation": ValidationState(
                errors=merge_error_codes(list(validation.errors), list(errors)),
                corrections=list(validation.corrections),
            ),
        }
    )
    return cast(TurnState, state)


def cancelled_terminal_state(fallback_input: TurnState) -> TurnState:
    state: dict[str, Any] = dict(fallback_input)
    state.update(cancellation_update(state_get_str(fallback_input, "phase", "graph")))
    state["degraded"] = True
    return cast(TurnState, state)


@dataclass
class FallbackTurnStrategy:
    """Runs ``primary``; if it raises, runs ``secondary`` on the original input.

    The returned state is always completed with a non-empty ``final_output``.
    A cancelled turn never starts the secondary.
    """

    primary: TurnStrategy
    secondary: TurnStrategy | None = None
    name: str = "fallback"

    async def run(
        self,
        state: TurnState,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnState:
        original = cast(TurnState, copy.deepcopy(dict(state)))
        try:
            return await self.primary.run(state, cancel_event=cancel_event)
        except Exception as exc:
            primary_error = f"{ERROR_CODE_ENGINE_FAILED}: {_describe(exc)}"
            logger.error(
                "turn_primary_strategy_failed",
                chat_id=state_get_str(original, "chat_id"),
                strategy=self.primary.name,
                error=primary_error,
                exc_info=settings.TURN_LOG_EXC_INFO,
            )

        fallback_input = build_fallback_input(original, primary_error)
        if cancel_event is not None and cancel_event.is_set():
            logger.info("turn_fallback_skipped_cancelled", chat_id=state_get_str(original, "chat_id"))
            return cancelled_terminal_state(fallback_input)
        if self.secondary is None:
            return failed_terminal_state(fallback_input, primary_error)

        try:
            result = dict(await self.secondary.run(fallback_input, cancel_event=cancel_event))
        except Exception as exc:
            secondary_error = f"{ERROR_CODE_FALLBACK_FAILED}: {_describe(exc)}"
            logger.error(
                "turn_fallback_strategy_failed",
                chat_id=state_get_str(original, "chat_id"),
                strategy=self.secondary.name,
                error=secondary_error,
                exc_info=settings.TURN_LOG_EXC_INFO,
            )
            failed = build_fallback_input(
                fallback_input,
                secondary_error,
                action="fallback_failure",
                step_name=self.secondary.name,
            )
            return failed_terminal_state(failed, primary_error, secondary_error)

        logger.info(
            "turn_fallback_strategy_succeeded",
            chat_id=state_get_str(original, "chat_id"),
            strategy=self.secondary.name,
        )
        result["degraded"] = True
        result["is_completed"] = True
        result["error"] = primary_error
        if not str(result.get("final_output") or "").strip():
            result["final_output"] = FAILURE_MESSAGE
        return cast(TurnState, result)
