from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from turnflow.graph.turn.state import (
    PHASE_EXECUTE,
    state_validation,
)
from turnflow.graph.turn.utils import state_get_dict, state_get_int, state_get_list, state_get_str

ROUTE_EXECUTE = "execute"
ROUTE_VALIDATE = "validate"
ROUTE_RESPOND = "respond"
ROUTE_ERROR = "error_handler"
ROUTE_END = "end"


def _failed(state: Mapping[str, Any]) -> bool:
    return bool(state_get_str(state, "error")) or state.get("outcome") == "fail"


def _completed(state: Mapping[str, Any]) -> bool:
    return bool(state.get("is_completed")) or state.get("outcome") == "complete"


def has_pending_work(state: Mapping[str, Any]) -> bool:
    if state.get("outcome") == "continue":
        return True
    return state_get_int(state, "plan_cursor", 0) < len(state_get_list(state, "plan"))


def within_execute_budget(state: Mapping[str, Any]) -> bool:
    iteration = state_get_int(state, "iteration", 0)
    if iteration >= state_get_int(state, "max_iterations", 1):
        return False
    visits = int(state_get_dict(state, "node_iterations").get(PHASE_EXECUTE, 0) or 0)
    ceiling = state_get_dict(state, "max_node_iterations").get(PHASE_EXECUTE)
    if ceiling is None:
        return True
    return visits < int(ceiling)


def route_after_analyze(state: Mapping[str, Any]) -> str:
    if state.get("cancelled"):
        return ROUTE_END
    if _failed(state):
        return ROUTE_ERROR
    if state.get("is_completed"):
        return ROUTE_RESPOND
    return ROUTE_EXECUTE if state_get_list(state, "plan") else ROUTE_RESPOND


def route_after_execute(state: Mapping[str, Any]) -> str:
    if state.get("cancelled"):
        return ROUTE_END
    if state.get("requires_validation") and state_validation(state).has_errors:
        return ROUTE_VALIDATE
    if _failed(state):
        return ROUTE_ERROR
    if _completed(state):
        return ROUTE_RESPOND
    # The global ceiling is authoritative; the per-node one only exits earlier.
    if has_pending_work(state) and within_execute_budget(state):
        return ROUTE_EXECUTE
    return ROUTE_RESPOND


def route_after_validate(state: Mapping[str, Any]) -> str:
    if state.get("cancelled"):
        return ROUTE_END
    if _failed(state):
        return ROUTE_ERROR
    if state.get("is_completed"):
        return ROUTE_RESPOND
    # Unresolved errors go to Respond, not Execute: they stay visible to the
    # caller and validate/execute cannot loop on the same failure.
    if state_validation(state).has_errors:
        return ROUTE_RESPOND
    return ROUTE_EXECUTE


def route_after_error_handler(state: Mapping[str, Any]) -> str:
    return ROUTE_END if state.get("cancelled") else ROUTE_RESPOND
