from __future__ import annotations

from turnflow.agent.models import ValidationState
from turnflow.graph.turn.routing import (
    route_after_analyze,
    route_after_error_handler,
    route_after_execute,
    route_after_validate,
)


def _state(**overrides: object) -> dict[str, object]:
    state: dict[str, object] = {
        "plan": ["step"],
        "plan_cursor": 0,
        "iteration": 1,
        "max_iterations": 5,
        "node_iterations": {"execute": 1},
        "max_node_iterations": {"execute": 5, "validate": 3},
        "validation": ValidationState(),
        "requires_validation": False,
        "is_completed": False,
        "outcome": "continue",
    }
    state.update(overrides)
    return state


def test_analyze_routes() -> None:
    assert route_after_analyze(_state()) == "execute"
    assert route_after_analyze(_state(plan=[])) == "respond"
    assert route_after_analyze(_state(error="boom")) == "error_handler"
    assert route_after_analyze(_state(is_completed=True)) == "respond"
    assert route_after_analyze(_state(cancelled=True)) == "end"


def test_execute_prefers_validation_when_errors_pending() -> None:
    state = _state(
        requires_validation=True,
        validation=ValidationState(errors=["tool_failed: x"]),
        error="also failed",
    )
    assert route_after_execute(state) == "validate"


def test_execute_requires_errors_to_validate() -> None:
    assert route_after_execute(_state(requires_validation=True)) == "execute"


def test_execute_failure_goes_to_error_handler() -> None:
    assert route_after_execute(_state(outcome="fail")) == "error_handler"
    assert route_after_execute(_state(error="node_failed: x")) == "error_handler"


def test_execute_completion_goes_to_respond() -> None:
    assert route_after_execute(_state(is_completed=True, outcome="complete")) == "respond"
    assert route_after_execute(_state(outcome="complete")) == "respond"


def test_execute_loops_while_work_pending_and_within_ceilings() -> None:
    assert route_after_execute(_state()) == "execute"
    assert route_after_execute(_state(outcome=None, plan_cursor=0)) == "execute"
    assert route_after_execute(_state(outcome=None, plan_cursor=1)) == "respond"


def test_execute_global_ceiling_forces_respond() -> None:
    assert route_after_execute(_state(iteration=5)) == "respond"


def test_execute_node_ceiling_exits_early() -> None:
    state = _state(iteration=2, node_iterations={"execute": 5})
    assert route_after_execute(state) == "respond"


def test_validate_routes() -> None:
    assert route_after_validate(_state()) == "execute"
    assert route_after_validate(_state(validation=ValidationState(errors=["e"]))) == "respond"
    assert route_after_validate(_state(is_completed=True)) == "respond"
    assert route_after_validate(_state(error="x")) == "error_handler"
    assert route_after_validate(_state(cancelled=True)) == "end"


def test_error_handler_never_loops_back() -> None:
    assert route_after_error_handler(_state()) == "respond"
    assert route_after_error_handler(_state(cancelled=True)) == "end"
