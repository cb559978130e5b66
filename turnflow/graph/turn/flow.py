from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, cast

import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from turnflow.agent.errors import TurnCancelledError
from turnflow.core.config import settings
from turnflow.graph.turn.nodes import (
    TurnComponents,
    analyze_node,
    error_handler_node,
    execute_node,
    respond_node,
    validate_node,
)
from turnflow.graph.turn.nodes.common import (
    TIMEOUT_MESSAGE,
    TIMEOUT_STOP_REASON,
    cancellation_update,
)
from turnflow.graph.turn.routing import (
    ROUTE_END,
    ROUTE_ERROR,
    ROUTE_EXECUTE,
    ROUTE_RESPOND,
    ROUTE_VALIDATE,
    route_after_analyze,
    route_after_error_handler,
    route_after_execute,
    route_after_validate,
)
from turnflow.graph.turn.state import (
    PHASE_ANALYZE,
    PHASE_ERROR,
    PHASE_EXECUTE,
    PHASE_RESPOND,
    PHASE_VALIDATE,
    TurnState,
)
from turnflow.graph.turn.utils import (
    TurnDeadline,
    run_cancellable,
    state_get_dict,
    state_get_int,
)

logger = structlog.get_logger(__name__)

NodeFn = Callable[[TurnState, TurnComponents], Awaitable[dict[str, Any]]]

CANCEL_EVENT_KEY = "cancel_event"


def recursion_limit_for(state: TurnState) -> int:
    max_iterations = state_get_int(state, "max_iterations", 1)
    validate_visits = int(state_get_dict(state, "max_node_iterations").get(PHASE_VALIDATE, 1) or 1)
    return max(25, (max_iterations + validate_visits) * 4 + 10)


def _cancel_event(config: RunnableConfig | None) -> asyncio.Event | None:
    configurable = dict((config or {}).get("configurable") or {})
    event = configurable.get(CANCEL_EVENT_KEY)
    return event if isinstance(event, asyncio.Event) else None


@dataclass
class TurnGraphEngine:
    """Primary strategy: the analyze / execute / validate / respond state graph."""

    components: TurnComponents
    total_timeout_ms: int = 0
    name: str = "graph"

    def __post_init__(self) -> None:
        if self.total_timeout_ms <= 0:
            self.total_timeout_ms = int(settings.TURN_TIMEOUT_TOTAL_MS)
        self._graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        engine = self  # capture for closures

        def _bind(phase: str, node: NodeFn):
            async def _node(s: TurnState, config: RunnableConfig) -> dict[str, Any]:
                return await engine._run_node(phase, node, s, config)

            return _node

        graph = StateGraph(TurnState)
        graph.add_node(PHASE_ANALYZE, _bind(PHASE_ANALYZE, analyze_node))
        graph.add_node(PHASE_EXECUTE, _bind(PHASE_EXECUTE, execute_node))
        graph.add_node(PHASE_VALIDATE, _bind(PHASE_VALIDATE, validate_node))
        graph.add_node(PHASE_RESPOND, _bind(PHASE_RESPOND, respond_node))
        graph.add_node(PHASE_ERROR, _bind(PHASE_ERROR, error_handler_node))

        graph.add_edge(START, PHASE_ANALYZE)
        graph.add_conditional_edges(
            PHASE_ANALYZE,
            route_after_analyze,
            {
                ROUTE_EXECUTE: PHASE_EXECUTE,
                ROUTE_RESPOND: PHASE_RESPOND,
                ROUTE_ERROR: PHASE_ERROR,
                ROUTE_END: END,
            },
        )
        graph.add_conditional_edges(
            PHASE_EXECUTE,
            route_after_execute,
            {
                ROUTE_EXECUTE: PHASE_EXECUTE,
                ROUTE_VALIDATE: PHASE_VALIDATE,
                ROUTE_RESPOND: PHASE_RESPOND,
                ROUTE_ERROR: PHASE_ERROR,
                ROUTE_END: END,
            },
        )
        graph.add_conditional_edges(
            PHASE_VALIDATE,
            route_after_validate,
            {
                ROUTE_EXECUTE: PHASE_EXECUTE,
                ROUTE_RESPOND: PHASE_RESPOND,
                ROUTE_ERROR: PHASE_ERROR,
                ROUTE_END: END,
            },
        )
        graph.add_conditional_edges(
            PHASE_ERROR,
            route_after_error_handler,
            {ROUTE_RESPOND: PHASE_RESPOND, ROUTE_END: END},
        )
        graph.add_edge(PHASE_RESPOND, END)
        return graph

    async def _run_node(
        self,
        phase: str,
        node: NodeFn,
        state: TurnState,
        config: RunnableConfig | None,
    ) -> dict[str, Any]:
        cancel_event = _cancel_event(config)

        async def _body() -> dict[str, Any]:
            if cancel_event is not None and cancel_event.is_set():
                return cancellation_update(phase)
            try:
                return await run_cancellable(node(state, self.components), cancel_event)
            except TurnCancelledError as exc:
                logger.info("turn_node_cancelled", chat_id=state.get("chat_id"), phase=phase)
                return cancellation_update(phase, exc.reason)

        updates = await self.components.recorder.record(phase, state, _body)
        visits = int(state_get_dict(state, "node_iterations").get(phase, 0) or 0)
        updates["node_iterations"] = {phase: visits + 1}
        return updates

    async def run(
        self,
        state: TurnState,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnState:
        event = cancel_event or asyncio.Event()
        t_total = time.perf_counter()
        deadline = TurnDeadline(event, self.total_timeout_ms)
        logger.info(
            "turn_engine_started",
            chat_id=state.get("chat_id"),
            trace_id=state.get("trace_id"),
            max_iterations=state.get("max_iterations"),
        )
        try:
            result = await self._graph.ainvoke(
                state,
                config={
                    "configurable": {CANCEL_EVENT_KEY: event},
                    "recursion_limit": recursion_limit_for(state),
                },
            )
        finally:
            deadline.cancel()

        final_state = dict(result)
        if deadline.expired and final_state.get("cancelled"):
            final_state["stop_reason"] = TIMEOUT_STOP_REASON
            final_state["final_output"] = TIMEOUT_MESSAGE
        elapsed_ms = round((time.perf_counter() - t_total) * 1000.0, 2)
        timings = dict(final_state.get("stage_timings_ms") or {})
        timings["total"] = elapsed_ms
        final_state["stage_timings_ms"] = timings
        final_state["strategy"] = self.name
        logger.info(
            "turn_engine_finished",
            chat_id=final_state.get("chat_id"),
            duration_ms=elapsed_ms,
            iterations=final_state.get("iteration"),
            stop_reason=final_state.get("stop_reason") or None,
            cancelled=bool(final_state.get("cancelled")),
        )
        return cast(TurnState, final_state)
