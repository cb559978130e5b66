from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from turnflow.agent.interfaces import (
    EventSinkPort,
    ExchangeMemoryPort,
    LanguageModelPort,
    MemoryProviderPort,
    StepStorePort,
    ToolRegistryPort,
)
from turnflow.agent.models import TurnMessage, ValidationState
from turnflow.core.config import Settings, settings
from turnflow.graph.turn.direct import DirectTurnStrategy
from turnflow.graph.turn.fallback import FallbackTurnStrategy, TurnStrategy
from turnflow.graph.turn.flow import TurnGraphEngine
from turnflow.graph.turn.nodes import TurnComponents
from turnflow.graph.turn.recorder import StepRecorder
from turnflow.graph.turn.state import TurnLimits, TurnState, state_validation
from turnflow.graph.turn.trace import build_turn_trace

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TurnCommand:
    chat_id: str
    message: str
    history: list[TurnMessage] = field(default_factory=list)
    session_context: dict[str, Any] = field(default_factory=dict)
    conversation_context: dict[str, Any] = field(default_factory=dict)
    trace_id: str | None = None


@dataclass(frozen=True)
class TurnResult:
    chat_id: str
    trace_id: str
    final_output: str
    is_completed: bool
    degraded: bool
    iterations: int
    tools_used: list[str]
    messages: list[TurnMessage]
    validation_errors: list[str]
    stop_reason: str
    cancelled: bool = False
    trace: dict[str, Any] = field(default_factory=dict)


def build_initial_state(cmd: TurnCommand, limits: TurnLimits) -> TurnState:
    message = str(cmd.message or "").strip()
    conversation = {**cmd.conversation_context, "messages": list(cmd.history)}
    return {
        "chat_id": cmd.chat_id,
        "trace_id": cmd.trace_id or uuid.uuid4().hex,
        "start_time": time.time(),
        "user_message": message,
        "messages": [TurnMessage(role="user", content=message)],
        "objective": "",
        "working_understanding": "",
        "plan": [],
        "plan_cursor": 0,
        "tools_used": [],
        "used_tool_keys": [],
        "validation": ValidationState(),
        "requires_validation": False,
        "iteration": 0,
        "node_iterations": {},
        "max_iterations": limits.max_iterations,
        "max_node_iterations": dict(limits.max_node_iterations),
        "planning_history": [],
        "is_completed": False,
        "session_context": dict(cmd.session_context),
        "conversation_context": conversation,
    }


def to_turn_result(state: TurnState) -> TurnResult:
    return TurnResult(
        chat_id=str(state.get("chat_id") or ""),
        trace_id=str(state.get("trace_id") or ""),
        final_output=str(state.get("final_output") or ""),
        is_completed=bool(state.get("is_completed")),
        degraded=bool(state.get("degraded")),
        iterations=int(state.get("iteration") or 0),
        tools_used=list(state.get("tools_used") or []),
        messages=list(state.get("messages") or []),
        validation_errors=list(state_validation(state).errors),
        stop_reason=str(state.get("stop_reason") or ""),
        cancelled=bool(state.get("cancelled")),
        trace=build_turn_trace(state),
    )


class HandleTurnUseCase:
    """Runs one user turn through a strategy and returns the caller-facing result."""

    def __init__(
        self,
        strategy: TurnStrategy,
        limits: TurnLimits,
        memory: ExchangeMemoryPort | None = None,
    ):
        self._strategy = strategy
        self._limits = limits
        self._memory = memory

    @property
    def strategy(self) -> TurnStrategy:
        return self._strategy

    async def execute(
        self,
        cmd: TurnCommand,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run one turn. Setting ``cancel_event`` stops it at the next node boundary
        and aborts the in-flight model or tool call."""
        state = build_initial_state(cmd, self._limits)
        logger.info("turn_started", chat_id=cmd.chat_id, trace_id=state["trace_id"])
        final_state = await self._strategy.run(state, cancel_event=cancel_event)
        result = to_turn_result(final_state)
        if self._memory is not None and result.final_output:
            self._memory.remember_exchange(cmd.chat_id, state["user_message"], result.final_output)
        logger.info(
            "turn_finished",
            chat_id=result.chat_id,
            trace_id=result.trace_id,
            iterations=result.iterations,
            degraded=result.degraded,
            cancelled=result.cancelled,
            stop_reason=result.stop_reason or None,
        )
        return result


def build_turn_use_case(
    *,
    model: LanguageModelPort,
    tools: ToolRegistryPort,
    memory: MemoryProviderPort,
    events: EventSinkPort,
    store: StepStorePort,
    global_context: dict[str, Any] | None = None,
    config: Settings | None = None,
) -> HandleTurnUseCase:
    """Composition root: wires collaborators into the graph, fallback and use case."""
    cfg = config or settings
    components = TurnComponents(
        model=model,
        tools=tools,
        memory=memory,
        recorder=StepRecorder(store=store, events=events),
        global_context=dict(global_context or {}),
        model_timeout_ms=int(cfg.TURN_TIMEOUT_MODEL_MS),
        tool_timeout_ms=int(cfg.TURN_TIMEOUT_TOOL_MS),
        tool_output_max_chars=int(cfg.TURN_TOOL_OUTPUT_MAX_CHARS),
    )
    primary = TurnGraphEngine(components=components, total_timeout_ms=int(cfg.TURN_TIMEOUT_TOTAL_MS))
    secondary = DirectTurnStrategy(components=components) if cfg.TURN_FALLBACK_ENABLED else None
    remember = memory if callable(getattr(memory, "remember_exchange", None)) else None
    return HandleTurnUseCase(
        strategy=FallbackTurnStrategy(primary=primary, secondary=secondary),
        limits=TurnLimits.from_settings(cfg),
        memory=remember,  # type: ignore[arg-type]
    )
