from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, cast

import structlog

from turnflow.agent.errors import ERROR_CODE_TOOL_NOT_REGISTERED, TurnCancelledError
from turnflow.agent.models import PlanningHistoryEntry, ReasonOutput, TurnMessage
from turnflow.core.config import settings
from turnflow.graph.turn.messages import merge_messages, stringify_output
from turnflow.graph.turn.nodes import TurnComponents
from turnflow.graph.turn.nodes.common import (
    TIMEOUT_STOP_REASON,
    cancellation_update,
    invoke_structured,
    node_context,
)
from turnflow.graph.turn.state import DEFAULT_COMPLETION_MESSAGE, TurnState
from turnflow.graph.turn.utils import (
    TurnDeadline,
    run_cancellable,
    state_get_int,
    state_get_list,
    state_get_str,
    tool_dedup_key,
    with_timeout,
)

logger = structlog.get_logger(__name__)


@dataclass
class DirectTurnStrategy:
    """Secondary strategy: a plain reason/act loop without the graph.

    Model failures propagate to the caller; tool failures are fed back to the
    model as tool messages. The loop honours the same cancel event and total
    turn timeout as the graph, measured from the turn's ``start_time``.
    """

    components: TurnComponents
    name: str = "direct"
    total_timeout_ms: int = field(default_factory=lambda: int(settings.TURN_TIMEOUT_TOTAL_MS))

    def _remaining_ms(self, state: TurnState) -> int:
        started = float(state.get("start_time") or 0.0)
        if started <= 0:
            return self.total_timeout_ms
        elapsed_ms = max(0.0, (time.time() - started) * 1000.0)
        return max(0, int(self.total_timeout_ms - elapsed_ms))

    async def run(
        self,
        state: TurnState,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnState:
        t0 = time.perf_counter()
        chat_id = state_get_str(state, "chat_id")
        max_iterations = max(1, state_get_int(state, "max_iterations", 1))
        working: dict[str, Any] = dict(state)
        messages = state_get_list(state, "messages")
        used_keys = state_get_list(state, "used_tool_keys")
        tools_used = state_get_list(state, "tools_used")
        history = state_get_list(state, "planning_history")
        iteration = 0
        final_output = ""
        stop_reason = "max_iterations_reached"
        cancelled: dict[str, Any] | None = None

        event = cancel_event or asyncio.Event()
        deadline = TurnDeadline(event, self._remaining_ms(state))
        try:
            while iteration < max_iterations:
                if event.is_set():
                    raise TurnCancelledError()
                iteration += 1
                working.update(
                    {
                        "messages": messages,
                        "iteration": iteration,
                        "tools_used": tools_used,
                    }
                )
                decision = await run_cancellable(
                    invoke_structured(
                        self.components,
                        "direct",
                        node_context(working, self.components),
                        ReasonOutput,
                    ),
                    event,
                )
                if decision.next_action == "respond":
                    final_output = str(decision.response or "").strip()
                    stop_reason = "responded"
                    break

                name = str(decision.tool or "").strip()
                key = tool_dedup_key(name, decision.parameters)
                if not name or key in used_keys:
                    label = name or "an unnamed tool"
                    note = f"Skipped {label}: choose a different action or respond."
                    messages = merge_messages(messages, TurnMessage(role="system", content=note))
                    continue
                if self.components.tools.get_tool(name) is None:
                    note = f"{ERROR_CODE_TOOL_NOT_REGISTERED}: {name}"
                    messages = merge_messages(messages, TurnMessage(role="system", content=note))
                    continue

                used_keys.append(key)
                if name not in tools_used:
                    tools_used.append(name)
                try:
                    result = await run_cancellable(
                        with_timeout(
                            self.components.tools.execute(
                                name,
                                dict(decision.parameters),
                                {"chat_id": chat_id, "iteration": iteration, "strategy": self.name},
                            ),
                            self.components.tool_timeout_ms,
                        ),
                        event,
                    )
                    content = (
                        stringify_output(result.data) if result.success else f"Error: {result.error}"
                    )
                    error = result.error
                except TimeoutError:
                    content = error = f"tool_timeout: {name}"
                messages = merge_messages(
                    messages,
                    TurnMessage(role="tool", content=content, name=name, call_id=uuid.uuid4().hex),
                )
                history.append(
                    PlanningHistoryEntry(
                        action=f"tool:{name}",
                        step_name=self.name,
                        status="failed" if error else "completed",
                        timestamp=time.time(),
                        error=error,
                        iteration=iteration,
                    )
                )
        except TurnCancelledError as exc:
            reason = TIMEOUT_STOP_REASON if deadline.expired else exc.reason
            logger.info(
                "direct_strategy_cancelled", chat_id=chat_id, iteration=iteration, reason=reason
            )
            cancelled = cancellation_update(self.name, reason)
            cancelled.pop("phase", None)
        finally:
            deadline.cancel()

        if not final_output:
            final_output = DEFAULT_COMPLETION_MESSAGE
        logger.info(
            "direct_strategy_finished",
            chat_id=chat_id,
            iterations=iteration,
            stop_reason=cancelled["stop_reason"] if cancelled else stop_reason,
            duration_ms=round((time.perf_counter() - t0) * 1000.0, 2),
        )
        working.update(
            {
                "messages": messages,
                "iteration": iteration,
                "tools_used": tools_used,
                "used_tool_keys": used_keys,
                "planning_history": history,
                "is_completed": True,
                "final_output": final_output,
                "outcome": "complete",
                "stop_reason": stop_reason,
                "strategy": self.name,
                **(cancelled or {}),
            }
        )
        return cast(TurnState, working)
