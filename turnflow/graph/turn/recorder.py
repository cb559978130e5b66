from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

import structlog

from turnflow.agent.interfaces import EventSinkPort, StepStorePort
from turnflow.agent.models import (
    ExecutionStepRecord,
    PlanningHistoryEntry,
    StepStatus,
    TurnEvent,
)
from turnflow.core.config import settings
from turnflow.graph.turn.state import FINAL_OUTPUT_PREVIEW_LIMIT, state_validation
from turnflow.graph.turn.utils import _clip_text, _sanitize_payload

logger = structlog.get_logger(__name__)

SKIPPED_STOP_REASONS = frozenset({"duplicate_tool_call", "cancelled"})


@dataclass
class StepRecorder:
    """Persists one step record per node invocation and mirrors it into the turn's
    planning history. Also the single place lifecycle events are emitted from."""

    store: StepStorePort
    events: EventSinkPort

    def emit(self, event: TurnEvent) -> None:
        try:
            self.events.emit(event)
        except Exception as exc:
            logger.warning("event_emit_failed", kind=event.kind, error=str(exc))

    def open(self, step_name: str, state: Mapping[str, Any]) -> ExecutionStepRecord:
        return ExecutionStepRecord(
            id=uuid.uuid4().hex,
            trace_id=str(state.get("trace_id") or ""),
            chat_id=str(state.get("chat_id") or ""),
            step_name=step_name,
            step_type="prompt",
            target=step_name,
            start_time=time.time(),
            iteration=int(state.get("iteration") or 0),
        )

    async def record(
        self,
        step_name: str,
        state: Mapping[str, Any],
        run: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        record = self.open(step_name, state)
        chat_id = record.chat_id
        self.emit(
            TurnEvent(
                kind="phase_started",
                chat_id=chat_id,
                iteration=record.iteration,
                timestamp=record.start_time,
                phase=step_name,
            )
        )
        t0 = time.perf_counter()
        try:
            updates = await run()
        except Exception as exc:
            duration_ms = round((time.perf_counter() - t0) * 1000.0, 2)
            closed = replace(record, end_time=time.time(), status="failed", error=str(exc))
            logger.error(
                "turn_step_failed",
                chat_id=chat_id,
                step=step_name,
                error=str(exc),
                exc_info=settings.TURN_LOG_EXC_INFO,
            )
            self.emit(
                TurnEvent(
                    kind="error",
                    chat_id=chat_id,
                    iteration=record.iteration,
                    timestamp=time.time(),
                    phase=step_name,
                    duration_ms=duration_ms,
                    error=str(exc),
                )
            )
            await self.store.save_step(closed)
            raise

        duration_ms = round((time.perf_counter() - t0) * 1000.0, 2)
        closed = self._close(record, state, updates)
        await self.store.save_step(closed)

        entry = PlanningHistoryEntry(
            action=f"{closed.step_type}:{closed.target}",
            step_name=step_name,
            status=closed.status,
            timestamp=closed.end_time or time.time(),
            result=closed.result if closed.status != "failed" else None,
            error=closed.error,
            iteration=closed.iteration,
        )
        updates["planning_history"] = [*list(updates.get("planning_history") or []), entry]

        self.emit(
            TurnEvent(
                kind="phase_completed",
                chat_id=chat_id,
                iteration=closed.iteration,
                timestamp=time.time(),
                phase=step_name,
                duration_ms=duration_ms,
                error=closed.error,
                data={
                    "is_completed": bool(updates.get("is_completed", state.get("is_completed"))),
                    "requires_validation": bool(
                        updates.get("requires_validation", state.get("requires_validation"))
                    ),
                },
            )
        )
        return updates

    def _close(
        self,
        record: ExecutionStepRecord,
        state: Mapping[str, Any],
        updates: Mapping[str, Any],
    ) -> ExecutionStepRecord:
        tool_name = str(updates.get("current_tool") or "").strip()
        ran_tool = bool(tool_name) and bool(updates.get("tools_used"))
        error = str(updates.get("error") or "")
        status: StepStatus = "completed"
        tool_failed = ran_tool and bool(updates.get("requires_validation"))
        if error or tool_failed or updates.get("outcome") == "fail":
            status = "failed"
        elif str(updates.get("stop_reason") or "") in SKIPPED_STOP_REASONS:
            status = "skipped"

        final_output = updates.get("final_output")
        result: dict[str, Any] = {
            "outcome": updates.get("outcome"),
            "is_completed": bool(updates.get("is_completed", state.get("is_completed"))),
            "requires_validation": bool(updates.get("requires_validation", False)),
        }
        if final_output:
            result["final_output_preview"] = _clip_text(
                final_output, limit=FINAL_OUTPUT_PREVIEW_LIMIT
            )
        validation = updates.get("validation")
        if validation is not None:
            result["validation_errors"] = list(state_validation(updates).errors)
        if ran_tool:
            result["tool_output_preview"] = _clip_text(updates.get("last_tool_output"))

        return replace(
            record,
            step_type="tool" if ran_tool else "prompt",
            target=tool_name if ran_tool else record.target,
            params=_sanitize_payload(dict(updates.get("current_params") or {})) if ran_tool else {},
            end_time=time.time(),
            status=status,
            result={key: value for key, value in result.items() if value is not None},
            error=error,
            iteration=int(updates.get("iteration", record.iteration) or 0),
        )
