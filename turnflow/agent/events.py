from __future__ import annotations

import structlog

from turnflow.agent.models import TurnEvent

logger = structlog.get_logger(__name__)


class StructlogEventSink:
    def emit(self, event: TurnEvent) -> None:
        fields = {
            "chat_id": event.chat_id,
            "iteration": event.iteration,
            "phase": event.phase or None,
            "duration_ms": event.duration_ms,
            "tool": event.tool,
            "success": event.success,
            **event.data,
        }
        fields = {key: value for key, value in fields.items() if value is not None}
        if event.kind == "error":
            logger.warning("turn_event_error", error=event.error, **fields)
            return
        if event.error:
            fields["error"] = event.error
        logger.info(f"turn_event_{event.kind}", **fields)

