from __future__ import annotations

from typing import Any, Protocol

from turnflow.agent.models import ToolExecutionResult


class AgentTool(Protocol):
    name: str
    description: str
    required_params: tuple[str, ...]

    async def run(
        self,
        params: dict[str, Any],
        *,
        metadata: dict[str, Any],
    ) -> ToolExecutionResult: ...
