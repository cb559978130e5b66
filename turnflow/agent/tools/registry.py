from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from turnflow.agent.errors import ERROR_CODE_TOOL_NOT_REGISTERED
from turnflow.agent.models import ToolExecutionResult, ToolSpec
from turnflow.agent.tools.base import AgentTool
from turnflow.agent.tools.workspace import ListFilesTool, ReadFileTool

logger = structlog.get_logger(__name__)


@dataclass
class ToolRegistry:
    _tools: dict[str, AgentTool] = field(default_factory=dict)

    @classmethod
    def create_default(cls, root: str | Path = ".") -> "ToolRegistry":
        registry = cls()
        registry.register(ListFilesTool(root=Path(root)))
        registry.register(ReadFileTool(root=Path(root)))
        return registry

    def register(self, tool: AgentTool) -> None:
        name = str(tool.name or "").strip()
        if not name:
            raise ValueError("tool name must not be empty")
        self._tools[name] = tool

    def names(self) -> list[str]:
        return sorted(self._tools)

    def get_tool(self, name: str) -> ToolSpec | None:
        tool = self._tools.get(str(name or "").strip())
        if tool is None:
            return None
        return ToolSpec(
            name=tool.name,
            description=str(getattr(tool, "description", "") or ""),
            required_params=tuple(getattr(tool, "required_params", ()) or ()),
        )

    def describe(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for name in self.names():
            spec = self.get_tool(name)
            if spec is None:
                continue
            out.append(
                {
                    "name": spec.name,
                    "description": spec.description,
                    "required_params": list(spec.required_params),
                }
            )
        return out

    async def execute(
        self,
        name: str,
        params: dict[str, Any],
        metadata: dict[str, Any],
    ) -> ToolExecutionResult:
        tool = self._tools.get(str(name or "").strip())
        if tool is None:
            return ToolExecutionResult(success=False, error=f"{ERROR_CODE_TOOL_NOT_REGISTERED}: {name}")

        missing = [
            key
            for key in tuple(getattr(tool, "required_params", ()) or ())
            if params.get(key) in (None, "")
        ]
        if missing:
            return ToolExecutionResult(
                success=False, error=f"missing_params: {', '.join(missing)}"
            )

        try:
            return await tool.run(dict(params), metadata=dict(metadata))
        except Exception as exc:
            logger.error("tool_execution_failed", tool=name, error=str(exc))
            return ToolExecutionResult(success=False, error=str(exc) or type(exc).__name__)


def create_default_tools(root: str | Path = ".") -> ToolRegistry:
    return ToolRegistry.create_default(root)
